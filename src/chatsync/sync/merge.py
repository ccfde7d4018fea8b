"""
Per-entity merge of conflicting local and remote records.

Each merge function returns the combined record, or None when the two
sides cannot be combined automatically (the conflict then goes manual).
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from .models import ChangeAction, EntityType

MergeFn = Callable[[dict[str, Any], dict[str, Any]], "dict[str, Any] | None"]

# Delivery progress; a later stage supersedes an earlier one
MESSAGE_STATUS_ORDER = ["sending", "sent", "delivered", "read"]


def _union_by(key: str, *lists: list[Any] | None) -> list[Any]:
    """Concatenate lists of dicts, keeping the first occurrence of each key value."""
    seen: set[Any] = set()
    merged: list[Any] = []
    for items in lists:
        for item in items or []:
            marker = item.get(key) if isinstance(item, dict) else item
            if marker in seen:
                continue
            seen.add(marker)
            merged.append(item)
    return merged


def _furthest_status(local: str | None, remote: str | None) -> str | None:
    if local == "failed" and remote == "failed":
        return "failed"
    ranked = [s for s in (local, remote) if s in MESSAGE_STATUS_ORDER]
    if not ranked:
        return remote or local
    return max(ranked, key=MESSAGE_STATUS_ORDER.index)


def _timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _local_edit_wins(local: dict[str, Any], remote: dict[str, Any]) -> bool:
    """Local content counts only as an edit, and only if the server has no later one."""
    if local.get("content") is None:
        return False
    if remote.get("content") is None:
        return True
    local_edit = _timestamp(local.get("editedAt"))
    if local_edit is None:
        return False
    remote_edit = _timestamp(remote.get("editedAt"))
    return remote_edit is None or local_edit >= remote_edit


def merge_message(local: dict[str, Any], remote: dict[str, Any]) -> dict[str, Any] | None:
    merged = {**remote}
    if _local_edit_wins(local, remote):
        merged["content"] = local["content"]
        if local.get("editedAt"):
            merged["editedAt"] = local["editedAt"]
    status = _furthest_status(local.get("status"), remote.get("status"))
    if status is not None:
        merged["status"] = status
    if "readBy" in local or "readBy" in remote:
        merged["readBy"] = _union_by("userId", remote.get("readBy"), local.get("readBy"))
    if isinstance(local.get("metadata"), dict) or isinstance(remote.get("metadata"), dict):
        merged["metadata"] = {**(remote.get("metadata") or {}), **(local.get("metadata") or {})}
    return merged


def merge_chat(local: dict[str, Any], remote: dict[str, Any]) -> dict[str, Any] | None:
    merged = {**remote}
    for key in ("name", "avatar"):
        if local.get(key):
            merged[key] = local[key]
    if "participants" in local or "participants" in remote:
        merged["participants"] = _union_by("id", remote.get("participants"), local.get("participants"))
    # Server owns the counters and the last message pointer
    for key in ("unreadCount", "lastMessage"):
        if key in remote:
            merged[key] = remote[key]
    return merged


def merge_user(local: dict[str, Any], remote: dict[str, Any]) -> dict[str, Any] | None:
    merged = {**remote}
    for key in ("name", "avatar", "status"):
        if local.get(key) is not None:
            merged[key] = local[key]
    return merged


MERGERS: dict[EntityType, MergeFn] = {
    EntityType.MESSAGES: merge_message,
    EntityType.CHATS: merge_chat,
    EntityType.USERS: merge_user,
}


def merge_records(
    entity_type: EntityType,
    action: ChangeAction,
    local: dict[str, Any] | None,
    remote: dict[str, Any] | None,
) -> dict[str, Any] | None:
    """
    Combine local and remote versions of one entity.

    Returns None when no automatic merge exists: departments, a missing
    side, or any combination involving a delete.
    """
    if action == ChangeAction.DELETE or not local or not remote:
        return None
    if remote.get("deleted") or remote.get("_deleted"):
        return None
    merger = MERGERS.get(entity_type)
    if merger is None:
        return None
    return merger(local, remote)
