"""Data model for the offline-first sync engine."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EntityType(str, Enum):
    """Record families replicated by the sync engine."""

    MESSAGES = "messages"
    CHATS = "chats"
    USERS = "users"
    DEPARTMENTS = "departments"

    @classmethod
    def parse(cls, value: str) -> EntityType:
        """Accept singular or plural names ("message" or "messages")."""
        value = value.lower()
        try:
            return cls(value)
        except ValueError:
            return cls(f"{value}s")


class ChangeAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ConflictStrategy(str, Enum):
    """How a conflict reported by the remote authority is settled."""

    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MERGE = "merge"
    MANUAL = "manual"


class ConflictStatus(str, Enum):
    PENDING = "pending"  # awaiting the configured strategy
    MANUAL = "manual"  # awaiting resolve_manual_conflict()


class Resolution(str, Enum):
    """Caller's choice for a manual conflict."""

    SERVER = "server"
    CLIENT = "client"
    MERGED = "merged"


class SyncEvent(str, Enum):
    """Events published by the sync engine."""

    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    CONFLICT_DETECTED = "conflict_detected"
    DATA_CHANGED = "data_changed"
    ONLINE_STATUS_CHANGED = "online_status_changed"


@dataclass
class LocalChange:
    """Journal entry: a local mutation not yet acknowledged by the remote authority."""

    client_id: str
    entity_type: EntityType
    action: ChangeAction
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=datetime.now)
    attempts: int = 0
    # Client-wins resolution: re-upload even though the server reported a conflict
    force: bool = False

    @property
    def entity_id(self) -> str:
        return str(self.payload.get("id") or self.client_id)

    def to_wire(self) -> dict[str, Any]:
        body = {
            "clientId": self.client_id,
            "entityType": self.entity_type.value,
            "action": self.action.value,
            "payload": self.payload,
            "createdAt": self.created_at.isoformat(),
        }
        if self.force:
            body["force"] = True
        return body

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "entity_type": self.entity_type.value,
            "action": self.action.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "attempts": self.attempts,
            "force": self.force,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LocalChange:
        return cls(
            client_id=data["client_id"],
            entity_type=EntityType(data["entity_type"]),
            action=ChangeAction(data["action"]),
            payload=dict(data.get("payload") or {}),
            created_at=datetime.fromisoformat(data["created_at"]),
            attempts=int(data.get("attempts", 0)),
            force=bool(data.get("force", False)),
        )


@dataclass
class RemoteChange:
    """A change pulled from the remote authority. Applied, never stored as-is."""

    entity_type: EntityType
    action: ChangeAction
    payload: dict[str, Any]
    timestamp: datetime
    id: str | None = None
    source_id: str | None = None
    version: int | None = None

    @property
    def entity_id(self) -> str | None:
        return self.id or self.payload.get("id")


@dataclass
class Conflict:
    """Local and remote both changed the same entity since the last sync."""

    client_id: str
    entity_type: EntityType
    local_payload: dict[str, Any]
    remote_payload: dict[str, Any] | None
    conflict_type: str = "version_conflict"
    status: ConflictStatus = ConflictStatus.PENDING
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "entity_type": self.entity_type.value,
            "local_payload": self.local_payload,
            "remote_payload": self.remote_payload,
            "conflict_type": self.conflict_type,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conflict:
        return cls(
            client_id=data["client_id"],
            entity_type=EntityType(data["entity_type"]),
            local_payload=dict(data.get("local_payload") or {}),
            remote_payload=data.get("remote_payload"),
            conflict_type=data.get("conflict_type", "version_conflict"),
            status=ConflictStatus(data.get("status", ConflictStatus.PENDING.value)),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class SyncErrorRecord:
    """One entry in the recent-errors ring buffer."""

    stage: str  # upload, download, resolve
    message: str
    code: str | None = None
    client_id: str | None = None
    occurred_at: datetime = field(default_factory=datetime.now)


@dataclass
class SyncStatus:
    """Sync engine state as exposed to the application."""

    is_syncing: bool = False
    is_online: bool = False
    last_sync_cursor: str | None = None
    last_sync_at: datetime | None = None
    pending_change_count: int = 0
    conflict_count: int = 0
    recent_errors: deque[SyncErrorRecord] = field(default_factory=lambda: deque(maxlen=50))

    def copy(self) -> SyncStatus:
        return SyncStatus(
            is_syncing=self.is_syncing,
            is_online=self.is_online,
            last_sync_cursor=self.last_sync_cursor,
            last_sync_at=self.last_sync_at,
            pending_change_count=self.pending_change_count,
            conflict_count=self.conflict_count,
            recent_errors=deque(self.recent_errors, maxlen=self.recent_errors.maxlen),
        )
