"""
In-memory dictionary store.

Fast, ephemeral storage for tests and sessions that do not need to
survive a restart.
"""

from __future__ import annotations

import copy
from enum import Enum
from typing import Any

from chatsync.storage.base import DELETED_FLAG, LocalStore, entity_key
from chatsync.sync.models import Conflict, ConflictStatus, LocalChange


class MemoryStore(LocalStore):
    """
    Dictionary-based local store.

    Features:
    - O(1) record access by (entity_type, id)
    - Journal kept in insertion order (dicts preserve it)
    - Values are deep-copied in and out so callers cannot mutate stored state
    - No persistence (ephemeral)
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, dict[str, Any]]] = {}
        self._journal: dict[str, LocalChange] = {}
        self._conflicts: dict[str, Conflict] = {}
        self._values: dict[str, str] = {}

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def upsert_record(
        self,
        entity_type: Enum | str,
        record_id: str,
        data: dict[str, Any],
        merge: bool = False,
    ) -> dict[str, Any]:
        table = self._records.setdefault(entity_key(entity_type), {})
        existing = table.get(record_id)
        if merge and existing is not None:
            record = {**existing, **copy.deepcopy(data)}
        else:
            record = copy.deepcopy(data)
        record["id"] = record_id
        record.pop(DELETED_FLAG, None)
        table[record_id] = record
        return copy.deepcopy(record)

    async def get_record(
        self,
        entity_type: Enum | str,
        record_id: str,
        include_deleted: bool = False,
    ) -> dict[str, Any] | None:
        record = self._records.get(entity_key(entity_type), {}).get(record_id)
        if record is None or (record.get(DELETED_FLAG) and not include_deleted):
            return None
        return copy.deepcopy(record)

    async def delete_record(self, entity_type: Enum | str, record_id: str) -> bool:
        record = self._records.get(entity_key(entity_type), {}).get(record_id)
        if record is None or record.get(DELETED_FLAG):
            return False
        record[DELETED_FLAG] = True
        return True

    async def purge_record(self, entity_type: Enum | str, record_id: str) -> bool:
        return self._records.get(entity_key(entity_type), {}).pop(record_id, None) is not None

    async def list_records(
        self,
        entity_type: Enum | str,
        include_deleted: bool = False,
    ) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(record)
            for record in self._records.get(entity_key(entity_type), {}).values()
            if include_deleted or not record.get(DELETED_FLAG)
        ]

    async def append_change(self, change: LocalChange) -> None:
        if change.client_id in self._journal:
            raise ValueError(f"Journal already contains {change.client_id}")
        self._journal[change.client_id] = copy.deepcopy(change)

    async def list_changes(self, limit: int | None = None) -> list[LocalChange]:
        changes = [copy.deepcopy(c) for c in self._journal.values()]
        return changes if limit is None else changes[:limit]

    async def get_change(self, client_id: str) -> LocalChange | None:
        change = self._journal.get(client_id)
        return copy.deepcopy(change) if change else None

    async def update_change(self, change: LocalChange) -> None:
        if change.client_id not in self._journal:
            raise KeyError(change.client_id)
        self._journal[change.client_id] = copy.deepcopy(change)

    async def delete_change(self, client_id: str) -> bool:
        return self._journal.pop(client_id, None) is not None

    async def count_changes(self) -> int:
        return len(self._journal)

    async def save_conflict(self, conflict: Conflict) -> None:
        self._conflicts[conflict.client_id] = copy.deepcopy(conflict)

    async def get_conflict(self, client_id: str) -> Conflict | None:
        conflict = self._conflicts.get(client_id)
        return copy.deepcopy(conflict) if conflict else None

    async def list_conflicts(self, status: ConflictStatus | None = None) -> list[Conflict]:
        return [
            copy.deepcopy(c)
            for c in self._conflicts.values()
            if status is None or c.status == status
        ]

    async def delete_conflict(self, client_id: str) -> bool:
        return self._conflicts.pop(client_id, None) is not None

    async def get_value(self, key: str) -> str | None:
        return self._values.get(key)

    async def set_value(self, key: str, value: str | None) -> None:
        if value is None:
            self._values.pop(key, None)
        else:
            self._values[key] = value
