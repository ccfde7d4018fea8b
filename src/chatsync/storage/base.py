"""
Base interface for the structured local storage collaborator.

A store holds four things:
- entity records (messages, chats, users, departments) keyed by (entity_type, id)
- the LocalChange journal, scanned in creation order
- conflicts awaiting resolution
- small key/value settings such as the sync cursor
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from chatsync.sync.models import Conflict, ConflictStatus, LocalChange

# Flag set on records removed by a delete change; kept so a later upsert can revive them
DELETED_FLAG = "_deleted"


def entity_key(entity_type: Enum | str) -> str:
    """Storage key for an entity type given as enum or plain string."""
    return entity_type.value if isinstance(entity_type, Enum) else str(entity_type)


class LocalStore(ABC):
    """
    Abstract base class for local storage backends.

    All storage implementations must implement these methods.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage backend (create tables, indexes, etc.)."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the storage backend and cleanup resources."""
        pass

    # Records
    @abstractmethod
    async def upsert_record(
        self,
        entity_type: Enum | str,
        record_id: str,
        data: dict[str, Any],
        merge: bool = False,
    ) -> dict[str, Any]:
        """
        Insert or replace a record. With merge=True the new fields are laid
        over the existing record. Upserting a deleted record revives it.

        Returns the stored record.
        """
        pass

    @abstractmethod
    async def get_record(
        self,
        entity_type: Enum | str,
        record_id: str,
        include_deleted: bool = False,
    ) -> dict[str, Any] | None:
        pass

    @abstractmethod
    async def delete_record(self, entity_type: Enum | str, record_id: str) -> bool:
        """Logical removal. Returns True if a live record was marked deleted."""
        pass

    @abstractmethod
    async def purge_record(self, entity_type: Enum | str, record_id: str) -> bool:
        """Physical removal. Returns True if the record existed."""
        pass

    @abstractmethod
    async def list_records(
        self,
        entity_type: Enum | str,
        include_deleted: bool = False,
    ) -> list[dict[str, Any]]:
        pass

    # Journal
    @abstractmethod
    async def append_change(self, change: LocalChange) -> None:
        """Append to the journal. Durable once this returns."""
        pass

    @abstractmethod
    async def list_changes(self, limit: int | None = None) -> list[LocalChange]:
        """Journal entries in creation order."""
        pass

    @abstractmethod
    async def get_change(self, client_id: str) -> LocalChange | None:
        pass

    @abstractmethod
    async def update_change(self, change: LocalChange) -> None:
        """Rewrite an entry in place, keeping its position in the journal."""
        pass

    @abstractmethod
    async def delete_change(self, client_id: str) -> bool:
        pass

    @abstractmethod
    async def count_changes(self) -> int:
        pass

    # Conflicts
    @abstractmethod
    async def save_conflict(self, conflict: Conflict) -> None:
        pass

    @abstractmethod
    async def get_conflict(self, client_id: str) -> Conflict | None:
        pass

    @abstractmethod
    async def list_conflicts(self, status: ConflictStatus | None = None) -> list[Conflict]:
        pass

    @abstractmethod
    async def delete_conflict(self, client_id: str) -> bool:
        pass

    # Key/value
    @abstractmethod
    async def get_value(self, key: str) -> str | None:
        pass

    @abstractmethod
    async def set_value(self, key: str, value: str | None) -> None:
        """Store a value; None removes the key."""
        pass

    async def count_conflicts(self, status: ConflictStatus | None = None) -> int:
        return len(await self.list_conflicts(status))

    async def __aenter__(self) -> LocalStore:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
