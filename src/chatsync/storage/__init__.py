"""Local storage backends for the chatsync replica."""

from .base import DELETED_FLAG, LocalStore, entity_key
from .memory_store import MemoryStore
from .sqlite_store import SQLiteStore

__all__ = [
    "LocalStore",
    "MemoryStore",
    "SQLiteStore",
    "DELETED_FLAG",
    "entity_key",
]
