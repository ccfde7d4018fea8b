"""
Offline-first synchronization.

Provides:
- SyncEngine: change journal, batched upload, incremental download, conflicts
- Per-entity merge of conflicting records
- Sync data model (LocalChange, RemoteChange, Conflict, SyncStatus)
"""

from .models import (
    ChangeAction,
    Conflict,
    ConflictStatus,
    ConflictStrategy,
    EntityType,
    LocalChange,
    RemoteChange,
    Resolution,
    SyncErrorRecord,
    SyncEvent,
    SyncStatus,
)
from .merge import merge_records
from .engine import SyncEngine, generate_client_id

__all__ = [
    # Engine
    "SyncEngine",
    "generate_client_id",
    "merge_records",
    # Models
    "ChangeAction",
    "Conflict",
    "ConflictStatus",
    "ConflictStrategy",
    "EntityType",
    "LocalChange",
    "RemoteChange",
    "Resolution",
    "SyncErrorRecord",
    "SyncEvent",
    "SyncStatus",
]
