"""
chatsync

Client-side data synchronization and realtime transport core for a
messaging application.

The system provides:
- A resilient request client (retry, backoff, error normalization)
- An auth session manager (login, single-flight refresh, proactive renewal)
- A realtime websocket transport (reconnect, heartbeat, correlation, offline queue)
- An offline-first sync engine (change journal, batched upload, incremental
  download, conflict resolution)

Quick Start:
    from chatsync import ChatSyncContext, Settings, SQLiteStore

    async with ChatSyncContext(Settings.from_env(), store=SQLiteStore("chat.db")) as ctx:
        await ctx.login("demo@xiaoxiang.com", "demo123")
        client_id = await ctx.record_local_change("messages", "create", {"content": "hi"})
        await ctx.force_sync()
"""

__version__ = "0.1.0"

# Configuration
from chatsync.config import ApiConfig, AuthConfig, RealtimeConfig, Settings, SyncConfig

# Errors
from chatsync.errors import (
    ApiError,
    ApiErrorCode,
    AuthError,
    AuthErrorKind,
    ConflictError,
    ErrorKind,
    NetworkError,
    ProtocolError,
    RequestError,
    ServerError,
    ValidationError,
    user_message,
)

# Components
from chatsync.api import RequestClient, RequestOptions
from chatsync.auth import AuthEvent, AuthSessionManager, EncryptedFileSecureStore, MemorySecureStore, SessionState
from chatsync.connectivity import ConnectivitySignal, HttpConnectivityProbe, ManualConnectivity
from chatsync.context import ChatSyncContext
from chatsync.events import EventBus, Subscription
from chatsync.realtime import RealtimeEvent, RealtimeTransport, TransportState
from chatsync.scheduling import AsyncioScheduler, Scheduler
from chatsync.storage import LocalStore, MemoryStore, SQLiteStore
from chatsync.sync import ChangeAction, ConflictStrategy, EntityType, SyncEngine, SyncEvent, SyncStatus

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    "ApiConfig",
    "AuthConfig",
    "RealtimeConfig",
    "SyncConfig",
    # Errors
    "ApiError",
    "ApiErrorCode",
    "AuthError",
    "AuthErrorKind",
    "ConflictError",
    "ErrorKind",
    "NetworkError",
    "ProtocolError",
    "RequestError",
    "ServerError",
    "ValidationError",
    "user_message",
    # Context
    "ChatSyncContext",
    # Request client
    "RequestClient",
    "RequestOptions",
    # Auth
    "AuthSessionManager",
    "AuthEvent",
    "SessionState",
    "MemorySecureStore",
    "EncryptedFileSecureStore",
    # Realtime
    "RealtimeTransport",
    "RealtimeEvent",
    "TransportState",
    # Sync
    "SyncEngine",
    "SyncEvent",
    "SyncStatus",
    "EntityType",
    "ChangeAction",
    "ConflictStrategy",
    # Storage
    "LocalStore",
    "MemoryStore",
    "SQLiteStore",
    # Infrastructure
    "EventBus",
    "Subscription",
    "Scheduler",
    "AsyncioScheduler",
    "ConnectivitySignal",
    "ManualConnectivity",
    "HttpConnectivityProbe",
]
