"""
Owning context for one signed-in client process.

Constructs the request client, auth session, realtime transport and sync
engine with their collaborators injected, starts them in dependency order
and tears them down in reverse.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx
import websockets

from chatsync.api.client import RequestClient
from chatsync.api.models import DeviceInfo
from chatsync.auth.models import AuthEvent
from chatsync.auth.secure_store import MemorySecureStore, SecureStore
from chatsync.auth.session import AuthSessionManager
from chatsync.config import Settings
from chatsync.connectivity import ConnectivitySignal, HttpConnectivityProbe, ManualConnectivity
from chatsync.events import EventHandler, Subscription
from chatsync.realtime.envelope import RealtimeEvent
from chatsync.realtime.transport import RealtimeTransport
from chatsync.scheduling import AsyncioScheduler, Scheduler
from chatsync.storage.base import LocalStore
from chatsync.storage.memory_store import MemoryStore
from chatsync.sync.engine import SyncEngine
from chatsync.sync.models import ChangeAction, EntityType, Resolution, SyncEvent, SyncStatus

logger = logging.getLogger(__name__)


class ChatSyncContext:
    """
    Application-facing surface of the client core.

    Usage:
        async with ChatSyncContext(settings, store=SQLiteStore(path)) as ctx:
            await ctx.login("demo@xiaoxiang.com", "demo123")
            await ctx.record_local_change("messages", "create", {"content": "hi"})
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: LocalStore | None = None,
        secure_store: SecureStore | None = None,
        connectivity: ConnectivitySignal | None = None,
        scheduler: Scheduler | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        connect_factory: Callable[[str], Any] | None = None,
        device_info: DeviceInfo | None = None,
    ):
        self.settings = settings or Settings()
        self.scheduler = scheduler or AsyncioScheduler()
        self.store = store or MemoryStore()
        self.secure_store = secure_store or MemorySecureStore()
        self.connectivity = connectivity or ManualConnectivity(online=True)

        self.client = RequestClient(self.settings.api, transport=http_transport)
        self.auth = AuthSessionManager(
            self.client,
            self.secure_store,
            self.scheduler,
            self.settings.auth,
            device_info=device_info or DeviceInfo(platform=self.settings.platform, version=self.settings.app_version),
        )
        self.realtime = RealtimeTransport(
            self.auth,
            self.connectivity,
            self.scheduler,
            self.settings.realtime,
            store=self.store,
            connect_factory=connect_factory or websockets.connect,
        )
        self.sync = SyncEngine(
            self.client,
            self.auth,
            self.store,
            self.connectivity,
            self.scheduler,
            self.settings.sync,
        )

        self._hint_subscription: Subscription | None = None
        self._started = False

    async def start(self, realtime: bool = True) -> None:
        """Open storage, restore the session and start the sync engine (and realtime)."""
        if self._started:
            return
        await self.store.initialize()
        await self.auth.initialize()
        if isinstance(self.connectivity, HttpConnectivityProbe):
            await self.connectivity.start()
        await self.sync.start()

        # Pushed messages double as data-changed hints for the application
        self._hint_subscription = self.realtime.subscribe(
            RealtimeEvent.NEW_MESSAGE,
            lambda _event, data: self.sync.notify_remote_hint(EntityType.MESSAGES, data),
        )
        if realtime:
            await self.realtime.start()
        self._started = True
        logger.info("Client core started (%s)", self.settings.environment)

    async def close(self) -> None:
        """Tear everything down in reverse order. Persisted state is kept."""
        if self._hint_subscription is not None:
            self._hint_subscription.unsubscribe()
            self._hint_subscription = None
        await self.realtime.close()
        await self.sync.close()
        await self.auth.close()
        if isinstance(self.connectivity, HttpConnectivityProbe):
            await self.connectivity.stop()
        await self.client.close()
        await self.store.close()
        if isinstance(self.scheduler, AsyncioScheduler):
            await self.scheduler.aclose()
        self._started = False

    async def __aenter__(self) -> ChatSyncContext:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Imperative calls

    async def login(self, email: str, password: str) -> dict[str, Any]:
        return await self.auth.login(email, password)

    async def logout(self) -> None:
        await self.auth.logout()

    async def record_local_change(
        self,
        entity_type: EntityType | str,
        action: ChangeAction | str,
        payload: dict[str, Any],
        id: str | None = None,
    ) -> str:
        return await self.sync.record_local_change(entity_type, action, payload, id)

    async def force_sync(self) -> bool:
        return await self.sync.force_sync()

    async def resolve_manual_conflict(
        self,
        conflict_id: str,
        resolution: Resolution | str,
        merged_data: dict[str, Any] | None = None,
    ) -> None:
        await self.sync.resolve_manual_conflict(conflict_id, resolution, merged_data)

    def sync_status(self) -> SyncStatus:
        return self.sync.get_status()

    # Event subscriptions

    def on_auth(self, event: AuthEvent, handler: EventHandler) -> Subscription:
        return self.auth.subscribe(event, handler)

    def on_realtime(self, event: RealtimeEvent | str, handler: EventHandler) -> Subscription:
        return self.realtime.subscribe(event, handler)

    def on_sync(self, event: SyncEvent, handler: EventHandler) -> Subscription:
        return self.sync.subscribe(event, handler)
