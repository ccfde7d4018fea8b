"""
Realtime transport over a persistent websocket.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED -> (DISCONNECTED | RECONNECTING)
    RECONNECTING -> CONNECTING (backoff loop) -> ERROR once attempts run out

ERROR is terminal until an external trigger: connectivity coming back,
a fresh login, or a token refresh.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from chatsync.auth.models import AuthEvent
from chatsync.errors import ApiErrorCode, NetworkError, ProtocolError, error_from_code, generate_request_id
from chatsync.events import EventBus, EventHandler, Subscription
from chatsync.scheduling import Scheduler
from chatsync.sync.models import EntityType

from .envelope import Envelope, RealtimeEvent

if TYPE_CHECKING:
    from chatsync.auth.session import AuthSessionManager
    from chatsync.config import RealtimeConfig
    from chatsync.connectivity import ConnectivitySignal
    from chatsync.storage.base import LocalStore

logger = logging.getLogger(__name__)

STATE_CHANGED = "state_changed"

HEARTBEAT_TIMER = "realtime.heartbeat"
RECONNECT_TIMER = "realtime.reconnect"

NORMAL_CLOSURE = 1000

# Transient signals: a newer frame supersedes a queued one with the same key
COALESCED_EVENTS = {RealtimeEvent.TYPING, RealtimeEvent.USER_STATUS}


class TransportState(str, Enum):
    """Connection lifecycle."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class RealtimeTransport:
    """
    Persistent bidirectional channel for push delivery.

    - Connects only while authenticated and online; otherwise connect() is a no-op
    - Correlates responses to outbound requests by requestId
    - Queues frames while not connected and flushes them FIFO on connect
    - Reconnects with capped exponential backoff after abnormal closure
    """

    def __init__(
        self,
        auth: AuthSessionManager,
        connectivity: ConnectivitySignal,
        scheduler: Scheduler,
        config: RealtimeConfig | None = None,
        store: LocalStore | None = None,
        connect_factory: Callable[[str], Any] = websockets.connect,
    ):
        if config is None:
            from chatsync.config import RealtimeConfig

            config = RealtimeConfig()
        self.config = config
        self.events = EventBus("realtime")

        self._auth = auth
        self._connectivity = connectivity
        self._scheduler = scheduler
        self._store = store
        self._connect_factory = connect_factory

        self._state = TransportState.DISCONNECTED
        self._ws: Any = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._queue: deque[Envelope] = deque()
        self._attempts = 0
        # Caller-initiated close in progress; suppresses reconnect
        self._closing = False
        self._subscriptions: list[Subscription] = []

    # Read-side

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == TransportState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    def subscribe(self, event: RealtimeEvent | str, handler: EventHandler) -> Subscription:
        """Listen for an inbound event type, or STATE_CHANGED."""
        return self.events.subscribe(event, handler)

    # Lifecycle

    async def start(self) -> None:
        """Follow auth and connectivity changes, then connect if possible."""
        self._subscriptions = [
            self._connectivity.subscribe(self._on_connectivity_changed),
            self._auth.subscribe(AuthEvent.LOGIN_SUCCEEDED, lambda _e, _p: self.reconnect()),
            self._auth.subscribe(AuthEvent.TOKEN_REFRESHED, self._on_token_refreshed),
            self._auth.subscribe(AuthEvent.LOGOUT, self._on_logout),
            self._auth.subscribe(AuthEvent.AUTHENTICATION_REQUIRED, lambda _e, _p: self.disconnect()),
        ]
        await self.connect()

    async def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        await self.disconnect()
        self.events.clear()

    async def connect(self) -> None:
        """Open the connection. No-op while connecting/connected, unauthenticated or offline."""
        if self._state in (TransportState.CONNECTING, TransportState.CONNECTED):
            return
        token = self._auth.get_access_token()
        if token is None:
            logger.debug("Not authenticated, not connecting")
            return
        if not self._connectivity.is_online:
            logger.debug("Offline, not connecting")
            return

        self._closing = False
        self._set_state(TransportState.CONNECTING)
        uri = f"{self.config.url}?{urlencode({'token': token, 'deviceId': await self._auth.device_id()})}"
        logger.info("Connecting to %s (attempt %d)", self.config.url, self._attempts + 1)

        try:
            ws = await asyncio.wait_for(self._open(uri), timeout=self.config.connection_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Connection not established within %.0fs", self.config.connection_timeout_seconds)
            await self._schedule_reconnect()
            return
        except (OSError, WebSocketException) as e:
            logger.warning("Connection failed: %s", e)
            await self._schedule_reconnect()
            return

        if self._closing or self._state != TransportState.CONNECTING:
            # Disconnected while the handshake was in flight
            await ws.close(code=NORMAL_CLOSURE)
            return

        self._ws = ws
        self._attempts = 0
        self._set_state(TransportState.CONNECTED)
        logger.info("Realtime connection established")

        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(ws))
        self._scheduler.schedule_periodic(HEARTBEAT_TIMER, self.config.heartbeat_interval_seconds, self._send_heartbeat)
        await self._flush_queue()

    async def _open(self, uri: str) -> Any:
        return await self._connect_factory(uri)

    async def disconnect(self) -> None:
        """Caller-initiated close. Queued frames are kept for the next connection."""
        self._closing = True
        self._scheduler.cancel_group("realtime.")
        ws, reader = self._ws, self._reader_task
        self._ws = None
        self._reader_task = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        if ws is not None:
            try:
                await ws.close(code=NORMAL_CLOSURE, reason="Client disconnect")
            except (OSError, WebSocketException) as e:
                logger.debug("Error while closing connection: %s", e)
        self._fail_pending(NetworkError("Realtime connection closed"))
        self._set_state(TransportState.DISCONNECTED)

    async def reconnect(self) -> None:
        """External trigger: reset the attempt counter and connect again."""
        self._attempts = 0
        self._scheduler.cancel(RECONNECT_TIMER)
        if self._state in (TransportState.CONNECTING, TransportState.CONNECTED):
            return
        self._set_state(TransportState.DISCONNECTED)
        await self.connect()

    # Sending

    async def send(
        self,
        event: RealtimeEvent | str,
        data: Any = None,
        *,
        expect_response: bool = False,
        timeout: float | None = None,
        type: str = "event",
    ) -> Any:
        """
        Send a frame.

        Returns:
            The response data when expect_response is set and the frame was
            transmitted; None for fire-and-forget or queued frames.

        Raises:
            NetworkError: The response did not arrive in time, or the
                connection dropped with the request in flight.
        """
        event = RealtimeEvent(event)
        envelope = Envelope(type=type, event=event, data=data)

        if not self.is_connected or self._ws is None:
            self._enqueue(envelope)
            return None

        if not expect_response:
            try:
                await self._transmit(envelope)
            except NetworkError:
                self._enqueue(envelope)
            return None

        request_id = generate_request_id()
        envelope.request_id = request_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._transmit(envelope)
            return await asyncio.wait_for(future, timeout or self.config.request_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"No response to {event.value} request", code=ApiErrorCode.TIMEOUT_ERROR) from e
        finally:
            self._pending.pop(request_id, None)

    async def send_new_message(self, chat_id: str, content: str, message_type: str = "text", **extra: Any) -> Any:
        data = {"chatId": chat_id, "content": content, "type": message_type, **extra}
        return await self.send(RealtimeEvent.NEW_MESSAGE, data, expect_response=True)

    async def send_typing(self, chat_id: str, is_typing: bool = True) -> None:
        await self.send(RealtimeEvent.TYPING, {"chatId": chat_id, "isTyping": is_typing})

    async def send_user_status(self, status: str) -> None:
        await self.send(RealtimeEvent.USER_STATUS, {"status": status})

    async def send_message_read(self, chat_id: str, message_ids: list[str]) -> None:
        await self.send(RealtimeEvent.MESSAGE_READ, {"chatId": chat_id, "messageIds": list(message_ids)})

    async def _transmit(self, envelope: Envelope) -> None:
        ws = self._ws
        if ws is None:
            raise NetworkError("Realtime connection is not open")
        try:
            await ws.send(envelope.encode())
        except (ConnectionClosed, OSError) as e:
            raise NetworkError(f"Realtime send failed: {e}") from e

    def _enqueue(self, envelope: Envelope) -> None:
        if envelope.known_event == RealtimeEvent.HEARTBEAT:
            return
        # Queued frames resolve immediately; nothing will wait for a response
        envelope.request_id = None
        key = self._coalesce_key(envelope)
        if key is not None:
            superseded = [e for e in self._queue if self._coalesce_key(e) == key]
            for old in superseded:
                self._queue.remove(old)
        if len(self._queue) >= self.config.max_queue_size:
            dropped = self._queue.popleft()
            logger.warning("Outbound queue full, dropping oldest %s frame", dropped.event)
        self._queue.append(envelope)
        logger.debug("Queued %s frame (%d queued)", envelope.event, len(self._queue))

    @staticmethod
    def _coalesce_key(envelope: Envelope) -> tuple[str, Any] | None:
        event = envelope.known_event
        if event not in COALESCED_EVENTS:
            return None
        chat_id = envelope.data.get("chatId") if isinstance(envelope.data, dict) else None
        return (event.value, chat_id if event == RealtimeEvent.TYPING else None)

    async def _flush_queue(self) -> None:
        """Send queued frames in order; stop at the first failure, keeping the rest."""
        if self._queue:
            logger.info("Flushing %d queued frames", len(self._queue))
        while self._queue and self.is_connected:
            try:
                await self._transmit(self._queue[0])
            except NetworkError as e:
                logger.warning("Queue flush interrupted, %d frames kept: %s", len(self._queue), e.message)
                return
            self._queue.popleft()

    async def _send_heartbeat(self) -> None:
        if not self.is_connected:
            return
        envelope = Envelope(event=RealtimeEvent.HEARTBEAT, data={"timestamp": datetime.now().isoformat()})
        try:
            await self._transmit(envelope)
        except NetworkError as e:
            logger.warning("Heartbeat failed: %s", e.message)

    # Receiving

    async def _read_loop(self, ws: Any) -> None:
        try:
            while True:
                raw = await ws.recv()
                await self._dispatch(raw)
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd is not None else None
            await self._on_closed(ws, code)
        except (OSError, WebSocketException) as e:
            logger.error("Realtime connection error: %s", e)
            await self._on_closed(ws, None)

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            envelope = Envelope.decode(raw)
        except ProtocolError as e:
            logger.warning("Dropping malformed frame: %s", e.message)
            return

        if envelope.request_id and envelope.request_id in self._pending:
            future = self._pending.pop(envelope.request_id)
            if not future.done():
                if envelope.is_error:
                    error = envelope.error or (envelope.data if isinstance(envelope.data, dict) else {})
                    future.set_exception(
                        error_from_code(error.get("code") or ApiErrorCode.SERVER_ERROR, error.get("message"))
                    )
                else:
                    future.set_result(envelope.data)
            return

        event = envelope.known_event
        if event is None:
            logger.warning("Dropping frame with unknown event %r", envelope.event)
            return
        if event == RealtimeEvent.HEARTBEAT:
            logger.debug("Heartbeat acknowledged")
            return

        await self._apply_to_store(event, envelope.data)

        if not self.events.has_subscribers(event):
            logger.debug("No listeners for %s, dropping", event.value)
            return
        self.events.publish(event, envelope.data)

    async def _apply_to_store(self, event: RealtimeEvent, data: Any) -> None:
        """Write pushed messages and read receipts into local storage."""
        if self._store is None or not isinstance(data, dict):
            return
        try:
            if event == RealtimeEvent.NEW_MESSAGE and data.get("id"):
                await self._store.upsert_record(EntityType.MESSAGES, str(data["id"]), data, merge=True)
            elif event == RealtimeEvent.MESSAGE_READ:
                message_ids = data.get("messageIds") or ([data["messageId"]] if data.get("messageId") else [])
                for message_id in message_ids:
                    await self._mark_read(str(message_id), data.get("userId"))
        except Exception:
            logger.exception("Failed to store %s frame", event.value)

    async def _mark_read(self, message_id: str, user_id: str | None) -> None:
        record = await self._store.get_record(EntityType.MESSAGES, message_id)
        if record is None:
            return
        update: dict[str, Any] = {"status": "read"}
        if user_id:
            read_by = list(record.get("readBy") or [])
            if not any(isinstance(r, dict) and r.get("userId") == user_id for r in read_by):
                read_by.append({"userId": user_id, "readAt": datetime.now().isoformat()})
            update["readBy"] = read_by
        await self._store.upsert_record(EntityType.MESSAGES, message_id, update, merge=True)

    # Disconnection and reconnect

    async def _on_closed(self, ws: Any, code: int | None) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        self._reader_task = None
        self._scheduler.cancel(HEARTBEAT_TIMER)

        if self._closing or code == NORMAL_CLOSURE:
            logger.info("Realtime connection closed normally")
            self._fail_pending(NetworkError("Realtime connection closed"))
            self._set_state(TransportState.DISCONNECTED)
            return

        logger.warning("Realtime connection lost (code %s)", code)
        await self._schedule_reconnect()

    async def _schedule_reconnect(self) -> None:
        self._fail_pending(NetworkError("Realtime connection lost"))
        if self._closing:
            self._set_state(TransportState.DISCONNECTED)
            return
        if not self._connectivity.is_online or not self._auth.is_authenticated():
            # Waits for connectivity or a new login to trigger reconnect()
            self._set_state(TransportState.DISCONNECTED)
            return
        if self._attempts >= self.config.max_reconnect_attempts:
            logger.error("Giving up after %d reconnect attempts", self._attempts)
            self._set_state(TransportState.ERROR)
            return

        self._attempts += 1
        delay = min(
            self.config.reconnect_interval_seconds * (2 ** (self._attempts - 1)),
            self.config.max_reconnect_delay_seconds,
        )
        self._set_state(TransportState.RECONNECTING)
        logger.info("Reconnecting in %.0fs (attempt %d/%d)", delay, self._attempts, self.config.max_reconnect_attempts)
        self._scheduler.schedule(RECONNECT_TIMER, delay, self._reconnect_attempt)

    async def _reconnect_attempt(self) -> None:
        if self._state == TransportState.RECONNECTING:
            await self.connect()

    def _fail_pending(self, error: NetworkError) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    # External triggers

    def _on_connectivity_changed(self, online: bool) -> Any:
        if not online:
            logger.info("Offline, closing realtime connection")
            return self.disconnect()
        if self._state in (TransportState.DISCONNECTED, TransportState.ERROR):
            return self.reconnect()
        return None

    def _on_token_refreshed(self, _event: Any, _payload: Any) -> Any:
        if self._state == TransportState.ERROR:
            return self.reconnect()
        return None

    def _on_logout(self, _event: Any, _payload: Any) -> Any:
        # Frames queued for the old identity must not leak into the next session
        self._queue.clear()
        return self.disconnect()

    def _set_state(self, state: TransportState) -> None:
        if state != self._state:
            logger.debug("Realtime state %s -> %s", self._state.value, state.value)
            self._state = state
            self.events.publish(STATE_CHANGED, state)
