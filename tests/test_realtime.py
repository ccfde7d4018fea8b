"""
Tests for the realtime websocket transport.
"""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import settle


def make_transport(auth, connectivity, scheduler, connector, store=None, **config):
    from chatsync.config import RealtimeConfig
    from chatsync.realtime import RealtimeTransport

    return RealtimeTransport(
        auth,
        connectivity,
        scheduler,
        RealtimeConfig(url="ws://testserver/ws", **config),
        store=store,
        connect_factory=connector,
    )


@pytest.fixture
async def transport(logged_in_auth, connectivity, scheduler, memory_store, connector):
    transport = make_transport(logged_in_auth, connectivity, scheduler, connector, store=memory_store)
    yield transport
    await transport.close()


class TestEnvelope:
    """Tests for frame encoding."""

    def test_encode_omits_empty_fields(self):
        import json

        from chatsync.realtime import Envelope, RealtimeEvent

        frame = json.loads(Envelope(event=RealtimeEvent.TYPING, data={"chatId": "c1"}).encode())

        assert frame == {"type": "event", "event": "typing", "data": {"chatId": "c1"}}

    def test_decode(self):
        from chatsync.realtime import Envelope, RealtimeEvent

        envelope = Envelope.decode('{"type": "response", "requestId": "req_1", "data": {"ok": true}}')
        assert envelope.request_id == "req_1"
        assert envelope.known_event is None

        envelope = Envelope.decode('{"event": "user_status", "data": {"status": "away"}}')
        assert envelope.known_event == RealtimeEvent.USER_STATUS

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"type": "event"}'])
    def test_decode_rejects(self, raw):
        from chatsync.errors import ProtocolError
        from chatsync.realtime import Envelope

        with pytest.raises(ProtocolError):
            Envelope.decode(raw)


class TestConnect:
    """Tests for establishing the connection."""

    @pytest.mark.asyncio
    async def test_connect(self, transport, connector, scheduler):
        """Test connecting authenticates via the URL and starts the heartbeat."""
        from chatsync.realtime import STATE_CHANGED, TransportState

        states = []
        transport.subscribe(STATE_CHANGED, lambda _e, state: states.append(state))

        await transport.start()

        assert transport.state == TransportState.CONNECTED
        assert states == [TransportState.CONNECTING, TransportState.CONNECTED]
        query = parse_qs(urlparse(connector.uris[0]).query)
        assert query == {"token": ["access-1"], "deviceId": ["device_test"]}
        assert scheduler.delay_of("realtime.heartbeat") == 30

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, transport, connector):
        await transport.start()
        await transport.connect()

        assert len(connector.uris) == 1

    @pytest.mark.asyncio
    async def test_no_connect_when_unauthenticated(self, auth, connectivity, scheduler, connector):
        from chatsync.realtime import TransportState

        transport = make_transport(auth, connectivity, scheduler, connector)
        await transport.start()

        assert transport.state == TransportState.DISCONNECTED
        assert connector.uris == []
        await transport.close()

    @pytest.mark.asyncio
    async def test_no_connect_when_offline(self, transport, connectivity, connector):
        from chatsync.realtime import TransportState

        connectivity.set_online(False)
        await transport.start()

        assert transport.state == TransportState.DISCONNECTED
        assert connector.uris == []

    @pytest.mark.asyncio
    async def test_heartbeat(self, transport, connector, scheduler):
        await transport.start()

        await scheduler.fire("realtime.heartbeat")

        assert connector.latest.events() == ["heartbeat"]

    @pytest.mark.asyncio
    async def test_disconnect(self, transport, connector, scheduler):
        """Test a caller-initiated close does not reconnect."""
        from chatsync.realtime import TransportState

        await transport.start()
        ws = connector.latest

        await transport.disconnect()
        await settle()

        assert transport.state == TransportState.DISCONNECTED
        assert ws.closed and ws.close_code == 1000
        assert not any(name.startswith("realtime.") for name in scheduler.pending())


class TestReconnect:
    """Tests for reconnect with backoff."""

    @pytest.mark.asyncio
    async def test_abnormal_close_reconnects(self, transport, connector, scheduler):
        from chatsync.realtime import TransportState

        await transport.start()
        connector.latest.drop(1011)
        await settle()

        assert transport.state == TransportState.RECONNECTING
        assert transport.reconnect_attempts == 1
        assert scheduler.delay_of("realtime.reconnect") == 5
        assert not scheduler.is_pending("realtime.heartbeat")

        await scheduler.fire("realtime.reconnect")

        assert transport.state == TransportState.CONNECTED
        assert transport.reconnect_attempts == 0
        assert len(connector.sockets) == 2

    @pytest.mark.asyncio
    async def test_normal_close_does_not_reconnect(self, transport, connector, scheduler):
        from chatsync.realtime import TransportState

        await transport.start()
        connector.latest.drop(1000)
        await settle()

        assert transport.state == TransportState.DISCONNECTED
        assert not scheduler.is_pending("realtime.reconnect")

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, transport, connector, scheduler, connectivity):
        """Test backoff doubles to the cap, then stops in ERROR until connectivity returns."""
        from chatsync.realtime import TransportState

        connector.fail_with = OSError("connection refused")
        await transport.start()

        delays = []
        while scheduler.is_pending("realtime.reconnect"):
            delays.append(scheduler.delay_of("realtime.reconnect"))
            await scheduler.fire("realtime.reconnect")

        assert delays == [5, 10, 20, 30, 30]
        assert len(connector.uris) == 6
        assert transport.state == TransportState.ERROR

        connector.fail_with = None
        connectivity.set_online(False)
        await settle()
        assert transport.state == TransportState.DISCONNECTED

        connectivity.set_online(True)
        await settle()
        assert transport.state == TransportState.CONNECTED
        assert transport.reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_token_refresh_recovers_from_error(self, transport, connector, scheduler, logged_in_auth):
        from chatsync.realtime import TransportState

        connector.fail_with = OSError("connection refused")
        await transport.start()
        while scheduler.is_pending("realtime.reconnect"):
            await scheduler.fire("realtime.reconnect")
        assert transport.state == TransportState.ERROR

        connector.fail_with = None
        await logged_in_auth.refresh()
        await settle()

        assert transport.state == TransportState.CONNECTED

    @pytest.mark.asyncio
    async def test_offline_closes(self, transport, connector, connectivity):
        from chatsync.realtime import TransportState

        await transport.start()
        connectivity.set_online(False)
        await settle()

        assert transport.state == TransportState.DISCONNECTED
        assert connector.latest.closed

    @pytest.mark.asyncio
    async def test_logout_disconnects_and_clears_queue(self, transport, connector, logged_in_auth):
        from chatsync.realtime import RealtimeEvent, TransportState

        await transport.start()
        ws = connector.latest
        await transport.disconnect()
        await transport.send(RealtimeEvent.MESSAGE_READ, {"chatId": "c1", "messageIds": ["m1"]})
        assert transport.queue_size == 1

        await logged_in_auth.logout()
        await settle()

        assert transport.state == TransportState.DISCONNECTED
        assert transport.queue_size == 0
        assert ws.closed

    @pytest.mark.asyncio
    async def test_login_connects(self, auth, connectivity, scheduler, connector):
        from conftest import DEMO_EMAIL, DEMO_PASSWORD

        from chatsync.realtime import TransportState

        transport = make_transport(auth, connectivity, scheduler, connector)
        await transport.start()
        assert transport.state == TransportState.DISCONNECTED

        await auth.login(DEMO_EMAIL, DEMO_PASSWORD)
        await settle()

        assert transport.state == TransportState.CONNECTED
        await transport.close()


class TestOutboundQueue:
    """Tests for frames sent while disconnected."""

    @pytest.mark.asyncio
    async def test_flush_in_order(self, transport, connector):
        from chatsync.realtime import RealtimeEvent

        for n in range(3):
            await transport.send(RealtimeEvent.MESSAGE_READ, {"chatId": "c1", "messageIds": [f"m{n}"]})
        assert transport.queue_size == 3

        await transport.start()

        sent = connector.latest.sent
        assert [frame["data"]["messageIds"] for frame in sent] == [["m0"], ["m1"], ["m2"]]
        assert transport.queue_size == 0

    @pytest.mark.asyncio
    async def test_typing_is_coalesced(self, transport, connector):
        """Test only the latest typing state per chat is kept."""
        await transport.send_typing("c1", True)
        await transport.send_typing("c2", True)
        await transport.send_typing("c1", False)
        await transport.send_user_status("away")
        await transport.send_user_status("online")

        assert transport.queue_size == 3
        await transport.start()

        sent = connector.latest.sent
        assert [(f["event"], f["data"]) for f in sent] == [
            ("typing", {"chatId": "c2", "isTyping": True}),
            ("typing", {"chatId": "c1", "isTyping": False}),
            ("user_status", {"status": "online"}),
        ]

    @pytest.mark.asyncio
    async def test_heartbeat_not_queued(self, transport):
        from chatsync.realtime import RealtimeEvent

        await transport.send(RealtimeEvent.HEARTBEAT, {})
        assert transport.queue_size == 0

    @pytest.mark.asyncio
    async def test_queue_is_bounded(self, logged_in_auth, connectivity, scheduler, connector):
        from chatsync.realtime import RealtimeEvent

        transport = make_transport(logged_in_auth, connectivity, scheduler, connector, max_queue_size=2)
        for n in range(3):
            await transport.send(RealtimeEvent.MESSAGE_READ, {"messageIds": [f"m{n}"]})
        await transport.start()

        assert [f["data"]["messageIds"] for f in connector.latest.sent] == [["m1"], ["m2"]]
        await transport.close()

    @pytest.mark.asyncio
    async def test_flush_stops_at_failure(self, transport, connector):
        """Test frames after a failed send stay queued in order."""
        from chatsync.realtime import RealtimeEvent

        for n in range(3):
            await transport.send(RealtimeEvent.MESSAGE_READ, {"messageIds": [f"m{n}"]})
        connector.fail_after = 1

        await transport.start()

        assert len(connector.latest.sent) == 1
        assert transport.queue_size == 2

    @pytest.mark.asyncio
    async def test_queued_request_returns_none(self, transport):
        result = await transport.send_new_message("c1", "hello")

        assert result is None
        assert transport.queue_size == 1


class TestRequests:
    """Tests for request/response correlation."""

    @pytest.mark.asyncio
    async def test_response_correlation(self, transport, connector):
        """Test a response resolves its request and is not broadcast as an event."""
        from chatsync.realtime import RealtimeEvent

        await transport.start()
        ws = connector.latest
        broadcast = []
        transport.subscribe(RealtimeEvent.NEW_MESSAGE, lambda _e, data: broadcast.append(data))

        task = asyncio.create_task(transport.send_new_message("c1", "hello"))
        await settle()
        request = ws.sent[-1]
        assert request["event"] == "new_message"
        assert request["data"] == {"chatId": "c1", "content": "hello", "type": "text"}
        assert transport.pending_requests == 1

        ws.push({"type": "response", "event": "new_message", "requestId": request["requestId"], "data": {"id": "msg_1"}})

        assert await task == {"id": "msg_1"}
        assert broadcast == []
        assert transport.pending_requests == 0

    @pytest.mark.asyncio
    async def test_error_response(self, transport, connector):
        from chatsync.errors import RequestError
        from chatsync.realtime import RealtimeEvent

        await transport.start()
        ws = connector.latest
        task = asyncio.create_task(transport.send(RealtimeEvent.NEW_MESSAGE, {"chatId": "c1"}, expect_response=True))
        await settle()

        ws.push({
            "type": "response",
            "requestId": ws.sent[-1]["requestId"],
            "error": {"code": "VALIDATION_ERROR", "message": "content required"},
        })

        with pytest.raises(RequestError, match="content required"):
            await task

    @pytest.mark.asyncio
    async def test_response_timeout(self, transport):
        from chatsync.errors import ApiErrorCode, NetworkError
        from chatsync.realtime import RealtimeEvent

        await transport.start()

        with pytest.raises(NetworkError) as exc_info:
            await transport.send(RealtimeEvent.NEW_MESSAGE, {"chatId": "c1"}, expect_response=True, timeout=0.01)

        assert exc_info.value.code == ApiErrorCode.TIMEOUT_ERROR
        assert transport.pending_requests == 0

    @pytest.mark.asyncio
    async def test_pending_requests_fail_on_drop(self, transport, connector):
        from chatsync.errors import NetworkError

        await transport.start()
        task = asyncio.create_task(transport.send_new_message("c1", "hello"))
        await settle()

        connector.latest.drop(1011)

        with pytest.raises(NetworkError):
            await task


class TestInbound:
    """Tests for inbound event dispatch."""

    @pytest.mark.asyncio
    async def test_new_message_stored_and_published(self, transport, connector, memory_store):
        from chatsync.realtime import RealtimeEvent

        await transport.start()
        received = []
        transport.subscribe(RealtimeEvent.NEW_MESSAGE, lambda _e, data: received.append(data))

        connector.latest.push({"type": "event", "event": "new_message", "data": {"id": "m1", "chatId": "c1", "content": "hi"}})
        await settle()

        assert received == [{"id": "m1", "chatId": "c1", "content": "hi"}]
        assert (await memory_store.get_record("messages", "m1"))["content"] == "hi"

    @pytest.mark.asyncio
    async def test_message_read_updates_store(self, transport, connector, memory_store):
        await memory_store.upsert_record("messages", "m1", {"content": "hi", "status": "delivered", "readBy": []})
        await transport.start()

        connector.latest.push({"event": "message_read", "data": {"chatId": "c1", "messageIds": ["m1"], "userId": "u2"}})
        await settle()

        record = await memory_store.get_record("messages", "m1")
        assert record["status"] == "read"
        assert [r["userId"] for r in record["readBy"]] == ["u2"]

    @pytest.mark.asyncio
    async def test_unknown_and_malformed_frames_dropped(self, transport, connector):
        """Test bad frames are dropped without breaking the connection."""
        from chatsync.realtime import RealtimeEvent, TransportState

        await transport.start()
        statuses = []
        transport.subscribe(RealtimeEvent.USER_STATUS, lambda _e, data: statuses.append(data))
        ws = connector.latest

        ws.push("not json")
        ws.push({"event": "mystery", "data": {}})
        ws.push({"type": "response", "requestId": "req_unknown", "data": {}})
        ws.push({"event": "user_status", "data": {"userId": "u2", "status": "away"}})
        await settle()

        assert statuses == [{"userId": "u2", "status": "away"}]
        assert transport.state == TransportState.CONNECTED
