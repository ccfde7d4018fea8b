"""
Pytest configuration and shared fixtures for chatsync tests.
"""

import asyncio
import inspect
import json
import tempfile
from collections.abc import Generator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close

from chatsync.scheduling import Scheduler, run_callback

BASE_URL = "http://testserver"
DEMO_EMAIL = "demo@xiaoxiang.com"
DEMO_PASSWORD = "demo123"
DEMO_USER = {"id": "user_1", "email": DEMO_EMAIL, "name": "Demo"}


def ok(data: Any = None, **extra: Any) -> dict[str, Any]:
    """Success envelope."""
    return {"success": True, "data": data, **extra}


def token_body(access: str = "access-1", refresh: str = "refresh-1", expires_in: int = 3600) -> dict[str, Any]:
    return ok({
        "accessToken": access,
        "refreshToken": refresh,
        "expiresIn": expires_in,
        "user": DEMO_USER,
    })


def error_response(status: int, code: str, message: str = "error") -> httpx.Response:
    return httpx.Response(status, json={"success": False, "error": {"code": code, "message": message}})


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks (reader loops, async event handlers) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualScheduler(Scheduler):
    """Scheduler whose timers only fire when a test runs them."""

    def __init__(self):
        self.timers: dict[str, tuple[float, Any, bool]] = {}
        self.history: list[tuple[str, float]] = []

    def schedule(self, name, delay, callback):
        self.timers[name] = (delay, callback, False)
        self.history.append((name, delay))

    def schedule_periodic(self, name, interval, callback):
        self.timers[name] = (interval, callback, True)

    def cancel(self, name):
        return self.timers.pop(name, None) is not None

    def pending(self):
        return list(self.timers)

    def delay_of(self, name: str) -> float:
        return self.timers[name][0]

    async def fire(self, name: str) -> None:
        _delay, callback, periodic = self.timers[name]
        if not periodic:
            del self.timers[name]
        await run_callback(callback)


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class SleepRecorder:
    """Replaces asyncio.sleep in retry loops; records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class MockApi:
    """
    Routes httpx requests to canned responses.

    Each route holds a queue of responses; the last one repeats. A response
    may be a dict (200 JSON), an httpx.Response, an exception to raise, or a
    callable taking the request (sync or async).
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list[Any]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, *responses: Any) -> None:
        self.routes[(method.upper(), path)] = list(responses)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def count(self, method: str, path: str) -> int:
        return len(self.calls(method, path))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return error_response(404, "NOT_FOUND", f"No route for {request.method} {request.url.path}")
        item = queue[0] if len(queue) == 1 else queue.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = item(request)
            if inspect.isawaitable(item):
                item = await item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, fail_after: int | None = None):
        self.sent: list[dict[str, Any]] = []
        self.inbox: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False
        self.close_code: int | None = None
        self._fail_after = fail_after

    async def send(self, raw: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(Close(1000, ""), Close(1000, ""))
        if self._fail_after is not None and len(self.sent) >= self._fail_after:
            raise ConnectionClosedError(Close(1011, "send failed"), None)
        self.sent.append(json.loads(raw))

    async def recv(self) -> str:
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code

    def push(self, frame: dict[str, Any] | str) -> None:
        self.inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self, code: int = 1011) -> None:
        """Simulate the server closing the connection."""
        if code == 1000:
            self.inbox.put_nowait(ConnectionClosedOK(Close(code, "bye"), None))
        else:
            self.inbox.put_nowait(ConnectionClosedError(Close(code, "gone"), None))

    def events(self) -> list[str]:
        return [frame.get("event") for frame in self.sent]


class FakeConnector:
    """Connect factory handing out FakeWebSockets (or failing)."""

    def __init__(self):
        self.uris: list[str] = []
        self.sockets: list[FakeWebSocket] = []
        self.fail_with: BaseException | None = None
        self.fail_after: int | None = None

    def __call__(self, uri: str):
        self.uris.append(uri)
        return self._open()

    async def _open(self) -> FakeWebSocket:
        if self.fail_with is not None:
            raise self.fail_with
        ws = FakeWebSocket(fail_after=self.fail_after)
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeWebSocket:
        return self.sockets[-1]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def mock_api() -> MockApi:
    api = MockApi()
    api.add("POST", "/auth/login", token_body())
    api.add("POST", "/auth/refresh", token_body(access="access-2", refresh="refresh-2"))
    api.add("POST", "/auth/logout", ok())
    return api


@pytest.fixture
def api_config():
    from chatsync.config import ApiConfig

    return ApiConfig(base_url=BASE_URL)


@pytest.fixture
async def request_client(api_config, mock_api, sleeper):
    from chatsync.api import RequestClient

    client = RequestClient(api_config, transport=mock_api.transport, sleep=sleeper)
    yield client
    await client.close()


@pytest.fixture
def secure_store():
    from chatsync.auth import MemorySecureStore

    return MemorySecureStore()


@pytest.fixture
def auth(request_client, secure_store, scheduler, clock):
    from chatsync.auth import AuthSessionManager
    from chatsync.config import AuthConfig

    return AuthSessionManager(
        request_client,
        secure_store,
        scheduler,
        AuthConfig(),
        device_id="device_test",
        clock=clock,
    )


@pytest.fixture
async def logged_in_auth(auth):
    await auth.login(DEMO_EMAIL, DEMO_PASSWORD)
    return auth


@pytest.fixture
def connectivity():
    from chatsync.connectivity import ManualConnectivity

    return ManualConnectivity(online=True)


@pytest.fixture
def memory_store():
    from chatsync.storage import MemoryStore

    return MemoryStore()


@pytest.fixture
async def sqlite_store(temp_dir):
    from chatsync.storage import SQLiteStore

    store = SQLiteStore(temp_dir / "test.db")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()
