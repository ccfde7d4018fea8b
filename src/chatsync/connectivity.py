"""
Connectivity signal consumed by the realtime transport and the sync engine.

Both components subscribe independently; a signal notifies only on
online/offline transitions.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import httpx

from chatsync.events import EventBus, Subscription
from chatsync.scheduling import Scheduler

logger = logging.getLogger(__name__)

ONLINE_CHANGED = "online_changed"

DEFAULT_HEALTH_URLS = [
    "https://api.xiaoxiang.com/health",
    "https://www.cloudflare.com/cdn-cgi/trace",
    "https://httpbin.org/status/200",
]

ConnectivityCallback = Callable[[bool], Any]


class ConnectivitySignal(ABC):
    """Current online/offline state plus change notifications."""

    def __init__(self) -> None:
        self._bus = EventBus("connectivity")

    @property
    @abstractmethod
    def is_online(self) -> bool:
        pass

    def subscribe(self, callback: ConnectivityCallback) -> Subscription:
        """Call callback(is_online) on every transition."""
        return self._bus.subscribe(ONLINE_CHANGED, lambda _topic, online: callback(online))

    def _notify(self, online: bool) -> None:
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        self._bus.publish(ONLINE_CHANGED, online)


class ManualConnectivity(ConnectivitySignal):
    """Signal driven by the host application (or by tests)."""

    def __init__(self, online: bool = True):
        super().__init__()
        self._online = online

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        self._notify(online)


class HttpConnectivityProbe(ConnectivitySignal):
    """
    Reachability probe over a set of health URLs.

    Online when at least `threshold` of the URLs answer within `timeout_seconds`.
    Runs on the scheduler every `interval_seconds` once started.
    """

    MONITOR_TIMER = "connectivity.monitor"

    def __init__(
        self,
        scheduler: Scheduler,
        urls: list[str] | None = None,
        interval_seconds: float = 15.0,
        timeout_seconds: float = 8.0,
        threshold: float = 0.6,
        transport: httpx.AsyncBaseTransport | None = None,
        initial: bool = True,
    ):
        super().__init__()
        self.urls = list(urls or DEFAULT_HEALTH_URLS)
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self.threshold = threshold
        self._scheduler = scheduler
        self._transport = transport
        # Optimistic until the first probe says otherwise
        self._online = initial
        self.success_rate: float | None = None

    @property
    def is_online(self) -> bool:
        return self._online

    async def start(self) -> None:
        await self.check()
        self._scheduler.schedule_periodic(self.MONITOR_TIMER, self.interval_seconds, self.check)

    async def stop(self) -> None:
        self._scheduler.cancel(self.MONITOR_TIMER)

    async def check(self) -> bool:
        """Probe every URL once and update the signal."""
        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout_seconds) as client:
            results = await asyncio.gather(*(self._probe(client, url) for url in self.urls))

        self.success_rate = sum(results) / len(results) if results else 0.0
        online = self.success_rate >= self.threshold
        logger.debug("Connectivity probe: %.0f%% reachable", self.success_rate * 100)
        if online != self._online:
            self._online = online
            self._notify(online)
        return online

    async def _probe(self, client: httpx.AsyncClient, url: str) -> bool:
        try:
            response = await client.head(url)
        except httpx.HTTPError as e:
            logger.debug("Health check %s failed: %s", url, e)
            return False
        return response.status_code < 500
