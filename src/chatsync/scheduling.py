"""
Cancellable named timers.

Heartbeats, reconnect backoff, debounce, proactive token renewal and
periodic sync all go through a Scheduler so that a component can cancel
its outstanding timers as a unit on teardown.

Timer names are dotted, prefixed by the owning component
(auth.renewal, realtime.reconnect, sync.debounce, ...).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]


class Scheduler(ABC):
    """Interface for named, cancellable timers."""

    @abstractmethod
    def schedule(self, name: str, delay: float, callback: Callback) -> None:
        """Run callback once after delay seconds, replacing any pending timer with this name."""
        pass

    @abstractmethod
    def schedule_periodic(self, name: str, interval: float, callback: Callback) -> None:
        """Run callback every interval seconds until cancelled."""
        pass

    @abstractmethod
    def cancel(self, name: str) -> bool:
        """Cancel one timer. Returns True if a timer was pending."""
        pass

    @abstractmethod
    def pending(self) -> list[str]:
        """Names of timers that have not fired or been cancelled."""
        pass

    def cancel_group(self, prefix: str) -> int:
        """Cancel every timer whose name starts with prefix."""
        count = 0
        for name in self.pending():
            if name.startswith(prefix) and self.cancel(name):
                count += 1
        return count

    def cancel_all(self) -> int:
        return self.cancel_group("")

    def is_pending(self, name: str) -> bool:
        return name in self.pending()


async def run_callback(callback: Callback) -> None:
    """Invoke a sync or async callback, awaiting it if needed."""
    result = callback()
    if inspect.isawaitable(result):
        await result


class AsyncioScheduler(Scheduler):
    """Scheduler backed by asyncio tasks on the running loop."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def schedule(self, name: str, delay: float, callback: Callback) -> None:
        self.cancel(name)
        self._tasks[name] = asyncio.get_running_loop().create_task(
            self._run_once(name, max(0.0, delay), callback),
            name=name,
        )

    def schedule_periodic(self, name: str, interval: float, callback: Callback) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.cancel(name)
        self._tasks[name] = asyncio.get_running_loop().create_task(
            self._run_periodic(name, interval, callback),
            name=name,
        )

    def cancel(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        # A timer cancelling its own group must not interrupt itself
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        return True

    def pending(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    async def _run_once(self, name: str, delay: float, callback: Callback) -> None:
        await asyncio.sleep(delay)
        # Deregister before running so the callback can re-schedule this name
        if self._tasks.get(name) is asyncio.current_task():
            del self._tasks[name]
        try:
            await run_callback(callback)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled task %s failed", name)

    async def _run_periodic(self, name: str, interval: float, callback: Callback) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await run_callback(callback)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic task %s failed", name)

    async def aclose(self) -> None:
        """Cancel everything and wait for the tasks to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            if task is not asyncio.current_task():
                task.cancel()
        for task in tasks:
            if task is asyncio.current_task():
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
