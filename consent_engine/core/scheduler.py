"""
Consent Engine - Scheduling

The orchestrator never touches timers directly. Retries, dependency
re-checks and health checks go through a Scheduler so tests and
simulations can drive time deterministically.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)

Callback = Callable[[], Awaitable[None] | None]
Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now(UTC)


@runtime_checkable
class ScheduledHandle(Protocol):
    """Handle to a scheduled callback."""

    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


@runtime_checkable
class Scheduler(Protocol):
    """Capability to run a callback after a delay."""

    def schedule_after(self, delay_seconds: float, callback: Callback) -> ScheduledHandle: ...

    def now(self) -> datetime: ...


async def _invoke(callback: Callback, name: str) -> None:
    try:
        result = callback()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error("scheduled_callback_failed", callback=name, error=str(e))


# =============================================================================
# Asyncio scheduler
# =============================================================================


class _AsyncioHandle:
    def __init__(self, owner: set[_AsyncioHandle]):
        self.timer: asyncio.TimerHandle | None = None
        self.task: asyncio.Task[None] | None = None
        self._owner = owner
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        self._owner.discard(self)
        if self.timer is not None:
            self.timer.cancel()
        if self.task is not None and not self.task.done():
            self.task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioScheduler:
    """
    Scheduler backed by the running event loop.

    Coroutine callbacks are spawned as tasks; every pending timer and
    task is tracked so shutdown() can cancel them.
    """

    def __init__(self, clock: Clock = system_clock):
        self._clock = clock
        self._handles: set[_AsyncioHandle] = set()

    def now(self) -> datetime:
        return self._clock()

    def schedule_after(self, delay_seconds: float, callback: Callback) -> ScheduledHandle:
        loop = asyncio.get_running_loop()
        handle = _AsyncioHandle(self._handles)
        name = getattr(callback, "__qualname__", repr(callback))

        def _fire() -> None:
            if handle.cancelled:
                return
            handle.task = loop.create_task(_invoke(callback, name))
            handle.task.add_done_callback(lambda _: self._handles.discard(handle))

        handle.timer = loop.call_later(max(delay_seconds, 0.0), _fire)
        self._handles.add(handle)
        return handle

    @property
    def pending_count(self) -> int:
        return sum(1 for h in self._handles if not h.cancelled)

    async def shutdown(self) -> None:
        """Cancel every pending timer and in-flight callback."""
        handles = list(self._handles)
        for handle in handles:
            handle.cancel()
        tasks = [h.task for h in handles if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._handles.clear()


# =============================================================================
# Manual scheduler
# =============================================================================


@dataclass(order=True)
class _ManualEntry:
    due: datetime
    sequence: int
    callback: Callback = field(compare=False)
    _cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler:
    """
    Deterministic scheduler with a fake clock.

    Nothing runs until advance() is awaited; callbacks then run in due
    order, and callbacks they schedule within the advanced window run
    too.
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2025, 1, 1, tzinfo=UTC)
        self._queue: list[_ManualEntry] = []
        self._sequence = itertools.count()

    def now(self) -> datetime:
        return self._now

    def schedule_after(self, delay_seconds: float, callback: Callback) -> ScheduledHandle:
        entry = _ManualEntry(
            due=self._now + timedelta(seconds=max(delay_seconds, 0.0)),
            sequence=next(self._sequence),
            callback=callback,
        )
        heapq.heappush(self._queue, entry)
        return entry

    @property
    def pending_count(self) -> int:
        return sum(1 for e in self._queue if not e.cancelled)

    def next_due(self) -> datetime | None:
        live = [e.due for e in self._queue if not e.cancelled]
        return min(live) if live else None

    async def advance(self, seconds: float) -> int:
        """Move the clock forward, running every callback that falls due."""
        target = self._now + timedelta(seconds=seconds)
        ran = 0
        while self._queue and self._queue[0].due <= target:
            entry = heapq.heappop(self._queue)
            if entry.cancelled:
                continue
            self._now = max(self._now, entry.due)
            await _invoke(entry.callback, getattr(entry.callback, "__qualname__", "callback"))
            ran += 1
        self._now = target
        return ran

    async def run_all(self, max_callbacks: int = 1000) -> int:
        """Run callbacks until the queue is drained."""
        ran = 0
        while ran < max_callbacks:
            due = self.next_due()
            if due is None:
                break
            ran += await self.advance(max((due - self._now).total_seconds(), 0.0))
        return ran

    async def shutdown(self) -> None:
        for entry in self._queue:
            entry.cancel()
        self._queue.clear()
