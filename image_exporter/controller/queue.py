"""Keyed work queue with delayed and rate-limited requeues.

Guarantees that matter to reconcilers:

* a key is queued at most once, however many times it is added;
* a key handed to one worker is not handed to another until ``done``;
  adds that arrive meanwhile are replayed on ``done``;
* failed keys back off exponentially per key until ``forget``.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Hashable
from datetime import timedelta
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)

_BASE_DELAY = timedelta(milliseconds=5)
_MAX_DELAY = timedelta(seconds=1000)


class WorkQueue(Generic[K]):
    """asyncio work queue used between watchers and reconcile workers."""

    def __init__(self, base_delay: timedelta = _BASE_DELAY, max_delay: timedelta = _MAX_DELAY) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._queue: deque[K] = deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._failures: dict[K, int] = {}
        self._timers: set[asyncio.TimerHandle] = set()
        self._ready = asyncio.Event()
        self._shutting_down = False

    def add(self, key: K) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._ready.set()

    def add_after(self, key: K, delay: timedelta) -> None:
        """Add *key* once *delay* has passed; non-positive delays add immediately."""
        if self._shutting_down:
            return
        seconds = delay.total_seconds()
        if seconds <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def _fire() -> None:
            if handle is not None:
                self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(seconds, _fire)
        self._timers.add(handle)

    def add_rate_limited(self, key: K) -> None:
        """Re-add a failed key after its per-key exponential backoff."""
        self.add_after(key, self.backoff(key))

    def backoff(self, key: K) -> timedelta:
        """Record a failure for *key* and return the delay before its next attempt."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay = self._base_delay * (2 ** min(failures, 32))
        return min(delay, self._max_delay)

    def forget(self, key: K) -> None:
        """Reset the failure count of *key*."""
        self._failures.pop(key, None)

    def num_requeues(self, key: K) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> K | None:
        """Wait for the next key; returns None once the queue is shut down."""
        while not self._queue:
            if self._shutting_down:
                return None
            self._ready.clear()
            await self._ready.wait()
        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: K) -> None:
        """Mark *key* processed; requeue it if it was added while being processed."""
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._ready.set()

    def shutdown(self) -> None:
        """Drop pending timers and wake every waiting worker."""
        self._shutting_down = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self._queue.clear()
        self._ready.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def __len__(self) -> int:
        return len(self._queue)
