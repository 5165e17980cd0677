"""Rate-limited work queue of object keys.

Semantics follow the controller work queue used by Kubernetes operators:

- A key is queued at most once, however many notifications arrive.
- A key is never handed to two workers at the same time. A key added while
  it is being processed is queued again when the worker calls done().
- Failed keys are re-added after a per-key exponential delay; forget()
  resets the delay after a success.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Hashable
from typing import Generic, TypeVar

from .config import DEFAULT_REQUEUE_BASE_SECONDS, DEFAULT_REQUEUE_MAX_SECONDS

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class WorkQueueShutDown(Exception):
    """Raised by get() once the queue has been shut down."""

    pass


class WorkQueue(Generic[K]):
    """Async de-duplicating queue with per-key exclusivity."""

    def __init__(
        self,
        base_delay: float = DEFAULT_REQUEUE_BASE_SECONDS,
        max_delay: float = DEFAULT_REQUEUE_MAX_SECONDS,
    ) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._queue: deque[K] = deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._failures: dict[K, int] = {}
        self._timers: set[asyncio.TimerHandle] = set()
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: K) -> None:
        """Queue a key unless it is already waiting."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Re-queued by done()
            return
        self._queue.append(key)
        self._wakeup.set()

    def add_after(self, key: K, delay: float) -> None:
        """Queue a key once ``delay`` seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def fire() -> None:
            if handle is not None:
                self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    def when(self, key: K) -> float:
        """Next failure delay for a key, without recording a failure."""
        exponent = self._failures.get(key, 0)
        return min(self._base_delay * (2**exponent), self._max_delay)

    def add_rate_limited(self, key: K) -> float:
        """Re-queue a failed key with exponential backoff. Returns the delay."""
        delay = self.when(key)
        self._failures[key] = self._failures.get(key, 0) + 1
        self.add_after(key, delay)
        return delay

    def forget(self, key: K) -> None:
        """Reset the failure backoff of a key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: K) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> K:
        """Wait for the next key and mark it as processing.

        Raises:
            WorkQueueShutDown: Once shutdown() has been called.
        """
        while True:
            if self._shutting_down:
                raise WorkQueueShutDown()
            if self._queue:
                key = self._queue.popleft()
                self._dirty.discard(key)
                self._processing.add(key)
                return key
            self._wakeup.clear()
            await self._wakeup.wait()

    def done(self, key: K) -> None:
        """Mark a key as processed, re-queueing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._wakeup.set()

    def shutdown(self) -> None:
        """Stop handing out keys and cancel pending delayed adds."""
        self._shutting_down = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self._wakeup.set()
        logger.debug("Work queue shut down", extra={"pending": len(self._queue)})
