"""Background follower for in-flight stack operations.

Mutating provider calls return immediately while CloudFormation keeps working
for minutes. Rather than block a reconcile worker, the state machine hands the
stack to the follower, which polls it until a terminal status is reached:

    submit() -> bounded queue -> receiver -> registry -> worker sweeps

The registry holds at most one entry per stack ID. Entries are evicted once a
poll observes a terminal status or the provider no longer knows the stack. A
submission dropped on a full queue is recovered because the reconciler
re-submits every non-terminal stack it observes.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import zlib
from dataclasses import dataclass

from .config import Config
from .models import DesiredStack, is_terminal_status
from .provider import StackProvider
from .status import StatusSynchronizer

logger = logging.getLogger(__name__)

DEFAULT_SHARD_COUNT = 16


@dataclass(frozen=True)
class FollowRequest:
    """Ask the follower to track one stack until it settles."""

    stack_id: str
    desired: DesiredStack


class StackRegistry:
    """Sharded map of stack ID to the desired object that owns it.

    Each shard has its own lock, and snapshot() copies one shard at a time so
    a sweep never holds a lock across provider calls.
    """

    def __init__(self, shard_count: int = DEFAULT_SHARD_COUNT) -> None:
        if shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        self._shards: list[dict[str, DesiredStack]] = [{} for _ in range(shard_count)]
        self._locks = [threading.Lock() for _ in range(shard_count)]

    def _index(self, stack_id: str) -> int:
        return zlib.crc32(stack_id.encode("utf-8")) % len(self._shards)

    def insert_if_absent(self, stack_id: str, desired: DesiredStack) -> bool:
        """Add an entry unless the stack is already tracked.

        Returns:
            True if the entry was inserted.
        """
        i = self._index(stack_id)
        with self._locks[i]:
            if stack_id in self._shards[i]:
                return False
            self._shards[i][stack_id] = desired
            return True

    def remove(self, stack_id: str) -> DesiredStack | None:
        i = self._index(stack_id)
        with self._locks[i]:
            return self._shards[i].pop(stack_id, None)

    def contains(self, stack_id: str) -> bool:
        i = self._index(stack_id)
        with self._locks[i]:
            return stack_id in self._shards[i]

    def __contains__(self, stack_id: object) -> bool:
        return isinstance(stack_id, str) and self.contains(stack_id)

    def __len__(self) -> int:
        total = 0
        for lock, shard in zip(self._locks, self._shards, strict=True):
            with lock:
                total += len(shard)
        return total

    def snapshot(self) -> list[tuple[str, DesiredStack]]:
        """Copy all entries, one shard lock at a time."""
        entries: list[tuple[str, DesiredStack]] = []
        for lock, shard in zip(self._locks, self._shards, strict=True):
            with lock:
                entries.extend(shard.items())
        return entries


class StackFollower:
    """Polls submitted stacks until they reach a terminal status."""

    def __init__(
        self,
        provider: StackProvider,
        synchronizer: StatusSynchronizer,
        config: Config,
        registry: StackRegistry | None = None,
    ) -> None:
        self._provider = provider
        self._synchronizer = synchronizer
        self._config = config
        self._registry = registry or StackRegistry()
        self._queue: asyncio.Queue[FollowRequest] = asyncio.Queue(
            maxsize=config.submission_queue_size
        )
        self._shutdown_event = asyncio.Event()

    @property
    def registry(self) -> StackRegistry:
        return self._registry

    @property
    def pending(self) -> int:
        """Number of submissions not yet taken by the receiver."""
        return self._queue.qsize()

    def submit(self, request: FollowRequest) -> bool:
        """Queue a stack for following without blocking.

        Returns:
            False if the queue was full and the request was dropped.
        """
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull:
            logger.warning(
                "Follower submission queue full, dropping request",
                extra={
                    "stack": request.desired.stack_name,
                    "stack_id": request.stack_id,
                    "queue_size": self._config.submission_queue_size,
                },
            )
            return False
        return True

    async def receive_pending(self) -> int:
        """Admit every queued submission. Returns how many were taken."""
        count = 0
        while True:
            try:
                request = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return count
            await self._admit(request)
            count += 1

    async def sweep_once(self) -> None:
        """Process every tracked stack once, concurrently."""
        entries = self._registry.snapshot()
        if not entries:
            return
        logger.debug(
            "Follower sweep", extra={"stacks": len(entries), "pending": self.pending}
        )
        await asyncio.gather(
            *(self._process_bounded(stack_id, desired) for stack_id, desired in entries)
        )

    async def run(self) -> None:
        """Run the receiver and the sweep worker until shutdown."""
        logger.info(
            "Starting stack follower",
            extra={"interval_seconds": self._config.follower_interval_seconds},
        )
        receiver = asyncio.create_task(self._receive())
        try:
            while not self._shutdown_event.is_set():
                await self.sweep_once()
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self._config.follower_interval_seconds,
                    )
                except TimeoutError:
                    pass
        finally:
            receiver.cancel()
            try:
                await receiver
            except asyncio.CancelledError:
                pass
        logger.info("Stack follower stopped", extra={"tracked": len(self._registry)})

    def shutdown(self) -> None:
        self._shutdown_event.set()

    async def _receive(self) -> None:
        while True:
            request = await self._queue.get()
            await self._admit(request)

    async def _admit(self, request: FollowRequest) -> None:
        if self._registry.insert_if_absent(request.stack_id, request.desired):
            logger.info(
                "Following stack",
                extra={"stack": request.desired.stack_name, "stack_id": request.stack_id},
            )
        try:
            await asyncio.wait_for(
                self._synchronizer.sync(request.desired),
                timeout=self._config.sync_timeout_seconds,
            )
        except Exception as e:
            logger.error(
                "Initial status sync failed",
                extra={
                    "stack": request.desired.stack_name,
                    "stack_id": request.stack_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )

    async def _process_bounded(self, stack_id: str, desired: DesiredStack) -> None:
        # One stack's failure or hang must not hold up the rest of the sweep
        try:
            await asyncio.wait_for(
                self._process(stack_id, desired),
                timeout=self._config.sync_timeout_seconds,
            )
        except TimeoutError:
            logger.warning(
                "Stack sync timed out",
                extra={
                    "stack": desired.stack_name,
                    "stack_id": stack_id,
                    "timeout_seconds": self._config.sync_timeout_seconds,
                },
            )
        except Exception as e:
            logger.error(
                "Stack sync failed",
                extra={
                    "stack": desired.stack_name,
                    "stack_id": stack_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )

    async def _process(self, stack_id: str, desired: DesiredStack) -> None:
        stack = await self._provider.find_stack(stack_id)
        if stack is None:
            self._registry.remove(stack_id)
            logger.info(
                "Followed stack no longer exists",
                extra={"stack": desired.stack_name, "stack_id": stack_id},
            )
            return

        stack_status = str(stack.get("StackStatus") or "")
        if not is_terminal_status(stack_status):
            await self._synchronizer.sync(desired, stack)
            return

        self._registry.remove(stack_id)
        try:
            await self._synchronizer.sync(desired, stack)
        except Exception:
            # Keep following so the final status is written on the next sweep
            self._registry.insert_if_absent(stack_id, desired)
            raise
        logger.info(
            "Stack reached terminal status",
            extra={
                "stack": desired.stack_name,
                "stack_id": stack_id,
                "stack_status": stack_status,
            },
        )
