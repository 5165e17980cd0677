"""Reconcile entry point and controller loop.

Store notifications become keys on a work queue; a pool of workers takes one
key at a time and runs StackReconciler.reconcile(), which loads the object,
observes the provider-side stack and picks exactly one action:

1. Object marked for deletion: the delete path (see _finalize).
2. Finalizer missing: add it, nothing else this pass.
3. Stack exists and is in progress: hand it to the follower.
4. Stack exists and is settled: update it.
5. Otherwise: create it.

A failed reconcile is re-queued with per-key exponential backoff. Keys are
also re-queued on a fixed resync interval so that a follower submission
dropped on a full queue is always recovered.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import Config
from .follower import FollowRequest, StackFollower, StackRegistry
from .lifecycle import OperationResult, StackLifecycle
from .models import DesiredStack, StackKey, is_terminal_status, stack_phase
from .ownership import DELETE_COMPLETE, OwnershipResolver, is_owned
from .provider import StackProvider
from .status import StatusSynchronizer
from .store import NotFoundError, ResourceStore
from .workqueue import WorkQueue, WorkQueueShutDown

logger = logging.getLogger(__name__)


class ReconcileAction(str, Enum):
    """What a single reconcile pass did."""

    NONE = "none"
    IGNORED = "ignored"
    FINALIZER_ADDED = "finalizer_added"
    FINALIZER_REMOVED = "finalizer_removed"
    FOLLOWING = "following"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class ReconcileResult:
    """Result of reconciling one key."""

    key: StackKey
    action: ReconcileAction = ReconcileAction.NONE
    operation: OperationResult | None = None
    stack_status: str = ""
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None


class StackReconciler:
    """Per-key decision logic on top of the lifecycle state machine."""

    def __init__(
        self,
        store: ResourceStore,
        provider: StackProvider,
        lifecycle: StackLifecycle,
        follower: StackFollower,
        ownership: OwnershipResolver | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._lifecycle = lifecycle
        self._follower = follower
        self._ownership = ownership or lifecycle.ownership

    async def reconcile(self, key: StackKey) -> ReconcileResult:
        """Reconcile one desired object. Errors are returned, never raised."""
        result = ReconcileResult(key=key)
        try:
            await self._reconcile(key, result)
        except Exception as e:
            result.error = e
        result.end_time = datetime.now(UTC)
        return result

    async def _reconcile(self, key: StackKey, result: ReconcileResult) -> None:
        try:
            desired = self._store.get(key)
        except NotFoundError:
            logger.debug("Stack object gone, nothing to reconcile", extra={"key": str(key)})
            result.action = ReconcileAction.IGNORED
            return

        if desired.is_marked_for_deletion:
            await self._finalize(desired, result)
            return

        if not desired.has_finalizer():
            desired.add_finalizer()
            self._store.update(desired)
            result.action = ReconcileAction.FINALIZER_ADDED
            logger.info("Finalizer added", extra={"key": str(key)})
            return

        stack = await self._ownership.current_stack(desired)
        if stack is None:
            result.action = ReconcileAction.CREATE
            result.operation = await self._lifecycle.create_stack(desired)
            return

        stack_status = str(stack.get("StackStatus") or "")
        result.stack_status = stack_status

        if not is_terminal_status(stack_status):
            self._follow(desired, stack, result)
            return

        result.action = ReconcileAction.UPDATE
        result.operation = await self._lifecycle.update_stack(desired)

    async def _finalize(self, desired: DesiredStack, result: ReconcileResult) -> None:
        """Delete path.

        The finalizer is only released once nothing of ours is left on the
        provider side: the stack is gone, it is DELETE_COMPLETE, or it was
        never ours (or dry run prevents us from touching it).
        """
        if not desired.has_finalizer():
            return

        stack = await self._provider.find_stack(desired.stack_ref)
        stack_status = str(stack.get("StackStatus") or "") if stack is not None else ""
        result.stack_status = stack_status

        if stack is None or stack_status == DELETE_COMPLETE:
            if stack is not None:
                await self._lifecycle.sync_status(desired, stack)
            self._release(desired, result)
            return

        if not is_terminal_status(stack_status):
            self._follow(desired, stack, result)
            if result.action is ReconcileAction.NONE:
                # Someone else's stack is busy; there is nothing of ours to wait for
                self._release(desired, result)
            return

        result.action = ReconcileAction.DELETE
        result.operation = await self._lifecycle.delete_stack(desired)
        if result.operation in (
            OperationResult.SKIPPED_NOT_OWNED,
            OperationResult.SKIPPED_DRY_RUN,
        ):
            self._release(desired, result)

    def _follow(
        self, desired: DesiredStack, stack: dict[str, Any], result: ReconcileResult
    ) -> None:
        if not is_owned(stack):
            logger.info(
                "Stack not owned by this controller, not following",
                extra={"stack": desired.stack_name},
            )
            return
        stack_id = str(stack.get("StackId") or desired.stack_ref)
        self._follower.submit(FollowRequest(stack_id, desired))
        result.action = ReconcileAction.FOLLOWING

    def _release(self, desired: DesiredStack, result: ReconcileResult) -> None:
        # Re-read so the write carries the version the status sync may have bumped
        try:
            latest = self._store.get(desired.key)
        except NotFoundError:
            return
        if latest.remove_finalizer():
            self._store.update(latest)
            logger.info("Finalizer removed", extra={"key": str(desired.key)})
        result.action = ReconcileAction.FINALIZER_REMOVED


class Controller:
    """Watch-driven controller: store watch, work queue, workers, follower."""

    def __init__(
        self,
        config: Config,
        store: ResourceStore,
        provider: StackProvider,
        *,
        registry: StackRegistry | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._provider = provider

        self._synchronizer = StatusSynchronizer(provider, store, config)
        self._follower = StackFollower(provider, self._synchronizer, config, registry)
        self._lifecycle = StackLifecycle(provider, self._synchronizer, self._follower, config)
        self._reconciler = StackReconciler(store, provider, self._lifecycle, self._follower)
        self._queue: WorkQueue[StackKey] = WorkQueue(
            config.requeue_base_seconds, config.requeue_max_seconds
        )
        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> Config:
        return self._config

    @property
    def queue(self) -> WorkQueue[StackKey]:
        return self._queue

    @property
    def follower(self) -> StackFollower:
        return self._follower

    @property
    def lifecycle(self) -> StackLifecycle:
        return self._lifecycle

    @property
    def reconciler(self) -> StackReconciler:
        return self._reconciler

    def in_scope(self, key: StackKey) -> bool:
        return self._config.namespace is None or key.namespace == self._config.namespace

    def resync(self) -> int:
        """Queue every in-scope object. Returns the number of keys queued."""
        keys = [obj.key for obj in self._store.list(self._config.namespace)]
        for key in keys:
            self._queue.add(key)
        return len(keys)

    async def run(self) -> None:
        """Run the controller until shutdown."""
        logger.info(
            "Starting controller",
            extra={
                "region": self._config.region,
                "namespace": self._config.namespace or "*",
                "workers": self._config.max_concurrent_reconciles,
                "dry_run": self._config.dry_run,
            },
        )

        follower_task = asyncio.create_task(self._follower.run())
        watch_task = asyncio.create_task(self._watch())
        workers = [
            asyncio.create_task(self._worker(i))
            for i in range(self._config.max_concurrent_reconciles)
        ]

        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.resync_interval_seconds,
                )
            except TimeoutError:
                queued = self.resync()
                logger.debug("Periodic resync", extra={"queued": queued})

        self._queue.shutdown()
        self._follower.shutdown()
        watch_task.cancel()
        await asyncio.gather(watch_task, return_exceptions=True)
        await asyncio.gather(*workers, follower_task)
        logger.info("Controller shutdown complete")

    def shutdown(self) -> None:
        """Signal the controller to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def process_next(self) -> ReconcileResult:
        """Take one key from the queue and reconcile it."""
        key = await self._queue.get()
        try:
            result = await self._reconciler.reconcile(key)
        finally:
            self._queue.done(key)

        if result.error is not None:
            delay = self._queue.add_rate_limited(key)
            self._log_result(result, requeue_seconds=delay)
        else:
            self._queue.forget(key)
            self._log_result(result)
        return result

    async def _watch(self) -> None:
        async for key in self._store.watch():
            if self.in_scope(key):
                self._queue.add(key)

    async def _worker(self, worker_id: int) -> None:
        while True:
            try:
                await self.process_next()
            except WorkQueueShutDown:
                logger.debug("Worker stopped", extra={"worker": worker_id})
                return

    def _log_result(self, result: ReconcileResult, requeue_seconds: float | None = None) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "key": str(result.key),
            "action": result.action.value,
            "duration_seconds": result.duration_seconds,
        }
        if result.operation is not None:
            extra["operation"] = result.operation.value
        if result.stack_status:
            extra["stack_status"] = result.stack_status
            extra["phase"] = stack_phase(result.stack_status).value

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            extra["requeue_seconds"] = requeue_seconds
            logger.error("Reconciliation failed", extra=extra)
        elif result.action in (ReconcileAction.NONE, ReconcileAction.IGNORED):
            logger.debug("Reconciliation result", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
