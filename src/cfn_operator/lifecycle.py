"""Stack lifecycle state machine.

    absent -> creating -> created -> updating* -> deleting -> absent

Rollback excursions are part of the same machine and count as terminal once
they reach ``*_COMPLETE`` or ``*_FAILED``. Every mutating operation here:

1. re-checks ownership immediately before the provider call,
2. honors dry-run by logging the call it would have made,
3. issues exactly one provider call and returns without waiting,
4. hands the in-flight stack to the follower, which polls it to completion.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from enum import Enum
from typing import Any

from .config import BackoffPolicy, Config
from .follower import FollowRequest, StackFollower
from .models import DesiredStack, is_terminal_status, stack_phase
from .ownership import OwnershipResolver, is_owned
from .provider import Backoff, StackProvider, UpdateOutcome
from .status import StatusSynchronizer
from .tags import compile_parameters, compile_tags

logger = logging.getLogger(__name__)

# Polling policy for wait_for_terminal (one-shot CLI only)
WAIT_BACKOFF = BackoffPolicy(min_seconds=2.0, max_seconds=30.0, factor=1.5)


class OperationResult(str, Enum):
    """Outcome of a mutating lifecycle operation."""

    SUBMITTED = "submitted"
    NO_CHANGES = "no_changes"
    SKIPPED_NOT_OWNED = "skipped_not_owned"
    SKIPPED_DRY_RUN = "skipped_dry_run"


class StackLifecycle:
    """Create, update, delete and status sync for one provider stack at a time."""

    def __init__(
        self,
        provider: StackProvider,
        synchronizer: StatusSynchronizer,
        follower: StackFollower,
        config: Config,
        *,
        ownership: OwnershipResolver | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._synchronizer = synchronizer
        self._follower = follower
        self._config = config
        self._ownership = ownership or OwnershipResolver(provider)
        self._sleep = sleep

    @property
    def ownership(self) -> OwnershipResolver:
        return self._ownership

    async def create_stack(self, desired: DesiredStack) -> OperationResult:
        """Start creating the stack and record its ID on status.

        Raises:
            StackProviderError: On provider failures (including AlreadyExists).
            TagCompileError: If the object has no uid.
        """
        skipped, _ = await self._guard(desired, "CreateStack")
        if skipped is not None:
            return skipped

        stack_id = await self._provider.create_stack(
            desired.stack_name,
            desired.spec.template,
            compile_parameters(desired),
            compile_tags(desired, self._config.default_tags),
            self._config.default_capabilities,
        )
        logger.info(
            "Stack creation started",
            extra={"stack": desired.stack_name, "stack_id": stack_id},
        )

        self._synchronizer.record_stack_id(desired, stack_id)
        self._follower.submit(FollowRequest(stack_id, desired))
        return OperationResult.SUBMITTED

    async def update_stack(self, desired: DesiredStack) -> OperationResult:
        """Push the desired template, parameters and tags to an existing stack.

        A "No updates are to be performed" response is success: no follower
        submission, and the status sync that follows writes nothing when the
        stored status is already current.
        """
        skipped, stack = await self._guard(desired, "UpdateStack")
        if skipped is not None:
            return skipped

        stack_id = self._stack_id(desired, stack)
        outcome = await self._provider.update_stack(
            stack_id,
            desired.spec.template,
            compile_parameters(desired),
            compile_tags(desired, self._config.default_tags),
            self._config.default_capabilities,
        )

        if outcome is UpdateOutcome.NO_CHANGES:
            logger.debug("Stack already up to date", extra={"stack": desired.stack_name})
            await self.sync_status(desired)
            return OperationResult.NO_CHANGES

        logger.info(
            "Stack update started",
            extra={"stack": desired.stack_name, "stack_id": stack_id},
        )
        self._follower.submit(FollowRequest(stack_id, desired))
        return OperationResult.SUBMITTED

    async def delete_stack(self, desired: DesiredStack) -> OperationResult:
        """Start deleting the stack.

        The finalizer is left alone; the reconciler removes it once a later
        pass observes DELETE_COMPLETE.
        """
        skipped, stack = await self._guard(desired, "DeleteStack")
        if skipped is not None:
            return skipped

        stack_id = self._stack_id(desired, stack)
        await self._provider.delete_stack(stack_id)
        logger.info(
            "Stack deletion started",
            extra={"stack": desired.stack_name, "stack_id": stack_id},
        )
        self._follower.submit(FollowRequest(stack_id, desired))
        return OperationResult.SUBMITTED

    async def sync_status(
        self, desired: DesiredStack, stack: dict[str, Any] | None = None
    ) -> bool:
        """Write the provider's current view onto the object's status.

        Returns:
            True if the stored status changed.
        """
        return await self._synchronizer.sync(desired, stack)

    async def wait_for_terminal(
        self, desired: DesiredStack, timeout: float
    ) -> dict[str, Any] | None:
        """Poll until the stack is terminal, syncing status on every poll.

        Returns:
            The final description, or None if the stack does not exist.

        Raises:
            TimeoutError: If the stack is still in progress after ``timeout``.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        backoff = Backoff(WAIT_BACKOFF, random.Random())

        while True:
            stack = await self._provider.find_stack(desired.stack_ref)
            if stack is None:
                return None
            await self.sync_status(desired, stack)

            stack_status = str(stack.get("StackStatus") or "")
            if is_terminal_status(stack_status):
                return stack

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TimeoutError(
                    f"Stack {desired.stack_name} still {stack_status} after {timeout}s"
                )
            logger.info(
                "Waiting for stack",
                extra={
                    "stack": desired.stack_name,
                    "stack_status": stack_status,
                    "phase": stack_phase(stack_status).value,
                },
            )
            await self._sleep(min(backoff.duration(), remaining))

    async def _guard(
        self, desired: DesiredStack, operation: str
    ) -> tuple[OperationResult | None, dict[str, Any] | None]:
        """Ownership and dry-run gate run before every mutating call."""
        stack = await self._ownership.current_stack(desired)
        if not is_owned(stack):
            logger.info(
                "Stack not owned by this controller, skipping",
                extra={"stack": desired.stack_name, "operation": operation},
            )
            return OperationResult.SKIPPED_NOT_OWNED, stack

        if self._config.dry_run:
            logger.info(
                "Dry run, not calling provider",
                extra={"stack": desired.stack_name, "operation": operation},
            )
            return OperationResult.SKIPPED_DRY_RUN, stack

        return None, stack

    @staticmethod
    def _stack_id(desired: DesiredStack, stack: dict[str, Any] | None) -> str:
        # Address the exact stack that passed the ownership check
        if stack is not None and stack.get("StackId"):
            return str(stack["StackId"])
        return desired.stack_ref
