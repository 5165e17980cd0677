"""Write the provider's observed stack state onto the Stack resource.

Both the lifecycle state machine and the follower report status through
StatusSynchronizer, which guarantees the same semantics on every path:

- All status fields are recomputed from a fresh (or caller-supplied) stack
  description on every call.
- The write is skipped when the recomputed status equals the stored one, so
  repeated polls of an unchanged stack never churn resourceVersion.
- The write is compare-and-swap against the latest resourceVersion. A
  conflict or a vanished object means someone else already converged this
  object; it is logged and swallowed.
- ``stackID`` is never replaced by the ID of a different stack.
"""

from __future__ import annotations

import logging
from typing import Any

from .config import Config
from .models import DesiredStack, StackResource, StackStatus
from .provider import StackProvider, stack_outputs, stack_timestamp
from .store import ConflictError, NotFoundError, ResourceStore

logger = logging.getLogger(__name__)


class StatusSynchronizer:
    """Compare-and-update of ObservedStatus from the provider's description."""

    def __init__(self, provider: StackProvider, store: ResourceStore, config: Config) -> None:
        self._provider = provider
        self._store = store
        self._config = config

    async def compute_status(
        self, desired: DesiredStack, stack: dict[str, Any]
    ) -> StackStatus:
        """Derive a full ObservedStatus from a stack description."""
        stack_id = str(stack.get("StackId") or desired.status.stack_id)
        stack_status = str(stack.get("StackStatus") or "")

        outputs = stack_outputs(stack)

        resources: list[StackResource] = []
        if self._config.sync_resources and stack_status != "DELETE_COMPLETE":
            resources = await self._provider.list_stack_resources(stack_id)

        return StackStatus(
            stack_id=stack_id,
            stack_status=stack_status,
            created_time=stack_timestamp(stack, "CreationTime"),
            updated_time=stack_timestamp(stack, "LastUpdatedTime"),
            # Keep the last reported outputs while the stack has none
            outputs=outputs or desired.status.outputs,
            resources=resources,
        )

    async def sync(self, desired: DesiredStack, stack: dict[str, Any] | None = None) -> bool:
        """Bring ``desired.status`` in line with the provider.

        Args:
            desired: Stack resource; the latest stored version is re-read so a
                stale reference held by the follower still writes correctly.
            stack: Optional description already fetched by the caller.

        Returns:
            True if a status write was made.

        Raises:
            StackNotFoundError: If no stack was supplied and none exists.
            StackProviderError: On provider failures.
        """
        try:
            latest = self._store.get(desired.key)
        except NotFoundError:
            logger.info(
                "Stack resource gone, skipping status sync",
                extra={"stack": desired.stack_name, "namespace": desired.metadata.namespace},
            )
            return False

        old_uid = desired.metadata.uid
        if latest.metadata.uid and old_uid and latest.metadata.uid != old_uid:
            logger.info(
                "Stack resource was recreated, skipping status sync for old object",
                extra={"stack": desired.stack_name, "uid": desired.metadata.uid},
            )
            return False

        # A freshly created stack's ID may only be known to the caller
        if not latest.status.stack_id and desired.status.stack_id:
            latest.status.stack_id = desired.status.stack_id

        if stack is None:
            stack = await self._provider.describe_stack(latest.stack_ref)

        fetched_id = str(stack.get("StackId") or "")
        if latest.status.stack_id and fetched_id and fetched_id != latest.status.stack_id:
            logger.warning(
                "Refusing status sync from a different stack",
                extra={
                    "stack": desired.stack_name,
                    "recorded_stack_id": latest.status.stack_id,
                    "observed_stack_id": fetched_id,
                },
            )
            return False

        new_status = await self.compute_status(latest, stack)
        desired.status = new_status.model_copy(deep=True)

        if new_status == latest.status:
            logger.debug(
                "Stack status unchanged",
                extra={"stack": desired.stack_name, "stack_status": new_status.stack_status},
            )
            return False

        latest.status = new_status
        try:
            written = self._store.update_status(latest)
        except (ConflictError, NotFoundError) as e:
            logger.info(
                "Status write skipped, object changed concurrently",
                extra={"stack": desired.stack_name, "reason": str(e)},
            )
            return False

        desired.metadata.resource_version = written.metadata.resource_version
        logger.info(
            "Stack status updated",
            extra={
                "stack": desired.stack_name,
                "stack_id": new_status.stack_id,
                "stack_status": new_status.stack_status,
                "resources": len(new_status.resources),
            },
        )
        return True

    def record_stack_id(self, desired: DesiredStack, stack_id: str) -> None:
        """Persist a newly created stack ID before any polling happens.

        Unlike sync(), this is the one write allowed to set a new ID: it runs
        right after CreateStack returned it.
        """
        desired.status.stack_id = stack_id
        try:
            latest = self._store.get(desired.key)
        except NotFoundError:
            return
        if latest.status.stack_id == stack_id:
            return
        latest.status = StackStatus(stack_id=stack_id)
        try:
            written = self._store.update_status(latest)
        except (ConflictError, NotFoundError) as e:
            logger.info(
                "Stack ID write skipped, object changed concurrently",
                extra={"stack": desired.stack_name, "reason": str(e)},
            )
            return
        desired.metadata.resource_version = written.metadata.resource_version
