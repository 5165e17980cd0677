"""Ownership checks for provider-side stacks.

The operator only mutates stacks it created. A stack that does not exist yet
is always claimable; an existing stack is ours only if it carries the
controller-identity tag written by compile_tags().
"""

from __future__ import annotations

import logging
from typing import Any

from .models import DesiredStack
from .provider import StackProvider, stack_tags
from .tags import CONTROLLER_KEY, CONTROLLER_VALUE

logger = logging.getLogger(__name__)

DELETE_COMPLETE = "DELETE_COMPLETE"


def is_owned(stack: dict[str, Any] | None) -> bool:
    """Check ownership of an already-described stack (None means absent)."""
    if stack is None:
        return True
    return stack_tags(stack).get(CONTROLLER_KEY) == CONTROLLER_VALUE


class OwnershipResolver:
    """Decides whether this controller may mutate a given stack."""

    def __init__(self, provider: StackProvider) -> None:
        self._provider = provider

    async def current_stack(self, desired: DesiredStack) -> dict[str, Any] | None:
        """Describe the live stack a desired object refers to.

        The recorded stack ID is tried first. If it names a stack that is
        already DELETE_COMPLETE, the stack name is looked up instead, since a
        later create reuses the name. Returns None when no live stack exists.
        """
        stack = await self._provider.find_stack(desired.stack_ref)
        if stack is None or stack.get("StackStatus") != DELETE_COMPLETE:
            return stack
        if desired.stack_ref == desired.stack_name:
            return None
        stack = await self._provider.find_stack(desired.stack_name)
        if stack is not None and stack.get("StackStatus") == DELETE_COMPLETE:
            return None
        return stack

    async def has_ownership(self, desired: DesiredStack) -> bool:
        """Describe the stack and check for the controller-identity tag.

        Raises:
            StackProviderError: On any provider error other than not-found.
        """
        stack = await self.current_stack(desired)
        owned = is_owned(stack)
        logger.debug(
            "Ownership checked",
            extra={"stack": desired.stack_name, "exists": stack is not None, "owned": owned},
        )
        return owned
