"""Call-through adapter for the CloudFormation stack API.

The adapter is deliberately thin. It adds exactly four behaviors on top of the
boto3 client:

1. Blocking SDK calls run in the default executor and are bounded by the
   configured request timeout, so the event loop never stalls.
2. "Stack ... does not exist" becomes StackNotFoundError.
3. Throttling ("Rate exceeded") is retried with exponential backoff and
   jitter until the throttle deadline, then raised as StackProviderError.
4. "No updates are to be performed." becomes UpdateOutcome.NO_CHANGES.

Every other provider error is wrapped in StackProviderError and propagated.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from .config import BackoffPolicy, Config
from .models import StackResource

logger = logging.getLogger(__name__)

T = TypeVar("T")

THROTTLING_ERROR_CODES: frozenset[str] = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
})

NOT_FOUND_MESSAGE = "does not exist"
NO_UPDATES_MESSAGE = "No updates are to be performed"
THROTTLING_MESSAGE = "Rate exceeded"

# Upper bound on ListStackResources pages (100 summaries per page)
MAX_RESOURCE_PAGES = 100


class StackProviderError(Exception):
    """Raised for any provider failure that is not handled by the adapter."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class StackNotFoundError(StackProviderError):
    """Raised when the addressed stack does not exist."""

    def __init__(self, stack: str) -> None:
        super().__init__(f"Stack {stack} not found", code="ValidationError")
        self.stack = stack


class UpdateOutcome(str, Enum):
    """Result of an UpdateStack call."""

    ACCEPTED = "accepted"
    NO_CHANGES = "no_changes"


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _error_message(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Message", "")) or str(error)


def is_throttling_error(error: Exception) -> bool:
    """Check whether a provider error is a throttling response."""
    if not isinstance(error, ClientError):
        return False
    return _error_code(error) in THROTTLING_ERROR_CODES or THROTTLING_MESSAGE in str(error)


def is_not_found_error(error: Exception) -> bool:
    """Check whether a provider error says the stack does not exist."""
    return isinstance(error, ClientError) and NOT_FOUND_MESSAGE in _error_message(error)


def is_no_updates_error(error: Exception) -> bool:
    """Check whether an UpdateStack error is the "nothing to change" sentinel."""
    return isinstance(error, ClientError) and NO_UPDATES_MESSAGE in _error_message(error)


class Backoff:
    """Attempt counter producing exponentially growing, jittered delays."""

    def __init__(self, policy: BackoffPolicy, rng: random.Random | None = None) -> None:
        self._policy = policy
        self._rng = rng or random.Random()
        self.attempt = 0

    def duration(self) -> float:
        """Return the next delay in seconds and advance the attempt counter."""
        policy = self._policy
        delay = policy.min_seconds * (policy.factor**self.attempt)
        self.attempt += 1
        delay = min(delay, policy.max_seconds)
        if policy.jitter and delay > policy.min_seconds:
            delay = self._rng.uniform(policy.min_seconds, delay)
        return delay


class StackProvider:
    """Async facade over a boto3 CloudFormation client."""

    def __init__(
        self,
        client: Any,
        config: Config,
        *,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        """Initialize the adapter.

        Args:
            client: boto3 ``cloudformation`` client (or a compatible fake).
            config: Operator configuration (timeouts, backoff policy).
            sleep: Coroutine function used between throttling retries.
        """
        self._client = client
        self._config = config
        self._sleep = sleep

    @property
    def client(self) -> Any:
        return self._client

    async def create_stack(
        self,
        name: str,
        template: str,
        parameters: list[dict[str, str]],
        tags: list[dict[str, str]],
        capabilities: tuple[str, ...] | list[str] = (),
    ) -> str:
        """Start a stack creation and return the new stack ID."""
        response = await self._call(
            "CreateStack",
            name,
            self._client.create_stack,
            StackName=name,
            TemplateBody=template,
            Parameters=parameters,
            Tags=tags,
            Capabilities=list(capabilities),
        )
        return str(response["StackId"])

    async def update_stack(
        self,
        name: str,
        template: str,
        parameters: list[dict[str, str]],
        tags: list[dict[str, str]],
        capabilities: tuple[str, ...] | list[str] = (),
    ) -> UpdateOutcome:
        """Start a stack update.

        Returns:
            UpdateOutcome.NO_CHANGES when the provider reports nothing to do.
        """
        try:
            await self._call(
                "UpdateStack",
                name,
                self._client.update_stack,
                StackName=name,
                TemplateBody=template,
                Parameters=parameters,
                Tags=tags,
                Capabilities=list(capabilities),
            )
        except StackProviderError as e:
            if isinstance(e.__cause__, ClientError) and is_no_updates_error(e.__cause__):
                return UpdateOutcome.NO_CHANGES
            raise
        return UpdateOutcome.ACCEPTED

    async def delete_stack(self, name_or_id: str) -> None:
        """Start a stack deletion."""
        await self._call("DeleteStack", name_or_id, self._client.delete_stack, StackName=name_or_id)

    async def describe_stack(self, name_or_id: str) -> dict[str, Any]:
        """Describe exactly one stack.

        Raises:
            StackNotFoundError: If the stack does not exist.
        """
        response = await self._call(
            "DescribeStacks", name_or_id, self._client.describe_stacks, StackName=name_or_id
        )
        stacks = response.get("Stacks") or []
        if len(stacks) != 1:
            raise StackNotFoundError(name_or_id)
        return dict(stacks[0])

    async def find_stack(self, name_or_id: str) -> dict[str, Any] | None:
        """Describe a stack, returning None when it does not exist."""
        try:
            return await self.describe_stack(name_or_id)
        except StackNotFoundError:
            return None

    async def list_stack_resources(self, name_or_id: str) -> list[StackResource]:
        """List every resource of a stack, following NextToken to exhaustion."""
        resources: list[StackResource] = []
        next_token: str | None = None

        for _ in range(MAX_RESOURCE_PAGES):
            kwargs: dict[str, Any] = {"StackName": name_or_id}
            if next_token:
                kwargs["NextToken"] = next_token
            response = await self._call(
                "ListStackResources", name_or_id, self._client.list_stack_resources, **kwargs
            )

            for summary in response.get("StackResourceSummaries") or []:
                resources.append(
                    StackResource(
                        logical_id=summary["LogicalResourceId"],
                        physical_id=summary.get("PhysicalResourceId") or "",
                        type=summary["ResourceType"],
                        status=str(summary["ResourceStatus"]),
                        status_reason=summary.get("ResourceStatusReason") or "",
                    )
                )

            next_token = response.get("NextToken")
            if not next_token:
                return resources

        raise StackProviderError(
            f"ListStackResources for {name_or_id} exceeded {MAX_RESOURCE_PAGES} pages"
        )

    async def _call(
        self, operation: str, stack: str, method: Callable[..., T], **kwargs: Any
    ) -> T:
        """Run one SDK call with timeout, throttling retry and error mapping.

        Each attempt is bounded by ``request_timeout_seconds``. Throttled
        retries together are bounded by ``throttle_deadline_seconds``, after
        which the throttling error is raised as a StackProviderError.
        """
        loop = asyncio.get_running_loop()
        backoff = Backoff(self._config.throttle_backoff)
        deadline = loop.time() + self._config.throttle_deadline_seconds

        while True:
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(method, **kwargs)),
                    timeout=self._config.request_timeout_seconds,
                )
            except ClientError as e:
                if is_throttling_error(e):
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise StackProviderError(
                            f"{operation} for {stack} still throttled after "
                            f"{backoff.attempt + 1} attempts",
                            code="Throttling",
                        ) from e
                    delay = min(backoff.duration(), remaining)
                    logger.warning(
                        "Rate limited by AWS, retrying after backoff",
                        extra={
                            "operation": operation,
                            "stack": stack,
                            "attempt": backoff.attempt,
                            "wait_seconds": round(delay, 3),
                        },
                    )
                    await self._sleep(delay)
                    continue
                if is_not_found_error(e):
                    raise StackNotFoundError(stack) from e
                raise StackProviderError(
                    f"{operation} failed for {stack}: {_error_message(e)}",
                    code=_error_code(e),
                ) from e
            except BotoCoreError as e:
                raise StackProviderError(f"{operation} failed for {stack}: {e}") from e
            except TimeoutError:
                logger.error(
                    f"{operation} timed out",
                    extra={
                        "stack": stack,
                        "timeout_seconds": self._config.request_timeout_seconds,
                    },
                )
                raise


def stack_outputs(stack: dict[str, Any]) -> dict[str, str]:
    """Flatten a stack description's Outputs into a mapping."""
    return {
        str(output["OutputKey"]): str(output.get("OutputValue", ""))
        for output in stack.get("Outputs") or []
        if output.get("OutputKey")
    }


def stack_tags(stack: dict[str, Any]) -> dict[str, str]:
    """Flatten a stack description's Tags into a mapping."""
    return {str(tag["Key"]): str(tag.get("Value", "")) for tag in stack.get("Tags") or []}


def stack_timestamp(stack: dict[str, Any], field_name: str) -> datetime | None:
    """Read CreationTime/LastUpdatedTime from a stack description."""
    value = stack.get(field_name)
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
