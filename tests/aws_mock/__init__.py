"""AWS CloudFormation Mock for Integration Testing.

This module provides a mock implementation of the CloudFormation API that
enables testing the operator without AWS connectivity.

Key Features:
- In-memory stacks addressable by name or stack ID
- Scripted status transitions (IN_PROGRESS -> COMPLETE/FAILED)
- Paginated ListStackResources
- Error injection (throttling, arbitrary ClientErrors) per operation
- Call log for asserting which provider calls were made

Usage:
    from aws_mock import MockCloudFormationClient

    client = MockCloudFormationClient()
    provider = StackProvider(client, config)
    ...
    client.complete("my-stack")
    assert client.mutating_calls == 1
"""

from .cloudformation import (
    DEFAULT_ACCOUNT_ID,
    DEFAULT_REGION,
    MockCloudFormationClient,
    MockStack,
    client_error,
)

__all__ = [
    "DEFAULT_ACCOUNT_ID",
    "DEFAULT_REGION",
    "MockCloudFormationClient",
    "MockStack",
    "client_error",
]
