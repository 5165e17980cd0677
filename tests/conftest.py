"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from aws_mock import MockCloudFormationClient  # noqa: E402

from cfn_operator.config import BackoffPolicy, Config  # noqa: E402
from cfn_operator.provider import StackProvider  # noqa: E402
from cfn_operator.store import InMemoryStore  # noqa: E402


@pytest.fixture
def config() -> Config:
    """Config with no throttling delay and short timeouts."""
    return Config(
        region="us-east-1",
        request_timeout_seconds=5.0,
        sync_timeout_seconds=5.0,
        throttle_backoff=BackoffPolicy(min_seconds=0.0, max_seconds=0.0, factor=1.0),
    )


@pytest.fixture
def cfn() -> MockCloudFormationClient:
    return MockCloudFormationClient()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def provider(cfn: MockCloudFormationClient, config: Config) -> StackProvider:
    return StackProvider(cfn, config)
