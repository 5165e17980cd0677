"""Configuration management with validation.

All settings are loaded once at startup and passed by reference into the
reconciler, the state machine and the follower. Nothing in the operator reads
configuration from module-level globals.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_FOLLOWER_INTERVAL_SECONDS = 5.0
MIN_FOLLOWER_INTERVAL_SECONDS = 1.0
MAX_FOLLOWER_INTERVAL_SECONDS = 300.0

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
DEFAULT_SYNC_TIMEOUT_SECONDS = 60.0

# Full re-list of desired objects (and manifest reload when run standalone)
DEFAULT_RESYNC_INTERVAL_SECONDS = 300.0

DEFAULT_MAX_CONCURRENT_RECONCILES = 4
MAX_CONCURRENT_RECONCILES = 64

DEFAULT_SUBMISSION_QUEUE_SIZE = 256

# Throttling backoff (Min 1s, Max 2min, Factor 3, jittered)
DEFAULT_THROTTLE_BACKOFF_MIN_SECONDS = 1.0
DEFAULT_THROTTLE_BACKOFF_MAX_SECONDS = 120.0
DEFAULT_THROTTLE_BACKOFF_FACTOR = 3.0
# Total time one provider call may spend retrying throttled attempts
DEFAULT_THROTTLE_DEADLINE_SECONDS = 300.0

# Requeue backoff for failed reconciles
DEFAULT_REQUEUE_BASE_SECONDS = 0.5
DEFAULT_REQUEUE_MAX_SECONDS = 300.0

# Security constraints - enforced limits to prevent abuse
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file
MAX_TEMPLATE_BODY_BYTES = 51200  # CloudFormation TemplateBody limit
MAX_STACK_NAME_LENGTH = 128
MAX_TAGS_PER_STACK = 50

VALID_CAPABILITIES: frozenset[str] = frozenset({
    "CAPABILITY_IAM",
    "CAPABILITY_NAMED_IAM",
    "CAPABILITY_AUTO_EXPAND",
})

# Input validation patterns
VALID_REGION_PATTERN = r"^[a-z]{2}(-gov|-iso[a-z]?)?-[a-z]+-\d$"
VALID_ROLE_ARN_PATTERN = r"^arn:aws[a-z-]*:iam::\d{12}:role/[\w+=,.@/-]+$"
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"


def parse_tag_string(value: str) -> dict[str, str]:
    """Parse a ``KEY=VALUE,KEY2=VALUE2`` string into a mapping.

    Later occurrences of the same key win, matching repeated ``--tag`` flags.

    Raises:
        ConfigurationError: If an entry is not of the form KEY=VALUE.
    """
    tags: dict[str, str] = {}
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        key, sep, tag_value = entry.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"expected KEY=VALUE got '{entry}'")
        tags[key.strip()] = tag_value.strip()
    return tags


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with jitter.

    The n-th delay is ``min_seconds * factor ** n`` capped at ``max_seconds``.
    With jitter enabled the delay is drawn uniformly between ``min_seconds``
    and that value.
    """

    min_seconds: float = DEFAULT_THROTTLE_BACKOFF_MIN_SECONDS
    max_seconds: float = DEFAULT_THROTTLE_BACKOFF_MAX_SECONDS
    factor: float = DEFAULT_THROTTLE_BACKOFF_FACTOR
    jitter: bool = True


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    region: str

    # Credentials
    assume_role_arn: str | None = None

    # Stack defaults applied to every managed stack
    default_tags: dict[str, str] = field(default_factory=dict)
    default_capabilities: tuple[str, ...] = ()

    # Scope
    namespace: str | None = None  # None watches every namespace
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))

    # Timing
    follower_interval_seconds: float = DEFAULT_FOLLOWER_INTERVAL_SECONDS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    sync_timeout_seconds: float = DEFAULT_SYNC_TIMEOUT_SECONDS
    resync_interval_seconds: float = DEFAULT_RESYNC_INTERVAL_SECONDS
    requeue_base_seconds: float = DEFAULT_REQUEUE_BASE_SECONDS
    requeue_max_seconds: float = DEFAULT_REQUEUE_MAX_SECONDS

    # Concurrency
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES
    submission_queue_size: int = DEFAULT_SUBMISSION_QUEUE_SIZE

    # Behavior
    dry_run: bool = False
    sync_resources: bool = True
    throttle_backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    throttle_deadline_seconds: float = DEFAULT_THROTTLE_DEADLINE_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        SECURITY: All inputs are validated at the boundary (fail-fast).
        """
        errors: list[str] = []

        if not self.region:
            errors.append("AWS_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.region}")

        if self.assume_role_arn and not re.match(VALID_ROLE_ARN_PATTERN, self.assume_role_arn):
            errors.append(f"ASSUME_ROLE_ARN must be an IAM role ARN: {self.assume_role_arn}")

        if self.namespace is not None and not re.match(VALID_NAMESPACE_PATTERN, self.namespace):
            errors.append(f"WATCH_NAMESPACE is not a valid namespace name: {self.namespace}")

        unknown = sorted(set(self.default_capabilities) - VALID_CAPABILITIES)
        if unknown:
            errors.append(
                f"DEFAULT_CAPABILITIES contains unknown values {unknown}; "
                f"valid values are {sorted(VALID_CAPABILITIES)}"
            )

        # Ownership and owner-reference tags take two of the provider's slots
        if len(self.default_tags) > MAX_TAGS_PER_STACK - 2:
            errors.append(f"DEFAULT_TAGS exceeds maximum of {MAX_TAGS_PER_STACK - 2} tags")

        # Timing validation
        if not (
            MIN_FOLLOWER_INTERVAL_SECONDS
            <= self.follower_interval_seconds
            <= MAX_FOLLOWER_INTERVAL_SECONDS
        ):
            errors.append(
                f"FOLLOWER_INTERVAL must be between {MIN_FOLLOWER_INTERVAL_SECONDS} "
                f"and {MAX_FOLLOWER_INTERVAL_SECONDS} seconds"
            )

        if self.request_timeout_seconds <= 0:
            errors.append("REQUEST_TIMEOUT must be positive")

        if self.sync_timeout_seconds < self.request_timeout_seconds:
            errors.append("SYNC_TIMEOUT must be at least REQUEST_TIMEOUT")

        if self.resync_interval_seconds <= 0:
            errors.append("RESYNC_INTERVAL must be positive")

        if self.requeue_base_seconds <= 0 or self.requeue_max_seconds < self.requeue_base_seconds:
            errors.append("requeue backoff must satisfy 0 < base <= max")

        # Concurrency validation
        if not 1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES:
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES}"
            )

        if self.submission_queue_size < 1:
            errors.append("SUBMISSION_QUEUE_SIZE must be at least 1")

        backoff = self.throttle_backoff
        if backoff.min_seconds < 0 or backoff.max_seconds < backoff.min_seconds:
            errors.append("THROTTLE_BACKOFF_MIN/MAX must satisfy 0 <= min <= max")
        if backoff.factor < 1:
            errors.append("THROTTLE_BACKOFF_FACTOR must be at least 1")
        if self.throttle_deadline_seconds <= 0:
            errors.append("THROTTLE_DEADLINE must be positive")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AWS_REGION: Region of the managed stacks (AWS_DEFAULT_REGION is a fallback)
            ASSUME_ROLE_ARN: Optional role to assume, e.g. for stacks in another account
            DEFAULT_TAGS: Tags applied to every stack, "key=value,key2=value2"
            DEFAULT_CAPABILITIES: Comma separated capabilities, e.g. CAPABILITY_IAM
            DRY_RUN: If "true", log intended provider calls without issuing them
            WATCH_NAMESPACE: Only reconcile stacks in this namespace (default: all)
            SPECS_DIR: Directory of Stack manifests (default: /specs)
            FOLLOWER_INTERVAL: Seconds between follower sweeps (default: 5)
            REQUEST_TIMEOUT: Timeout for a single provider call (default: 30)
            SYNC_TIMEOUT: Timeout for one stack's sync in a sweep (default: 60)
            RESYNC_INTERVAL: Seconds between full re-lists of Stack objects (default: 300)
            MAX_CONCURRENT_RECONCILES: Parallel reconcile workers (default: 4)
            SUBMISSION_QUEUE_SIZE: Follower submission queue bound (default: 256)
            SYNC_RESOURCES: If "false", skip ListStackResources on sync (default: true)
            THROTTLE_BACKOFF_MIN / THROTTLE_BACKOFF_MAX / THROTTLE_BACKOFF_FACTOR:
                Throttling retry policy (default: 1 / 120 / 3)
            THROTTLE_DEADLINE: Seconds one provider call may keep retrying throttled
                attempts before failing (default: 300)
        """

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        capabilities = tuple(
            c.strip() for c in os.environ.get("DEFAULT_CAPABILITIES", "").split(",") if c.strip()
        )

        return cls(
            region=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION", ""),
            assume_role_arn=os.environ.get("ASSUME_ROLE_ARN") or None,
            default_tags=parse_tag_string(os.environ.get("DEFAULT_TAGS", "")),
            default_capabilities=capabilities,
            namespace=os.environ.get("WATCH_NAMESPACE") or None,
            specs_dir=Path(os.environ.get("SPECS_DIR", "/specs")),
            follower_interval_seconds=get_float(
                "FOLLOWER_INTERVAL", DEFAULT_FOLLOWER_INTERVAL_SECONDS
            ),
            request_timeout_seconds=get_float("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            sync_timeout_seconds=get_float("SYNC_TIMEOUT", DEFAULT_SYNC_TIMEOUT_SECONDS),
            resync_interval_seconds=get_float(
                "RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS
            ),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            submission_queue_size=get_int("SUBMISSION_QUEUE_SIZE", DEFAULT_SUBMISSION_QUEUE_SIZE),
            dry_run=get_bool("DRY_RUN", False),
            sync_resources=get_bool("SYNC_RESOURCES", True),
            throttle_backoff=BackoffPolicy(
                min_seconds=get_float("THROTTLE_BACKOFF_MIN", DEFAULT_THROTTLE_BACKOFF_MIN_SECONDS),
                max_seconds=get_float("THROTTLE_BACKOFF_MAX", DEFAULT_THROTTLE_BACKOFF_MAX_SECONDS),
                factor=get_float("THROTTLE_BACKOFF_FACTOR", DEFAULT_THROTTLE_BACKOFF_FACTOR),
            ),
            throttle_deadline_seconds=get_float(
                "THROTTLE_DEADLINE", DEFAULT_THROTTLE_DEADLINE_SECONDS
            ),
        )
