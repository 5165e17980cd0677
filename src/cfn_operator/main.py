"""Main entry point for the CloudFormation Stack Operator.

The operator runs standalone: Stack manifests are read from SPECS_DIR into an
in-memory resource store, and the directory is re-read on every resync
interval. Removing a manifest deletes its stack; the object stays in the store
behind its finalizer until CloudFormation reports DELETE_COMPLETE.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .controller import Controller
from .provider import StackProvider
from .session import create_cloudformation_client
from .spec_loader import SpecLoadError, apply_manifests, load_manifests
from .store import InMemoryStore

# LogRecord attributes that are not user-supplied ``extra`` fields
_RESERVED_LOG_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
})


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    for name in ("boto3", "botocore", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def sync_manifests(
    config: Config, store: InMemoryStore, shutdown_event: asyncio.Event
) -> None:
    """Re-apply SPECS_DIR to the store on every resync interval.

    A directory that fails to load is skipped for that round; objects are
    never deleted because of a broken manifest.
    """
    logger = logging.getLogger(__name__)
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(
                shutdown_event.wait(), timeout=config.resync_interval_seconds
            )
        except TimeoutError:
            try:
                manifests = load_manifests(config.specs_dir, config.namespace)
            except SpecLoadError as e:
                logger.error(
                    "Manifest reload failed, keeping current objects",
                    extra={"error": str(e), "specs_dir": str(config.specs_dir)},
                )
                continue
            apply_manifests(store, manifests, config.namespace)


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting CloudFormation Stack Operator",
        extra={
            "region": config.region,
            "namespace": config.namespace or "*",
            "specs_dir": str(config.specs_dir),
            "assume_role": bool(config.assume_role_arn),
            "dry_run": config.dry_run,
        },
    )

    store = InMemoryStore()
    try:
        manifests = load_manifests(config.specs_dir, config.namespace)
    except SpecLoadError as e:
        # Manifest loading/validation failed - user configuration error
        logger.error(
            "Manifest loading failed",
            extra={"error": str(e), "specs_dir": str(config.specs_dir)},
        )
        return 1
    apply_manifests(store, manifests, config.namespace)

    try:
        client = create_cloudformation_client(config)
    except Exception as e:
        logger.error(
            "Failed to create CloudFormation client",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    controller = Controller(config, store, StackProvider(client, config))
    shutdown_event = asyncio.Event()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        shutdown_event.set()
        controller.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    manifest_task = asyncio.create_task(sync_manifests(config, store, shutdown_event))
    try:
        await controller.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        shutdown_event.set()
        await manifest_task

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
