"""Main entry point for the infrastructure reconciler.

One run loads the desired state, reconciles every declared resource kind
concurrently against AWS, and exits. There is no watch loop: running again
is how drift is corrected.

Exit codes:
    0: every declared kind converged, was created, updated, scaled or had
       its update rejected by the operator
    1: configuration or spec error, or at least one kind failed
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime

from .approval import ApprovalGate, TerminalApproval, auto_approve
from .aws import AwsGateway
from .config import Config, ConfigurationError
from .coordinator import Coordinator, RunReport
from .reconciler import Reconciler
from .spec_loader import SpecLoadError, load_infra

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
    {
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
    }
)


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
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(config: Config | None = None) -> None:
    """Configure logging: JSON on stdout by default, plain text on request."""
    json_logs = config.json_logs if config is not None else True
    level = config.log_level_value if config is not None else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    for noisy in ("boto3", "botocore", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


async def reconcile_once(config: Config) -> RunReport:
    """Load the desired state and run one reconciliation over it.

    Raises:
        SpecLoadError: If the desired state cannot be loaded.
    """
    infra = load_infra(config.spec_path, config.variables_path)

    callback = auto_approve if config.auto_approve else TerminalApproval()
    reconciler = Reconciler(
        gateway=AwsGateway.for_region(infra.region),
        approval_gate=ApprovalGate(callback),
        retry_policy=config.retry,
    )
    return await Coordinator(reconciler).run(infra)


async def main() -> int:
    """Run the reconciler with configuration from the environment.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config)
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting infrastructure reconciler",
        extra={
            "spec_path": str(config.spec_path),
            "variables_path": str(config.variables_path),
            "retry_attempts": config.retry.attempts,
            "retry_delay_seconds": config.retry.delay_seconds,
            "auto_approve": config.auto_approve,
        },
    )

    try:
        report = await reconcile_once(config)
    except SpecLoadError as e:
        # Spec loading/validation failed - user configuration error
        logger.error(
            "Spec loading failed",
            extra={"error": str(e), "spec_path": str(config.spec_path)},
        )
        return 1
    except Exception as e:
        # Unexpected error - log with full traceback for debugging
        logger.exception("Reconciler failed unexpectedly", extra={"error": str(e)})
        return 1

    return report.exit_code


def run() -> None:
    """Entry point for environment-configured runs."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
