"""
Logging configuration for Kube ECR Refresher
"""

import logging
import sys
from typing import Any, Dict, Optional
import structlog
from colorama import init as colorama_init

from kube_ecr_refresher import __version__

# Initialize colorama for cross-platform colored output
colorama_init()

# Client libraries that are chatty at INFO/DEBUG
_NOISY_LOGGERS = ("kubernetes", "urllib3", "botocore", "boto3")


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Setup structured logging for the application"""

    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_format == "json"
            else structlog.dev.ConsoleRenderer(colors=True)
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
        force=True,
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance"""
    return structlog.get_logger(name)


class CycleLogger:
    """Specialized logger for reconciliation cycles"""

    def __init__(self):
        self.logger = get_logger("kube-ecr-refresher")

    def log_startup(self, config_dict: Dict[str, Any]) -> None:
        """Log application startup"""
        self.logger.info(
            "Kube ECR Refresher starting up",
            version=__version__,
            config=config_dict
        )

    def log_cycle_start(self, cycle_id: int, selector: str) -> None:
        """Log the start of a reconciliation cycle"""
        self.logger.info(
            "Starting secret reconciliation cycle",
            cycle_id=cycle_id,
            selector=selector or "<all>"
        )

    def log_cycle_skipped(self, cycle_id: int, reason: str) -> None:
        self.logger.warning(
            "Secret reconciliation cycle skipped",
            cycle_id=cycle_id,
            reason=reason
        )

    def log_cycle_end(self, cycle_id: int, summary: Dict[str, Any],
                      duration_seconds: float) -> None:
        """Log the end of a reconciliation cycle"""
        self.logger.info(
            "Secret reconciliation cycle completed",
            cycle_id=cycle_id,
            duration_seconds=round(duration_seconds, 3),
            **summary
        )

    def log_error(self, error: Exception, context: Optional[str] = None) -> None:
        """Log errors with context"""
        self.logger.error(
            "Error occurred",
            error=str(error),
            error_type=type(error).__name__,
            context=context,
            exc_info=True
        )
