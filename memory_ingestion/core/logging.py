"""Logging configuration for the ingestion service."""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.stdlib import LoggerFactory

from .config import Settings, get_settings


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Setup structured logging configuration."""
    settings = settings or get_settings()

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
            structlog.processors.JSONRenderer() if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    log_path = settings.log_path
    if log_path is None:
        return

    # Persistent log file alongside stdout
    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(logging.DEBUG)

    if settings.log_format == "json":
        formatter = logging.Formatter('%(message)s')
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    file_handler.setFormatter(formatter)
    logging.getLogger().addHandler(file_handler)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class JobLogger:
    """Specialized logger for ingestion job processing."""

    def __init__(self, job_id: str, source_kind: str, resource_id: str, attempt: int = 0):
        self.logger = get_logger("job_processor")
        self.context = {
            "job_id": job_id,
            "source_kind": source_kind,
            "resource_id": resource_id,
            "attempt": attempt,
        }

    def info(self, message: str, **kwargs: Any) -> None:
        """Log info message with job context."""
        self.logger.info(message, **self.context, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log error message with job context."""
        self.logger.error(message, **self.context, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log warning message with job context."""
        self.logger.warning(message, **self.context, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message with job context."""
        self.logger.debug(message, **self.context, **kwargs)
