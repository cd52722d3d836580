"""
Structured Logging with Structlog.

Provides JSON-formatted logs with context for every coordinator operation.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from purchase_helper.config import Settings, settings as default_settings


def _app_context_processor(config: Settings) -> Processor:
    def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        """Add service-level context to all log entries."""
        event_dict["service"] = config.service_name
        event_dict["version"] = config.service_version
        return event_dict

    return add_app_context


def setup_logging(config: Settings | None = None) -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "fetch_products_completed",
        "level": "info",
        "timestamp": "2025-01-08T12:00:00.123456Z",
        "logger": "purchase_helper.services.purchase_coordinator",
        "service": "purchase-helper",
        "version": "0.1.0",
        ...additional context
    }
    """
    config = config or default_settings

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, config.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _app_context_processor(config),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    # Add exception info
    if config.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    # Choose renderer based on format
    if config.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("purchase_completed", product_id=product_id)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Context manager for adding structured logging context.

    Usage:
        with log_context(coordinator_id="main", screen="paywall"):
            await coordinator.fetch_and_sync()
            # All logs within this context include coordinator_id and screen
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        """Enter context - bind context variables."""
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit context - clear context variables."""
        structlog.contextvars.unbind_contextvars(*self.context.keys())
