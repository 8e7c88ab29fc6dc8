"""
Structured logging configuration using structlog.

The HTTP middleware binds a request id and the engine binds the organization
being swept or recomputed, so every event emitted underneath carries that
context without passing it through each call.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from structlog.types import EventDict, Processor

from teampulse.config import Settings, get_settings

SERVICE_NAME = "teampulse-analytics"

# Chatty third-party loggers kept at WARNING unless debug is on.
_NOISY_LOGGERS = ("uvicorn.access", "httpx")


def add_severity(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add severity level for structured logging."""
    event_dict["severity"] = method_name.upper()
    return event_dict


def add_service(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure stdlib logging and the structlog processor chain.

    JSON lines in production, the console renderer in development and tests.

    Args:
        settings: Settings to read log level and format from (defaults to get_settings())
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    if not settings.debug:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if settings.log_format == "json" and not settings.dev_mode:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=not settings.testing)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_severity,
            add_service,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def organization_context(organization_id: str, **extra: Any) -> Iterator[None]:
    """
    Bind ``organization_id`` (plus any extra keys) to every log event emitted
    in the block on the current thread.

    Example:
        >>> with organization_context("org-1", mode="sweep"):
        ...     logger.info("sweep_organization_started")
    """
    with structlog.contextvars.bound_contextvars(organization_id=organization_id, **extra):
        yield


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance, typically named after the calling module."""
    return structlog.get_logger(name)
