"""Utility modules for logging, request tracing, and time helpers."""

from teampulse.utils.logging import configure_logging, get_logger, organization_context

__all__ = ["configure_logging", "get_logger", "organization_context"]
