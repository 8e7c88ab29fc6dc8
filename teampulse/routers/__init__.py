"""API routers for all endpoints."""

from teampulse.routers import aggregation, analytics

__all__ = [
    "aggregation",
    "analytics",
]
