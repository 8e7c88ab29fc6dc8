"""
Data storage layer.

Event source: check-ins, shoutouts, vacations, users and teams
Bucket store: daily pulse, recognition and compliance rollups plus watermarks

All storage uses DuckDB.
"""

from functools import lru_cache

from teampulse.config import get_settings

from .base import StorageBackend, StorageError
from .duckdb_storage import DuckDBStorage


@lru_cache
def get_storage() -> StorageBackend:
    """
    Get cached storage backend instance (singleton).

    Returns:
        StorageBackend implementation instance
    """
    settings = get_settings()
    return DuckDBStorage(db_path=settings.db_path)


__all__ = [
    "StorageBackend",
    "StorageError",
    "DuckDBStorage",
    "get_storage",
]
