"""
Runtime settings for the TeamPulse analytics service.

Values come from the environment or a local .env file; every field below
maps to an upper-cased variable of the same name (DB_PATH, USE_ROLLUPS, ...).
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Storage, API, rollup and sweep settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    db_path: str = Field(default="./data/teampulse.duckdb", description="DuckDB file path")

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_reload: bool = Field(default=False, description="Enable hot reload")
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)",
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_format: str = Field(default="json", description="Log format (json|console)")

    # Feature Flags
    use_rollups: bool = Field(
        default=True, description="Serve analytics from daily rollups when fresh enough"
    )
    enable_shadow_reads: bool = Field(
        default=False, description="Also run the other read path and log divergence"
    )
    sweep_enabled: bool = Field(
        default=True, description="Start the periodic watermark sweep on startup"
    )

    # Aggregation Engine
    sweep_interval_minutes: int = Field(
        default=15, ge=1, le=1440, description="Periodic sweep interval"
    )
    activity_lookback_hours: int = Field(
        default=24, ge=1, description="Window used to find organizations with recent activity"
    )
    watermark_seed_days: int = Field(
        default=7, ge=0, description="Initial watermark offset for new organizations"
    )
    backfill_batch_size: int = Field(
        default=100, ge=1, le=10000, description="Entity-days processed per backfill batch"
    )
    recompute_queue_size: int = Field(
        default=1000, ge=1, description="Capacity of the write-triggered recompute queue"
    )

    # Query Router & Cache
    freshness_threshold_days: int = Field(
        default=7, ge=0, description="Windows older than this are served from rollups"
    )
    cache_ttl_stable_minutes: int = Field(
        default=30, ge=0, description="Cache TTL for windows older than the freshness threshold"
    )
    cache_ttl_recent_minutes: int = Field(
        default=5, ge=0, description="Cache TTL for raw-backed or recent windows"
    )
    cache_max_entries: int = Field(
        default=1024, ge=1, description="Cached query results kept before LRU eviction"
    )

    # Vacation weeks
    week_start_day: int = Field(
        default=5, ge=0, le=6, description="Weekday a vacation week starts on (Monday=0)"
    )
    week_timezone: str = Field(
        default="America/Chicago", description="Timezone used to normalize vacation weeks"
    )

    # Development
    dev_mode: bool = Field(default=True, description="Development mode")
    debug: bool = Field(default=False, description="Debug mode")
    testing: bool = Field(default=False, description="Testing mode")

    @field_validator("cors_origins")
    @classmethod
    def parse_cors_origins(cls, v: str) -> List[str]:
        """Split the comma-separated origin list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("week_timezone")
    @classmethod
    def validate_week_timezone(cls, v: str) -> str:
        """Reject timezone names zoneinfo cannot resolve."""
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings()
