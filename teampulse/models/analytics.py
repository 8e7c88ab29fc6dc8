"""
Analytics query options and result models.

Options are validated up front so malformed requests fail fast with a
descriptive error instead of silently defaulting. ``fingerprint()`` gives the
canonical serialization used in cache keys: semantically identical options
always produce the same string.
"""

import json
from datetime import date, datetime, time, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from teampulse.utils.timeutils import ensure_utc

from .enums import Direction, Period, Scope, Visibility


class AnalyticsQueryOptions(BaseModel):
    """
    Shape of an analytics request.

    Attributes:
        scope: Population to aggregate (organization, team, user)
        entity_id: Team or user id; required for team and user scope
        period: Grouping granularity; None means daily rows for pulse and
            shoutouts and a single ungrouped row for compliance
        from_: Inclusive window start (alias "from")
        to: Inclusive window end
        direction: Shoutout direction filter
        visibility: Shoutout visibility filter
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")

    scope: Scope = Scope.ORGANIZATION
    entity_id: Optional[str] = None
    period: Optional[Period] = None
    from_: Optional[datetime] = Field(default=None, alias="from")
    to: Optional[datetime] = None
    direction: Direction = Direction.ALL
    visibility: Visibility = Visibility.ALL

    @field_validator("from_", "to", mode="before")
    @classmethod
    def coerce_dates(cls, v):
        """Accept plain dates (and YYYY-MM-DD strings) as midnight UTC."""
        if isinstance(v, str) and len(v) == 10:
            try:
                v = date.fromisoformat(v)
            except ValueError:
                return v
        if isinstance(v, date) and not isinstance(v, datetime):
            return datetime.combine(v, time.min, tzinfo=timezone.utc)
        return v

    @field_validator("from_", "to")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_scope_and_window(self) -> "AnalyticsQueryOptions":
        if self.scope in (Scope.TEAM, Scope.USER) and not self.entity_id:
            raise ValueError(f"entity_id is required for {self.scope.value} scope")
        if self.from_ and self.to and self.from_ > self.to:
            raise ValueError("from must not be after to")
        return self

    def fingerprint(self) -> str:
        """Canonical JSON of the options with sorted keys."""
        return json.dumps(self.model_dump(mode="json"), sort_keys=True)


class PulseMetricsResult(BaseModel):
    """Average mood and check-in volume for one period."""

    period_start: date
    avg_mood: float
    checkin_count: int


class ShoutoutMetricsResult(BaseModel):
    """Shoutout count for one period."""

    period_start: date
    count: int


class ComplianceMetrics(BaseModel):
    """
    Vacation-aware compliance rates.

    ``average_days_early`` and ``average_days_late`` are None when there is
    not enough data, which callers must not read as zero.
    """

    total_count: int = 0
    on_time_count: int = 0
    on_time_percentage: float = 0.0
    average_days_early: Optional[float] = None
    average_days_late: Optional[float] = None
    vacation_weeks: Optional[int] = None


class ComplianceMetricsResult(BaseModel):
    """Compliance metrics for one period, or for the whole window when ungrouped."""

    period_start: Optional[date] = None
    metrics: ComplianceMetrics
