"""
Daily rollup (bucket) and watermark models.

One row per (organization, user, UTC day) per metric family. A row exists
only while at least one of its counts is non-zero; recomputation deletes and
reinserts rows instead of zeroing them.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from teampulse.utils.timeutils import ensure_utc


class _DailyBucket(BaseModel):
    """Key and bookkeeping fields shared by every bucket family."""

    organization_id: str
    user_id: str
    team_id: Optional[str] = None
    bucket_date: date
    updated_at: datetime = Field(
        description="Latest source timestamp that contributed to this row"
    )

    @field_validator("updated_at")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class PulseBucket(_DailyBucket):
    """Mood sum and completed check-in count for one entity-day."""

    mood_sum: int = Field(default=0, ge=0)
    checkin_count: int = Field(default=0, ge=0)

    def has_activity(self) -> bool:
        return self.checkin_count > 0


class RecognitionBucket(_DailyBucket):
    """Shoutouts received (split by visibility) and given for one entity-day."""

    received_count: int = Field(default=0, ge=0)
    given_count: int = Field(default=0, ge=0)
    public_count: int = Field(default=0, ge=0)
    private_count: int = Field(default=0, ge=0)

    def has_activity(self) -> bool:
        return self.received_count > 0 or self.given_count > 0


class ComplianceBucket(_DailyBucket):
    """
    Vacation-aware submission and review compliance counts.

    ``*_due_count`` excludes vacation weeks; ``*_on_time_count`` includes
    every on-time sample regardless of vacation.
    """

    checkin_due_count: int = Field(default=0, ge=0)
    checkin_on_time_count: int = Field(default=0, ge=0)
    review_due_count: int = Field(default=0, ge=0)
    review_on_time_count: int = Field(default=0, ge=0)

    def has_activity(self) -> bool:
        return (
            self.checkin_due_count > 0
            or self.checkin_on_time_count > 0
            or self.review_due_count > 0
            or self.review_on_time_count > 0
        )


class Watermark(BaseModel):
    """Timestamp up to which an organization's events are folded into buckets."""

    organization_id: str
    last_processed_at: datetime
    updated_at: Optional[datetime] = None

    @field_validator("last_processed_at", "updated_at")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None


@dataclass
class EntityDayBuckets:
    """Outcome of recomputing one entity-day. ``None`` means the row is absent."""

    organization_id: str
    user_id: str
    bucket_date: date
    pulse: Optional[PulseBucket] = None
    recognition: Optional[RecognitionBucket] = None
    compliance: Optional[ComplianceBucket] = None

    @property
    def rows_written(self) -> int:
        return sum(1 for b in (self.pulse, self.recognition, self.compliance) if b is not None)


@dataclass
class SweepReport:
    """Summary of one periodic sweep pass."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    organizations_processed: int = 0
    entity_days_recomputed: int = 0
    failed_organizations: list[str] = field(default_factory=list)
    watermarks: dict[str, datetime] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "organizations_processed": self.organizations_processed,
            "entity_days_recomputed": self.entity_days_recomputed,
            "failed_organizations": list(self.failed_organizations),
            "watermarks": {org: ts.isoformat() for org, ts in self.watermarks.items()},
        }


@dataclass
class BackfillReport:
    """Summary of an operator-invoked backfill."""

    organization_id: str
    from_date: datetime
    to_date: datetime
    entity_days_recomputed: int = 0
    batches: int = 0

    def to_dict(self) -> dict:
        return {
            "organization_id": self.organization_id,
            "from_date": self.from_date.isoformat(),
            "to_date": self.to_date.isoformat(),
            "entity_days_recomputed": self.entity_days_recomputed,
            "batches": self.batches,
        }
