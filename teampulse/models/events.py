"""
Event source data models.

These records are owned by the surrounding application (check-in, shoutout
and vacation write paths). The aggregation engine only reads them. The
``ActivityEvent`` model is the uniform view the watermark sweep uses to find
which entity-days changed since the last pass.
"""

from datetime import date, datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from teampulse.utils.timeutils import ensure_utc, utc_now

from .enums import EventKind


class CheckinRecord(BaseModel):
    """
    Weekly check-in submitted by a user, optionally reviewed by a manager.

    Attributes:
        checkin_id: Unique check-in identifier
        organization_id: Owning organization
        user_id: Submitting user
        week_of: Any instant inside the week the check-in covers
        overall_mood: Mood rating (1-5)
        is_complete: Only complete check-ins count toward metrics
        created_at: When the check-in row was written; drives bucketing
        submitted_at: When the user submitted it
        due_date: Submission deadline
        submitted_on_time: Whether submission met the deadline
        review_due_date: Review deadline
        reviewed_by: Reviewer user id, once reviewed
        reviewed_at: Review timestamp, once reviewed
        reviewed_on_time: Whether the review met the deadline
    """

    checkin_id: str = Field(default_factory=lambda: str(uuid4()))
    organization_id: str
    user_id: str
    week_of: datetime
    overall_mood: int = Field(ge=1, le=5)
    is_complete: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    submitted_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    submitted_on_time: bool = False
    review_due_date: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    reviewed_on_time: bool = False

    @field_validator(
        "week_of",
        "created_at",
        "submitted_at",
        "due_date",
        "review_due_date",
        "reviewed_at",
    )
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Store every timestamp as aware UTC."""
        return ensure_utc(v) if v is not None else None


class ShoutoutRecord(BaseModel):
    """Recognition sent from one user to another."""

    shoutout_id: str = Field(default_factory=lambda: str(uuid4()))
    organization_id: str
    from_user_id: str
    to_user_id: str
    is_public: bool = True
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class VacationRecord(BaseModel):
    """A user's declared vacation week. ``week_of`` is the normalized week start."""

    organization_id: str
    user_id: str
    week_of: datetime
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("week_of", "created_at")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class ActivityEvent(BaseModel):
    """
    Uniform view over the event source used for watermarking.

    ``occurred_at`` drives the watermark; ``bucket_date`` is the UTC day the
    event folds into. They differ for reviews, which roll up under the
    reviewer on the reviewed check-in's creation day.
    """

    organization_id: str
    user_id: str
    team_id: Optional[str] = None
    occurred_at: datetime
    kind: EventKind
    bucket_date: date
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("occurred_at")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)
