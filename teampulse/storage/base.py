"""
Abstract storage interface for the TeamPulse analytics engine.

The storage layer has two halves:
- Event source: check-ins, shoutouts, vacations, users and teams. These are
  written by the surrounding application; the engine only reads them. The
  write methods exist so the application (and tests) can populate them
  through the same backend.
- Bucket store: the three daily rollup families and the per-organization
  watermark. Buckets are mutated only through ``replace_entity_day_buckets``,
  which the Bucket Aggregator owns.

All timestamps crossing this interface are timezone-aware UTC datetimes.
Every method raises ``StorageError`` on failure.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Optional

from teampulse.models.buckets import ComplianceBucket, PulseBucket, RecognitionBucket, Watermark
from teampulse.models.events import ActivityEvent, CheckinRecord, ShoutoutRecord, VacationRecord


class StorageError(Exception):
    """Base exception for all storage operation failures."""

    pass


class StorageBackend(ABC):
    """
    Abstract base class for all storage implementations.

    Implementations must be safe to call from several threads (the sweep
    thread, the recompute worker and request handlers) and must apply the
    three bucket-family writes of one entity-day atomically.
    """

    # =========================================================================
    # Event Source - Directory
    # =========================================================================

    @abstractmethod
    def upsert_user(self, organization_id: str, user_id: str, team_id: Optional[str] = None) -> None:
        """Create or update a user's team membership."""
        pass

    @abstractmethod
    def upsert_team(self, organization_id: str, team_id: str, leader_id: Optional[str] = None) -> None:
        """Create or update a team and its leader."""
        pass

    @abstractmethod
    def get_user_team(self, organization_id: str, user_id: str) -> Optional[str]:
        """Return the user's current team id, or None."""
        pass

    @abstractmethod
    def read_team_member_ids(self, organization_id: str, team_id: str) -> set[str]:
        """Return the ids of every user currently on the team."""
        pass

    # =========================================================================
    # Event Source - Records
    # =========================================================================

    @abstractmethod
    def write_checkin(self, checkin: CheckinRecord) -> str:
        """
        Insert or replace a check-in.

        Returns:
            The checkin_id of the written check-in
        """
        pass

    @abstractmethod
    def write_shoutout(self, shoutout: ShoutoutRecord) -> str:
        """
        Insert a shoutout.

        Returns:
            The shoutout_id of the written shoutout
        """
        pass

    @abstractmethod
    def upsert_vacation(self, vacation: VacationRecord) -> VacationRecord:
        """
        Declare a vacation week. ``vacation.week_of`` must already be normalized
        to the week start; declaring the same week twice updates the note.
        """
        pass

    @abstractmethod
    def delete_vacation(self, organization_id: str, user_id: str, week_of: datetime) -> bool:
        """
        Remove a vacation week.

        Returns:
            True if a row was deleted, False if none existed
        """
        pass

    @abstractmethod
    def read_checkins(
        self,
        organization_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        user_id: Optional[str] = None,
        reviewed_by: Optional[str] = None,
        complete_only: bool = True,
        reviewed_only: bool = False,
    ) -> list[CheckinRecord]:
        """
        Read check-ins created in the half-open window [start, end).

        Args:
            organization_id: Organization to read
            start: Optional inclusive lower bound on created_at
            end: Optional exclusive upper bound on created_at
            user_id: Optional filter by submitter
            reviewed_by: Optional filter by reviewer
            complete_only: Only return complete check-ins
            reviewed_only: Only return check-ins with a review timestamp

        Returns:
            Check-ins ordered by created_at
        """
        pass

    @abstractmethod
    def read_shoutouts(
        self,
        organization_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        from_user_id: Optional[str] = None,
        to_user_id: Optional[str] = None,
    ) -> list[ShoutoutRecord]:
        """Read shoutouts created in [start, end), ordered by created_at."""
        pass

    @abstractmethod
    def read_vacation_weeks(
        self,
        organization_id: str,
        user_ids: Optional[list[str]] = None,
        week_start: Optional[datetime] = None,
        week_end: Optional[datetime] = None,
    ) -> set[tuple[str, datetime]]:
        """
        Read declared vacation weeks as (user_id, week_start) pairs.

        Args:
            organization_id: Organization to read
            user_ids: Optional restriction to these users
            week_start: Optional inclusive lower bound on week_of
            week_end: Optional inclusive upper bound on week_of
        """
        pass

    @abstractmethod
    def is_on_vacation(self, organization_id: str, user_id: str, week_of: datetime) -> bool:
        """Point lookup: is the user on vacation in the normalized week?"""
        pass

    @abstractmethod
    def read_compliance_days_for_week(
        self,
        organization_id: str,
        user_id: str,
        week_start: datetime,
        week_end: datetime,
    ) -> list[date]:
        """
        Bucket days holding compliance samples for a user in one week.

        Covers complete check-ins the user submitted and complete check-ins
        the user reviewed whose ``week_of`` falls in [week_start, week_end).

        Returns:
            Distinct UTC creation days, ascending
        """
        pass

    @abstractmethod
    def read_activity_events(
        self,
        organization_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[ActivityEvent]:
        """
        Read the uniform activity view for an organization.

        Args:
            organization_id: Organization to read
            since: Optional inclusive lower bound on occurred_at
            until: Optional inclusive upper bound on occurred_at

        Returns:
            Activity events ordered by occurred_at
        """
        pass

    @abstractmethod
    def read_active_organizations(self, since: datetime) -> list[str]:
        """Organizations with any activity event at or after ``since``."""
        pass

    # =========================================================================
    # Bucket Store
    # =========================================================================

    @abstractmethod
    def replace_entity_day_buckets(
        self,
        organization_id: str,
        user_id: str,
        bucket_date: date,
        pulse: Optional[PulseBucket],
        recognition: Optional[RecognitionBucket],
        compliance: Optional[ComplianceBucket],
    ) -> None:
        """
        Overwrite all three bucket families for one entity-day in one transaction.

        A ``None`` family means the row must not exist afterwards. On failure
        nothing is changed.
        """
        pass

    @abstractmethod
    def read_pulse_buckets(
        self,
        organization_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> list[PulseBucket]:
        """Read pulse buckets with bucket_date in [start_date, end_date]."""
        pass

    @abstractmethod
    def read_recognition_buckets(
        self,
        organization_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> list[RecognitionBucket]:
        """Read recognition buckets with bucket_date in [start_date, end_date]."""
        pass

    @abstractmethod
    def read_compliance_buckets(
        self,
        organization_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> list[ComplianceBucket]:
        """Read compliance buckets with bucket_date in [start_date, end_date]."""
        pass

    # =========================================================================
    # Watermarks
    # =========================================================================

    @abstractmethod
    def read_watermark(self, organization_id: str) -> Optional[Watermark]:
        """Return the organization's watermark, or None if never swept."""
        pass

    @abstractmethod
    def create_watermark_if_absent(self, organization_id: str, last_processed_at: datetime) -> Watermark:
        """Create the watermark seeded at ``last_processed_at`` unless one exists; return the stored row."""
        pass

    @abstractmethod
    def write_watermark(self, organization_id: str, last_processed_at: datetime) -> Watermark:
        """Set the watermark unconditionally (insert or update)."""
        pass
