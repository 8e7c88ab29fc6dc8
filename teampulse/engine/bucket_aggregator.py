"""
Bucket Aggregator - derives daily rollups from the raw event source.

For one entity-day (organization, user, UTC day) the aggregator re-reads
every raw record that folds into that day and overwrites all three bucket
families:

- Pulse: mood sum and count of complete check-ins the user created
- Recognition: shoutouts received (split public/private) and given
- Compliance: vacation-aware submission samples (as submitter) and review
  samples (as reviewer) of complete check-ins created that day

Recomputation never increments: rows are derived fresh every time, so the
operation is idempotent and safe to repeat after a crash or a retroactive
change such as a vacation declared for a past week. Each row's updated_at is
the latest contributing source timestamp, which makes two recomputes over the
same records produce identical rows.
"""

import threading
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

import structlog

from teampulse.models.buckets import (
    ComplianceBucket,
    EntityDayBuckets,
    PulseBucket,
    RecognitionBucket,
)
from teampulse.models.enums import EventKind
from teampulse.models.events import ActivityEvent, CheckinRecord
from teampulse.storage.base import StorageBackend, StorageError
from teampulse.utils.timeutils import bucket_day, day_bounds, ensure_utc, week_start_for

logger = structlog.get_logger()


class BucketAggregator:
    """
    Recomputes the pulse, recognition and compliance buckets of one entity-day.

    Concurrent calls for the same entity-day are serialized through a striped
    lock so the last writer wins cleanly; different entity-days proceed in
    parallel.

    Attributes:
        storage: Storage backend for raw reads and bucket writes
        week_start_day: Weekday vacation weeks start on (Monday=0)
        week_timezone: Timezone vacation weeks are anchored in

    Example:
        >>> aggregator = BucketAggregator(storage=duckdb_storage)
        >>> result = aggregator.recompute("org-1", "user-1", date(2026, 3, 2))
        >>> result.pulse.checkin_count
        2
    """

    LOCK_STRIPES = 64

    def __init__(
        self,
        storage: StorageBackend,
        week_start_day: int = 5,
        week_timezone: str = "America/Chicago",
    ):
        """
        Initialize the aggregator.

        Args:
            storage: Storage backend implementing event source and bucket operations
            week_start_day: Weekday vacation weeks start on (default Saturday)
            week_timezone: IANA timezone vacation weeks are anchored in
        """
        self.storage = storage
        self.week_start_day = week_start_day
        self.week_timezone = week_timezone
        self._locks = [threading.Lock() for _ in range(self.LOCK_STRIPES)]
        self.logger = structlog.get_logger()

    def normalize_week(self, value: datetime) -> datetime:
        """Week start containing ``value`` under the configured week settings."""
        return week_start_for(value, self.week_start_day, self.week_timezone)

    def _lock_for(self, organization_id: str, user_id: str, day: date) -> threading.Lock:
        return self._locks[hash((organization_id, user_id, day)) % self.LOCK_STRIPES]

    # =========================================================================
    # Recompute
    # =========================================================================

    def recompute(self, organization_id: str, user_id: str, day: date | datetime) -> EntityDayBuckets:
        """
        Recompute and persist all bucket families for one entity-day.

        Args:
            organization_id: Organization owning the records
            user_id: User whose day is recomputed
            day: UTC day (datetimes are normalized to their UTC day)

        Returns:
            The buckets that now exist for the entity-day (None for absent rows)

        Raises:
            StorageError: If any read or the bucket write fails; nothing is
                written in that case
        """
        bucket_date = bucket_day(day)

        with self._lock_for(organization_id, user_id, bucket_date):
            try:
                result = self._derive(organization_id, user_id, bucket_date)
                self.storage.replace_entity_day_buckets(
                    organization_id,
                    user_id,
                    bucket_date,
                    pulse=result.pulse,
                    recognition=result.recognition,
                    compliance=result.compliance,
                )
            except StorageError as e:
                self.logger.error(
                    "entity_day_recompute_failed",
                    organization_id=organization_id,
                    user_id=user_id,
                    bucket_date=bucket_date.isoformat(),
                    error=str(e),
                )
                raise

        self.logger.debug(
            "entity_day_recomputed",
            organization_id=organization_id,
            user_id=user_id,
            bucket_date=bucket_date.isoformat(),
            rows=result.rows_written,
        )
        return result

    def _derive(self, organization_id: str, user_id: str, bucket_date: date) -> EntityDayBuckets:
        """Read raw records for the entity-day and build the three bucket rows."""
        start, end = day_bounds(bucket_date)
        team_id = self.storage.get_user_team(organization_id, user_id)

        submitted = self.storage.read_checkins(
            organization_id, start=start, end=end, user_id=user_id, complete_only=True
        )
        reviewed = self.storage.read_checkins(
            organization_id,
            start=start,
            end=end,
            reviewed_by=user_id,
            complete_only=True,
            reviewed_only=True,
        )
        received = self.storage.read_shoutouts(organization_id, start=start, end=end, to_user_id=user_id)
        given = self.storage.read_shoutouts(organization_id, start=start, end=end, from_user_id=user_id)

        vacation_weeks = self._vacation_weeks(organization_id, user_id, submitted + reviewed)

        key = {
            "organization_id": organization_id,
            "user_id": user_id,
            "team_id": team_id,
            "bucket_date": bucket_date,
        }

        pulse = None
        if submitted:
            pulse = PulseBucket(
                **key,
                mood_sum=sum(c.overall_mood for c in submitted),
                checkin_count=len(submitted),
                updated_at=max(c.created_at for c in submitted),
            )

        recognition = None
        if received or given:
            recognition = RecognitionBucket(
                **key,
                received_count=len(received),
                given_count=len(given),
                public_count=sum(1 for s in received if s.is_public),
                private_count=sum(1 for s in received if not s.is_public),
                updated_at=max(s.created_at for s in received + given),
            )

        compliance = ComplianceBucket(
            **key,
            checkin_due_count=sum(
                1 for c in submitted if self.normalize_week(c.week_of) not in vacation_weeks
            ),
            checkin_on_time_count=sum(1 for c in submitted if c.submitted_on_time),
            review_due_count=sum(
                1 for c in reviewed if self.normalize_week(c.week_of) not in vacation_weeks
            ),
            review_on_time_count=sum(1 for c in reviewed if c.reviewed_on_time),
            updated_at=self._latest_compliance_timestamp(submitted, reviewed, start),
        )
        if not compliance.has_activity():
            compliance = None

        return EntityDayBuckets(
            organization_id=organization_id,
            user_id=user_id,
            bucket_date=bucket_date,
            pulse=pulse,
            recognition=recognition,
            compliance=compliance,
        )

    def _vacation_weeks(
        self, organization_id: str, user_id: str, checkins: list[CheckinRecord]
    ) -> set[datetime]:
        """The user's vacation weeks among the weeks these check-ins cover."""
        if not checkins:
            return set()
        weeks = {self.normalize_week(c.week_of) for c in checkins}
        rows = self.storage.read_vacation_weeks(
            organization_id,
            user_ids=[user_id],
            week_start=min(weeks),
            week_end=max(weeks),
        )
        return {week for _, week in rows}

    @staticmethod
    def _latest_compliance_timestamp(
        submitted: list[CheckinRecord], reviewed: list[CheckinRecord], fallback: datetime
    ) -> datetime:
        stamps = [c.created_at for c in submitted]
        stamps.extend(c.reviewed_at for c in reviewed if c.reviewed_at is not None)
        return max(stamps) if stamps else fallback

    # =========================================================================
    # Fan-out
    # =========================================================================

    def affected_days_for_vacation(
        self, organization_id: str, user_id: str, week_of: datetime
    ) -> list[date]:
        """
        Bucket days whose compliance counts depend on one vacation week.

        A vacation week changes the denominator of every sample whose
        normalized week is that week, both check-ins the user submitted and
        check-ins the user reviewed. Those samples live on their check-in's
        creation day, which can be far from the vacation week itself.

        Args:
            organization_id: Organization owning the vacation
            user_id: User who declared or removed the vacation
            week_of: Any instant in the vacation week

        Returns:
            Distinct UTC days, ascending
        """
        week_start = self.normalize_week(week_of)
        # Weeks are 167 to 169 hours across DST changes; 180 hours always
        # lands inside the following week.
        week_end = self.normalize_week(week_start + timedelta(hours=180))
        return self.storage.read_compliance_days_for_week(
            organization_id, user_id, week_start, week_end
        )

    def entity_days_for_events(
        self, organization_id: str, events: Iterable[ActivityEvent]
    ) -> list[tuple[str, date]]:
        """
        Expand activity events into the distinct entity-days they affect.

        Vacation declarations fan out to every compliance day of the week;
        every other event maps to its own (user, bucket_date).

        Returns:
            Sorted, de-duplicated (user_id, bucket_date) pairs
        """
        pairs: set[tuple[str, date]] = set()
        for event in events:
            if event.kind == EventKind.VACATION_DECLARED:
                week_of = self._event_week(event)
                for day in self.affected_days_for_vacation(organization_id, event.user_id, week_of):
                    pairs.add((event.user_id, day))
            else:
                pairs.add((event.user_id, event.bucket_date))
        return sorted(pairs)

    @staticmethod
    def _event_week(event: ActivityEvent) -> datetime:
        raw: Optional[str] = event.payload.get("week_of")
        if raw:
            return ensure_utc(datetime.fromisoformat(raw))
        return day_bounds(event.bucket_date)[0]
