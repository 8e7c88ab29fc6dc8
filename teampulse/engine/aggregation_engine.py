"""
Aggregation Engine - facade wiring the aggregator, scheduler, queue and router.

The engine is constructed explicitly (by the FastAPI lifespan or a test) and
owns two background threads once started: the periodic sweep timer and the
recompute queue worker. Nothing starts on import.

Write hooks are called by the application's write handlers after a record is
persisted. They invalidate the organization's cached analytics and enqueue
the affected entity-days; they never raise into the write path.
"""

from datetime import date, datetime
from typing import Any, Callable, Optional

import structlog

from teampulse.config import Settings, get_settings
from teampulse.models.analytics import (
    ComplianceMetricsResult,
    PulseMetricsResult,
    ShoutoutMetricsResult,
)
from teampulse.models.buckets import BackfillReport, EntityDayBuckets, SweepReport
from teampulse.models.events import CheckinRecord, ShoutoutRecord
from teampulse.storage.base import StorageBackend, StorageError
from teampulse.utils.logging import organization_context
from teampulse.utils.timeutils import bucket_day, utc_now

from .analytics_cache import AnalyticsCache
from .bucket_aggregator import BucketAggregator
from .query_router import AnalyticsQueryRouter
from .recompute_queue import RecomputeQueue
from .watermark_sweep import WatermarkSweepScheduler

logger = structlog.get_logger(__name__)


class AggregationEngine:
    """
    Incremental analytics aggregation engine.

    Attributes:
        storage: Storage backend shared by every component
        settings: Engine settings
        aggregator: Entity-day bucket recomputation
        cache: Analytics result cache
        router: Rollup/raw query router
        scheduler: Periodic sweep, backfill and triggered recompute
        recompute_queue: Bounded queue drained by the write-hook worker

    Example:
        >>> engine = AggregationEngine(storage=DuckDBStorage("./data/teampulse.duckdb"))
        >>> engine.start()
        >>> engine.on_checkin_submitted(checkin)
        >>> engine.get_pulse_metrics("org-1", {"period": "week"})
        >>> engine.stop()
    """

    def __init__(
        self,
        storage: StorageBackend,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.settings = settings or get_settings()
        self.aggregator = BucketAggregator(
            storage,
            week_start_day=self.settings.week_start_day,
            week_timezone=self.settings.week_timezone,
        )
        self.cache = AnalyticsCache(clock=clock, maxsize=self.settings.cache_max_entries)
        self.router = AnalyticsQueryRouter(storage, self.settings, cache=self.cache, clock=clock)
        self.scheduler = WatermarkSweepScheduler(
            storage, self.aggregator, self.settings, clock=clock, on_swept=self._invalidate_swept
        )
        self.recompute_queue = RecomputeQueue(
            self._process_triggered, maxsize=self.settings.recompute_queue_size
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the recompute worker and, when enabled, the periodic sweep."""
        self.recompute_queue.start()
        if self.settings.sweep_enabled:
            self.start_periodic_sweep()
        logger.info("aggregation_engine_started", sweep_enabled=self.settings.sweep_enabled)

    def stop(self, drain: bool = True) -> None:
        """Stop the sweep timer, then the recompute worker."""
        self.stop_periodic_sweep()
        self.recompute_queue.stop(drain=drain)
        logger.info("aggregation_engine_stopped", drained=drain)

    def start_periodic_sweep(self, interval_minutes: Optional[float] = None) -> None:
        self.scheduler.start(interval_minutes)

    def stop_periodic_sweep(self) -> None:
        self.scheduler.stop()

    # =========================================================================
    # Recompute
    # =========================================================================

    def recompute(self, organization_id: str, user_id: str, day: date | datetime) -> EntityDayBuckets:
        """Recompute one entity-day synchronously; StorageError propagates."""
        result = self.aggregator.recompute(organization_id, user_id, day)
        self.router.invalidate_organization(organization_id)
        return result

    def trigger_recompute(self, organization_id: str, user_id: str, activity_date: date | datetime) -> bool:
        ok = self.scheduler.trigger_recompute(organization_id, user_id, activity_date)
        # Results cached between the write and this recompute saw stale rollups.
        self.router.invalidate_organization(organization_id)
        return ok

    def run_sweep(self) -> SweepReport:
        return self.scheduler.run_sweep()

    def _invalidate_swept(self, report: SweepReport) -> None:
        for organization_id in report.watermarks:
            self.router.invalidate_organization(organization_id)

    def backfill_historical_data(
        self,
        organization_id: str,
        from_date: date | datetime,
        to_date: date | datetime,
    ) -> BackfillReport:
        report = self.scheduler.backfill_historical_data(organization_id, from_date, to_date)
        self.router.invalidate_organization(organization_id)
        return report

    def _process_triggered(self, organization_id: str, user_id: str, day: date) -> bool:
        with organization_context(organization_id, mode="triggered"):
            return self.trigger_recompute(organization_id, user_id, day)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_pulse_metrics(self, organization_id: str, options: Any = None) -> list[PulseMetricsResult]:
        return self.router.get_pulse_metrics(organization_id, options)

    def get_shoutout_metrics(self, organization_id: str, options: Any = None) -> list[ShoutoutMetricsResult]:
        return self.router.get_shoutout_metrics(organization_id, options)

    def get_checkin_compliance_metrics(
        self, organization_id: str, options: Any = None
    ) -> list[ComplianceMetricsResult]:
        return self.router.get_checkin_compliance_metrics(organization_id, options)

    def get_review_compliance_metrics(
        self, organization_id: str, options: Any = None
    ) -> list[ComplianceMetricsResult]:
        return self.router.get_review_compliance_metrics(organization_id, options)

    # =========================================================================
    # Write hooks
    # =========================================================================

    def _enqueue(self, organization_id: str, entity_days: set[tuple[str, date]]) -> int:
        self.router.invalidate_organization(organization_id)
        queued = 0
        for user_id, day in sorted(entity_days):
            if self.recompute_queue.submit(organization_id, user_id, day):
                queued += 1
        return queued

    def on_checkin_submitted(self, checkin: CheckinRecord) -> int:
        """
        A check-in was created or updated.

        Returns:
            Number of entity-days queued
        """
        day = bucket_day(checkin.created_at)
        entity_days = {(checkin.user_id, day)}
        if checkin.reviewed_by:
            entity_days.add((checkin.reviewed_by, day))
        return self._enqueue(checkin.organization_id, entity_days)

    def on_checkin_reviewed(self, checkin: CheckinRecord) -> int:
        """A check-in was reviewed; the review folds into the check-in's creation day."""
        if not checkin.reviewed_by:
            logger.warning("checkin_review_hook_without_reviewer", checkin_id=checkin.checkin_id)
            return self._enqueue(checkin.organization_id, set())
        day = bucket_day(checkin.created_at)
        return self._enqueue(checkin.organization_id, {(checkin.reviewed_by, day)})

    def on_shoutout_created(self, shoutout: ShoutoutRecord) -> int:
        day = bucket_day(shoutout.created_at)
        return self._enqueue(
            shoutout.organization_id,
            {(shoutout.from_user_id, day), (shoutout.to_user_id, day)},
        )

    def on_vacation_changed(self, organization_id: str, user_id: str, week_of: datetime) -> int:
        """
        A vacation week was declared or removed.

        Every compliance day whose samples belong to that week is queued, so
        past rollups pick up the new denominator.
        """
        try:
            days = self.aggregator.affected_days_for_vacation(organization_id, user_id, week_of)
        except StorageError as e:
            logger.error(
                "vacation_fanout_failed",
                organization_id=organization_id,
                user_id=user_id,
                error=str(e),
            )
            self.router.invalidate_organization(organization_id)
            return 0

        logger.info(
            "vacation_change_fanned_out",
            organization_id=organization_id,
            user_id=user_id,
            entity_days=len(days),
        )
        return self._enqueue(organization_id, {(user_id, day) for day in days})
