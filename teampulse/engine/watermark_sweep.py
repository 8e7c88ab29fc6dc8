"""
Watermark Sweep Scheduler - keeps rollups converging on the raw event source.

Three ways entity-days get recomputed:

- Periodic: a timer thread runs a sweep pass immediately and then every
  interval. Each pass finds organizations with recent activity, reads their
  events since the stored watermark, recomputes every affected entity-day and
  only then advances the watermark to the newest event actually processed.
  A failing organization keeps its old watermark, so the next pass retries
  the same window; other organizations are unaffected.
- Backfill: an operator-invoked pass over an explicit date range, processed
  in batches, that sets the watermark to the end of the range.
- Triggered: a single entity-day recomputed outside watermark bookkeeping,
  used by the write hooks. Failures are logged and reported, never raised.

Recomputation is idempotent, so reprocessing an already-folded window (after
a crash, or because events at exactly the watermark are read again) is safe.
"""

import threading
from datetime import date, datetime, timedelta
from typing import Callable, Optional

import structlog

from teampulse.config import Settings, get_settings
from teampulse.models.buckets import BackfillReport, SweepReport
from teampulse.storage.base import StorageBackend, StorageError
from teampulse.utils.logging import organization_context
from teampulse.utils.timeutils import bucket_day, day_bounds, ensure_utc, utc_now

from .bucket_aggregator import BucketAggregator

logger = structlog.get_logger(__name__)


def _as_datetime(value: date | datetime) -> datetime:
    """Plain dates mean midnight UTC."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    return day_bounds(value)[0]


class WatermarkSweepScheduler:
    """
    Owns the periodic sweep thread, backfills and triggered recomputes.

    Only one sweep pass runs at a time per scheduler; a manual run_sweep()
    issued while the timer's pass is running waits for it.

    Attributes:
        storage: Storage backend for activity reads and watermark writes
        aggregator: Bucket aggregator performing the entity-day recomputes
        on_swept: Called with each completed pass, timer or manual
        last_report: Report of the most recent completed pass
        sweep_count: Completed passes
        error_count: Passes that raised before completing
    """

    def __init__(
        self,
        storage: StorageBackend,
        aggregator: BucketAggregator,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
        on_swept: Optional[Callable[[SweepReport], None]] = None,
    ):
        settings = settings or get_settings()
        self.storage = storage
        self.aggregator = aggregator
        self.clock = clock
        self.on_swept = on_swept
        self.interval_minutes = settings.sweep_interval_minutes
        self.activity_lookback = timedelta(hours=settings.activity_lookback_hours)
        self.watermark_seed = timedelta(days=settings.watermark_seed_days)
        self.backfill_batch_size = settings.backfill_batch_size

        self._sweep_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.last_report: Optional[SweepReport] = None
        self.sweep_count = 0
        self.error_count = 0

    # =========================================================================
    # Periodic mode
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, interval_minutes: Optional[float] = None) -> None:
        """
        Launch the timer thread. Runs one pass immediately, then one per interval.

        Calling start() while already running logs and returns.
        """
        with self._state_lock:
            if self.running:
                logger.warning("sweep_scheduler_already_running")
                return

            interval = interval_minutes if interval_minutes is not None else self.interval_minutes
            if interval <= 0:
                raise ValueError("interval_minutes must be positive")

            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(interval * 60.0,),
                name="watermark-sweep",
                daemon=True,
            )
            self._thread.start()
            logger.info("sweep_scheduler_started", interval_minutes=interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the timer thread and wait for it; no-op when not running."""
        with self._state_lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()
            thread.join(timeout)
            self._thread = None
            logger.info("sweep_scheduler_stopped")

    def _run_loop(self, interval_seconds: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_sweep()
            except Exception as e:
                self.error_count += 1
                logger.error("sweep_pass_failed", error=str(e), error_type=type(e).__name__)

            if self._stop_event.wait(interval_seconds):
                break

    def run_sweep(self) -> SweepReport:
        """
        Execute one sweep pass over every recently active organization.

        Returns:
            SweepReport with per-organization outcomes

        Raises:
            StorageError: If the active organization list cannot be read;
                per-organization failures are recorded in the report instead
        """
        with self._sweep_lock:
            now = self.clock()
            report = SweepReport(started_at=now)
            organizations = self.storage.read_active_organizations(now - self.activity_lookback)

            logger.info("sweep_started", organization_count=len(organizations))

            for organization_id in organizations:
                try:
                    with organization_context(organization_id, mode="sweep"):
                        recomputed, watermark = self._sweep_organization(organization_id, now)
                except Exception as e:
                    report.failed_organizations.append(organization_id)
                    logger.error(
                        "sweep_organization_failed",
                        organization_id=organization_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    continue

                report.organizations_processed += 1
                report.entity_days_recomputed += recomputed
                report.watermarks[organization_id] = watermark

            report.finished_at = self.clock()
            self.last_report = report
            self.sweep_count += 1

            logger.info(
                "sweep_completed",
                organizations_processed=report.organizations_processed,
                entity_days_recomputed=report.entity_days_recomputed,
                failed_organizations=len(report.failed_organizations),
            )
            if self.on_swept is not None:
                self.on_swept(report)
            return report

    def _sweep_organization(self, organization_id: str, now: datetime) -> tuple[int, datetime]:
        """
        Fold one organization's new events into its buckets.

        Returns:
            (entity-days recomputed, watermark after the pass)
        """
        watermark = self.storage.read_watermark(organization_id)
        if watermark is None:
            watermark = self.storage.create_watermark_if_absent(
                organization_id, now - self.watermark_seed
            )
            logger.info(
                "watermark_created",
                organization_id=organization_id,
                last_processed_at=watermark.last_processed_at.isoformat(),
            )

        events = self.storage.read_activity_events(organization_id, since=watermark.last_processed_at)
        entity_days = self.aggregator.entity_days_for_events(organization_id, events)

        for user_id, day in entity_days:
            try:
                self.aggregator.recompute(organization_id, user_id, day)
            except StorageError:
                logger.error(
                    "sweep_entity_day_failed",
                    organization_id=organization_id,
                    user_id=user_id,
                    bucket_date=day.isoformat(),
                )
                raise

        current = watermark.last_processed_at
        if events:
            latest = max(event.occurred_at for event in events)
            if latest > current:
                self.storage.write_watermark(organization_id, latest)
                current = latest

        logger.debug(
            "sweep_organization_completed",
            organization_id=organization_id,
            events=len(events),
            entity_days=len(entity_days),
            watermark=current.isoformat(),
        )
        return len(entity_days), current

    # =========================================================================
    # Backfill mode
    # =========================================================================

    def backfill_historical_data(
        self,
        organization_id: str,
        from_date: date | datetime,
        to_date: date | datetime,
    ) -> BackfillReport:
        """
        Recompute every entity-day with activity in [from_date, to_date].

        Entity-days are processed in batches of ``backfill_batch_size`` with
        progress logged per batch. On success the watermark is set to
        ``to_date`` unconditionally, which may move it backwards.

        Raises:
            ValueError: If from_date is after to_date
            StorageError: On the first failing entity-day; completed batches
                stay written and are not retried
        """
        start = _as_datetime(from_date)
        end = _as_datetime(to_date)
        if start > end:
            raise ValueError("from_date must not be after to_date")

        report = BackfillReport(organization_id=organization_id, from_date=start, to_date=end)
        events = self.storage.read_activity_events(organization_id, since=start, until=end)
        entity_days = self.aggregator.entity_days_for_events(organization_id, events)
        size = self.backfill_batch_size
        total_batches = (len(entity_days) + size - 1) // size

        logger.info(
            "backfill_started",
            organization_id=organization_id,
            from_date=start.isoformat(),
            to_date=end.isoformat(),
            entity_days=len(entity_days),
            batches=total_batches,
        )

        for offset in range(0, len(entity_days), size):
            batch = entity_days[offset:offset + size]
            for user_id, day in batch:
                self.aggregator.recompute(organization_id, user_id, day)
            report.batches += 1
            report.entity_days_recomputed += len(batch)
            logger.info(
                "backfill_batch_completed",
                organization_id=organization_id,
                batch=report.batches,
                total_batches=total_batches,
                entity_days_recomputed=report.entity_days_recomputed,
            )

        self.storage.write_watermark(organization_id, end)
        logger.info(
            "backfill_completed",
            organization_id=organization_id,
            entity_days_recomputed=report.entity_days_recomputed,
        )
        return report

    # =========================================================================
    # Triggered mode
    # =========================================================================

    def trigger_recompute(self, organization_id: str, user_id: str, activity_date: date | datetime) -> bool:
        """
        Recompute one entity-day now, outside watermark bookkeeping.

        Returns:
            True on success, False if the recompute failed (the failure is logged)
        """
        day = bucket_day(activity_date)
        try:
            self.aggregator.recompute(organization_id, user_id, day)
            return True
        except Exception as e:
            logger.error(
                "triggered_recompute_failed",
                organization_id=organization_id,
                user_id=user_id,
                bucket_date=day.isoformat(),
                error=str(e),
            )
            return False
