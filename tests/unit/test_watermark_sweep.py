"""
Unit tests for the watermark sweep scheduler: periodic passes, backfill and
triggered recomputes.
"""

import time
from datetime import timedelta

import pytest

from teampulse.engine import BucketAggregator, WatermarkSweepScheduler
from tests.conftest import (
    BASE_TIME,
    ORG,
    FailingStorage,
    FakeClock,
    make_checkin,
    make_settings,
    make_shoutout,
)

DAY = BASE_TIME.date()


def build_scheduler(storage, clock, **settings_overrides) -> WatermarkSweepScheduler:
    settings = make_settings(**settings_overrides)
    return WatermarkSweepScheduler(storage, BucketAggregator(storage), settings, clock=clock)


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def sweep_clock():
    return FakeClock(BASE_TIME + timedelta(hours=5))


class TestPeriodicSweep:
    """Tests for a single sweep pass."""

    def test_watermark_advances_to_latest_processed_event(self, storage, sweep_clock):
        storage.write_checkin(make_checkin(created_at=BASE_TIME))
        storage.write_checkin(make_checkin(created_at=BASE_TIME + timedelta(hours=1)))
        storage.write_shoutout(make_shoutout(created_at=BASE_TIME + timedelta(hours=3)))
        scheduler = build_scheduler(storage, sweep_clock)

        report = scheduler.run_sweep()

        assert report.organizations_processed == 1
        assert report.watermarks[ORG] == BASE_TIME + timedelta(hours=3)
        assert storage.read_watermark(ORG).last_processed_at == BASE_TIME + timedelta(hours=3)
        assert storage.read_pulse_buckets(ORG)[0].checkin_count == 2
        assert len(storage.read_recognition_buckets(ORG)) == 2

    def test_new_organization_watermark_is_seeded(self, storage, sweep_clock):
        storage.write_checkin(make_checkin())
        scheduler = build_scheduler(storage, sweep_clock, watermark_seed_days=7)

        scheduler.run_sweep()

        # The seed is overwritten by the processed event.
        assert storage.read_watermark(ORG).last_processed_at == BASE_TIME

    def test_no_new_events_leaves_watermark_unchanged(self, storage, sweep_clock):
        storage.write_checkin(make_checkin())
        storage.write_watermark(ORG, BASE_TIME + timedelta(hours=4))
        scheduler = build_scheduler(storage, sweep_clock)

        report = scheduler.run_sweep()

        assert report.entity_days_recomputed == 0
        assert report.watermarks[ORG] == BASE_TIME + timedelta(hours=4)
        assert storage.read_watermark(ORG).last_processed_at == BASE_TIME + timedelta(hours=4)

    def test_repeated_sweeps_are_idempotent(self, storage, sweep_clock):
        storage.write_checkin(make_checkin())
        scheduler = build_scheduler(storage, sweep_clock)

        scheduler.run_sweep()
        first = storage.read_pulse_buckets(ORG)
        scheduler.run_sweep()

        assert storage.read_pulse_buckets(ORG) == first
        assert scheduler.sweep_count == 2

    def test_inactive_organizations_are_skipped(self, storage, sweep_clock):
        storage.write_checkin(make_checkin(created_at=BASE_TIME - timedelta(days=3)))
        scheduler = build_scheduler(storage, sweep_clock, activity_lookback_hours=24)

        report = scheduler.run_sweep()

        assert report.organizations_processed == 0
        assert storage.read_watermark(ORG) is None

    def test_failing_organization_keeps_watermark_and_others_advance(self, storage, sweep_clock):
        storage.write_checkin(make_checkin(organization_id="org-bad"))
        storage.write_checkin(make_checkin(organization_id="org-good"))
        failing = FailingStorage(storage, {"org-bad"})
        scheduler = WatermarkSweepScheduler(
            failing, BucketAggregator(failing), make_settings(), clock=sweep_clock
        )

        report = scheduler.run_sweep()

        assert report.failed_organizations == ["org-bad"]
        assert "org-bad" not in report.watermarks
        assert report.watermarks["org-good"] == BASE_TIME
        seeded = sweep_clock() - timedelta(days=7)
        assert storage.read_watermark("org-bad").last_processed_at == seeded

    def test_failed_organization_is_retried_next_pass(self, storage, sweep_clock):
        storage.write_checkin(make_checkin())
        failing = FailingStorage(storage, {ORG})
        scheduler = WatermarkSweepScheduler(
            failing, BucketAggregator(failing), make_settings(), clock=sweep_clock
        )
        scheduler.run_sweep()

        failing.fail_organizations.clear()
        report = scheduler.run_sweep()

        assert report.failed_organizations == []
        assert storage.read_pulse_buckets(ORG)[0].checkin_count == 1


class TestBackfill:
    """Tests for operator-invoked backfill."""

    def test_backfill_recomputes_range_in_batches(self, storage, sweep_clock):
        for offset in range(3):
            storage.write_checkin(make_checkin(created_at=BASE_TIME + timedelta(days=offset)))
        scheduler = build_scheduler(storage, sweep_clock, backfill_batch_size=2)
        end = BASE_TIME + timedelta(days=3)

        report = scheduler.backfill_historical_data(ORG, BASE_TIME - timedelta(days=1), end)

        assert report.entity_days_recomputed == 3
        assert report.batches == 2
        assert len(storage.read_pulse_buckets(ORG)) == 3
        assert storage.read_watermark(ORG).last_processed_at == end

    def test_backfill_may_move_watermark_backwards(self, storage, sweep_clock):
        storage.write_watermark(ORG, BASE_TIME + timedelta(days=30))
        scheduler = build_scheduler(storage, sweep_clock)

        scheduler.backfill_historical_data(ORG, DAY - timedelta(days=2), DAY - timedelta(days=1))

        watermark = storage.read_watermark(ORG).last_processed_at
        assert watermark.date() == DAY - timedelta(days=1)
        assert (watermark.hour, watermark.minute) == (0, 0)

    def test_backfill_outside_range_untouched(self, storage, sweep_clock):
        storage.write_checkin(make_checkin(created_at=BASE_TIME + timedelta(days=10)))
        scheduler = build_scheduler(storage, sweep_clock)

        report = scheduler.backfill_historical_data(ORG, BASE_TIME, BASE_TIME + timedelta(days=1))

        assert report.entity_days_recomputed == 0
        assert storage.read_pulse_buckets(ORG) == []

    def test_reversed_range_rejected(self, storage, sweep_clock):
        scheduler = build_scheduler(storage, sweep_clock)
        with pytest.raises(ValueError):
            scheduler.backfill_historical_data(ORG, BASE_TIME, BASE_TIME - timedelta(days=1))
        assert storage.read_watermark(ORG) is None


class TestTriggeredRecompute:
    """Tests for the write-hook recompute contract."""

    def test_success_returns_true(self, storage, sweep_clock):
        storage.write_checkin(make_checkin())
        scheduler = build_scheduler(storage, sweep_clock)

        assert scheduler.trigger_recompute(ORG, "user-1", BASE_TIME) is True
        assert storage.read_pulse_buckets(ORG)[0].checkin_count == 1
        assert storage.read_watermark(ORG) is None

    def test_failure_returns_false_without_raising(self, storage, sweep_clock):
        storage.write_checkin(make_checkin())
        failing = FailingStorage(storage, {ORG})
        scheduler = WatermarkSweepScheduler(
            failing, BucketAggregator(failing), make_settings(), clock=sweep_clock
        )

        assert scheduler.trigger_recompute(ORG, "user-1", DAY) is False


class TestSchedulerLifecycle:
    """Tests for the timer thread."""

    def test_start_runs_a_pass_immediately(self, storage, sweep_clock):
        storage.write_checkin(make_checkin())
        scheduler = build_scheduler(storage, sweep_clock)

        scheduler.start(interval_minutes=60)
        try:
            assert scheduler.running
            assert wait_for(lambda: scheduler.sweep_count >= 1)
            assert scheduler.last_report.organizations_processed == 1
        finally:
            scheduler.stop(timeout=5)

        assert not scheduler.running

    def test_start_twice_and_stop_twice_are_safe(self, storage, sweep_clock):
        scheduler = build_scheduler(storage, sweep_clock)

        scheduler.start(interval_minutes=60)
        scheduler.start(interval_minutes=60)
        scheduler.stop(timeout=5)
        scheduler.stop(timeout=5)

        assert not scheduler.running

    def test_non_positive_interval_rejected(self, storage, sweep_clock):
        scheduler = build_scheduler(storage, sweep_clock)
        with pytest.raises(ValueError):
            scheduler.start(interval_minutes=0)
        assert not scheduler.running
