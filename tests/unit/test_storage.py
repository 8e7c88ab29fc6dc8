"""
Unit tests for the DuckDB storage backend.
"""

import threading
from datetime import date, datetime, timedelta, timezone

import pytest

from teampulse.models.buckets import ComplianceBucket, PulseBucket, RecognitionBucket
from teampulse.models.enums import EventKind
from teampulse.storage import StorageError
from teampulse.utils.timeutils import day_bounds
from tests.conftest import BASE_TIME, BASE_WEEK, ORG, make_checkin, make_shoutout, make_vacation

DAY = BASE_TIME.date()


def pulse(mood_sum=4, checkin_count=1, **overrides) -> PulseBucket:
    defaults = dict(
        organization_id=ORG,
        user_id="user-1",
        bucket_date=DAY,
        mood_sum=mood_sum,
        checkin_count=checkin_count,
        updated_at=BASE_TIME,
    )
    defaults.update(overrides)
    return PulseBucket(**defaults)


def recognition(**overrides) -> RecognitionBucket:
    defaults = dict(
        organization_id=ORG,
        user_id="user-1",
        bucket_date=DAY,
        received_count=1,
        public_count=1,
        updated_at=BASE_TIME,
    )
    defaults.update(overrides)
    return RecognitionBucket(**defaults)


class TestCheckinReads:
    """Tests for check-in windows and filters."""

    def test_window_is_half_open(self, storage):
        start, end = day_bounds(DAY)
        storage.write_checkin(make_checkin(created_at=start))
        storage.write_checkin(make_checkin(created_at=end - timedelta(microseconds=1)))
        storage.write_checkin(make_checkin(created_at=end))

        checkins = storage.read_checkins(ORG, start=start, end=end)

        assert len(checkins) == 2
        assert all(c.created_at < end for c in checkins)

    def test_timestamps_come_back_as_aware_utc(self, storage):
        storage.write_checkin(make_checkin())
        checkin = storage.read_checkins(ORG)[0]
        assert checkin.created_at == BASE_TIME
        assert checkin.created_at.tzinfo is not None

    def test_incomplete_checkins_excluded_by_default(self, storage):
        storage.write_checkin(make_checkin(is_complete=False))
        assert storage.read_checkins(ORG) == []
        assert len(storage.read_checkins(ORG, complete_only=False)) == 1

    def test_reviewed_only_filters_by_reviewer(self, storage):
        storage.write_checkin(make_checkin(reviewed_by="lead-1"))
        storage.write_checkin(make_checkin())

        reviewed = storage.read_checkins(ORG, reviewed_by="lead-1", reviewed_only=True)

        assert len(reviewed) == 1
        assert reviewed[0].reviewed_by == "lead-1"

    def test_rewrite_replaces_checkin(self, storage):
        checkin = make_checkin(overall_mood=2)
        storage.write_checkin(checkin)
        storage.write_checkin(checkin.model_copy(update={"overall_mood": 5}))

        checkins = storage.read_checkins(ORG)
        assert len(checkins) == 1
        assert checkins[0].overall_mood == 5

    def test_organizations_are_isolated(self, storage):
        storage.write_checkin(make_checkin(organization_id="org-2"))
        assert storage.read_checkins(ORG) == []


class TestVacations:
    """Tests for vacation declarations."""

    def test_upsert_is_idempotent_and_updates_note(self, storage):
        storage.upsert_vacation(make_vacation(note="beach"))
        stored = storage.upsert_vacation(make_vacation(note="mountains"))

        assert stored.note == "mountains"
        assert stored.week_of == BASE_WEEK
        assert storage.read_vacation_weeks(ORG) == {("user-1", BASE_WEEK)}

    def test_is_on_vacation(self, storage):
        storage.upsert_vacation(make_vacation())
        assert storage.is_on_vacation(ORG, "user-1", BASE_WEEK)
        assert not storage.is_on_vacation(ORG, "user-2", BASE_WEEK)

    def test_delete_vacation(self, storage):
        storage.upsert_vacation(make_vacation())
        assert storage.delete_vacation(ORG, "user-1", BASE_WEEK) is True
        assert storage.delete_vacation(ORG, "user-1", BASE_WEEK) is False
        assert storage.read_vacation_weeks(ORG) == set()

    def test_read_vacation_weeks_with_empty_user_list(self, storage):
        storage.upsert_vacation(make_vacation())
        assert storage.read_vacation_weeks(ORG, user_ids=[]) == set()


class TestDirectory:
    """Tests for users and teams."""

    def test_team_membership(self, storage, team):
        assert storage.get_user_team(ORG, "user-1") == "alpha"
        assert storage.get_user_team(ORG, "nobody") is None
        assert storage.read_team_member_ids(ORG, "alpha") == {"user-1", "user-2"}

    def test_moving_user_updates_membership(self, storage, team):
        storage.upsert_user(ORG, "user-1", team_id="beta")
        assert storage.read_team_member_ids(ORG, "beta") == {"user-1", "user-3"}


class TestActivityEvents:
    """Tests for the activity view used by the sweep."""

    def test_review_event_belongs_to_reviewer_on_checkin_day(self, storage):
        checkin = make_checkin(
            reviewed_by="lead-1",
            reviewed_at=BASE_TIME + timedelta(days=2),
        )
        storage.write_checkin(checkin)

        events = storage.read_activity_events(ORG)
        review = next(e for e in events if e.kind == EventKind.CHECKIN_REVIEWED)

        assert review.user_id == "lead-1"
        assert review.occurred_at == BASE_TIME + timedelta(days=2)
        assert review.bucket_date == DAY

    def test_shoutout_yields_given_and_received(self, storage):
        storage.write_shoutout(make_shoutout())
        kinds = {(e.user_id, e.kind) for e in storage.read_activity_events(ORG)}
        assert kinds == {
            ("user-2", EventKind.SHOUTOUT_GIVEN),
            ("user-1", EventKind.SHOUTOUT_RECEIVED),
        }

    def test_vacation_event_carries_week(self, storage):
        storage.upsert_vacation(make_vacation())
        event = storage.read_activity_events(ORG)[0]
        assert event.kind == EventKind.VACATION_DECLARED
        assert event.payload["week_of"] == BASE_WEEK.isoformat()

    def test_since_bound_is_inclusive_and_events_sorted(self, storage):
        storage.write_checkin(make_checkin(created_at=BASE_TIME))
        storage.write_checkin(make_checkin(created_at=BASE_TIME - timedelta(hours=1)))
        storage.write_shoutout(make_shoutout(created_at=BASE_TIME + timedelta(hours=1)))

        events = storage.read_activity_events(ORG, since=BASE_TIME)

        assert [e.occurred_at for e in events] == sorted(e.occurred_at for e in events)
        assert min(e.occurred_at for e in events) == BASE_TIME
        assert len(events) == 3

    def test_active_organizations(self, storage):
        storage.write_checkin(make_checkin(organization_id="org-a"))
        storage.write_shoutout(make_shoutout(organization_id="org-b", created_at=BASE_TIME - timedelta(days=3)))

        assert storage.read_active_organizations(BASE_TIME - timedelta(days=1)) == ["org-a"]
        assert storage.read_active_organizations(BASE_TIME - timedelta(days=7)) == ["org-a", "org-b"]


class TestComplianceDaysForWeek:
    """Tests for the vacation fan-out lookup."""

    def test_returns_submitter_and_reviewer_days(self, storage):
        week_end = BASE_WEEK + timedelta(days=7)
        storage.write_checkin(make_checkin(created_at=BASE_TIME, week_of=BASE_TIME))
        storage.write_checkin(
            make_checkin(
                user_id="user-3",
                created_at=BASE_TIME + timedelta(days=10),
                week_of=BASE_TIME,
                reviewed_by="user-1",
            )
        )
        storage.write_checkin(make_checkin(created_at=BASE_TIME + timedelta(days=14)))

        days = storage.read_compliance_days_for_week(ORG, "user-1", BASE_WEEK, week_end)

        assert days == [DAY, DAY + timedelta(days=10)]


class TestBucketStore:
    """Tests for the entity-day overwrite."""

    def test_replace_then_read(self, storage):
        storage.replace_entity_day_buckets(ORG, "user-1", DAY, pulse(), recognition(), None)

        assert storage.read_pulse_buckets(ORG)[0].mood_sum == 4
        assert storage.read_recognition_buckets(ORG)[0].public_count == 1
        assert storage.read_compliance_buckets(ORG) == []

    def test_replace_overwrites_instead_of_incrementing(self, storage):
        storage.replace_entity_day_buckets(ORG, "user-1", DAY, pulse(), None, None)
        storage.replace_entity_day_buckets(ORG, "user-1", DAY, pulse(mood_sum=6, checkin_count=2), None, None)

        rows = storage.read_pulse_buckets(ORG)
        assert len(rows) == 1
        assert (rows[0].mood_sum, rows[0].checkin_count) == (6, 2)

    def test_absent_family_deletes_row(self, storage):
        storage.replace_entity_day_buckets(ORG, "user-1", DAY, pulse(), recognition(), None)
        storage.replace_entity_day_buckets(ORG, "user-1", DAY, None, recognition(), None)

        assert storage.read_pulse_buckets(ORG) == []
        assert len(storage.read_recognition_buckets(ORG)) == 1

    def test_failed_write_rolls_back_every_family(self, storage):
        storage.replace_entity_day_buckets(ORG, "user-1", DAY, pulse(), None, None)
        broken = ComplianceBucket.model_construct(
            organization_id=ORG,
            user_id="user-1",
            team_id=None,
            bucket_date=DAY,
            updated_at=BASE_TIME,
            checkin_due_count="not-a-number",
            checkin_on_time_count=0,
            review_due_count=0,
            review_on_time_count=0,
        )

        with pytest.raises(StorageError):
            storage.replace_entity_day_buckets(
                ORG, "user-1", DAY, pulse(mood_sum=9, checkin_count=3), None, broken
            )

        rows = storage.read_pulse_buckets(ORG)
        assert (rows[0].mood_sum, rows[0].checkin_count) == (4, 1)
        assert storage.read_compliance_buckets(ORG) == []

    def test_date_range_is_inclusive(self, storage):
        for offset in range(3):
            day = DAY + timedelta(days=offset)
            storage.replace_entity_day_buckets(ORG, "user-1", day, pulse(bucket_date=day), None, None)

        rows = storage.read_pulse_buckets(ORG, start_date=DAY, end_date=DAY + timedelta(days=1))
        assert [r.bucket_date for r in rows] == [DAY, DAY + timedelta(days=1)]

    def test_team_filter_uses_current_membership(self, storage, team):
        storage.replace_entity_day_buckets(ORG, "user-1", DAY, pulse(team_id="alpha"), None, None)
        storage.replace_entity_day_buckets(
            ORG, "user-3", DAY, pulse(user_id="user-3", team_id="beta"), None, None
        )
        storage.upsert_user(ORG, "user-1", team_id="beta")

        rows = storage.read_pulse_buckets(ORG, team_id="beta")
        assert {r.user_id for r in rows} == {"user-1", "user-3"}


class TestWatermarks:
    """Tests for watermark persistence."""

    def test_missing_watermark(self, storage):
        assert storage.read_watermark(ORG) is None

    def test_create_if_absent_keeps_existing_value(self, storage):
        first = storage.create_watermark_if_absent(ORG, BASE_TIME)
        second = storage.create_watermark_if_absent(ORG, BASE_TIME + timedelta(days=1))

        assert first.last_processed_at == BASE_TIME
        assert second.last_processed_at == BASE_TIME

    def test_write_overwrites(self, storage):
        storage.create_watermark_if_absent(ORG, BASE_TIME)
        storage.write_watermark(ORG, BASE_TIME + timedelta(hours=3))

        assert storage.read_watermark(ORG).last_processed_at == BASE_TIME + timedelta(hours=3)


class TestConnections:
    """Construction and per-thread connections."""

    def test_construction_returns_and_other_threads_can_read(self, tmp_path):
        from teampulse.storage import DuckDBStorage

        built = []
        builder = threading.Thread(
            target=lambda: built.append(DuckDBStorage(db_path=str(tmp_path / "threads.duckdb")))
        )
        builder.start()
        builder.join(timeout=10)
        assert not builder.is_alive()

        backend = built[0]
        backend.write_checkin(make_checkin())
        results = []
        reader = threading.Thread(target=lambda: results.append(len(backend.read_checkins(ORG))))
        reader.start()
        reader.join(timeout=10)

        assert results == [1]
        backend.close()


class TestStorageErrors:
    """Failures surface as StorageError."""

    def test_closed_storage_raises_storage_error(self, tmp_path):
        from teampulse.storage import DuckDBStorage

        backend = DuckDBStorage(db_path=str(tmp_path / "closed.duckdb"))
        backend.read_checkins(ORG)
        with backend._get_connection() as conn:
            conn.close()

        with pytest.raises(StorageError):
            backend.read_checkins(ORG)
        backend.close()


def test_bucket_date_is_a_date(storage):
    storage.replace_entity_day_buckets(ORG, "user-1", date(2026, 3, 4), pulse(), None, None)
    row = storage.read_pulse_buckets(ORG)[0]
    assert row.bucket_date == date(2026, 3, 4)
    assert row.updated_at == datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc)
