"""
Pytest configuration and shared fixtures for the TeamPulse test suite.

Provides model factories, a per-test temporary DuckDB storage, a controllable
clock, and engine fixtures wired with test settings (sweep thread disabled so
tests drive passes explicitly).
"""

import os
import tempfile
import uuid as _uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

# Set testing environment BEFORE importing the app
_test_db_path = os.path.join(tempfile.gettempdir(), f"teampulse_test_{_uuid.uuid4().hex[:8]}.duckdb")
os.environ["TESTING"] = "true"
os.environ["DB_PATH"] = _test_db_path
os.environ["SWEEP_ENABLED"] = "false"


from teampulse.config import Settings
from teampulse.engine import AggregationEngine, BucketAggregator
from teampulse.models.events import CheckinRecord, ShoutoutRecord, VacationRecord
from teampulse.storage import DuckDBStorage, StorageError
from teampulse.utils.timeutils import week_start_for

ORG = "org-1"

# Wednesday 2026-03-04 15:00 UTC; its vacation week starts Saturday
# 2026-02-28 00:00 America/Chicago (06:00 UTC).
BASE_TIME = datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc)
BASE_WEEK = datetime(2026, 2, 28, 6, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


def make_checkin(
    organization_id: str = ORG,
    user_id: str = "user-1",
    created_at: Optional[datetime] = None,
    overall_mood: int = 4,
    submitted_on_time: bool = True,
    reviewed_by: Optional[str] = None,
    reviewed_on_time: bool = False,
    **overrides,
) -> CheckinRecord:
    """Factory for complete check-ins; week_of defaults to the creation instant."""
    created_at = created_at or BASE_TIME
    defaults = dict(
        organization_id=organization_id,
        user_id=user_id,
        week_of=created_at,
        overall_mood=overall_mood,
        is_complete=True,
        created_at=created_at,
        submitted_at=created_at,
        due_date=created_at + (timedelta(days=1) if submitted_on_time else timedelta(days=-1)),
        submitted_on_time=submitted_on_time,
        reviewed_by=reviewed_by,
        reviewed_at=created_at + timedelta(hours=4) if reviewed_by else None,
        review_due_date=created_at + timedelta(days=2) if reviewed_by else None,
        reviewed_on_time=reviewed_on_time,
    )
    defaults.update(overrides)
    return CheckinRecord(**defaults)


def make_shoutout(
    organization_id: str = ORG,
    from_user_id: str = "user-2",
    to_user_id: str = "user-1",
    is_public: bool = True,
    created_at: Optional[datetime] = None,
    **overrides,
) -> ShoutoutRecord:
    defaults = dict(
        organization_id=organization_id,
        from_user_id=from_user_id,
        to_user_id=to_user_id,
        is_public=is_public,
        created_at=created_at or BASE_TIME,
    )
    defaults.update(overrides)
    return ShoutoutRecord(**defaults)


def make_vacation(
    organization_id: str = ORG,
    user_id: str = "user-1",
    week_of: Optional[datetime] = None,
    **overrides,
) -> VacationRecord:
    """Factory for vacations; week_of is normalized like the application does."""
    defaults = dict(
        organization_id=organization_id,
        user_id=user_id,
        week_of=week_start_for(week_of or BASE_TIME),
        created_at=BASE_TIME,
    )
    defaults.update(overrides)
    return VacationRecord(**defaults)


def make_settings(**overrides) -> Settings:
    """Settings isolated from the environment's .env file."""
    defaults = dict(
        _env_file=None,
        testing=True,
        dev_mode=True,
        sweep_enabled=False,
        use_rollups=True,
        enable_shadow_reads=False,
    )
    defaults.update(overrides)
    return Settings(**defaults)


class FakeClock:
    """Controllable UTC clock for TTL, freshness and watermark tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FailingStorage:
    """
    Delegates to a real storage but fails bucket writes for chosen organizations.

    Used to exercise per-organization isolation in the sweep and the
    triggered-recompute error contract.
    """

    def __init__(self, storage: DuckDBStorage, fail_organizations: set[str]):
        self._storage = storage
        self.fail_organizations = set(fail_organizations)

    def replace_entity_day_buckets(self, organization_id, *args, **kwargs):
        if organization_id in self.fail_organizations:
            raise StorageError(f"simulated write failure for {organization_id}")
        return self._storage.replace_entity_day_buckets(organization_id, *args, **kwargs)

    def __getattr__(self, name):
        return getattr(self._storage, name)


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def storage(tmp_path):
    """Fresh DuckDB storage in a temporary file for each test."""
    backend = DuckDBStorage(db_path=str(tmp_path / "teampulse.duckdb"))
    yield backend
    backend.close()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    """Clock set well after BASE_TIME so March windows count as stable."""
    return FakeClock(datetime(2026, 4, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def aggregator(storage):
    return BucketAggregator(storage)


@pytest.fixture
def engine(storage, settings, clock):
    """Engine with the recompute worker running and the sweep thread off."""
    instance = AggregationEngine(storage, settings=settings, clock=clock)
    instance.start()
    yield instance
    instance.stop(drain=False)


@pytest.fixture
def team(storage):
    """Team alpha (user-1, user-2) and team beta (user-3)."""
    storage.upsert_team(ORG, "alpha", leader_id="user-2")
    storage.upsert_team(ORG, "beta", leader_id="user-3")
    storage.upsert_user(ORG, "user-1", team_id="alpha")
    storage.upsert_user(ORG, "user-2", team_id="alpha")
    storage.upsert_user(ORG, "user-3", team_id="beta")
    return {"alpha": {"user-1", "user-2"}, "beta": {"user-3"}}
