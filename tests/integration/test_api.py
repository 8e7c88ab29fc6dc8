"""
Integration tests for the TeamPulse analytics API.

Each test runs the FastAPI application against an engine backed by a fresh
temporary DuckDB file, through the application lifespan.

Endpoints tested:
- System: health
- Analytics: pulse, shoutouts, check-in and review compliance
- Aggregation: recompute, backfill, sweep, watermark, status
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from teampulse.main import create_app
from teampulse.storage import StorageError
from tests.conftest import BASE_TIME, ORG, make_checkin, make_shoutout, make_vacation

DAY = BASE_TIME.date()
API = "/api/v1"


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine=engine)) as test_client:
        yield test_client


@pytest.fixture
def populated(storage, team, engine):
    """A week of activity folded into rollups through the write hooks."""
    checkins = [
        make_checkin(overall_mood=4, reviewed_by="user-2", reviewed_on_time=True),
        make_checkin(overall_mood=2, submitted_on_time=False, created_at=BASE_TIME + timedelta(hours=2)),
        make_checkin(user_id="user-3", overall_mood=5, submitted_on_time=False),
    ]
    for checkin in checkins:
        storage.write_checkin(checkin)
        engine.on_checkin_submitted(checkin)

    shoutout = make_shoutout()
    storage.write_shoutout(shoutout)
    engine.on_shoutout_created(shoutout)

    vacation = make_vacation(user_id="user-3")
    storage.upsert_vacation(vacation)
    engine.on_vacation_changed(ORG, "user-3", vacation.week_of)

    engine.recompute_queue.join()
    return storage


class TestSystemEndpoints:
    """Tests for the health endpoint and request tracing."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["sweep_running"] is False

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_is_generated(self, client):
        response = client.get("/health")
        assert response.headers.get("X-Request-ID")


class TestAnalyticsEndpoints:
    """Tests for the analytics query endpoints."""

    def test_weekly_pulse(self, client, populated):
        response = client.get(f"{API}/organizations/{ORG}/analytics/pulse", params={"period": "week"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"] == [{"period_start": "2026-03-02", "avg_mood": 3.67, "checkin_count": 3}]

    def test_pulse_for_team(self, client, populated):
        response = client.get(
            f"{API}/organizations/{ORG}/analytics/pulse",
            params={"period": "month", "scope": "team", "entity_id": "alpha"},
        )

        assert response.status_code == 200
        assert response.json()["data"][0]["checkin_count"] == 2

    def test_daily_pulse_window(self, client, populated):
        response = client.get(
            f"{API}/organizations/{ORG}/analytics/pulse",
            params={"from": "2026-03-04", "to": "2026-03-04"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert [row["period_start"] for row in data] == ["2026-03-04"]

    def test_shoutouts_received(self, client, populated):
        response = client.get(
            f"{API}/organizations/{ORG}/analytics/shoutouts",
            params={"period": "week", "scope": "user", "entity_id": "user-1", "direction": "received"},
        )

        assert response.status_code == 200
        assert response.json()["data"][0]["count"] == 1

    def test_checkin_compliance_excludes_vacation(self, client, populated):
        response = client.get(f"{API}/organizations/{ORG}/analytics/compliance/checkins")

        assert response.status_code == 200
        [row] = response.json()["data"]
        assert row["period_start"] is None
        assert row["metrics"]["total_count"] == 2
        assert row["metrics"]["on_time_count"] == 1
        assert row["metrics"]["on_time_percentage"] == 50.0
        assert row["metrics"]["vacation_weeks"] == 1

    def test_review_compliance(self, client, populated):
        response = client.get(
            f"{API}/organizations/{ORG}/analytics/compliance/reviews",
            params={"period": "week", "scope": "user", "entity_id": "user-2"},
        )

        assert response.status_code == 200
        metrics = response.json()["data"][0]["metrics"]
        assert metrics["on_time_percentage"] == 100.0
        assert metrics["average_days_early"] is None

    def test_empty_organization(self, client):
        response = client.get(f"{API}/organizations/org-empty/analytics/pulse", params={"period": "week"})
        assert response.status_code == 200
        assert response.json()["data"] == []

    @pytest.mark.parametrize(
        "params",
        [
            {"scope": "team"},
            {"period": "fortnight"},
            {"from": "2026-03-10", "to": "2026-03-01"},
            {"visibility": "secret"},
        ],
    )
    def test_invalid_options_return_400(self, client, params):
        response = client.get(f"{API}/organizations/{ORG}/analytics/shoutouts", params=params)
        assert response.status_code == 400

    def test_store_failure_returns_503(self, client, engine):
        with patch.object(engine.storage, "read_pulse_buckets", side_effect=StorageError("down")):
            response = client.get(f"{API}/organizations/{ORG}/analytics/pulse", params={"period": "week"})

        assert response.status_code == 503


class TestAggregationEndpoints:
    """Tests for the operator endpoints."""

    def test_recompute_entity_day(self, client, storage):
        storage.write_checkin(make_checkin())

        response = client.post(
            f"{API}/aggregation/organizations/{ORG}/recompute",
            json={"user_id": "user-1", "day": DAY.isoformat()},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["pulse"]["checkin_count"] == 1
        assert data["recognition"] is None

    def test_recompute_requires_user(self, client):
        response = client.post(
            f"{API}/aggregation/organizations/{ORG}/recompute", json={"day": DAY.isoformat()}
        )
        assert response.status_code == 422

    def test_backfill_sets_watermark(self, client, storage):
        storage.write_checkin(make_checkin())

        response = client.post(
            f"{API}/aggregation/organizations/{ORG}/backfill",
            json={"from": "2026-03-01T00:00:00Z", "to": "2026-03-08T00:00:00Z"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["entity_days_recomputed"] == 1

        watermark = client.get(f"{API}/aggregation/organizations/{ORG}/watermark")
        assert watermark.status_code == 200
        assert watermark.json()["data"]["last_processed_at"].startswith("2026-03-08T00:00:00")

    def test_backfill_reversed_range_returns_400(self, client):
        response = client.post(
            f"{API}/aggregation/organizations/{ORG}/backfill",
            json={"from": "2026-03-08T00:00:00Z", "to": "2026-03-01T00:00:00Z"},
        )
        assert response.status_code == 400

    def test_sweep(self, client, storage, clock):
        storage.write_checkin(make_checkin(created_at=clock() - timedelta(hours=1)))

        response = client.post(f"{API}/aggregation/sweep")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["organizations_processed"] == 1
        assert ORG in data["watermarks"]

    def test_missing_watermark_returns_404(self, client):
        response = client.get(f"{API}/aggregation/organizations/org-none/watermark")
        assert response.status_code == 404

    def test_status(self, client):
        response = client.get(f"{API}/aggregation/status")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["recompute_queue"]["running"] is True
        assert data["sweep"]["running"] is False


def test_engine_missing_returns_503():
    app = create_app()
    client = TestClient(app)
    response = client.get(f"{API}/organizations/{ORG}/analytics/pulse")
    assert response.status_code == 503
