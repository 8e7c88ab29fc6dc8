"""
DuckDB storage implementation for the TeamPulse analytics engine.

Holds both the event source tables (check-ins, shoutouts, vacations, users,
teams) and the rollup tables the engine maintains (pulse, recognition and
compliance daily buckets plus per-organization watermarks).

Key features:
- Thread-safe access with per-thread connections
- Automatic schema creation on first use
- Composite primary keys on the (organization, user, day) rollup grain
- Explicit transactions for the three-family entity-day overwrite
- Every failure wrapped in StorageError with structured logging

Timestamps are stored as naive UTC in TIMESTAMP columns and converted back to
aware UTC by the models' validators on read.
"""

import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Optional

import duckdb
import structlog

from teampulse.models.buckets import ComplianceBucket, PulseBucket, RecognitionBucket, Watermark
from teampulse.models.enums import EventKind, MetricFamily
from teampulse.models.events import ActivityEvent, CheckinRecord, ShoutoutRecord, VacationRecord
from teampulse.utils.timeutils import bucket_day, ensure_utc, to_naive_utc, utc_now

from .base import StorageBackend, StorageError

logger = structlog.get_logger(__name__)


_CHECKIN_COLUMNS = """
    checkin_id, organization_id, user_id, week_of, overall_mood, is_complete,
    created_at, submitted_at, due_date, submitted_on_time, review_due_date,
    reviewed_by, reviewed_at, reviewed_on_time
"""

_BUCKET_TABLES = {
    MetricFamily.PULSE: "pulse_metrics_daily",
    MetricFamily.RECOGNITION: "recognition_metrics_daily",
    MetricFamily.COMPLIANCE: "compliance_metrics_daily",
}


def _row_to_checkin(row) -> CheckinRecord:
    return CheckinRecord(
        checkin_id=row[0],
        organization_id=row[1],
        user_id=row[2],
        week_of=row[3],
        overall_mood=row[4],
        is_complete=row[5],
        created_at=row[6],
        submitted_at=row[7],
        due_date=row[8],
        submitted_on_time=row[9],
        review_due_date=row[10],
        reviewed_by=row[11],
        reviewed_at=row[12],
        reviewed_on_time=row[13],
    )


class DuckDBStorage(StorageBackend):
    """
    DuckDB implementation of the storage backend.

    Each thread gets its own connection to the same database file; DuckDB
    serializes conflicting writes with optimistic concurrency control, so a
    conflicting transaction fails with an error (surfaced as StorageError)
    rather than corrupting data.

    Attributes:
        db_path: Path to the DuckDB database file
        _local: Thread-local storage for per-thread connections
        _lock: Thread lock for schema operations and connection bookkeeping
        _connections: Every connection opened, so close() can release them
        _initialized: Flag tracking whether schema is initialized
    """

    def __init__(self, db_path: str = "./data/teampulse.duckdb"):
        """
        Initialize DuckDB storage backend.

        Args:
            db_path: Path to DuckDB database file (default: ./data/teampulse.duckdb)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self._lock = threading.RLock()
        self._connections: list[duckdb.DuckDBPyConnection] = []
        self._initialized = False

        logger.info("duckdb_storage_initialized", db_path=str(self.db_path))

        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """
        Get a thread-local DuckDB connection.

        Yields:
            DuckDB connection instance

        Raises:
            StorageError: If connection cannot be established
        """
        if not hasattr(self._local, "connection"):
            try:
                connection = duckdb.connect(str(self.db_path))
            except Exception as e:
                logger.error("duckdb_connection_failed", error=str(e))
                raise StorageError(f"Failed to connect to DuckDB: {e}") from e
            self._local.connection = connection
            with self._lock:
                self._connections.append(connection)
            logger.debug("duckdb_connection_created", thread_id=threading.get_ident())

        try:
            yield self._local.connection
        except Exception:
            try:
                self._local.connection.rollback()
            except duckdb.Error as rollback_error:
                logger.debug("duckdb_rollback_skipped", error=str(rollback_error))
            raise

    @contextmanager
    def _transaction(self):
        """Run the enclosed statements in one explicit transaction."""
        with self._get_connection() as conn:
            conn.begin()
            yield conn
            conn.commit()

    def close(self) -> None:
        """Close every connection opened by this backend."""
        with self._lock:
            connections, self._connections = self._connections, []
        for connection in connections:
            try:
                connection.close()
            except duckdb.Error as e:
                logger.warning("duckdb_close_failed", error=str(e))
        self._local = threading.local()
        logger.info("duckdb_storage_closed", connection_count=len(connections))

    def _initialize_schema(self):
        """
        Initialize all database tables and indexes.

        Idempotent and safe to call multiple times.

        Raises:
            StorageError: If schema creation fails
        """
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            try:
                with self._get_connection() as conn:
                    # =========================================================
                    # Event Source Tables
                    # =========================================================

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS users (
                            organization_id VARCHAR NOT NULL,
                            user_id VARCHAR NOT NULL,
                            team_id VARCHAR,
                            PRIMARY KEY (organization_id, user_id)
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS teams (
                            organization_id VARCHAR NOT NULL,
                            team_id VARCHAR NOT NULL,
                            leader_id VARCHAR,
                            PRIMARY KEY (organization_id, team_id)
                        )
                    """)

                    # No secondary indexes on checkins: DuckDB rejects INSERT OR REPLACE
                    # when a replaced column is covered by an index.
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS checkins (
                            checkin_id VARCHAR PRIMARY KEY,
                            organization_id VARCHAR NOT NULL,
                            user_id VARCHAR NOT NULL,
                            week_of TIMESTAMP NOT NULL,
                            overall_mood INTEGER NOT NULL,
                            is_complete BOOLEAN NOT NULL,
                            created_at TIMESTAMP NOT NULL,
                            submitted_at TIMESTAMP,
                            due_date TIMESTAMP,
                            submitted_on_time BOOLEAN NOT NULL DEFAULT FALSE,
                            review_due_date TIMESTAMP,
                            reviewed_by VARCHAR,
                            reviewed_at TIMESTAMP,
                            reviewed_on_time BOOLEAN NOT NULL DEFAULT FALSE
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS shoutouts (
                            shoutout_id VARCHAR PRIMARY KEY,
                            organization_id VARCHAR NOT NULL,
                            from_user_id VARCHAR NOT NULL,
                            to_user_id VARCHAR NOT NULL,
                            is_public BOOLEAN NOT NULL,
                            created_at TIMESTAMP NOT NULL
                        )
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_shoutouts_org_created
                        ON shoutouts(organization_id, created_at)
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS vacations (
                            organization_id VARCHAR NOT NULL,
                            user_id VARCHAR NOT NULL,
                            week_of TIMESTAMP NOT NULL,
                            note VARCHAR,
                            created_at TIMESTAMP NOT NULL,
                            PRIMARY KEY (organization_id, user_id, week_of)
                        )
                    """)

                    # =========================================================
                    # Rollup Tables
                    # =========================================================

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS pulse_metrics_daily (
                            organization_id VARCHAR NOT NULL,
                            user_id VARCHAR NOT NULL,
                            team_id VARCHAR,
                            bucket_date DATE NOT NULL,
                            mood_sum INTEGER NOT NULL,
                            checkin_count INTEGER NOT NULL,
                            updated_at TIMESTAMP NOT NULL,
                            PRIMARY KEY (organization_id, user_id, bucket_date)
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS recognition_metrics_daily (
                            organization_id VARCHAR NOT NULL,
                            user_id VARCHAR NOT NULL,
                            team_id VARCHAR,
                            bucket_date DATE NOT NULL,
                            received_count INTEGER NOT NULL,
                            given_count INTEGER NOT NULL,
                            public_count INTEGER NOT NULL,
                            private_count INTEGER NOT NULL,
                            updated_at TIMESTAMP NOT NULL,
                            PRIMARY KEY (organization_id, user_id, bucket_date)
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS compliance_metrics_daily (
                            organization_id VARCHAR NOT NULL,
                            user_id VARCHAR NOT NULL,
                            team_id VARCHAR,
                            bucket_date DATE NOT NULL,
                            checkin_due_count INTEGER NOT NULL,
                            checkin_on_time_count INTEGER NOT NULL,
                            review_due_count INTEGER NOT NULL,
                            review_on_time_count INTEGER NOT NULL,
                            updated_at TIMESTAMP NOT NULL,
                            PRIMARY KEY (organization_id, user_id, bucket_date)
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS aggregation_watermarks (
                            organization_id VARCHAR PRIMARY KEY,
                            last_processed_at TIMESTAMP NOT NULL,
                            updated_at TIMESTAMP NOT NULL
                        )
                    """)

                    conn.commit()
                    logger.info("duckdb_schema_initialized", table_count=9)
                    self._initialized = True

            except Exception as e:
                logger.error("duckdb_schema_initialization_failed", error=str(e))
                raise StorageError(f"Failed to initialize schema: {e}") from e

    # =========================================================================
    # Event Source - Directory
    # =========================================================================

    def upsert_user(self, organization_id: str, user_id: str, team_id: Optional[str] = None) -> None:
        """Create or update a user's team membership."""
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO users (organization_id, user_id, team_id)
                    VALUES (?, ?, ?)
                    """,
                    [organization_id, user_id, team_id],
                )
                conn.commit()
                logger.debug("user_upserted", organization_id=organization_id, user_id=user_id)

        except Exception as e:
            logger.error("upsert_user_failed", organization_id=organization_id, user_id=user_id, error=str(e))
            raise StorageError(f"Failed to upsert user: {e}") from e

    def upsert_team(self, organization_id: str, team_id: str, leader_id: Optional[str] = None) -> None:
        """Create or update a team."""
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO teams (organization_id, team_id, leader_id)
                    VALUES (?, ?, ?)
                    """,
                    [organization_id, team_id, leader_id],
                )
                conn.commit()
                logger.debug("team_upserted", organization_id=organization_id, team_id=team_id)

        except Exception as e:
            logger.error("upsert_team_failed", organization_id=organization_id, team_id=team_id, error=str(e))
            raise StorageError(f"Failed to upsert team: {e}") from e

    def get_user_team(self, organization_id: str, user_id: str) -> Optional[str]:
        """Return the user's current team id."""
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT team_id FROM users WHERE organization_id = ? AND user_id = ?",
                    [organization_id, user_id],
                ).fetchone()
                return row[0] if row else None

        except Exception as e:
            logger.error("get_user_team_failed", organization_id=organization_id, user_id=user_id, error=str(e))
            raise StorageError(f"Failed to read user team: {e}") from e

    def read_team_member_ids(self, organization_id: str, team_id: str) -> set[str]:
        """Return the ids of the team's current members."""
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT user_id FROM users WHERE organization_id = ? AND team_id = ?",
                    [organization_id, team_id],
                ).fetchall()
                return {row[0] for row in rows}

        except Exception as e:
            logger.error("read_team_members_failed", organization_id=organization_id, team_id=team_id, error=str(e))
            raise StorageError(f"Failed to read team members: {e}") from e

    # =========================================================================
    # Event Source - Records
    # =========================================================================

    def write_checkin(self, checkin: CheckinRecord) -> str:
        """Insert or replace a check-in."""
        try:
            with self._get_connection() as conn:
                conn.execute(
                    f"""
                    INSERT OR REPLACE INTO checkins ({_CHECKIN_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        checkin.checkin_id,
                        checkin.organization_id,
                        checkin.user_id,
                        to_naive_utc(checkin.week_of),
                        checkin.overall_mood,
                        checkin.is_complete,
                        to_naive_utc(checkin.created_at),
                        to_naive_utc(checkin.submitted_at),
                        to_naive_utc(checkin.due_date),
                        checkin.submitted_on_time,
                        to_naive_utc(checkin.review_due_date),
                        checkin.reviewed_by,
                        to_naive_utc(checkin.reviewed_at),
                        checkin.reviewed_on_time,
                    ],
                )
                conn.commit()
                logger.debug(
                    "checkin_written",
                    checkin_id=checkin.checkin_id,
                    organization_id=checkin.organization_id,
                )
                return checkin.checkin_id

        except Exception as e:
            logger.error("write_checkin_failed", checkin_id=checkin.checkin_id, error=str(e))
            raise StorageError(f"Failed to write check-in: {e}") from e

    def write_shoutout(self, shoutout: ShoutoutRecord) -> str:
        """Insert a shoutout."""
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO shoutouts (
                        shoutout_id, organization_id, from_user_id, to_user_id,
                        is_public, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        shoutout.shoutout_id,
                        shoutout.organization_id,
                        shoutout.from_user_id,
                        shoutout.to_user_id,
                        shoutout.is_public,
                        to_naive_utc(shoutout.created_at),
                    ],
                )
                conn.commit()
                logger.debug(
                    "shoutout_written",
                    shoutout_id=shoutout.shoutout_id,
                    organization_id=shoutout.organization_id,
                )
                return shoutout.shoutout_id

        except Exception as e:
            logger.error("write_shoutout_failed", shoutout_id=shoutout.shoutout_id, error=str(e))
            raise StorageError(f"Failed to write shoutout: {e}") from e

    def upsert_vacation(self, vacation: VacationRecord) -> VacationRecord:
        """Declare a vacation week; a second declaration only updates the note."""
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO vacations (organization_id, user_id, week_of, note, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (organization_id, user_id, week_of)
                    DO UPDATE SET note = excluded.note
                    """,
                    [
                        vacation.organization_id,
                        vacation.user_id,
                        to_naive_utc(vacation.week_of),
                        vacation.note,
                        to_naive_utc(vacation.created_at),
                    ],
                )
                conn.commit()
                row = conn.execute(
                    """
                    SELECT organization_id, user_id, week_of, note, created_at
                    FROM vacations
                    WHERE organization_id = ? AND user_id = ? AND week_of = ?
                    """,
                    [vacation.organization_id, vacation.user_id, to_naive_utc(vacation.week_of)],
                ).fetchone()
                logger.debug(
                    "vacation_upserted",
                    organization_id=vacation.organization_id,
                    user_id=vacation.user_id,
                    week_of=vacation.week_of.isoformat(),
                )
                return VacationRecord(
                    organization_id=row[0],
                    user_id=row[1],
                    week_of=row[2],
                    note=row[3],
                    created_at=row[4],
                )

        except Exception as e:
            logger.error(
                "upsert_vacation_failed",
                organization_id=vacation.organization_id,
                user_id=vacation.user_id,
                error=str(e),
            )
            raise StorageError(f"Failed to upsert vacation: {e}") from e

    def delete_vacation(self, organization_id: str, user_id: str, week_of: datetime) -> bool:
        """Remove a vacation week."""
        try:
            with self._get_connection() as conn:
                params = [organization_id, user_id, to_naive_utc(week_of)]
                existing = conn.execute(
                    """
                    SELECT COUNT(*) FROM vacations
                    WHERE organization_id = ? AND user_id = ? AND week_of = ?
                    """,
                    params,
                ).fetchone()[0]
                if not existing:
                    return False

                conn.execute(
                    """
                    DELETE FROM vacations
                    WHERE organization_id = ? AND user_id = ? AND week_of = ?
                    """,
                    params,
                )
                conn.commit()
                logger.debug("vacation_deleted", organization_id=organization_id, user_id=user_id)
                return True

        except Exception as e:
            logger.error("delete_vacation_failed", organization_id=organization_id, user_id=user_id, error=str(e))
            raise StorageError(f"Failed to delete vacation: {e}") from e

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
        """Read check-ins created in [start, end)."""
        try:
            with self._get_connection() as conn:
                query = f"SELECT {_CHECKIN_COLUMNS} FROM checkins WHERE organization_id = ?"
                params: list = [organization_id]

                if start:
                    query += " AND created_at >= ?"
                    params.append(to_naive_utc(start))

                if end:
                    query += " AND created_at < ?"
                    params.append(to_naive_utc(end))

                if user_id:
                    query += " AND user_id = ?"
                    params.append(user_id)

                if reviewed_by:
                    query += " AND reviewed_by = ?"
                    params.append(reviewed_by)

                if complete_only:
                    query += " AND is_complete"

                if reviewed_only:
                    query += " AND reviewed_at IS NOT NULL AND reviewed_by IS NOT NULL"

                query += " ORDER BY created_at ASC, checkin_id ASC"

                rows = conn.execute(query, params).fetchall()
                checkins = [_row_to_checkin(row) for row in rows]
                logger.debug("checkins_read", organization_id=organization_id, count=len(checkins))
                return checkins

        except Exception as e:
            logger.error("read_checkins_failed", organization_id=organization_id, error=str(e))
            raise StorageError(f"Failed to read check-ins: {e}") from e

    def read_shoutouts(
        self,
        organization_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        from_user_id: Optional[str] = None,
        to_user_id: Optional[str] = None,
    ) -> list[ShoutoutRecord]:
        """Read shoutouts created in [start, end)."""
        try:
            with self._get_connection() as conn:
                query = """
                    SELECT shoutout_id, organization_id, from_user_id, to_user_id,
                           is_public, created_at
                    FROM shoutouts
                    WHERE organization_id = ?
                """
                params: list = [organization_id]

                if start:
                    query += " AND created_at >= ?"
                    params.append(to_naive_utc(start))

                if end:
                    query += " AND created_at < ?"
                    params.append(to_naive_utc(end))

                if from_user_id:
                    query += " AND from_user_id = ?"
                    params.append(from_user_id)

                if to_user_id:
                    query += " AND to_user_id = ?"
                    params.append(to_user_id)

                query += " ORDER BY created_at ASC, shoutout_id ASC"

                rows = conn.execute(query, params).fetchall()
                shoutouts = [
                    ShoutoutRecord(
                        shoutout_id=row[0],
                        organization_id=row[1],
                        from_user_id=row[2],
                        to_user_id=row[3],
                        is_public=row[4],
                        created_at=row[5],
                    )
                    for row in rows
                ]
                logger.debug("shoutouts_read", organization_id=organization_id, count=len(shoutouts))
                return shoutouts

        except Exception as e:
            logger.error("read_shoutouts_failed", organization_id=organization_id, error=str(e))
            raise StorageError(f"Failed to read shoutouts: {e}") from e

    def read_vacation_weeks(
        self,
        organization_id: str,
        user_ids: Optional[list[str]] = None,
        week_start: Optional[datetime] = None,
        week_end: Optional[datetime] = None,
    ) -> set[tuple[str, datetime]]:
        """Read declared vacation weeks as (user_id, week_start) pairs."""
        if user_ids is not None and not user_ids:
            return set()

        try:
            with self._get_connection() as conn:
                query = "SELECT user_id, week_of FROM vacations WHERE organization_id = ?"
                params: list = [organization_id]

                if user_ids is not None:
                    query += f" AND user_id IN ({', '.join('?' for _ in user_ids)})"
                    params.extend(user_ids)

                if week_start:
                    query += " AND week_of >= ?"
                    params.append(to_naive_utc(week_start))

                if week_end:
                    query += " AND week_of <= ?"
                    params.append(to_naive_utc(week_end))

                rows = conn.execute(query, params).fetchall()
                return {(row[0], ensure_utc(row[1])) for row in rows}

        except Exception as e:
            logger.error("read_vacation_weeks_failed", organization_id=organization_id, error=str(e))
            raise StorageError(f"Failed to read vacation weeks: {e}") from e

    def is_on_vacation(self, organization_id: str, user_id: str, week_of: datetime) -> bool:
        """Point lookup against the normalized vacation week."""
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    """
                    SELECT COUNT(*) FROM vacations
                    WHERE organization_id = ? AND user_id = ? AND week_of = ?
                    """,
                    [organization_id, user_id, to_naive_utc(week_of)],
                ).fetchone()
                return row[0] > 0

        except Exception as e:
            logger.error("is_on_vacation_failed", organization_id=organization_id, user_id=user_id, error=str(e))
            raise StorageError(f"Failed to check vacation: {e}") from e

    def read_compliance_days_for_week(
        self,
        organization_id: str,
        user_id: str,
        week_start: datetime,
        week_end: datetime,
    ) -> list[date]:
        """Days holding compliance samples of the user, as submitter or reviewer, for one week."""
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    """
                    SELECT DISTINCT CAST(created_at AS DATE) AS day
                    FROM checkins
                    WHERE organization_id = ?
                      AND is_complete
                      AND week_of >= ? AND week_of < ?
                      AND (user_id = ? OR (reviewed_by = ? AND reviewed_at IS NOT NULL))
                    ORDER BY day
                    """,
                    [
                        organization_id,
                        to_naive_utc(week_start),
                        to_naive_utc(week_end),
                        user_id,
                        user_id,
                    ],
                ).fetchall()
                return [row[0] for row in rows]

        except Exception as e:
            logger.error(
                "read_compliance_days_failed",
                organization_id=organization_id,
                user_id=user_id,
                error=str(e),
            )
            raise StorageError(f"Failed to read compliance days: {e}") from e

    def read_activity_events(
        self,
        organization_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[ActivityEvent]:
        """
        Build the activity view from the event source tables.

        Each complete or incomplete check-in yields a submission event; each
        reviewed check-in additionally yields a review event owned by the
        reviewer; each shoutout yields a given and a received event; each
        vacation row yields a declaration event.
        """
        lower = to_naive_utc(since)
        upper = to_naive_utc(until)

        def window(column: str) -> tuple[str, list]:
            clause, params = "", []
            if lower is not None:
                clause += f" AND {column} >= ?"
                params.append(lower)
            if upper is not None:
                clause += f" AND {column} <= ?"
                params.append(upper)
            return clause, params

        try:
            with self._get_connection() as conn:
                teams = dict(
                    conn.execute(
                        "SELECT user_id, team_id FROM users WHERE organization_id = ?",
                        [organization_id],
                    ).fetchall()
                )
                events: list[ActivityEvent] = []

                clause, params = window("created_at")
                for checkin_id, user_id, created_at in conn.execute(
                    f"""
                    SELECT checkin_id, user_id, created_at FROM checkins
                    WHERE organization_id = ?{clause}
                    """,
                    [organization_id, *params],
                ).fetchall():
                    events.append(
                        ActivityEvent(
                            organization_id=organization_id,
                            user_id=user_id,
                            team_id=teams.get(user_id),
                            occurred_at=created_at,
                            kind=EventKind.CHECKIN_SUBMITTED,
                            bucket_date=bucket_day(ensure_utc(created_at)),
                            payload={"checkin_id": checkin_id},
                        )
                    )

                clause, params = window("reviewed_at")
                for checkin_id, reviewer_id, reviewed_at, created_at in conn.execute(
                    f"""
                    SELECT checkin_id, reviewed_by, reviewed_at, created_at FROM checkins
                    WHERE organization_id = ?
                      AND reviewed_at IS NOT NULL AND reviewed_by IS NOT NULL{clause}
                    """,
                    [organization_id, *params],
                ).fetchall():
                    events.append(
                        ActivityEvent(
                            organization_id=organization_id,
                            user_id=reviewer_id,
                            team_id=teams.get(reviewer_id),
                            occurred_at=reviewed_at,
                            kind=EventKind.CHECKIN_REVIEWED,
                            bucket_date=bucket_day(ensure_utc(created_at)),
                            payload={"checkin_id": checkin_id},
                        )
                    )

                clause, params = window("created_at")
                for shoutout_id, from_user_id, to_user_id, created_at in conn.execute(
                    f"""
                    SELECT shoutout_id, from_user_id, to_user_id, created_at FROM shoutouts
                    WHERE organization_id = ?{clause}
                    """,
                    [organization_id, *params],
                ).fetchall():
                    day = bucket_day(ensure_utc(created_at))
                    for user_id, kind in (
                        (from_user_id, EventKind.SHOUTOUT_GIVEN),
                        (to_user_id, EventKind.SHOUTOUT_RECEIVED),
                    ):
                        events.append(
                            ActivityEvent(
                                organization_id=organization_id,
                                user_id=user_id,
                                team_id=teams.get(user_id),
                                occurred_at=created_at,
                                kind=kind,
                                bucket_date=day,
                                payload={"shoutout_id": shoutout_id},
                            )
                        )

                clause, params = window("created_at")
                for user_id, week_of, created_at in conn.execute(
                    f"""
                    SELECT user_id, week_of, created_at FROM vacations
                    WHERE organization_id = ?{clause}
                    """,
                    [organization_id, *params],
                ).fetchall():
                    week_start = ensure_utc(week_of)
                    events.append(
                        ActivityEvent(
                            organization_id=organization_id,
                            user_id=user_id,
                            team_id=teams.get(user_id),
                            occurred_at=created_at,
                            kind=EventKind.VACATION_DECLARED,
                            bucket_date=bucket_day(week_start),
                            payload={"week_of": week_start.isoformat()},
                        )
                    )

                events.sort(key=lambda e: e.occurred_at)
                logger.debug("activity_events_read", organization_id=organization_id, count=len(events))
                return events

        except Exception as e:
            logger.error("read_activity_events_failed", organization_id=organization_id, error=str(e))
            raise StorageError(f"Failed to read activity events: {e}") from e

    def read_active_organizations(self, since: datetime) -> list[str]:
        """Organizations with any check-in, review, shoutout or vacation at or after ``since``."""
        try:
            with self._get_connection() as conn:
                lower = to_naive_utc(since)
                rows = conn.execute(
                    """
                    SELECT DISTINCT organization_id FROM (
                        SELECT organization_id FROM checkins WHERE created_at >= ?
                        UNION
                        SELECT organization_id FROM checkins WHERE reviewed_at >= ?
                        UNION
                        SELECT organization_id FROM shoutouts WHERE created_at >= ?
                        UNION
                        SELECT organization_id FROM vacations WHERE created_at >= ?
                    )
                    ORDER BY organization_id
                    """,
                    [lower, lower, lower, lower],
                ).fetchall()
                return [row[0] for row in rows]

        except Exception as e:
            logger.error("read_active_organizations_failed", error=str(e))
            raise StorageError(f"Failed to read active organizations: {e}") from e

    # =========================================================================
    # Bucket Store
    # =========================================================================

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
        Overwrite all three families for one entity-day in a single transaction.

        A present family replaces the whole row (every column is rewritten
        from the freshly derived bucket); an absent family deletes it.
        """
        key = [organization_id, user_id, bucket_date]

        try:
            with self._transaction() as conn:
                if pulse is not None:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO pulse_metrics_daily (
                            organization_id, user_id, team_id, bucket_date,
                            mood_sum, checkin_count, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            organization_id,
                            user_id,
                            pulse.team_id,
                            bucket_date,
                            pulse.mood_sum,
                            pulse.checkin_count,
                            to_naive_utc(pulse.updated_at),
                        ],
                    )
                else:
                    self._delete_bucket(conn, MetricFamily.PULSE, key)

                if recognition is not None:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO recognition_metrics_daily (
                            organization_id, user_id, team_id, bucket_date,
                            received_count, given_count, public_count,
                            private_count, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            organization_id,
                            user_id,
                            recognition.team_id,
                            bucket_date,
                            recognition.received_count,
                            recognition.given_count,
                            recognition.public_count,
                            recognition.private_count,
                            to_naive_utc(recognition.updated_at),
                        ],
                    )
                else:
                    self._delete_bucket(conn, MetricFamily.RECOGNITION, key)

                if compliance is not None:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO compliance_metrics_daily (
                            organization_id, user_id, team_id, bucket_date,
                            checkin_due_count, checkin_on_time_count,
                            review_due_count, review_on_time_count, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            organization_id,
                            user_id,
                            compliance.team_id,
                            bucket_date,
                            compliance.checkin_due_count,
                            compliance.checkin_on_time_count,
                            compliance.review_due_count,
                            compliance.review_on_time_count,
                            to_naive_utc(compliance.updated_at),
                        ],
                    )
                else:
                    self._delete_bucket(conn, MetricFamily.COMPLIANCE, key)

            logger.debug(
                "entity_day_buckets_replaced",
                organization_id=organization_id,
                user_id=user_id,
                bucket_date=bucket_date.isoformat(),
            )

        except Exception as e:
            logger.error(
                "replace_entity_day_buckets_failed",
                organization_id=organization_id,
                user_id=user_id,
                bucket_date=bucket_date.isoformat(),
                error=str(e),
            )
            raise StorageError(f"Failed to replace buckets: {e}") from e

    @staticmethod
    def _delete_bucket(conn, family: MetricFamily, key: list) -> None:
        conn.execute(
            f"""
            DELETE FROM {_BUCKET_TABLES[family]}
            WHERE organization_id = ? AND user_id = ? AND bucket_date = ?
            """,
            key,
        )

    def _bucket_query(
        self,
        family: MetricFamily,
        columns: str,
        organization_id: str,
        start_date: Optional[date],
        end_date: Optional[date],
        user_id: Optional[str],
        team_id: Optional[str],
    ) -> list[tuple]:
        """
        Shared SELECT for the bucket families.

        ``team_id`` filters by current team membership so rollup reads cover
        the same population as raw reads.
        """
        query = f"""
            SELECT organization_id, user_id, team_id, bucket_date, updated_at, {columns}
            FROM {_BUCKET_TABLES[family]}
            WHERE organization_id = ?
        """
        params: list = [organization_id]

        if start_date:
            query += " AND bucket_date >= ?"
            params.append(start_date)

        if end_date:
            query += " AND bucket_date <= ?"
            params.append(end_date)

        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)

        if team_id:
            query += " AND user_id IN (SELECT user_id FROM users WHERE organization_id = ? AND team_id = ?)"
            params.extend([organization_id, team_id])

        query += " ORDER BY bucket_date ASC, user_id ASC"

        with self._get_connection() as conn:
            return conn.execute(query, params).fetchall()

    def read_pulse_buckets(
        self,
        organization_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> list[PulseBucket]:
        """Read pulse buckets."""
        try:
            rows = self._bucket_query(
                MetricFamily.PULSE, "mood_sum, checkin_count",
                organization_id, start_date, end_date, user_id, team_id,
            )
            return [
                PulseBucket(
                    organization_id=row[0],
                    user_id=row[1],
                    team_id=row[2],
                    bucket_date=row[3],
                    updated_at=row[4],
                    mood_sum=row[5],
                    checkin_count=row[6],
                )
                for row in rows
            ]

        except Exception as e:
            logger.error("read_pulse_buckets_failed", organization_id=organization_id, error=str(e))
            raise StorageError(f"Failed to read pulse buckets: {e}") from e

    def read_recognition_buckets(
        self,
        organization_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> list[RecognitionBucket]:
        """Read recognition buckets."""
        try:
            rows = self._bucket_query(
                MetricFamily.RECOGNITION, "received_count, given_count, public_count, private_count",
                organization_id, start_date, end_date, user_id, team_id,
            )
            return [
                RecognitionBucket(
                    organization_id=row[0],
                    user_id=row[1],
                    team_id=row[2],
                    bucket_date=row[3],
                    updated_at=row[4],
                    received_count=row[5],
                    given_count=row[6],
                    public_count=row[7],
                    private_count=row[8],
                )
                for row in rows
            ]

        except Exception as e:
            logger.error("read_recognition_buckets_failed", organization_id=organization_id, error=str(e))
            raise StorageError(f"Failed to read recognition buckets: {e}") from e

    def read_compliance_buckets(
        self,
        organization_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> list[ComplianceBucket]:
        """Read compliance buckets."""
        try:
            rows = self._bucket_query(
                MetricFamily.COMPLIANCE,
                "checkin_due_count, checkin_on_time_count, review_due_count, review_on_time_count",
                organization_id, start_date, end_date, user_id, team_id,
            )
            return [
                ComplianceBucket(
                    organization_id=row[0],
                    user_id=row[1],
                    team_id=row[2],
                    bucket_date=row[3],
                    updated_at=row[4],
                    checkin_due_count=row[5],
                    checkin_on_time_count=row[6],
                    review_due_count=row[7],
                    review_on_time_count=row[8],
                )
                for row in rows
            ]

        except Exception as e:
            logger.error("read_compliance_buckets_failed", organization_id=organization_id, error=str(e))
            raise StorageError(f"Failed to read compliance buckets: {e}") from e

    # =========================================================================
    # Watermarks
    # =========================================================================

    def read_watermark(self, organization_id: str) -> Optional[Watermark]:
        """Return the organization's watermark."""
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    """
                    SELECT organization_id, last_processed_at, updated_at
                    FROM aggregation_watermarks
                    WHERE organization_id = ?
                    """,
                    [organization_id],
                ).fetchone()
                if not row:
                    return None
                return Watermark(organization_id=row[0], last_processed_at=row[1], updated_at=row[2])

        except Exception as e:
            logger.error("read_watermark_failed", organization_id=organization_id, error=str(e))
            raise StorageError(f"Failed to read watermark: {e}") from e

    def create_watermark_if_absent(self, organization_id: str, last_processed_at: datetime) -> Watermark:
        """Seed the watermark unless one already exists."""
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO aggregation_watermarks (organization_id, last_processed_at, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT (organization_id) DO NOTHING
                    """,
                    [organization_id, to_naive_utc(last_processed_at), to_naive_utc(utc_now())],
                )
                conn.commit()

        except Exception as e:
            logger.error("create_watermark_failed", organization_id=organization_id, error=str(e))
            raise StorageError(f"Failed to create watermark: {e}") from e

        watermark = self.read_watermark(organization_id)
        if watermark is None:
            raise StorageError(f"Watermark for {organization_id} missing after creation")
        return watermark

    def write_watermark(self, organization_id: str, last_processed_at: datetime) -> Watermark:
        """Set the watermark unconditionally."""
        now = utc_now()
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO aggregation_watermarks (organization_id, last_processed_at, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT (organization_id) DO UPDATE SET
                        last_processed_at = excluded.last_processed_at,
                        updated_at = excluded.updated_at
                    """,
                    [organization_id, to_naive_utc(last_processed_at), to_naive_utc(now)],
                )
                conn.commit()
                logger.debug(
                    "watermark_written",
                    organization_id=organization_id,
                    last_processed_at=ensure_utc(last_processed_at).isoformat(),
                )
                return Watermark(
                    organization_id=organization_id,
                    last_processed_at=last_processed_at,
                    updated_at=now,
                )

        except Exception as e:
            logger.error("write_watermark_failed", organization_id=organization_id, error=str(e))
            raise StorageError(f"Failed to write watermark: {e}") from e
