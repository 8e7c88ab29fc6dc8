"""
Analytics Query Router - picks rollups or the raw log for each query.

Flow for every query:
1. Validate options (InvalidQueryError before any store access)
2. Serve from the process-local cache when a live entry exists
3. Choose the read path: rollups when enabled and either the period is
   coarse (week/month/quarter/year) or the whole window is older than the
   freshness threshold; the raw log otherwise
4. Optionally run the other path as a shadow read and log divergence
5. Cache the result, longer for windows that can no longer change

Windows are day-granular on both paths: ``from`` and ``to`` select whole UTC
days, and raw records are grouped by the same ``created_at`` day the
rollups are keyed on, so the two paths agree whenever rollups are current.
"""

from collections import defaultdict
from datetime import date, datetime, timedelta
from operator import attrgetter
from typing import Any, Callable, Iterable, Optional

import structlog
from pydantic import ValidationError

from teampulse.config import Settings, get_settings
from teampulse.models.analytics import (
    AnalyticsQueryOptions,
    ComplianceMetrics,
    ComplianceMetricsResult,
    PulseMetricsResult,
    ShoutoutMetricsResult,
)
from teampulse.models.enums import (
    COARSE_PERIODS,
    AnalyticsMethod,
    Direction,
    Period,
    ReadPath,
    Scope,
    Visibility,
)
from teampulse.models.events import ShoutoutRecord
from teampulse.storage.base import StorageBackend
from teampulse.utils.timeutils import bucket_day, day_bounds, utc_now, week_start_for

from .analytics_cache import AnalyticsCache, CacheKey
from .compliance import (
    compute_compliance_metrics,
    metrics_from_counts,
    review_sample,
    submission_sample,
)

logger = structlog.get_logger(__name__)


class InvalidQueryError(ValueError):
    """Raised when analytics options are malformed."""

    pass


def truncate_to_period(day: date, period: Optional[Period]) -> date:
    """
    First day of the period containing ``day``.

    day (or None) -> same day; week -> ISO Monday; month -> 1st;
    quarter -> first day of the quarter; year -> January 1st.
    """
    if period is None or period == Period.DAY:
        return day
    if period == Period.WEEK:
        return day - timedelta(days=day.weekday())
    if period == Period.MONTH:
        return day.replace(day=1)
    if period == Period.QUARTER:
        return date(day.year, 3 * ((day.month - 1) // 3) + 1, 1)
    if period == Period.YEAR:
        return date(day.year, 1, 1)
    raise InvalidQueryError(f"Unknown period: {period}")


class _Population:
    """Users a query covers; ``None`` members means the whole organization."""

    def __init__(self, members: Optional[set[str]], user_id: Optional[str], team_id: Optional[str]):
        self.members = members
        self.user_id = user_id
        self.team_id = team_id

    def __contains__(self, user_id: Optional[str]) -> bool:
        return self.members is None or user_id in self.members


class AnalyticsQueryRouter:
    """
    Serves pulse, shoutout and compliance analytics from rollups or raw data.

    Attributes:
        storage: Storage backend for bucket and raw reads
        cache: Result cache shared with the write hooks for invalidation
        use_rollups: Feature flag; False forces every query to the raw log
        enable_shadow_reads: Run the other path too and log divergence
        freshness_threshold: Windows entirely older than now minus this are stable
        clock: Returns the current UTC time; injectable for tests
    """

    def __init__(
        self,
        storage: StorageBackend,
        settings: Optional[Settings] = None,
        cache: Optional[AnalyticsCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        settings = settings or get_settings()
        self.storage = storage
        self.clock = clock
        self.cache = (
            cache if cache is not None else AnalyticsCache(clock=clock, maxsize=settings.cache_max_entries)
        )
        self.use_rollups = settings.use_rollups
        self.enable_shadow_reads = settings.enable_shadow_reads
        self.freshness_threshold = timedelta(days=settings.freshness_threshold_days)
        self.stable_ttl = timedelta(minutes=settings.cache_ttl_stable_minutes)
        self.recent_ttl = timedelta(minutes=settings.cache_ttl_recent_minutes)
        self.week_start_day = settings.week_start_day
        self.week_timezone = settings.week_timezone

    # =========================================================================
    # Public API
    # =========================================================================

    def get_pulse_metrics(self, organization_id: str, options: Any = None) -> list[PulseMetricsResult]:
        return self.query(AnalyticsMethod.PULSE, organization_id, options)

    def get_shoutout_metrics(self, organization_id: str, options: Any = None) -> list[ShoutoutMetricsResult]:
        return self.query(AnalyticsMethod.SHOUTOUTS, organization_id, options)

    def get_checkin_compliance_metrics(
        self, organization_id: str, options: Any = None
    ) -> list[ComplianceMetricsResult]:
        return self.query(AnalyticsMethod.CHECKIN_COMPLIANCE, organization_id, options)

    def get_review_compliance_metrics(
        self, organization_id: str, options: Any = None
    ) -> list[ComplianceMetricsResult]:
        return self.query(AnalyticsMethod.REVIEW_COMPLIANCE, organization_id, options)

    def query(self, method: AnalyticsMethod | str, organization_id: str, options: Any = None) -> list:
        """
        Answer one analytics query.

        Args:
            method: pulse, shoutouts, checkin_compliance or review_compliance
            organization_id: Organization to query
            options: AnalyticsQueryOptions, a mapping of option values, or None

        Returns:
            Result rows ordered by period_start

        Raises:
            InvalidQueryError: If the method or options are malformed
            StorageError: If the chosen read path fails
        """
        method = self.parse_method(method)
        opts = self.parse_options(options)
        key = CacheKey(organization_id, method.value, opts.fingerprint())

        cached = self._cache_get(key)
        if cached is not None:
            logger.debug("analytics_cache_hit", organization_id=organization_id, method=method.value)
            return list(cached)

        path = self.choose_path(method, opts)
        result = self._execute(method, path, organization_id, opts)

        if self.enable_shadow_reads:
            self._shadow_read(method, path, organization_id, opts, result)

        self._cache_set(key, result, self.ttl_for(opts))
        logger.debug(
            "analytics_query_served",
            organization_id=organization_id,
            method=method.value,
            path=path.value,
            rows=len(result),
        )
        return list(result)

    def invalidate_organization(self, organization_id: str) -> None:
        """Drop cached results for the organization; failures are logged only."""
        try:
            self.cache.invalidate_organization(organization_id)
        except Exception as e:
            logger.warning("analytics_cache_invalidate_failed", organization_id=organization_id, error=str(e))

    # =========================================================================
    # Validation & path selection
    # =========================================================================

    @staticmethod
    def parse_method(method: AnalyticsMethod | str) -> AnalyticsMethod:
        try:
            return AnalyticsMethod(method)
        except ValueError as e:
            raise InvalidQueryError(f"Unknown analytics method: {method}") from e

    @staticmethod
    def parse_options(options: Any) -> AnalyticsQueryOptions:
        """Validate raw options into AnalyticsQueryOptions."""
        if options is None:
            return AnalyticsQueryOptions()
        if isinstance(options, AnalyticsQueryOptions):
            return options
        try:
            return AnalyticsQueryOptions.model_validate(options)
        except ValidationError as e:
            messages = "; ".join(err["msg"] for err in e.errors())
            raise InvalidQueryError(f"Invalid analytics options: {messages}") from e

    def _stable_cutoff(self) -> datetime:
        return self.clock() - self.freshness_threshold

    def _window_is_stable(self, opts: AnalyticsQueryOptions) -> bool:
        if opts.from_ is None or opts.to is None:
            return False
        # Reads run through the end of the `to` day, so that whole day must be old.
        window_end = day_bounds(bucket_day(opts.to))[1]
        return window_end <= self._stable_cutoff()

    def uses_rollups(self, opts: AnalyticsQueryOptions) -> bool:
        """Whether the rollups are fresh enough for these options."""
        if not self.use_rollups:
            return False
        if opts.period in COARSE_PERIODS:
            return True
        return self._window_is_stable(opts)

    @staticmethod
    def rollups_can_answer(method: AnalyticsMethod, opts: AnalyticsQueryOptions) -> bool:
        """
        Shoutout rollups store received/given per user, so team scope with
        direction ``all`` would double count intra-team shoutouts, and the
        public/private split only exists for received shoutouts.
        """
        if method != AnalyticsMethod.SHOUTOUTS:
            return True
        if opts.scope == Scope.TEAM and opts.direction == Direction.ALL:
            return False
        if opts.visibility != Visibility.ALL and opts.direction != Direction.RECEIVED:
            return False
        return True

    def choose_path(self, method: AnalyticsMethod, opts: AnalyticsQueryOptions) -> ReadPath:
        if self.uses_rollups(opts) and self.rollups_can_answer(method, opts):
            return ReadPath.ROLLUPS
        return ReadPath.RAW

    def ttl_for(self, opts: AnalyticsQueryOptions) -> timedelta:
        return self.stable_ttl if self._window_is_stable(opts) else self.recent_ttl

    # =========================================================================
    # Cache wrappers (never fatal)
    # =========================================================================

    def _cache_get(self, key: CacheKey) -> Optional[list]:
        try:
            return self.cache.get(key)
        except Exception as e:
            logger.warning("analytics_cache_get_failed", organization_id=key.organization_id, error=str(e))
            return None

    def _cache_set(self, key: CacheKey, value: list, ttl: timedelta) -> None:
        try:
            self.cache.set(key, list(value), ttl)
        except Exception as e:
            logger.warning("analytics_cache_set_failed", organization_id=key.organization_id, error=str(e))

    # =========================================================================
    # Execution
    # =========================================================================

    def _execute(
        self,
        method: AnalyticsMethod,
        path: ReadPath,
        organization_id: str,
        opts: AnalyticsQueryOptions,
    ) -> list:
        population = self._population(organization_id, opts)
        rollups = path == ReadPath.ROLLUPS

        if method == AnalyticsMethod.PULSE:
            if rollups:
                return self._pulse_from_rollups(organization_id, opts, population)
            return self._pulse_from_raw(organization_id, opts, population)

        if method == AnalyticsMethod.SHOUTOUTS:
            if rollups:
                return self._shoutouts_from_rollups(organization_id, opts, population)
            return self._shoutouts_from_raw(organization_id, opts, population)

        review = method == AnalyticsMethod.REVIEW_COMPLIANCE
        if rollups:
            return self._compliance_from_rollups(organization_id, opts, population, review)
        return self._compliance_from_raw(organization_id, opts, population, review)

    def _population(self, organization_id: str, opts: AnalyticsQueryOptions) -> _Population:
        if opts.scope == Scope.USER:
            return _Population({opts.entity_id}, opts.entity_id, None)
        if opts.scope == Scope.TEAM:
            members = self.storage.read_team_member_ids(organization_id, opts.entity_id)
            return _Population(members, None, opts.entity_id)
        return _Population(None, None, None)

    @staticmethod
    def _date_range(opts: AnalyticsQueryOptions) -> tuple[Optional[date], Optional[date]]:
        start = bucket_day(opts.from_) if opts.from_ else None
        end = bucket_day(opts.to) if opts.to else None
        return start, end

    def _time_range(self, opts: AnalyticsQueryOptions) -> tuple[Optional[datetime], Optional[datetime]]:
        start_day, end_day = self._date_range(opts)
        start = day_bounds(start_day)[0] if start_day else None
        end = day_bounds(end_day)[1] if end_day else None
        return start, end

    def _normalize_week(self, value: datetime) -> datetime:
        return week_start_for(value, self.week_start_day, self.week_timezone)

    # -- pulse ---------------------------------------------------------------

    @staticmethod
    def _pulse_rows(totals: dict[date, list[int]]) -> list[PulseMetricsResult]:
        return [
            PulseMetricsResult(
                period_start=period_start,
                avg_mood=round(mood_sum / count, 2),
                checkin_count=count,
            )
            for period_start, (mood_sum, count) in sorted(totals.items())
            if count > 0
        ]

    def _pulse_from_rollups(
        self, organization_id: str, opts: AnalyticsQueryOptions, population: _Population
    ) -> list[PulseMetricsResult]:
        start_date, end_date = self._date_range(opts)
        buckets = self.storage.read_pulse_buckets(
            organization_id,
            start_date=start_date,
            end_date=end_date,
            user_id=population.user_id,
            team_id=population.team_id,
        )
        totals: dict[date, list[int]] = defaultdict(lambda: [0, 0])
        for bucket in buckets:
            row = totals[truncate_to_period(bucket.bucket_date, opts.period)]
            row[0] += bucket.mood_sum
            row[1] += bucket.checkin_count
        return self._pulse_rows(totals)

    def _pulse_from_raw(
        self, organization_id: str, opts: AnalyticsQueryOptions, population: _Population
    ) -> list[PulseMetricsResult]:
        start, end = self._time_range(opts)
        checkins = self.storage.read_checkins(
            organization_id, start=start, end=end, user_id=population.user_id, complete_only=True
        )
        totals: dict[date, list[int]] = defaultdict(lambda: [0, 0])
        for checkin in checkins:
            if checkin.user_id not in population:
                continue
            row = totals[truncate_to_period(bucket_day(checkin.created_at), opts.period)]
            row[0] += checkin.overall_mood
            row[1] += 1
        return self._pulse_rows(totals)

    # -- shoutouts -----------------------------------------------------------

    @staticmethod
    def _shoutout_rows(totals: dict[date, int]) -> list[ShoutoutMetricsResult]:
        return [
            ShoutoutMetricsResult(period_start=period_start, count=count)
            for period_start, count in sorted(totals.items())
            if count > 0
        ]

    def _shoutouts_from_rollups(
        self, organization_id: str, opts: AnalyticsQueryOptions, population: _Population
    ) -> list[ShoutoutMetricsResult]:
        start_date, end_date = self._date_range(opts)
        buckets = self.storage.read_recognition_buckets(
            organization_id,
            start_date=start_date,
            end_date=end_date,
            user_id=population.user_id,
            team_id=population.team_id,
        )
        totals: dict[date, int] = defaultdict(int)
        for bucket in buckets:
            if opts.direction == Direction.RECEIVED:
                if opts.visibility == Visibility.PUBLIC:
                    count = bucket.public_count
                elif opts.visibility == Visibility.PRIVATE:
                    count = bucket.private_count
                else:
                    count = bucket.received_count
            elif opts.direction == Direction.GIVEN:
                count = bucket.given_count
            elif opts.scope == Scope.ORGANIZATION:
                # Every shoutout is given by exactly one member.
                count = bucket.given_count
            else:
                count = bucket.received_count + bucket.given_count
            totals[truncate_to_period(bucket.bucket_date, opts.period)] += count
        return self._shoutout_rows(totals)

    @staticmethod
    def _shoutout_matches(shoutout: ShoutoutRecord, opts: AnalyticsQueryOptions, population: _Population) -> bool:
        if opts.visibility == Visibility.PUBLIC and not shoutout.is_public:
            return False
        if opts.visibility == Visibility.PRIVATE and shoutout.is_public:
            return False
        if opts.direction == Direction.RECEIVED:
            return shoutout.to_user_id in population
        if opts.direction == Direction.GIVEN:
            return shoutout.from_user_id in population
        return shoutout.to_user_id in population or shoutout.from_user_id in population

    def _shoutouts_from_raw(
        self, organization_id: str, opts: AnalyticsQueryOptions, population: _Population
    ) -> list[ShoutoutMetricsResult]:
        start, end = self._time_range(opts)
        shoutouts = self.storage.read_shoutouts(organization_id, start=start, end=end)
        totals: dict[date, int] = defaultdict(int)
        for shoutout in shoutouts:
            if self._shoutout_matches(shoutout, opts, population):
                totals[truncate_to_period(bucket_day(shoutout.created_at), opts.period)] += 1
        return self._shoutout_rows(totals)

    # -- compliance ----------------------------------------------------------

    def _compliance_from_rollups(
        self,
        organization_id: str,
        opts: AnalyticsQueryOptions,
        population: _Population,
        review: bool,
    ) -> list[ComplianceMetricsResult]:
        start_date, end_date = self._date_range(opts)
        buckets = self.storage.read_compliance_buckets(
            organization_id,
            start_date=start_date,
            end_date=end_date,
            user_id=population.user_id,
            team_id=population.team_id,
        )
        totals: dict[Optional[date], list[int]] = defaultdict(lambda: [0, 0])
        for bucket in buckets:
            period_start = truncate_to_period(bucket.bucket_date, opts.period) if opts.period else None
            row = totals[period_start]
            if review:
                row[0] += bucket.review_due_count
                row[1] += bucket.review_on_time_count
            else:
                row[0] += bucket.checkin_due_count
                row[1] += bucket.checkin_on_time_count

        if opts.period is None:
            total, on_time = totals.get(None, [0, 0])
            return [ComplianceMetricsResult(metrics=metrics_from_counts(total, on_time))]

        return [
            ComplianceMetricsResult(period_start=period_start, metrics=metrics_from_counts(total, on_time))
            for period_start, (total, on_time) in sorted(totals.items())
            if total or on_time
        ]

    def _compliance_from_raw(
        self,
        organization_id: str,
        opts: AnalyticsQueryOptions,
        population: _Population,
        review: bool,
    ) -> list[ComplianceMetricsResult]:
        start, end = self._time_range(opts)
        if review:
            checkins = self.storage.read_checkins(
                organization_id,
                start=start,
                end=end,
                reviewed_by=population.user_id,
                complete_only=True,
                reviewed_only=True,
            )
            checkins = [c for c in checkins if c.reviewed_by in population]
            owner = attrgetter("reviewed_by")
            to_sample = review_sample
        else:
            checkins = self.storage.read_checkins(
                organization_id, start=start, end=end, user_id=population.user_id, complete_only=True
            )
            checkins = [c for c in checkins if c.user_id in population]
            owner = attrgetter("user_id")
            to_sample = submission_sample

        vacations = self._vacations_for(organization_id, {owner(c) for c in checkins})

        grouped: dict[Optional[date], list] = defaultdict(list)
        for checkin in checkins:
            on_vacation = (owner(checkin), self._normalize_week(checkin.week_of)) in vacations
            period_start = (
                truncate_to_period(bucket_day(checkin.created_at), opts.period) if opts.period else None
            )
            grouped[period_start].append(to_sample(checkin, on_vacation))

        if opts.period is None:
            return [ComplianceMetricsResult(metrics=compute_compliance_metrics(grouped.get(None, [])))]

        # A period only has a row when the selected family counted something,
        # matching rollups where empty compliance buckets are never stored.
        results = [
            ComplianceMetricsResult(period_start=period_start, metrics=compute_compliance_metrics(samples))
            for period_start, samples in sorted(grouped.items())
        ]
        return [r for r in results if r.metrics.total_count or r.metrics.on_time_count]

    def _vacations_for(self, organization_id: str, user_ids: Iterable[str]) -> set[tuple[str, datetime]]:
        user_ids = sorted(user_ids)
        if not user_ids:
            return set()
        return self.storage.read_vacation_weeks(organization_id, user_ids=user_ids)

    # =========================================================================
    # Shadow reads
    # =========================================================================

    @staticmethod
    def _totals(method: AnalyticsMethod, rows: list) -> dict[str, float]:
        if method == AnalyticsMethod.PULSE:
            return {"checkin_count": sum(r.checkin_count for r in rows)}
        if method == AnalyticsMethod.SHOUTOUTS:
            return {"count": sum(r.count for r in rows)}
        metrics: list[ComplianceMetrics] = [r.metrics for r in rows]
        return {
            "total_count": sum(m.total_count for m in metrics),
            "on_time_count": sum(m.on_time_count for m in metrics),
        }

    def _shadow_read(
        self,
        method: AnalyticsMethod,
        primary: ReadPath,
        organization_id: str,
        opts: AnalyticsQueryOptions,
        primary_rows: list,
    ) -> None:
        """Run the other read path and log counts only; never affects the result."""
        shadow = ReadPath.RAW if primary == ReadPath.ROLLUPS else ReadPath.ROLLUPS
        if shadow == ReadPath.ROLLUPS and not self.rollups_can_answer(method, opts):
            return

        try:
            shadow_rows = self._execute(method, shadow, organization_id, opts)
        except Exception as e:
            logger.warning(
                "analytics_shadow_read_failed",
                organization_id=organization_id,
                method=method.value,
                shadow_path=shadow.value,
                error=str(e),
            )
            return

        primary_totals = self._totals(method, primary_rows)
        shadow_totals = self._totals(method, shadow_rows)
        diverged = len(primary_rows) != len(shadow_rows) or primary_totals != shadow_totals
        log = logger.warning if diverged else logger.info
        log(
            "analytics_shadow_read",
            organization_id=organization_id,
            method=method.value,
            primary_path=primary.value,
            primary_rows=len(primary_rows),
            shadow_rows=len(shadow_rows),
            primary_totals=primary_totals,
            shadow_totals=shadow_totals,
            diverged=diverged,
        )
