"""
Enumeration types for the TeamPulse analytics engine.

This module defines all enum types used across the system for type safety
and consistent validation. All enums inherit from str to ensure JSON
serialization compatibility.
"""

from enum import Enum


class EventKind(str, Enum):
    """
    Kinds of activity recorded in the event source.

    Every kind except vacation declarations folds directly into a daily
    bucket. Vacation declarations change which weeks count as "due" and
    therefore fan out to the compliance buckets of that week.
    """

    CHECKIN_SUBMITTED = "checkin_submitted"
    CHECKIN_REVIEWED = "checkin_reviewed"
    SHOUTOUT_GIVEN = "shoutout_given"
    SHOUTOUT_RECEIVED = "shoutout_received"
    VACATION_DECLARED = "vacation_declared"


class MetricFamily(str, Enum):
    """Daily rollup table families."""

    PULSE = "pulse"
    RECOGNITION = "recognition"
    COMPLIANCE = "compliance"


class Period(str, Enum):
    """Grouping granularity for analytics queries."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


COARSE_PERIODS = frozenset({Period.WEEK, Period.MONTH, Period.QUARTER, Period.YEAR})


class Scope(str, Enum):
    """Population an analytics query aggregates over."""

    ORGANIZATION = "organization"
    TEAM = "team"
    USER = "user"


class Direction(str, Enum):
    """Shoutout direction relative to the scoped population."""

    ALL = "all"
    RECEIVED = "received"
    GIVEN = "given"


class Visibility(str, Enum):
    """Shoutout visibility filter."""

    ALL = "all"
    PUBLIC = "public"
    PRIVATE = "private"


class AnalyticsMethod(str, Enum):
    """Analytics query functions served by the query router."""

    PULSE = "pulse"
    SHOUTOUTS = "shoutouts"
    CHECKIN_COMPLIANCE = "checkin_compliance"
    REVIEW_COMPLIANCE = "review_compliance"


class ReadPath(str, Enum):
    """Where an analytics answer was computed from."""

    ROLLUPS = "rollups"
    RAW = "raw"
