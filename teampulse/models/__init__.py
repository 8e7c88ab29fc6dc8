"""
Pydantic v2 data models for the TeamPulse analytics engine.

Model Organization:
    - enums: Enumeration types for consistent classification
    - events: Event source records (check-ins, shoutouts, vacations) and the
      uniform activity view used for watermarking
    - buckets: Daily rollup rows, watermarks and sweep/backfill reports
    - analytics: Query options and analytics result shapes

Usage:
    >>> from teampulse.models import AnalyticsQueryOptions, Period
    >>> options = AnalyticsQueryOptions(period=Period.MONTH)
"""

from .analytics import (
    AnalyticsQueryOptions,
    ComplianceMetrics,
    ComplianceMetricsResult,
    PulseMetricsResult,
    ShoutoutMetricsResult,
)
from .buckets import (
    BackfillReport,
    ComplianceBucket,
    EntityDayBuckets,
    PulseBucket,
    RecognitionBucket,
    SweepReport,
    Watermark,
)
from .enums import (
    AnalyticsMethod,
    Direction,
    EventKind,
    MetricFamily,
    Period,
    ReadPath,
    Scope,
    Visibility,
)
from .events import ActivityEvent, CheckinRecord, ShoutoutRecord, VacationRecord

__all__ = [
    "ActivityEvent",
    "AnalyticsMethod",
    "AnalyticsQueryOptions",
    "BackfillReport",
    "CheckinRecord",
    "ComplianceBucket",
    "ComplianceMetrics",
    "ComplianceMetricsResult",
    "Direction",
    "EntityDayBuckets",
    "EventKind",
    "MetricFamily",
    "Period",
    "PulseBucket",
    "PulseMetricsResult",
    "ReadPath",
    "RecognitionBucket",
    "Scope",
    "ShoutoutMetricsResult",
    "ShoutoutRecord",
    "SweepReport",
    "VacationRecord",
    "Watermark",
    "Visibility",
]
