"""
Vacation-aware compliance math.

A sample is one check-in (submission compliance) or one reviewed check-in
(review compliance). Vacation weeks are exempt from the denominator but an
on-time sample still counts toward the numerator, so a user who submits on
time during vacation is never penalized and can only gain.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from teampulse.models.analytics import ComplianceMetrics
from teampulse.models.events import CheckinRecord

SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class ComplianceSample:
    """One compliance observation reduced to what the math needs."""

    on_time: bool
    on_vacation: bool
    completed_at: Optional[datetime] = None
    due_at: Optional[datetime] = None

    @property
    def days_diff(self) -> Optional[float]:
        """Signed days between completion and deadline; negative means early."""
        if self.completed_at is None or self.due_at is None:
            return None
        return (self.completed_at - self.due_at).total_seconds() / SECONDS_PER_DAY


def submission_sample(checkin: CheckinRecord, on_vacation: bool) -> ComplianceSample:
    return ComplianceSample(
        on_time=checkin.submitted_on_time,
        on_vacation=on_vacation,
        completed_at=checkin.submitted_at,
        due_at=checkin.due_date,
    )


def review_sample(checkin: CheckinRecord, on_vacation: bool) -> ComplianceSample:
    return ComplianceSample(
        on_time=checkin.reviewed_on_time,
        on_vacation=on_vacation,
        completed_at=checkin.reviewed_at,
        due_at=checkin.review_due_date,
    )


def on_time_percentage(on_time_count: int, total_count: int) -> float:
    """``on_time / total * 100`` rounded to two decimals, 0.0 for an empty denominator."""
    if total_count <= 0:
        return 0.0
    return round(on_time_count / total_count * 100, 2)


def metrics_from_counts(total_count: int, on_time_count: int) -> ComplianceMetrics:
    """Metrics when only counts are known (the rollup path)."""
    return ComplianceMetrics(
        total_count=total_count,
        on_time_count=on_time_count,
        on_time_percentage=on_time_percentage(on_time_count, total_count),
    )


def compute_compliance_metrics(samples: Iterable[ComplianceSample]) -> ComplianceMetrics:
    """
    Fold samples into compliance metrics.

    - total_count: samples outside the relevant person's vacation weeks
    - on_time_count: every on-time sample, vacation or not
    - average_days_early / average_days_late: mean distance from the deadline
      over early and late samples respectively, None when there are none
    - vacation_weeks: samples exempted by vacation

    Args:
        samples: Submission or review samples

    Returns:
        ComplianceMetrics; all-zero with None averages for no samples
    """
    samples = list(samples)
    if not samples:
        return ComplianceMetrics()

    total_count = sum(1 for s in samples if not s.on_vacation)
    on_time_count = sum(1 for s in samples if s.on_time)

    early: list[float] = []
    late: list[float] = []
    for sample in samples:
        diff = sample.days_diff
        if diff is None:
            continue
        if diff < 0:
            early.append(-diff)
        elif diff > 0:
            late.append(diff)

    return ComplianceMetrics(
        total_count=total_count,
        on_time_count=on_time_count,
        on_time_percentage=on_time_percentage(on_time_count, total_count),
        average_days_early=sum(early) / len(early) if early else None,
        average_days_late=sum(late) / len(late) if late else None,
        vacation_weeks=sum(1 for s in samples if s.on_vacation),
    )
