"""
Unit tests for the daily bucket models.
"""

from datetime import datetime, timezone

import pytest

from teampulse.models.buckets import ComplianceBucket, PulseBucket, RecognitionBucket
from tests.conftest import BASE_TIME, ORG

KEY = dict(organization_id=ORG, user_id="user-1", bucket_date=BASE_TIME.date(), updated_at=BASE_TIME)


class TestHasActivity:
    """A bucket is worth storing only when one of its counts is non-zero."""

    @pytest.mark.parametrize(
        "bucket,expected",
        [
            (PulseBucket(**KEY), False),
            (PulseBucket(**KEY, mood_sum=4, checkin_count=1), True),
            (RecognitionBucket(**KEY), False),
            (RecognitionBucket(**KEY, given_count=1), True),
            (ComplianceBucket(**KEY), False),
            (ComplianceBucket(**KEY, review_on_time_count=1), True),
        ],
    )
    def test_each_family(self, bucket, expected):
        assert bucket.has_activity() is expected

    def test_updated_at_is_normalized_to_utc(self):
        bucket = PulseBucket(**{**KEY, "updated_at": datetime(2026, 3, 4, 15, 0)}, checkin_count=1)
        assert bucket.updated_at.tzinfo == timezone.utc
