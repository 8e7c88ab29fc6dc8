"""
TeamPulse incremental aggregation engine components.

- Bucket aggregation: raw check-ins, shoutouts and vacations → daily rollups
- Compliance math: vacation-aware on-time rates
- Watermark sweep: periodic, backfill and triggered recomputation
- Recompute queue: bounded fire-and-forget worker for write hooks
- Query routing: rollups vs raw log selection with a TTL result cache
- AggregationEngine: facade and lifecycle for all of the above
"""

__all__ = [
    "AggregationEngine",
    "AnalyticsCache",
    "AnalyticsQueryRouter",
    "BucketAggregator",
    "InvalidQueryError",
    "RecomputeQueue",
    "WatermarkSweepScheduler",
]

from teampulse.engine.aggregation_engine import AggregationEngine
from teampulse.engine.analytics_cache import AnalyticsCache
from teampulse.engine.bucket_aggregator import BucketAggregator
from teampulse.engine.query_router import AnalyticsQueryRouter, InvalidQueryError
from teampulse.engine.recompute_queue import RecomputeQueue
from teampulse.engine.watermark_sweep import WatermarkSweepScheduler
