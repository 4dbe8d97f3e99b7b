"""Usage quota tracking and aggregation."""

from .aggregator import UsageAggregator
from .models import AggregationReport, UsageEvent, UsageLimit
from .tracker import InMemoryUsageTracker, SqlUsageTracker, UsageQuota

__all__ = [
    "AggregationReport",
    "InMemoryUsageTracker",
    "SqlUsageTracker",
    "UsageAggregator",
    "UsageEvent",
    "UsageLimit",
    "UsageQuota",
]
