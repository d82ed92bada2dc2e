"""Session metrics"""

from .aggregator import MetricsAggregator

__all__ = ["MetricsAggregator"]
