"""MONITOR — metrics sampling and edge-triggered alerts."""

from replicator.monitor.metrics import (
    Alert,
    AlertThresholds,
    MetricsAggregator,
    MetricsSnapshot,
)

__all__ = ["Alert", "AlertThresholds", "MetricsAggregator", "MetricsSnapshot"]
