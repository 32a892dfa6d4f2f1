"""Metrics aggregation package."""

from .aggregator import PerformanceReport, PluginStats, SampleAggregator, TriggerStats

__all__ = [
    "PerformanceReport",
    "PluginStats",
    "SampleAggregator",
    "TriggerStats",
]
