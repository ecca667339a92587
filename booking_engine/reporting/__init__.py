from booking_engine.reporting.metrics import MetricsAggregator, MetricsSummary

__all__ = ["MetricsAggregator", "MetricsSummary"]
