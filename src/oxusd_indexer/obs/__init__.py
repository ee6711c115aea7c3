from oxusd_indexer.obs.metric_registry import REGISTRY, MetricDef, MetricType, validate_registry
from oxusd_indexer.obs.metrics import (
    LoggingMetricsSink,
    MetricsSink,
    emit_metric,
    inc_counter,
    observe_histogram,
    set_gauge,
    set_metrics_sink,
)

__all__ = [
    "LoggingMetricsSink",
    "MetricDef",
    "MetricType",
    "MetricsSink",
    "REGISTRY",
    "emit_metric",
    "inc_counter",
    "observe_histogram",
    "set_gauge",
    "set_metrics_sink",
    "validate_registry",
]
