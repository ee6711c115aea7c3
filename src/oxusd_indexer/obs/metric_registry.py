from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class MetricDef:
    name: str
    type: MetricType
    required_labels: tuple[str, ...] = ()


REGISTRY: dict[str, MetricDef] = {
    "projector_events_total": MetricDef(
        name="projector_events_total",
        type=MetricType.COUNTER,
        required_labels=("status", "kind"),
    ),
    "projector_integrity_issues_total": MetricDef(
        name="projector_integrity_issues_total",
        type=MetricType.COUNTER,
        required_labels=("code", "severity"),
    ),
    "projector_invariant_violations_total": MetricDef(
        name="projector_invariant_violations_total",
        type=MetricType.COUNTER,
        required_labels=("check",),
    ),
    "projector_batch_latency_ms": MetricDef(
        name="projector_batch_latency_ms",
        type=MetricType.HISTOGRAM,
        required_labels=("outcome",),
    ),
    "projector_stream_lag_events": MetricDef(
        name="projector_stream_lag_events",
        type=MetricType.GAUGE,
        required_labels=("stream_id",),
    ),
}


_NAME_PATTERN = re.compile(r"^[a-z]+(?:_[a-z0-9]+)+$")


def validate_registry(registry: dict[str, MetricDef] | None = None) -> None:
    target = registry or REGISTRY
    for key, metric in target.items():
        if key != metric.name:
            raise ValueError(f"registry key/name mismatch: {key} != {metric.name}")
        if not _NAME_PATTERN.match(metric.name):
            raise ValueError(f"invalid metric name format: {metric.name}")
        if not metric.name.startswith("projector_"):
            raise ValueError(f"metric name must use projector_ namespace: {metric.name}")
        if not metric.required_labels:
            raise ValueError(f"required_labels must be non-empty for {metric.name}")
