from __future__ import annotations

import pytest

from oxusd_indexer.obs.metric_registry import REGISTRY, MetricDef, MetricType, validate_registry
from oxusd_indexer.obs.metrics import emit_metric, inc_counter, set_gauge


def test_validate_registry_passes() -> None:
    validate_registry(REGISTRY)


def test_validate_registry_fails_on_key_name_mismatch() -> None:
    bad = {
        "projector_ok_total": MetricDef(
            name="projector_other_total", type=MetricType.COUNTER, required_labels=("kind",)
        )
    }
    with pytest.raises(ValueError):
        validate_registry(bad)


def test_validate_registry_requires_namespace_and_labels() -> None:
    with pytest.raises(ValueError, match="namespace"):
        validate_registry(
            {"bot_events_total": MetricDef("bot_events_total", MetricType.COUNTER, ("kind",))}
        )
    with pytest.raises(ValueError, match="required_labels"):
        validate_registry(
            {"projector_x_total": MetricDef("projector_x_total", MetricType.COUNTER, ())}
        )


def test_unknown_metric_emission_fails() -> None:
    with pytest.raises(ValueError):
        emit_metric("projector_unknown_total", 1, {"kind": "SwapObserved"})


def test_missing_required_label_fails() -> None:
    with pytest.raises(ValueError, match="missing labels"):
        inc_counter("projector_events_total", {"status": "applied"})


def test_metric_type_mismatch_fails() -> None:
    with pytest.raises(ValueError, match="not a gauge"):
        set_gauge("projector_events_total", 1, {"status": "applied", "kind": "SwapObserved"})


def test_projector_metrics_registered() -> None:
    assert {
        "projector_events_total",
        "projector_integrity_issues_total",
        "projector_invariant_violations_total",
        "projector_batch_latency_ms",
        "projector_stream_lag_events",
    }.issubset(REGISTRY.keys())
