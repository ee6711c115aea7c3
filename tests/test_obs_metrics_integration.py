from __future__ import annotations

import logging

import pytest

from oxusd_indexer.obs.metric_registry import MetricDef
from oxusd_indexer.obs.metrics import observe_histogram, set_metrics_sink
from oxusd_indexer.persistence.uow import UnitOfWorkFactory
from oxusd_indexer.services.dispatcher import ProjectionDispatcher

VAULT = "0x" + "0c" * 20
ALLOCATOR = "0x" + "11" * 20
USER = "0x" + "22" * 20


class _RecordingSink:
    def __init__(self) -> None:
        self.emitted: list[tuple[str, float | int, dict[str, str]]] = []

    def emit(self, defn: MetricDef, value: float | int, labels: dict[str, str]) -> None:
        self.emitted.append((defn.name, value, dict(labels)))


@pytest.fixture
def sink():
    recording = _RecordingSink()
    previous = set_metrics_sink(recording)
    yield recording
    set_metrics_sink(previous)


def test_metric_emission_logs_record(caplog) -> None:
    with caplog.at_level(logging.DEBUG):
        observe_histogram("projector_batch_latency_ms", 12.5, {"outcome": "ok"})

    records = [r for r in caplog.records if r.getMessage() == "metric_emit"]
    assert records
    payload = getattr(records[-1], "extra")
    assert payload["metric_name"] == "projector_batch_latency_ms"
    assert payload["labels"] == {"outcome": "ok"}


def test_dispatcher_counts_events_and_issues(sink, db_path, make_event) -> None:
    dispatcher = ProjectionDispatcher(UnitOfWorkFactory(db_path))
    repay = make_event(
        "AllocatorRepay",
        {"allocator": ALLOCATOR, "repayer": USER, "amount": 40},
        contract=VAULT,
    )

    dispatcher.dispatch(repay)
    dispatcher.dispatch(repay)

    assert ("projector_events_total", 1, {"status": "applied", "kind": "AllocatorRepay"}) in sink.emitted
    assert ("projector_events_total", 1, {"status": "duplicate", "kind": "AllocatorRepay"}) in sink.emitted
    assert (
        "projector_integrity_issues_total",
        1,
        {"code": "ENTITY_NOT_FOUND", "severity": "WARN"},
    ) in sink.emitted
