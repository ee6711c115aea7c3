from __future__ import annotations

import atexit
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from oxusd_indexer.obs.metric_registry import MetricDef, MetricType
from oxusd_indexer.obs.metrics import LoggingMetricsSink, set_metrics_sink

logger = logging.getLogger(__name__)


class Instrumentation:
    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        del name, attrs
        yield

    def flush(self) -> None:
        return None

    def shutdown(self) -> None:
        return None


class NoopInstrumentation(Instrumentation):
    pass


class GaugeDeltas:
    """Turns absolute gauge readings into deltas for an up/down counter."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: dict[tuple[str, tuple[tuple[str, str], ...]], float | int] = {}

    def delta(self, name: str, value: float | int, labels: dict[str, str]) -> float | int:
        key = (name, tuple(sorted(labels.items())))
        with self._lock:
            previous = self._last.get(key, 0)
            self._last[key] = value
        return value - previous


class OTelInstrumentation(Instrumentation):
    """OpenTelemetry spans plus a metrics sink that forwards registry metrics."""

    def __init__(
        self,
        *,
        service_name: str,
        metrics_exporter: str,
        otlp_endpoint: str | None,
    ) -> None:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        resource = Resource.create({"service.name": service_name})

        span_exporter = (
            OTLPSpanExporter(endpoint=otlp_endpoint) if otlp_endpoint else OTLPSpanExporter()
        )
        self._trace_provider = TracerProvider(resource=resource)
        self._trace_provider.add_span_processor(BatchSpanProcessor(span_exporter))
        trace.set_tracer_provider(self._trace_provider)
        self._tracer = trace.get_tracer(service_name)

        metric_readers = []
        if metrics_exporter == "otlp":
            metric_exporter = (
                OTLPMetricExporter(endpoint=otlp_endpoint)
                if otlp_endpoint
                else OTLPMetricExporter()
            )
            metric_readers.append(PeriodicExportingMetricReader(metric_exporter))

        self._metric_provider = MeterProvider(resource=resource, metric_readers=metric_readers)
        metrics.set_meter_provider(self._metric_provider)
        self._meter = metrics.get_meter(service_name)
        self._instruments: dict[str, Any] = {}
        self._gauge_deltas = GaugeDeltas()
        self._fallback_sink = LoggingMetricsSink()

    def emit(self, defn: MetricDef, value: float | int, labels: dict[str, str]) -> None:
        instrument = self._instruments.get(defn.name)
        if instrument is None:
            if defn.type is MetricType.COUNTER:
                instrument = self._meter.create_counter(defn.name)
            elif defn.type is MetricType.HISTOGRAM:
                instrument = self._meter.create_histogram(defn.name)
            else:
                # Gauges map to an up/down counter fed with the change since the last reading.
                instrument = self._meter.create_up_down_counter(defn.name)
            self._instruments[defn.name] = instrument
        if defn.type is MetricType.HISTOGRAM:
            instrument.record(value, labels)
        elif defn.type is MetricType.GAUGE:
            instrument.add(self._gauge_deltas.delta(defn.name, value, labels), labels)
        else:
            instrument.add(value, labels)
        self._fallback_sink.emit(defn, value, labels)

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        with self._tracer.start_as_current_span(name) as span:
            for key, value in (attrs or {}).items():
                span.set_attribute(key, value)
            yield

    def flush(self) -> None:
        self._metric_provider.force_flush()
        self._trace_provider.force_flush()

    def shutdown(self) -> None:
        self.flush()
        self._metric_provider.shutdown()
        self._trace_provider.shutdown()


_LOCK = threading.Lock()
_INSTRUMENTATION: Instrumentation = NoopInstrumentation()
_CONFIGURED_ONCE = False


def configure_instrumentation(
    *,
    enabled: bool,
    service_name: str = "oxusd-indexer",
    metrics_exporter: str = "none",
    otlp_endpoint: str | None = None,
) -> Instrumentation:
    global _INSTRUMENTATION, _CONFIGURED_ONCE
    with _LOCK:
        if _CONFIGURED_ONCE:
            return _INSTRUMENTATION
        _CONFIGURED_ONCE = True
        if not enabled:
            _INSTRUMENTATION = NoopInstrumentation()
            return _INSTRUMENTATION
        try:
            otel = OTelInstrumentation(
                service_name=service_name,
                metrics_exporter=metrics_exporter,
                otlp_endpoint=otlp_endpoint,
            )
        except Exception:  # noqa: BLE001
            logger.exception("observability_setup_failed_falling_back_to_noop")
            _INSTRUMENTATION = NoopInstrumentation()
            return _INSTRUMENTATION
        set_metrics_sink(otel)
        _INSTRUMENTATION = otel
        return _INSTRUMENTATION


def get_instrumentation() -> Instrumentation:
    return _INSTRUMENTATION


def shutdown_instrumentation() -> None:
    _INSTRUMENTATION.shutdown()


atexit.register(shutdown_instrumentation)
