from __future__ import annotations

import contextvars
import logging
import time
import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from oxusd_indexer.config import Settings
from oxusd_indexer.domain.events import EventEnvelope
from oxusd_indexer.domain.integrity import IntegrityIssue
from oxusd_indexer.errors import (
    AppendOnlyViolationError,
    EventDecodeError,
    ProjectionStorageError,
    StreamOrderError,
)
from oxusd_indexer.logging_context import with_batch_context, with_stream_context
from oxusd_indexer.obs.metrics import observe_histogram, set_gauge
from oxusd_indexer.observability import get_instrumentation
from oxusd_indexer.persistence.uow import UnitOfWork, UnitOfWorkFactory
from oxusd_indexer.services.dispatcher import (
    DispatchResult,
    DispatchStatus,
    ProjectionDispatcher,
)
from oxusd_indexer.services.invariant_checker import (
    InvariantChecker,
    InvariantReport,
    report_invariants,
)

logger = logging.getLogger(__name__)

_STREAM_STOPPING_ERRORS = (
    ProjectionStorageError,
    StreamOrderError,
    EventDecodeError,
    AppendOnlyViolationError,
)


@dataclass(frozen=True)
class StreamFailure:
    stream_id: str
    event_key: str
    error_type: str
    message: str
    skipped: int


@dataclass
class BatchResult:
    batch_id: str
    applied: int = 0
    duplicates: int = 0
    unrouted: int = 0
    issues: list[IntegrityIssue] = field(default_factory=list)
    failures: list[StreamFailure] = field(default_factory=list)
    invariant_report: InvariantReport | None = None

    @property
    def ok(self) -> bool:
        if self.failures:
            return False
        return self.invariant_report is None or self.invariant_report.ok

    def absorb(self, result: DispatchResult) -> None:
        if result.status is DispatchStatus.APPLIED:
            self.applied += 1
        elif result.status is DispatchStatus.DUPLICATE:
            self.duplicates += 1
        else:
            self.unrouted += 1
        self.issues.extend(result.issues)


@dataclass
class _StreamOutcome:
    results: list[DispatchResult] = field(default_factory=list)
    failure: StreamFailure | None = None


def partition_by_stream(events: Iterable[EventEnvelope]) -> dict[str, list[EventEnvelope]]:
    """Group envelopes per stream, each group sorted by chain position."""
    streams: dict[str, list[EventEnvelope]] = defaultdict(list)
    for envelope in events:
        streams[envelope.stream_id].append(envelope)
    return {
        stream_id: sorted(group, key=lambda env: env.position)
        for stream_id, group in sorted(streams.items())
    }


class ProjectionService:
    """Drives a batch of envelopes through the dispatcher.

    Streams are independent and may be projected in parallel; events inside
    one stream are always applied sequentially in position order. A failing
    event halts its own stream for the rest of the batch; other streams
    continue.
    """

    def __init__(
        self,
        dispatcher: ProjectionDispatcher,
        *,
        uow_factory: Callable[[], UnitOfWork],
        read_uow_factory: Callable[[], UnitOfWork] | None = None,
        checker: InvariantChecker | None = None,
        workers: int = 1,
        check_invariants: bool = True,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.dispatcher = dispatcher
        self._uow_factory = uow_factory
        self._read_uow_factory = read_uow_factory or uow_factory
        self.checker = checker or InvariantChecker()
        self.workers = workers
        self.check_invariants = check_invariants

    @classmethod
    def from_settings(cls, settings: Settings) -> ProjectionService:
        uow_factory = UnitOfWorkFactory(settings.state_db_path)
        dispatcher = ProjectionDispatcher(
            uow_factory,
            negative_policy=settings.negative_balance_policy,
            contract_routes=settings.contract_routes(),
        )
        return cls(
            dispatcher,
            uow_factory=uow_factory,
            read_uow_factory=UnitOfWorkFactory(settings.state_db_path, read_only=True),
            workers=settings.projector_workers,
            check_invariants=settings.check_invariants_after_batch,
        )

    def process_batch(
        self, events: Iterable[EventEnvelope], *, batch_id: str | None = None
    ) -> BatchResult:
        batch_id = batch_id or uuid.uuid4().hex[:12]
        result = BatchResult(batch_id=batch_id)
        started = time.monotonic()
        streams = partition_by_stream(events)
        # Schema creation and the WAL switch happen once, before workers contend.
        with self._uow_factory():
            pass

        with with_batch_context(batch_id), get_instrumentation().trace(
            "projector.batch",
            attrs={"batch_id": batch_id, "streams": len(streams)},
        ):
            logger.info(
                "batch_started",
                extra={
                    "extra": {
                        "streams": len(streams),
                        "events": sum(len(group) for group in streams.values()),
                        "workers": self.workers,
                    }
                },
            )
            for outcome in self._run_streams(streams):
                for dispatched in outcome.results:
                    result.absorb(dispatched)
                if outcome.failure is not None:
                    result.failures.append(outcome.failure)

            if self.check_invariants:
                with self._read_uow_factory() as uow:
                    result.invariant_report = self.checker.check(uow)
                report_invariants(result.invariant_report)

            outcome_label = "ok" if result.ok else "failed"
            observe_histogram(
                "projector_batch_latency_ms",
                (time.monotonic() - started) * 1000.0,
                {"outcome": outcome_label},
            )
            logger.info(
                "batch_completed",
                extra={
                    "extra": {
                        "applied": result.applied,
                        "duplicates": result.duplicates,
                        "unrouted": result.unrouted,
                        "issues": len(result.issues),
                        "failures": len(result.failures),
                        "outcome": outcome_label,
                    }
                },
            )
        return result

    def _run_streams(self, streams: dict[str, list[EventEnvelope]]) -> list[_StreamOutcome]:
        if self.workers == 1 or len(streams) <= 1:
            return [self._project_stream(stream_id, group) for stream_id, group in streams.items()]

        with ThreadPoolExecutor(
            max_workers=min(self.workers, len(streams)),
            thread_name_prefix="projector",
        ) as pool:
            futures = [
                pool.submit(
                    contextvars.copy_context().run,
                    self._project_stream,
                    stream_id,
                    group,
                )
                for stream_id, group in streams.items()
            ]
            return [future.result() for future in futures]

    def _project_stream(self, stream_id: str, group: list[EventEnvelope]) -> _StreamOutcome:
        outcome = _StreamOutcome()
        with with_stream_context(stream_id):
            for index, envelope in enumerate(group):
                try:
                    outcome.results.append(self.dispatcher.dispatch(envelope))
                except _STREAM_STOPPING_ERRORS as exc:
                    skipped = len(group) - index - 1
                    outcome.failure = StreamFailure(
                        stream_id=stream_id,
                        event_key=envelope.event_key,
                        error_type=type(exc).__name__,
                        message=str(exc),
                        skipped=skipped,
                    )
                    logger.error(
                        "stream_halted",
                        extra={
                            "extra": {
                                "failed_event_key": envelope.event_key,
                                "error_type": type(exc).__name__,
                                "error_message": str(exc),
                                "skipped": skipped,
                            }
                        },
                    )
                    set_gauge("projector_stream_lag_events", skipped + 1, {"stream_id": stream_id})
                    break
            else:
                set_gauge("projector_stream_lag_events", 0, {"stream_id": stream_id})
        return outcome
