from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from enum import StrEnum

from oxusd_indexer.domain.entities import entity_type_of
from oxusd_indexer.domain.events import EventEnvelope, EventKind
from oxusd_indexer.domain.integrity import IntegrityIssue, NegativeBalancePolicy
from oxusd_indexer.domain.rules import RULES, Projection, ProjectionRule
from oxusd_indexer.errors import ProjectionStorageError, StreamOrderError
from oxusd_indexer.logging_context import with_event_context
from oxusd_indexer.obs.metrics import inc_counter
from oxusd_indexer.persistence.uow import UnitOfWork

logger = logging.getLogger(__name__)


class DispatchStatus(StrEnum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNROUTED = "unrouted"


@dataclass(frozen=True)
class DispatchResult:
    event_key: str
    kind: EventKind
    status: DispatchStatus
    issues: tuple[IntegrityIssue, ...] = ()


class KeyedLocks:
    """Per-key mutexes; multiple keys are always taken in sorted order."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._lock_for(key))
            yield


def stream_lock_key(stream_id: str) -> str:
    return f"stream:{stream_id}"


class ProjectionDispatcher:
    """Routes envelopes to projection rules with exactly-once effective application.

    The idempotency check covers the whole event: a processed ``event_key``
    short-circuits before any rule code runs, so aggregate mutations can never
    be applied twice. Events of one stream must arrive in ascending
    ``(block_number, log_index)`` order.
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        *,
        negative_policy: NegativeBalancePolicy = NegativeBalancePolicy.REJECT,
        contract_routes: Mapping[str, frozenset[EventKind]] | None = None,
        rules: Mapping[EventKind, ProjectionRule] | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.negative_policy = negative_policy
        self._contract_routes = dict(contract_routes or {})
        self._rules = dict(rules if rules is not None else RULES)
        self._locks = locks or KeyedLocks()

    def route(self, envelope: EventEnvelope) -> ProjectionRule | None:
        if self._contract_routes:
            allowed = self._contract_routes.get(envelope.contract)
            if allowed is None or envelope.kind not in allowed:
                return None
        return self._rules.get(envelope.kind)

    def dispatch(self, envelope: EventEnvelope) -> DispatchResult:
        with with_event_context(envelope):
            rule = self.route(envelope)
            if rule is None:
                logger.info(
                    "event_unrouted",
                    extra={
                        "extra": {"contract": envelope.contract, "kind": envelope.kind.value}
                    },
                )
                self._count(envelope, DispatchStatus.UNROUTED)
                return DispatchResult(envelope.event_key, envelope.kind, DispatchStatus.UNROUTED)

            lock_keys = [stream_lock_key(envelope.stream_id), *rule.lock_keys(envelope)]
            with self._locks.hold(lock_keys):
                result = self._apply_in_transaction(envelope, rule)

            self._report(envelope, result)
            return result

    def _apply_in_transaction(
        self, envelope: EventEnvelope, rule: ProjectionRule
    ) -> DispatchResult:
        try:
            with self._uow_factory() as uow:
                if uow.cursors.is_processed(envelope.event_key):
                    return DispatchResult(
                        envelope.event_key, envelope.kind, DispatchStatus.DUPLICATE
                    )

                cursor = uow.cursors.get_stream_cursor(envelope.stream_id)
                if cursor is not None and envelope.position <= cursor:
                    raise StreamOrderError(
                        stream_id=envelope.stream_id,
                        event_key=envelope.event_key,
                        position=envelope.position,
                        cursor=cursor,
                    )

                projection = rule.apply(envelope, uow.entities, self.negative_policy)
                self._persist(uow, envelope, projection)
                return DispatchResult(
                    envelope.event_key,
                    envelope.kind,
                    DispatchStatus.APPLIED,
                    tuple(projection.issues),
                )
        except sqlite3.Error as exc:
            logger.exception(
                "projection_storage_failed",
                extra={"extra": {"kind": envelope.kind.value}},
            )
            raise ProjectionStorageError(envelope.event_key, exc) from exc

    @staticmethod
    def _persist(uow: UnitOfWork, envelope: EventEnvelope, projection: Projection) -> None:
        for entity in projection.upserts:
            uow.entities.upsert(entity_type_of(entity), entity.id, entity)
        for record in projection.inserts:
            uow.entities.insert(entity_type_of(record), record.id, record)
        for issue in projection.issues:
            uow.integrity.record_issue(issue)
        uow.cursors.mark_processed(envelope)
        uow.cursors.advance_stream_cursor(envelope.stream_id, envelope.position)

    def _report(self, envelope: EventEnvelope, result: DispatchResult) -> None:
        if result.status is DispatchStatus.DUPLICATE:
            logger.debug("event_duplicate_skipped", extra={"extra": {"kind": envelope.kind.value}})
        else:
            logger.debug(
                "event_applied",
                extra={
                    "extra": {
                        "kind": envelope.kind.value,
                        "block_number": envelope.block_number,
                        "log_index": envelope.log_index,
                    }
                },
            )
        for issue in result.issues:
            log = logger.error if issue.severity == "ERROR" else logger.warning
            log(
                "projection_integrity_issue",
                extra={
                    "extra": {
                        "code": issue.code.value,
                        "severity": issue.severity,
                        "entity_type": issue.entity_type.value,
                        "entity_key": issue.entity_key,
                        "details": issue.details,
                    }
                },
            )
            inc_counter(
                "projector_integrity_issues_total",
                {"code": issue.code.value, "severity": issue.severity},
            )
        self._count(envelope, result.status)

    @staticmethod
    def _count(envelope: EventEnvelope, status: DispatchStatus) -> None:
        inc_counter("projector_events_total", {"status": status.value, "kind": envelope.kind.value})
