from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from oxusd_indexer.domain.events import EventEnvelope

CONTEXT_FIELDS = ("run_id", "batch_id", "stream_id", "event_key", "event_kind")
_CONTEXT_VARS: dict[str, ContextVar[str | None]] = {
    field: ContextVar(field, default=None) for field in CONTEXT_FIELDS
}


def get_logging_context() -> dict[str, str | None]:
    context: dict[str, str | None] = {}
    for field, context_var in _CONTEXT_VARS.items():
        value = context_var.get()
        if value is not None:
            context[field] = value
    return context


@contextmanager
def with_logging_context(**context: str | None) -> Iterator[None]:
    tokens: dict[str, object] = {}
    try:
        for key, value in context.items():
            context_var = _CONTEXT_VARS.get(key)
            if context_var is None:
                raise KeyError(f"unknown logging context field: {key}")
            if value is None:
                continue
            tokens[key] = context_var.set(value)
        yield
    finally:
        for key, token in tokens.items():
            _CONTEXT_VARS[key].reset(token)


@contextmanager
def with_batch_context(batch_id: str, run_id: str | None = None) -> Iterator[None]:
    with with_logging_context(batch_id=batch_id, run_id=run_id):
        yield


@contextmanager
def with_stream_context(stream_id: str) -> Iterator[None]:
    with with_logging_context(stream_id=stream_id):
        yield


@contextmanager
def with_event_context(envelope: EventEnvelope) -> Iterator[None]:
    """Tag every record logged while one envelope is projected."""
    with with_logging_context(
        stream_id=envelope.stream_id,
        event_key=envelope.event_key,
        event_kind=envelope.kind.value,
    ):
        yield
