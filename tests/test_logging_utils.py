from __future__ import annotations

import json
import logging
import sys

import pytest

from oxusd_indexer.domain.events import EventEnvelope
from oxusd_indexer.errors import StreamOrderError
from oxusd_indexer.logging_context import (
    get_logging_context,
    with_batch_context,
    with_event_context,
    with_logging_context,
)
from oxusd_indexer.logging_utils import JsonFormatter, _resolve_log_level


def _record(msg: str = "event_applied", **kwargs) -> logging.LogRecord:
    record = logging.LogRecord("oxusd_indexer.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in kwargs.items():
        setattr(record, key, value)
    return record


def test_json_formatter_merges_extra_and_context() -> None:
    with with_batch_context("b-1", run_id="r-1"), with_logging_context(event_key="0xtx-1"):
        payload = json.loads(JsonFormatter().format(_record(extra={"kind": "AllocatorMint"})))

    assert payload["message"] == "event_applied"
    assert payload["kind"] == "AllocatorMint"
    assert payload["batch_id"] == "b-1"
    assert payload["run_id"] == "r-1"
    assert payload["event_key"] == "0xtx-1"
    assert payload["stream_id"] is None


def test_json_formatter_includes_exception_details() -> None:
    try:
        raise ValueError("bad envelope")
    except ValueError:
        record = logging.LogRecord(
            "oxusd_indexer.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
        )

    payload = json.loads(JsonFormatter().format(record))

    assert payload["error_type"] == "ValueError"
    assert payload["error_message"] == "bad envelope"
    assert "Traceback" in payload["traceback"]


def test_logging_context_is_restored_after_exit() -> None:
    with with_logging_context(stream_id="0xabc", event_key=None):
        assert get_logging_context() == {"stream_id": "0xabc"}
    assert get_logging_context() == {}


def test_resolve_log_level(monkeypatch) -> None:
    assert _resolve_log_level("debug") == logging.DEBUG
    assert _resolve_log_level(logging.WARNING) == logging.WARNING
    assert _resolve_log_level("nonsense") == logging.INFO
    monkeypatch.setenv("LOG_LEVEL", "error")
    assert _resolve_log_level(None) == logging.ERROR


def test_json_formatter_renders_uint256_amounts_as_strings() -> None:
    big = 2**200 + 1
    payload = json.loads(
        JsonFormatter().format(_record(extra={"amount": big, "block": 12, "deltas": [big, 1]}))
    )

    assert payload["amount"] == str(big)
    assert payload["block"] == 12
    assert payload["deltas"] == [str(big), 1]


def test_json_formatter_takes_stream_and_event_from_projector_errors() -> None:
    try:
        raise StreamOrderError(
            stream_id="0xabc", event_key="0xtx-2", position=(1, 2), cursor=(1, 3)
        )
    except StreamOrderError:
        record = logging.LogRecord(
            "oxusd_indexer.test", logging.ERROR, __file__, 1, "stream_halted", (), sys.exc_info()
        )

    payload = json.loads(JsonFormatter().format(record))

    assert payload["error_type"] == "StreamOrderError"
    assert (payload["stream_id"], payload["event_key"]) == ("0xabc", "0xtx-2")


def test_event_context_tags_stream_key_and_kind() -> None:
    envelope = EventEnvelope(
        contract="0x" + "0c" * 20,
        kind="AllocatorMint",
        params={},
        block_number=7,
        log_index=1,
        transaction_hash="0x" + "ee" * 32,
        timestamp=1,
    )

    with with_event_context(envelope):
        context = get_logging_context()

    assert context == {
        "stream_id": envelope.stream_id,
        "event_key": envelope.event_key,
        "event_kind": "AllocatorMint",
    }
    assert get_logging_context() == {}


def test_unknown_context_field_is_rejected() -> None:
    with pytest.raises(KeyError, match="symbol"):
        with with_logging_context(symbol="0xUSD"):
            pass
