from __future__ import annotations

import json

import pytest

from oxusd_indexer.domain.events import EventKind
from oxusd_indexer.errors import EventDecodeError
from oxusd_indexer.services.event_source import iter_events_jsonl, load_events_jsonl


def _line(block: int, log_index: int = 0) -> str:
    return json.dumps(
        {
            "contract": "0x" + "0a" * 20,
            "kind": "TokenTransfer",
            "params": {"from": "0x" + "00" * 20, "to": "0x" + "22" * 20, "value": "5"},
            "blockNumber": block,
            "logIndex": log_index,
            "transactionHash": f"0x{block:064x}",
            "timestamp": 1_700_000_000,
        }
    )


def test_load_skips_blank_lines(tmp_path) -> None:
    path = tmp_path / "events.jsonl"
    path.write_text(f"{_line(1)}\n\n   \n{_line(2, 3)}\n", encoding="utf-8")

    events = load_events_jsonl(path)

    assert [env.position for env in events] == [(1, 0), (2, 3)]
    assert all(env.kind is EventKind.TOKEN_TRANSFER for env in events)


def test_invalid_json_reports_line_number(tmp_path) -> None:
    path = tmp_path / "events.jsonl"
    path.write_text(f"{_line(1)}\n{{not json\n", encoding="utf-8")

    with pytest.raises(EventDecodeError, match=r"events.jsonl:2: invalid JSON"):
        load_events_jsonl(path)


def test_invalid_envelope_reports_line_number(tmp_path) -> None:
    path = tmp_path / "events.jsonl"
    path.write_text(f"{_line(1)}\n[1, 2]\n", encoding="utf-8")
    with pytest.raises(EventDecodeError, match=":2: expected a JSON object"):
        load_events_jsonl(path)

    path.write_text(json.dumps({"kind": "TokenTransfer"}) + "\n", encoding="utf-8")
    with pytest.raises(EventDecodeError, match=":1: envelope missing field"):
        list(iter_events_jsonl(path))
