from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

from oxusd_indexer.domain.events import EventEnvelope
from oxusd_indexer.errors import EventDecodeError

logger = logging.getLogger(__name__)


def iter_events_jsonl(path: str | Path) -> Iterator[EventEnvelope]:
    """Yield envelopes from a JSON-lines file, one decoded log per line.

    Blank lines are skipped. Malformed lines raise ``EventDecodeError`` with the
    offending line number.
    """
    source = Path(path)
    with source.open(encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            text = line.strip()
            if not text:
                continue
            try:
                raw = json.loads(text)
            except json.JSONDecodeError as exc:
                raise EventDecodeError(f"{source}:{line_no}: invalid JSON ({exc.msg})") from exc
            if not isinstance(raw, dict):
                raise EventDecodeError(f"{source}:{line_no}: expected a JSON object")
            try:
                yield EventEnvelope.from_mapping(raw)
            except EventDecodeError as exc:
                raise EventDecodeError(f"{source}:{line_no}: {exc}") from exc


def load_events_jsonl(path: str | Path) -> list[EventEnvelope]:
    events = list(iter_events_jsonl(path))
    logger.info("events_loaded", extra={"extra": {"path": str(path), "count": len(events)}})
    return events
