from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from oxusd_indexer.logging_context import CONTEXT_FIELDS, get_logging_context

# Largest integer a JSON consumer backed by IEEE doubles reads back exactly.
_MAX_SAFE_JSON_INT = 2**53 - 1


def _json_safe(value: Any) -> Any:
    # uint256 amounts in log extras are rendered as decimal strings.
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > _MAX_SAFE_JSON_INT else value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(item) for item in value]
    return value


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = getattr(record, "extra", None)
        if isinstance(extras, dict):
            payload.update(extras)

        context = get_logging_context()
        for field in CONTEXT_FIELDS:
            payload[field] = context.get(field)

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["error_type"] = exc_type.__name__ if exc_type else "Exception"
            payload["error_message"] = str(exc_value) if exc_value is not None else ""
            payload["traceback"] = self.formatException(record.exc_info)
            # Projector errors carry the stream and event they were raised for.
            for field in ("stream_id", "event_key"):
                if payload.get(field) is None:
                    payload[field] = getattr(exc_value, field, None)
        elif record.exc_text:
            payload["traceback"] = record.exc_text

        return json.dumps(_json_safe(payload), default=str)


def _resolve_log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level

    candidate = level if level is not None else os.getenv("LOG_LEVEL", "INFO")
    resolved = logging.getLevelName(str(candidate).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: str | int | None = None) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(_resolve_log_level(level))
