from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime

from oxusd_indexer.domain.events import EventEnvelope

logger = logging.getLogger(__name__)


class SqliteCursorRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "cursors"}})
            raise PermissionError("UnitOfWork is read-only; cursor writes are blocked")

    def is_processed(self, event_key: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM processed_events WHERE event_key = ?", (event_key,)
        ).fetchone()
        return row is not None

    def mark_processed(self, envelope: EventEnvelope) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO processed_events(
                event_key, stream_id, kind, block_number, log_index, transaction_hash, applied_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                envelope.event_key,
                envelope.stream_id,
                envelope.kind.value,
                envelope.block_number,
                envelope.log_index,
                envelope.transaction_hash,
                datetime.now(UTC).isoformat(),
            ),
        )

    def processed_count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM processed_events").fetchone()
        return int(row["n"])

    def get_stream_cursor(self, stream_id: str) -> tuple[int, int] | None:
        row = self._conn.execute(
            "SELECT block_number, log_index FROM stream_cursors WHERE stream_id = ?",
            (stream_id,),
        ).fetchone()
        if row is None:
            return None
        return (int(row["block_number"]), int(row["log_index"]))

    def advance_stream_cursor(self, stream_id: str, position: tuple[int, int]) -> None:
        self._ensure_writable()
        block_number, log_index = position
        self._conn.execute(
            """
            INSERT INTO stream_cursors(stream_id, block_number, log_index, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(stream_id) DO UPDATE SET
                block_number=excluded.block_number,
                log_index=excluded.log_index,
                updated_at=excluded.updated_at
            WHERE (excluded.block_number, excluded.log_index)
                > (stream_cursors.block_number, stream_cursors.log_index)
            """,
            (stream_id, block_number, log_index, datetime.now(UTC).isoformat()),
        )

    def list_stream_cursors(self) -> dict[str, tuple[int, int]]:
        rows = self._conn.execute(
            "SELECT stream_id, block_number, log_index FROM stream_cursors ORDER BY stream_id"
        ).fetchall()
        return {
            str(row["stream_id"]): (int(row["block_number"]), int(row["log_index"]))
            for row in rows
        }
