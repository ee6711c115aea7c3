from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime

from oxusd_indexer.domain.integrity import IntegrityIssue

logger = logging.getLogger(__name__)


class SqliteIntegrityRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "integrity"}})
            raise PermissionError("UnitOfWork is read-only; integrity writes are blocked")

    def record_issue(self, issue: IntegrityIssue) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO integrity_issues(
                code, severity, entity_type, entity_key, event_key, details_json, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                issue.code.value,
                issue.severity,
                issue.entity_type.value,
                issue.entity_key,
                issue.event_key,
                json.dumps(issue.details, sort_keys=True),
                datetime.now(UTC).isoformat(),
            ),
        )

    def list_issues(self, *, limit: int = 100, code: str | None = None) -> list[dict[str, object]]:
        query = "SELECT * FROM integrity_issues"
        params: list[object] = []
        if code is not None:
            query += " WHERE code = ?"
            params.append(code)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(int(limit))
        rows = self._conn.execute(query, params).fetchall()
        return [
            {
                "id": int(row["id"]),
                "code": str(row["code"]),
                "severity": str(row["severity"]),
                "entity_type": str(row["entity_type"]),
                "entity_key": str(row["entity_key"]),
                "event_key": str(row["event_key"]),
                "details": json.loads(str(row["details_json"])),
                "recorded_at": str(row["recorded_at"]),
            }
            for row in rows
        ]

    def count_by_code(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT code, COUNT(*) AS n FROM integrity_issues GROUP BY code ORDER BY code"
        ).fetchall()
        return {str(row["code"]): int(row["n"]) for row in rows}
