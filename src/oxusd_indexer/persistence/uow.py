from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from oxusd_indexer.persistence.sqlite.cursor_repo import SqliteCursorRepo
from oxusd_indexer.persistence.sqlite.entity_repo import SqliteEntityRepo
from oxusd_indexer.persistence.sqlite.integrity_repo import SqliteIntegrityRepo
from oxusd_indexer.persistence.sqlite.sqlite_connection import (
    create_sqlite_connection,
    ensure_min_schema,
)

logger = logging.getLogger(__name__)


class UnitOfWork:
    """One SQLite transaction spanning the entity, cursor and integrity repos.

    Commits on a clean exit and rolls back on any exception, so a projected
    event is either fully visible or not visible at all.
    """

    def __init__(self, db_path: str, *, read_only: bool = False) -> None:
        self._db_path = db_path
        self.read_only = read_only
        self._conn: sqlite3.Connection | None = None
        self.entities: SqliteEntityRepo
        self.cursors: SqliteCursorRepo
        self.integrity: SqliteIntegrityRepo

    def __enter__(self) -> UnitOfWork:
        conn = create_sqlite_connection(self._db_path)
        try:
            ensure_min_schema(conn)
            if self.read_only:
                conn.execute("BEGIN")
            else:
                conn.execute("BEGIN IMMEDIATE")
        except Exception:
            conn.close()
            raise
        self._conn = conn
        self.entities = SqliteEntityRepo(conn, read_only=self.read_only)
        self.cursors = SqliteCursorRepo(conn, read_only=self.read_only)
        self.integrity = SqliteIntegrityRepo(conn, read_only=self.read_only)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is None:
            return
        try:
            if exc_type is None:
                self._conn.commit()
            else:
                self._conn.rollback()
                logger.debug(
                    "uow_rolled_back",
                    extra={"extra": {"error_type": exc_type.__name__}},
                )
        finally:
            self._conn.close()
            self._conn = None


@dataclass(frozen=True)
class UnitOfWorkFactory:
    db_path: str
    read_only: bool = False

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=self.read_only)
