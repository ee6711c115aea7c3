from oxusd_indexer.persistence.sqlite.cursor_repo import SqliteCursorRepo
from oxusd_indexer.persistence.sqlite.entity_repo import SqliteEntityRepo
from oxusd_indexer.persistence.sqlite.integrity_repo import SqliteIntegrityRepo

__all__ = ["SqliteEntityRepo", "SqliteCursorRepo", "SqliteIntegrityRepo"]
