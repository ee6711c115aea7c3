from oxusd_indexer.persistence.interfaces.cursor_repo import CursorRepoProtocol
from oxusd_indexer.persistence.interfaces.entity_repo import EntityRepoProtocol
from oxusd_indexer.persistence.interfaces.integrity_repo import IntegrityRepoProtocol

__all__ = [
    "EntityRepoProtocol",
    "CursorRepoProtocol",
    "IntegrityRepoProtocol",
]
