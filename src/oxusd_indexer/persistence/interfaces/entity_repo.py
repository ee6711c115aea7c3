from __future__ import annotations

from collections.abc import Iterator
from typing import Protocol

from oxusd_indexer.domain.entities import Entity, EntityType


class EntityRepoProtocol(Protocol):
    def load(self, entity_type: EntityType, key: str) -> Entity | None: ...

    def exists(self, entity_type: EntityType, key: str) -> bool: ...

    def upsert(self, entity_type: EntityType, key: str, entity: Entity) -> None: ...

    def insert(self, entity_type: EntityType, key: str, record: Entity) -> None: ...

    def iter_entities(self, entity_type: EntityType) -> Iterator[Entity]: ...

    def count(self, entity_type: EntityType) -> int: ...
