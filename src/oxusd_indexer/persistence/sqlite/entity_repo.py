from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterator
from dataclasses import dataclass, fields
from enum import Enum

from oxusd_indexer.domain.entities import (
    APPEND_ONLY_TYPES,
    ENTITY_CLASSES,
    AllocatorActionType,
    Entity,
    EntityType,
    ParamKind,
    SavingsActionType,
    SupplyChangeType,
    entity_type_of,
)
from oxusd_indexer.errors import AppendOnlyViolationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Codec:
    to_db: Callable[[object], object]
    from_db: Callable[[object], object]


def _optional(codec: _Codec) -> _Codec:
    return _Codec(
        to_db=lambda value: None if value is None else codec.to_db(value),
        from_db=lambda raw: None if raw is None else codec.from_db(raw),
    )


def _enum(enum_cls: type[Enum]) -> _Codec:
    return _Codec(to_db=lambda value: enum_cls(value).value, from_db=enum_cls)


_TEXT = _Codec(to_db=str, from_db=str)
_BIGINT = _Codec(to_db=lambda value: str(int(value)), from_db=lambda raw: int(str(raw)))
_INT = _Codec(to_db=int, from_db=int)
_BOOL = _Codec(to_db=lambda value: 1 if value else 0, from_db=lambda raw: bool(raw))


@dataclass(frozen=True)
class _TableSpec:
    table: str
    columns: dict[str, _Codec]


_TABLES: dict[EntityType, _TableSpec] = {
    EntityType.SYSTEM_STATE: _TableSpec(
        "system_state", {"id": _TEXT, "total_supply": _BIGINT}
    ),
    EntityType.SWAP: _TableSpec(
        "swaps",
        {
            "id": _TEXT,
            "user": _TEXT,
            "stable": _TEXT,
            "amount_in": _BIGINT,
            "amount_out": _BIGINT,
            "fee_amount": _BIGINT,
            "timestamp": _INT,
            "block_number": _INT,
            "log_index": _INT,
        },
    ),
    EntityType.PSM_ROUTE: _TableSpec(
        "psm_routes",
        {
            "id": _TEXT,
            "max_depth": _BIGINT,
            "spread_bps": _INT,
            "buffer": _optional(_BIGINT),
            "decimals": _optional(_INT),
            "halted": _BOOL,
        },
    ),
    EntityType.ALLOCATOR: _TableSpec(
        "allocators",
        {"id": _TEXT, "ceiling": _BIGINT, "daily_cap": _BIGINT, "debt": _BIGINT},
    ),
    EntityType.ALLOCATOR_ACTION: _TableSpec(
        "allocator_actions",
        {
            "id": _TEXT,
            "type": _enum(AllocatorActionType),
            "allocator": _TEXT,
            "counterparty": _TEXT,
            "amount": _BIGINT,
            "timestamp": _INT,
            "block_number": _INT,
            "log_index": _INT,
            "applied": _BOOL,
        },
    ),
    EntityType.USER: _TableSpec("users", {"id": _TEXT, "s0xusd_balance": _BIGINT}),
    EntityType.SAVINGS_ACTION: _TableSpec(
        "savings_actions",
        {
            "id": _TEXT,
            "type": _enum(SavingsActionType),
            "user": _TEXT,
            "owner": _TEXT,
            "assets": _BIGINT,
            "shares": _BIGINT,
            "timestamp": _INT,
            "block_number": _INT,
            "log_index": _INT,
            "applied": _BOOL,
        },
    ),
    EntityType.SUPPLY_CHANGE: _TableSpec(
        "supply_changes",
        {
            "id": _TEXT,
            "type": _enum(SupplyChangeType),
            "account": _TEXT,
            "value": _BIGINT,
            "timestamp": _INT,
            "block_number": _INT,
            "log_index": _INT,
            "applied": _BOOL,
        },
    ),
    EntityType.PARAM: _TableSpec(
        "params",
        {"id": _TEXT, "kind": _enum(ParamKind), "value": _TEXT, "updated_at": _INT},
    ),
    EntityType.PARAM_UPDATE: _TableSpec(
        "param_updates",
        {
            "id": _TEXT,
            "key": _TEXT,
            "kind": _enum(ParamKind),
            "value": _TEXT,
            "timestamp": _INT,
        },
    ),
}


class SqliteEntityRepo:
    """Keyed storage for every projected entity type.

    Aggregates are written with ``upsert``; append-only records go through
    ``insert``, which refuses to replace an existing row.
    """

    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "entities"}})
            raise PermissionError("UnitOfWork is read-only; entity writes are blocked")

    @staticmethod
    def _spec(entity_type: EntityType) -> _TableSpec:
        return _TABLES[EntityType(entity_type)]

    def _row_to_entity(self, entity_type: EntityType, row: sqlite3.Row) -> Entity:
        spec = self._spec(entity_type)
        values = {name: codec.from_db(row[name]) for name, codec in spec.columns.items()}
        return ENTITY_CLASSES[EntityType(entity_type)](**values)

    def _entity_values(self, entity_type: EntityType, key: str, entity: Entity) -> list[object]:
        if entity_type_of(entity) != entity_type:
            raise TypeError(
                f"entity of type {type(entity).__name__} cannot be stored as {entity_type}"
            )
        if entity.id != key:
            raise ValueError(f"entity id {entity.id!r} does not match key {key!r}")
        spec = self._spec(entity_type)
        names = {item.name for item in fields(entity)}
        missing = set(spec.columns) - names
        if missing:
            raise ValueError(f"entity missing columns for {entity_type}: {sorted(missing)}")
        return [codec.to_db(getattr(entity, name)) for name, codec in spec.columns.items()]

    def load(self, entity_type: EntityType, key: str) -> Entity | None:
        spec = self._spec(entity_type)
        row = self._conn.execute(f"SELECT * FROM {spec.table} WHERE id = ?", (key,)).fetchone()
        if row is None:
            return None
        return self._row_to_entity(entity_type, row)

    def exists(self, entity_type: EntityType, key: str) -> bool:
        spec = self._spec(entity_type)
        row = self._conn.execute(f"SELECT 1 FROM {spec.table} WHERE id = ?", (key,)).fetchone()
        return row is not None

    def upsert(self, entity_type: EntityType, key: str, entity: Entity) -> None:
        self._ensure_writable()
        if entity_type in APPEND_ONLY_TYPES:
            raise AppendOnlyViolationError(
                f"{entity_type} is append-only; use insert() for key={key}"
            )
        spec = self._spec(entity_type)
        values = self._entity_values(entity_type, key, entity)
        columns = list(spec.columns)
        column_list = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        assignments = ", ".join(f"{name}=excluded.{name}" for name in columns if name != "id")
        self._conn.execute(
            f"""
            INSERT INTO {spec.table}({column_list})
            VALUES ({placeholders})
            ON CONFLICT(id) DO UPDATE SET {assignments}
            """,
            values,
        )

    def insert(self, entity_type: EntityType, key: str, record: Entity) -> None:
        self._ensure_writable()
        spec = self._spec(entity_type)
        values = self._entity_values(entity_type, key, record)
        columns = list(spec.columns)
        column_list = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        cur = self._conn.execute(
            f"""
            INSERT OR IGNORE INTO {spec.table}({column_list})
            VALUES ({placeholders})
            """,
            values,
        )
        if cur.rowcount == 0:
            raise AppendOnlyViolationError(
                f"{entity_type} record already exists for key={key}"
            )

    def iter_entities(self, entity_type: EntityType) -> Iterator[Entity]:
        spec = self._spec(entity_type)
        for row in self._conn.execute(f"SELECT * FROM {spec.table} ORDER BY id"):
            yield self._row_to_entity(entity_type, row)

    def count(self, entity_type: EntityType) -> int:
        spec = self._spec(entity_type)
        row = self._conn.execute(f"SELECT COUNT(*) AS n FROM {spec.table}").fetchone()
        return int(row["n"])
