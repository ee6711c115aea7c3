from __future__ import annotations

import sqlite3

import pytest

from oxusd_indexer.domain.entities import (
    Allocator,
    AllocatorAction,
    AllocatorActionType,
    EntityType,
    PSMRoute,
    SystemState,
    User,
)
from oxusd_indexer.domain.events import EventEnvelope
from oxusd_indexer.domain.integrity import IntegrityCode, entity_not_found
from oxusd_indexer.errors import AppendOnlyViolationError
from oxusd_indexer.persistence.uow import UnitOfWorkFactory

ALLOCATOR = "0x" + "11" * 20


def _action(key: str, amount: int = 100) -> AllocatorAction:
    return AllocatorAction(
        id=key,
        type=AllocatorActionType.MINT,
        allocator=ALLOCATOR,
        counterparty="0x" + "22" * 20,
        amount=amount,
        timestamp=1,
        block_number=10,
        log_index=0,
        applied=True,
    )


def test_uow_commit_and_rollback(db_path) -> None:
    factory = UnitOfWorkFactory(db_path)

    with factory() as uow:
        uow.entities.upsert(EntityType.USER, "0xa", User(id="0xa", s0xusd_balance=5))

    with pytest.raises(RuntimeError):
        with factory() as uow:
            uow.entities.upsert(EntityType.USER, "0xb", User(id="0xb", s0xusd_balance=7))
            raise RuntimeError("boom")

    with sqlite3.connect(db_path) as conn:
        users = conn.execute("SELECT id FROM users ORDER BY id").fetchall()
    assert users == [("0xa",)]


def test_read_only_guard_fails_closed(db_path) -> None:
    ro_factory = UnitOfWorkFactory(db_path, read_only=True)
    with pytest.raises(PermissionError):
        with ro_factory() as uow:
            uow.entities.upsert(EntityType.USER, "0xa", User(id="0xa"))

    with ro_factory() as uow:
        assert uow.entities.load(EntityType.USER, "0xa") is None


def test_read_your_writes_within_one_transaction(db_path) -> None:
    with UnitOfWorkFactory(db_path)() as uow:
        uow.entities.upsert(
            EntityType.ALLOCATOR, ALLOCATOR, Allocator(id=ALLOCATOR, ceiling=10, daily_cap=5)
        )
        loaded = uow.entities.load(EntityType.ALLOCATOR, ALLOCATOR)
        assert loaded == Allocator(id=ALLOCATOR, ceiling=10, daily_cap=5, debt=0)
        assert uow.entities.exists(EntityType.ALLOCATOR, ALLOCATOR)


def test_bigint_and_optional_columns_round_trip(db_path) -> None:
    huge = 2**256 - 1
    route = PSMRoute(id="0xs", max_depth=huge, spread_bps=30, buffer=None, decimals=6, halted=True)
    with UnitOfWorkFactory(db_path)() as uow:
        uow.entities.upsert(EntityType.PSM_ROUTE, route.id, route)
        uow.entities.upsert(
            EntityType.SYSTEM_STATE, "0xUSD", SystemState(total_supply=huge)
        )

    with UnitOfWorkFactory(db_path, read_only=True)() as uow:
        assert uow.entities.load(EntityType.PSM_ROUTE, "0xs") == route
        assert uow.entities.load(EntityType.SYSTEM_STATE, "0xUSD").total_supply == huge


def test_append_only_records_refuse_overwrite(db_path) -> None:
    factory = UnitOfWorkFactory(db_path)
    with factory() as uow:
        uow.entities.insert(EntityType.ALLOCATOR_ACTION, "0xt1", _action("0xt1"))

    with pytest.raises(AppendOnlyViolationError):
        with factory() as uow:
            uow.entities.insert(EntityType.ALLOCATOR_ACTION, "0xt1", _action("0xt1", amount=1))

    with pytest.raises(AppendOnlyViolationError):
        with factory() as uow:
            uow.entities.upsert(EntityType.ALLOCATOR_ACTION, "0xt1", _action("0xt1", amount=1))

    with factory() as uow:
        assert uow.entities.load(EntityType.ALLOCATOR_ACTION, "0xt1").amount == 100
        assert uow.entities.count(EntityType.ALLOCATOR_ACTION) == 1


def test_entity_key_and_type_must_match(db_path) -> None:
    with UnitOfWorkFactory(db_path)() as uow:
        with pytest.raises(ValueError):
            uow.entities.upsert(EntityType.USER, "0xa", User(id="0xb"))
        with pytest.raises(TypeError):
            uow.entities.upsert(EntityType.USER, "0xa", Allocator(id="0xa"))


def test_iter_entities_is_ordered_by_key(db_path) -> None:
    with UnitOfWorkFactory(db_path)() as uow:
        for key in ("0xc", "0xa", "0xb"):
            uow.entities.upsert(EntityType.USER, key, User(id=key, s0xusd_balance=1))

    with UnitOfWorkFactory(db_path, read_only=True)() as uow:
        assert [user.id for user in uow.entities.iter_entities(EntityType.USER)] == [
            "0xa",
            "0xb",
            "0xc",
        ]


def test_stream_cursor_only_moves_forward(db_path) -> None:
    env = EventEnvelope(
        contract="0x" + "0c" * 20,
        kind="AllocatorMint",
        params={},
        block_number=20,
        log_index=4,
        transaction_hash="0x" + "01" * 32,
        timestamp=1,
    )
    with UnitOfWorkFactory(db_path)() as uow:
        uow.cursors.mark_processed(env)
        uow.cursors.advance_stream_cursor(env.stream_id, (20, 4))
        uow.cursors.advance_stream_cursor(env.stream_id, (19, 9))

    with UnitOfWorkFactory(db_path, read_only=True)() as uow:
        assert uow.cursors.is_processed(env.event_key)
        assert uow.cursors.get_stream_cursor(env.stream_id) == (20, 4)
        assert uow.cursors.list_stream_cursors() == {env.stream_id: (20, 4)}
        assert uow.cursors.processed_count() == 1


def test_integrity_issues_are_recorded_and_listed(db_path) -> None:
    issue = entity_not_found(EntityType.ALLOCATOR, ALLOCATOR, "0xtx-0", action="repay")
    with UnitOfWorkFactory(db_path)() as uow:
        uow.integrity.record_issue(issue)

    with UnitOfWorkFactory(db_path, read_only=True)() as uow:
        issues = uow.integrity.list_issues(code=IntegrityCode.ENTITY_NOT_FOUND.value)
        counts = uow.integrity.count_by_code()

    assert counts == {"ENTITY_NOT_FOUND": 1}
    assert issues[0]["entity_key"] == ALLOCATOR
    assert issues[0]["severity"] == "WARN"
    assert issues[0]["details"] == {"action": "repay"}
