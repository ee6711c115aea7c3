from __future__ import annotations

import logging
import threading

from oxusd_indexer.config import Settings
from oxusd_indexer.domain.entities import SYSTEM_STATE_ID, EntityType
from oxusd_indexer.domain.events import ZERO_ADDRESS
from oxusd_indexer.domain.integrity import NegativeBalancePolicy
from oxusd_indexer.logging_context import get_logging_context
from oxusd_indexer.persistence.uow import UnitOfWorkFactory
from oxusd_indexer.services.dispatcher import ProjectionDispatcher
from oxusd_indexer.services.projection_service import ProjectionService, partition_by_stream

TOKEN = "0x" + "0a" * 20
VAULT_A = "0x" + "c1" * 20
VAULT_B = "0x" + "c2" * 20
ALLOCATOR_A = "0x" + "a1" * 20
ALLOCATOR_B = "0x" + "a2" * 20
USER = "0x" + "22" * 20


def _service(db_path: str, **kwargs) -> ProjectionService:
    factory = UnitOfWorkFactory(db_path)
    return ProjectionService(
        ProjectionDispatcher(factory),
        uow_factory=factory,
        read_uow_factory=UnitOfWorkFactory(db_path, read_only=True),
        **kwargs,
    )


def _allocator_stream(make_event, vault: str, allocator: str, mints: int):
    events = [
        make_event(
            "LineUpdated", {"allocator": allocator, "ceiling": 10**6, "dailyCap": 10**5}, contract=vault
        )
    ]
    events += [
        make_event("AllocatorMint", {"allocator": allocator, "to": USER, "amount": 10}, contract=vault)
        for _ in range(mints)
    ]
    return events


def _debt(db_path: str, allocator: str) -> int:
    with UnitOfWorkFactory(db_path, read_only=True)() as uow:
        return uow.entities.load(EntityType.ALLOCATOR, allocator).debt


def test_partition_sorts_each_stream_by_position(make_event) -> None:
    late = make_event("TokenTransfer", {"from": ZERO_ADDRESS, "to": USER, "value": 1}, contract=TOKEN, block=9)
    early = make_event("TokenTransfer", {"from": ZERO_ADDRESS, "to": USER, "value": 1}, contract=TOKEN, block=3)
    other = make_event(
        "LineUpdated", {"allocator": ALLOCATOR_A, "ceiling": 1, "dailyCap": 1}, contract=VAULT_A
    )

    streams = partition_by_stream([late, other, early])

    assert list(streams) == sorted([TOKEN, VAULT_A])
    assert streams[TOKEN] == [early, late]


def test_batch_is_applied_out_of_delivery_order(db_path, make_event) -> None:
    events = _allocator_stream(make_event, VAULT_A, ALLOCATOR_A, mints=3)

    result = _service(db_path).process_batch(list(reversed(events)))

    assert result.ok
    assert result.applied == 4
    assert result.invariant_report is not None and result.invariant_report.ok
    assert _debt(db_path, ALLOCATOR_A) == 30


def test_replaying_a_batch_only_counts_duplicates(db_path, make_event) -> None:
    events = _allocator_stream(make_event, VAULT_A, ALLOCATOR_A, mints=2)
    service = _service(db_path)

    service.process_batch(events)
    replay = service.process_batch(events)

    assert (replay.applied, replay.duplicates) == (0, 3)
    assert _debt(db_path, ALLOCATOR_A) == 20


def test_streams_run_in_parallel_workers(db_path, make_event) -> None:
    events = _allocator_stream(make_event, VAULT_A, ALLOCATOR_A, mints=15)
    events += _allocator_stream(make_event, VAULT_B, ALLOCATOR_B, mints=15)
    seen_threads: set[str] = set()
    seen_batch_ids: set[str | None] = set()
    service = _service(db_path, workers=2)
    original = service.dispatcher.dispatch

    def _recording_dispatch(envelope):
        seen_threads.add(threading.current_thread().name)
        seen_batch_ids.add(get_logging_context().get("batch_id"))
        return original(envelope)

    service.dispatcher.dispatch = _recording_dispatch  # type: ignore[method-assign]

    result = service.process_batch(events, batch_id="batch-1")

    assert result.ok
    assert result.applied == 32
    assert _debt(db_path, ALLOCATOR_A) == 150
    assert _debt(db_path, ALLOCATOR_B) == 150
    assert all(name.startswith("projector") for name in seen_threads)
    assert seen_batch_ids == {"batch-1"}


def test_failing_event_halts_only_its_stream(db_path, make_event, caplog) -> None:
    good = _allocator_stream(make_event, VAULT_A, ALLOCATOR_A, mints=2)
    bad_stream = _allocator_stream(make_event, VAULT_B, ALLOCATOR_B, mints=1)
    broken = make_event("AllocatorMint", {"allocator": ALLOCATOR_B, "to": USER}, contract=VAULT_B)
    trailing = make_event(
        "AllocatorMint", {"allocator": ALLOCATOR_B, "to": USER, "amount": 10}, contract=VAULT_B
    )
    service = _service(db_path)

    with caplog.at_level(logging.ERROR):
        result = service.process_batch(good + bad_stream + [broken, trailing])

    assert not result.ok
    (failure,) = result.failures
    assert failure.stream_id == VAULT_B
    assert failure.event_key == broken.event_key
    assert failure.error_type == "EventDecodeError"
    assert failure.skipped == 1
    assert _debt(db_path, ALLOCATOR_A) == 20
    assert _debt(db_path, ALLOCATOR_B) == 10
    assert any(record.getMessage() == "stream_halted" for record in caplog.records)

    with UnitOfWorkFactory(db_path, read_only=True)() as uow:
        assert not uow.cursors.is_processed(trailing.event_key)


def test_negative_results_are_collected_on_the_batch(db_path, make_event) -> None:
    burn = make_event("TokenTransfer", {"from": USER, "to": ZERO_ADDRESS, "value": 5}, contract=TOKEN)

    result = _service(db_path, check_invariants=False).process_batch([burn])

    assert result.ok
    assert result.invariant_report is None
    assert [issue.code.value for issue in result.issues] == ["NEGATIVE_RESULT"]
    with UnitOfWorkFactory(db_path, read_only=True)() as uow:
        assert uow.entities.load(EntityType.SYSTEM_STATE, SYSTEM_STATE_ID).total_supply == 0


def test_from_settings_wires_policy_and_routes(monkeypatch, tmp_path, make_event) -> None:
    db = tmp_path / "from_settings.sqlite"
    monkeypatch.setenv("STATE_DB_PATH", str(db))
    monkeypatch.setenv("NEGATIVE_BALANCE_POLICY", "APPLY_AND_FLAG")
    monkeypatch.setenv("TOKEN_ADDRESS", TOKEN)
    monkeypatch.setenv("PROJECTOR_WORKERS", "3")

    service = ProjectionService.from_settings(Settings())
    assert service.workers == 3
    assert service.dispatcher.negative_policy is NegativeBalancePolicy.APPLY_AND_FLAG

    foreign = make_event(
        "AllocatorMint", {"allocator": ALLOCATOR_A, "to": USER, "amount": 1}, contract=VAULT_A
    )
    burn = make_event("TokenTransfer", {"from": USER, "to": ZERO_ADDRESS, "value": 5}, contract=TOKEN)
    result = service.process_batch([foreign, burn])

    assert (result.applied, result.unrouted) == (1, 1)
    assert not result.ok
    with UnitOfWorkFactory(str(db), read_only=True)() as uow:
        assert uow.entities.load(EntityType.SYSTEM_STATE, SYSTEM_STATE_ID).total_supply == -5


def test_out_of_range_spread_is_stored_and_reported_without_halting(db_path, make_event) -> None:
    psm = "0x" + "0e" * 20
    stable = "0x" + "33" * 20
    route = make_event(
        "RouteUpdated", {"stable": stable, "maxDepth": 10**6, "spreadBps": 10_001}, contract=psm
    )
    swap = make_event(
        "SwapObserved",
        {"user": USER, "stable": stable, "amountIn": 100, "amountOut": 99, "feeAmount": 1},
        contract=psm,
    )

    result = _service(db_path).process_batch([route, swap])

    assert result.failures == []
    assert result.applied == 2
    report = result.invariant_report
    assert report is not None and not report.ok
    assert [(v.check, v.entity_key, v.actual) for v in report.violations] == [
        ("spread_bps", stable, "10001")
    ]
    with UnitOfWorkFactory(db_path, read_only=True)() as uow:
        assert uow.entities.load(EntityType.PSM_ROUTE, stable).spread_bps == 10_001
        assert uow.entities.exists(EntityType.SWAP, swap.transaction_hash)
