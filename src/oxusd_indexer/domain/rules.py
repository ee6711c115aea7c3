from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Protocol

from oxusd_indexer.domain.entities import (
    SYSTEM_STATE_ID,
    Allocator,
    AllocatorAction,
    AllocatorActionType,
    Entity,
    EntityType,
    Param,
    ParamKind,
    ParamUpdate,
    PSMRoute,
    SavingsAction,
    SavingsActionType,
    SupplyChange,
    SupplyChangeType,
    Swap,
    SystemState,
    User,
)
from oxusd_indexer.domain.events import ZERO_ADDRESS, EventEnvelope, EventKind
from oxusd_indexer.domain.integrity import (
    IntegrityCode,
    IntegrityIssue,
    NegativeBalancePolicy,
    entity_not_found,
    negative_result,
)


class EntityReader(Protocol):
    def load(self, entity_type: EntityType, key: str) -> Entity | None: ...

    def exists(self, entity_type: EntityType, key: str) -> bool: ...


@dataclass
class Projection:
    upserts: list[Entity] = field(default_factory=list)
    inserts: list[Entity] = field(default_factory=list)
    issues: list[IntegrityIssue] = field(default_factory=list)


RuleFn = Callable[[EventEnvelope, EntityReader, NegativeBalancePolicy], Projection]
LockKeysFn = Callable[[EventEnvelope], list[str]]


@dataclass(frozen=True)
class ProjectionRule:
    kind: EventKind
    apply: RuleFn
    lock_keys: LockKeysFn


def entity_lock_key(entity_type: EntityType, key: str) -> str:
    return f"{entity_type.value}:{key}"


def _debit(
    current: int,
    delta: int,
    *,
    policy: NegativeBalancePolicy,
    issue: Callable[[], IntegrityIssue],
    issues: list[IntegrityIssue],
) -> tuple[int, bool]:
    """Subtract ``delta``; returns the new value and whether it was applied."""
    result = current - delta
    if result >= 0:
        return result, True
    issues.append(issue())
    if policy is NegativeBalancePolicy.APPLY_AND_FLAG:
        return result, True
    return current, False


def _tx_record_key(
    reader: EntityReader,
    entity_type: EntityType,
    envelope: EventEnvelope,
    issues: list[IntegrityIssue],
) -> str:
    # Keyed by tx hash; a second log in the same transaction falls back to the event key.
    key = envelope.transaction_hash
    if not reader.exists(entity_type, key):
        return key
    issues.append(
        IntegrityIssue(
            code=IntegrityCode.RECORD_KEY_COLLISION,
            severity="WARN",
            entity_type=entity_type,
            entity_key=key,
            event_key=envelope.event_key,
            details={"fallback_key": envelope.event_key},
        )
    )
    return envelope.event_key


# --- PSM ---


def apply_swap(
    envelope: EventEnvelope, reader: EntityReader, policy: NegativeBalancePolicy
) -> Projection:
    del policy
    params = envelope.decode_params()
    projection = Projection()
    record_key = _tx_record_key(reader, EntityType.SWAP, envelope, projection.issues)
    projection.inserts.append(
        Swap(
            id=record_key,
            user=params.user,
            stable=params.stable,
            amount_in=params.amount_in,
            amount_out=params.amount_out,
            fee_amount=params.fee_amount,
            timestamp=envelope.timestamp,
            block_number=envelope.block_number,
            log_index=envelope.log_index,
        )
    )
    return projection


def apply_route_updated(
    envelope: EventEnvelope, reader: EntityReader, policy: NegativeBalancePolicy
) -> Projection:
    del policy
    params = envelope.decode_params()
    route = reader.load(EntityType.PSM_ROUTE, params.stable)
    if route is None:
        route = PSMRoute(id=params.stable)
    route = replace(route, max_depth=params.max_depth, spread_bps=params.spread_bps)
    if params.buffer is not None:
        route = replace(route, buffer=params.buffer)
    if params.decimals is not None:
        route = replace(route, decimals=params.decimals)
    if params.halted is not None:
        route = replace(route, halted=params.halted)
    return Projection(upserts=[route])


# --- AllocatorVault ---


def apply_allocator_mint(
    envelope: EventEnvelope, reader: EntityReader, policy: NegativeBalancePolicy
) -> Projection:
    del policy
    params = envelope.decode_params()
    projection = Projection()
    allocator = reader.load(EntityType.ALLOCATOR, params.allocator)
    applied = allocator is not None
    if allocator is None:
        projection.issues.append(
            entity_not_found(
                EntityType.ALLOCATOR, params.allocator, envelope.event_key, action="mint"
            )
        )
    else:
        projection.upserts.append(replace(allocator, debt=allocator.debt + params.amount))

    record_key = _tx_record_key(reader, EntityType.ALLOCATOR_ACTION, envelope, projection.issues)
    projection.inserts.append(
        AllocatorAction(
            id=record_key,
            type=AllocatorActionType.MINT,
            allocator=params.allocator,
            counterparty=params.to,
            amount=params.amount,
            timestamp=envelope.timestamp,
            block_number=envelope.block_number,
            log_index=envelope.log_index,
            applied=applied,
        )
    )
    return projection


def apply_allocator_repay(
    envelope: EventEnvelope, reader: EntityReader, policy: NegativeBalancePolicy
) -> Projection:
    params = envelope.decode_params()
    projection = Projection()
    allocator = reader.load(EntityType.ALLOCATOR, params.allocator)
    applied = False
    if allocator is None:
        projection.issues.append(
            entity_not_found(
                EntityType.ALLOCATOR, params.allocator, envelope.event_key, action="repay"
            )
        )
    else:
        debt, applied = _debit(
            allocator.debt,
            params.amount,
            policy=policy,
            issue=lambda: negative_result(
                EntityType.ALLOCATOR,
                params.allocator,
                envelope.event_key,
                field_name="debt",
                current=allocator.debt,
                delta=params.amount,
                policy=policy,
            ),
            issues=projection.issues,
        )
        if applied:
            projection.upserts.append(replace(allocator, debt=debt))

    record_key = _tx_record_key(reader, EntityType.ALLOCATOR_ACTION, envelope, projection.issues)
    projection.inserts.append(
        AllocatorAction(
            id=record_key,
            type=AllocatorActionType.REPAY,
            allocator=params.allocator,
            counterparty=params.repayer,
            amount=params.amount,
            timestamp=envelope.timestamp,
            block_number=envelope.block_number,
            log_index=envelope.log_index,
            applied=applied,
        )
    )
    return projection


def apply_line_updated(
    envelope: EventEnvelope, reader: EntityReader, policy: NegativeBalancePolicy
) -> Projection:
    del policy
    params = envelope.decode_params()
    allocator = reader.load(EntityType.ALLOCATOR, params.allocator)
    if allocator is None:
        allocator = Allocator(id=params.allocator)
    return Projection(
        upserts=[replace(allocator, ceiling=params.ceiling, daily_cap=params.daily_cap)]
    )


# --- SavingsVault ---


def apply_savings_deposit(
    envelope: EventEnvelope, reader: EntityReader, policy: NegativeBalancePolicy
) -> Projection:
    del policy
    params = envelope.decode_params()
    user = reader.load(EntityType.USER, params.sender)
    if user is None:
        user = User(id=params.sender)
    return Projection(
        upserts=[replace(user, s0xusd_balance=user.s0xusd_balance + params.shares)],
        inserts=[
            SavingsAction(
                id=envelope.event_key,
                type=SavingsActionType.DEPOSIT,
                user=params.sender,
                owner=params.owner,
                assets=params.assets,
                shares=params.shares,
                timestamp=envelope.timestamp,
                block_number=envelope.block_number,
                log_index=envelope.log_index,
                applied=True,
            )
        ],
    )


def apply_savings_withdraw(
    envelope: EventEnvelope, reader: EntityReader, policy: NegativeBalancePolicy
) -> Projection:
    params = envelope.decode_params()
    projection = Projection()
    user = reader.load(EntityType.USER, params.sender)
    applied = False
    if user is None:
        projection.issues.append(
            entity_not_found(EntityType.USER, params.sender, envelope.event_key, action="withdraw")
        )
    else:
        balance, applied = _debit(
            user.s0xusd_balance,
            params.shares,
            policy=policy,
            issue=lambda: negative_result(
                EntityType.USER,
                params.sender,
                envelope.event_key,
                field_name="s0xusd_balance",
                current=user.s0xusd_balance,
                delta=params.shares,
                policy=policy,
            ),
            issues=projection.issues,
        )
        if applied:
            projection.upserts.append(replace(user, s0xusd_balance=balance))

    projection.inserts.append(
        SavingsAction(
            id=envelope.event_key,
            type=SavingsActionType.WITHDRAW,
            user=params.sender,
            owner=params.owner,
            assets=params.assets,
            shares=params.shares,
            timestamp=envelope.timestamp,
            block_number=envelope.block_number,
            log_index=envelope.log_index,
            applied=applied,
        )
    )
    return projection


# --- 0xUSD token ---


def apply_token_transfer(
    envelope: EventEnvelope, reader: EntityReader, policy: NegativeBalancePolicy
) -> Projection:
    params = envelope.decode_params()
    is_mint = params.from_ == ZERO_ADDRESS
    is_burn = params.to == ZERO_ADDRESS
    if not is_mint and not is_burn:
        return Projection()

    projection = Projection()
    state = reader.load(EntityType.SYSTEM_STATE, SYSTEM_STATE_ID)
    if state is None:
        state = SystemState()
    supply = state.total_supply

    if is_mint:
        supply += params.value
        projection.inserts.append(
            SupplyChange(
                id=f"{envelope.event_key}-mint" if is_burn else envelope.event_key,
                type=SupplyChangeType.MINT,
                account=params.to,
                value=params.value,
                timestamp=envelope.timestamp,
                block_number=envelope.block_number,
                log_index=envelope.log_index,
                applied=True,
            )
        )
    if is_burn:
        before = supply
        supply, applied = _debit(
            supply,
            params.value,
            policy=policy,
            issue=lambda: negative_result(
                EntityType.SYSTEM_STATE,
                SYSTEM_STATE_ID,
                envelope.event_key,
                field_name="total_supply",
                current=before,
                delta=params.value,
                policy=policy,
            ),
            issues=projection.issues,
        )
        projection.inserts.append(
            SupplyChange(
                id=f"{envelope.event_key}-burn" if is_mint else envelope.event_key,
                type=SupplyChangeType.BURN,
                account=params.from_,
                value=params.value,
                timestamp=envelope.timestamp,
                block_number=envelope.block_number,
                log_index=envelope.log_index,
                applied=applied,
            )
        )

    projection.upserts.append(replace(state, total_supply=supply))
    return projection


# --- ParamRegistry ---


def _param_rule(kind: ParamKind) -> RuleFn:
    def apply_param_updated(
        envelope: EventEnvelope, reader: EntityReader, policy: NegativeBalancePolicy
    ) -> Projection:
        del reader, policy
        params = envelope.decode_params()
        if kind is ParamKind.BOOL:
            value = "true" if params.value else "false"
        else:
            value = str(params.value)
        return Projection(
            upserts=[Param(id=params.key, kind=kind, value=value, updated_at=envelope.timestamp)],
            inserts=[
                ParamUpdate(
                    id=envelope.event_key,
                    key=params.key,
                    kind=kind,
                    value=value,
                    timestamp=envelope.timestamp,
                )
            ],
        )

    return apply_param_updated


# --- lock keys ---


def _keys_for(entity_type: EntityType, attr: str) -> LockKeysFn:
    def lock_keys(envelope: EventEnvelope) -> list[str]:
        return [entity_lock_key(entity_type, getattr(envelope.decode_params(), attr))]

    return lock_keys


def _no_aggregate_keys(envelope: EventEnvelope) -> list[str]:
    del envelope
    return []


def _supply_keys(envelope: EventEnvelope) -> list[str]:
    return [entity_lock_key(EntityType.SYSTEM_STATE, SYSTEM_STATE_ID)]


def _param_keys(envelope: EventEnvelope) -> list[str]:
    return [entity_lock_key(EntityType.PARAM, envelope.decode_params().key)]


RULES: dict[EventKind, ProjectionRule] = {
    rule.kind: rule
    for rule in (
        ProjectionRule(EventKind.SWAP_OBSERVED, apply_swap, _no_aggregate_keys),
        ProjectionRule(
            EventKind.ROUTE_UPDATED,
            apply_route_updated,
            _keys_for(EntityType.PSM_ROUTE, "stable"),
        ),
        ProjectionRule(
            EventKind.ALLOCATOR_MINT,
            apply_allocator_mint,
            _keys_for(EntityType.ALLOCATOR, "allocator"),
        ),
        ProjectionRule(
            EventKind.ALLOCATOR_REPAY,
            apply_allocator_repay,
            _keys_for(EntityType.ALLOCATOR, "allocator"),
        ),
        ProjectionRule(
            EventKind.LINE_UPDATED,
            apply_line_updated,
            _keys_for(EntityType.ALLOCATOR, "allocator"),
        ),
        ProjectionRule(
            EventKind.SAVINGS_DEPOSIT,
            apply_savings_deposit,
            _keys_for(EntityType.USER, "sender"),
        ),
        ProjectionRule(
            EventKind.SAVINGS_WITHDRAW,
            apply_savings_withdraw,
            _keys_for(EntityType.USER, "sender"),
        ),
        ProjectionRule(EventKind.TOKEN_TRANSFER, apply_token_transfer, _supply_keys),
        ProjectionRule(
            EventKind.ADDRESS_PARAM_UPDATED, _param_rule(ParamKind.ADDRESS), _param_keys
        ),
        ProjectionRule(EventKind.UINT_PARAM_UPDATED, _param_rule(ParamKind.UINT), _param_keys),
        ProjectionRule(EventKind.BOOL_PARAM_UPDATED, _param_rule(ParamKind.BOOL), _param_keys),
    )
}
