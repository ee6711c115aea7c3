from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

SYSTEM_STATE_ID = "0xUSD"


class EntityType(StrEnum):
    SYSTEM_STATE = "SystemState"
    SWAP = "Swap"
    PSM_ROUTE = "PSMRoute"
    ALLOCATOR = "Allocator"
    ALLOCATOR_ACTION = "AllocatorAction"
    USER = "User"
    SAVINGS_ACTION = "SavingsAction"
    SUPPLY_CHANGE = "SupplyChange"
    PARAM = "Param"
    PARAM_UPDATE = "ParamUpdate"


APPEND_ONLY_TYPES = frozenset(
    {
        EntityType.SWAP,
        EntityType.ALLOCATOR_ACTION,
        EntityType.SAVINGS_ACTION,
        EntityType.SUPPLY_CHANGE,
        EntityType.PARAM_UPDATE,
    }
)


class AllocatorActionType(StrEnum):
    MINT = "MINT"
    REPAY = "REPAY"


class SavingsActionType(StrEnum):
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"


class SupplyChangeType(StrEnum):
    MINT = "MINT"
    BURN = "BURN"


class ParamKind(StrEnum):
    ADDRESS = "ADDRESS"
    UINT = "UINT"
    BOOL = "BOOL"


@dataclass(frozen=True)
class SystemState:
    id: str = SYSTEM_STATE_ID
    total_supply: int = 0


@dataclass(frozen=True)
class Swap:
    id: str
    user: str
    stable: str
    amount_in: int
    amount_out: int
    fee_amount: int
    timestamp: int
    block_number: int
    log_index: int


@dataclass(frozen=True)
class PSMRoute:
    id: str
    max_depth: int = 0
    spread_bps: int = 0
    buffer: int | None = None
    decimals: int | None = None
    halted: bool = False


@dataclass(frozen=True)
class Allocator:
    id: str
    ceiling: int = 0
    daily_cap: int = 0
    debt: int = 0


@dataclass(frozen=True)
class AllocatorAction:
    id: str
    type: AllocatorActionType
    allocator: str
    counterparty: str
    amount: int
    timestamp: int
    block_number: int
    log_index: int
    applied: bool


@dataclass(frozen=True)
class User:
    id: str
    s0xusd_balance: int = 0


@dataclass(frozen=True)
class SavingsAction:
    id: str
    type: SavingsActionType
    user: str
    owner: str
    assets: int
    shares: int
    timestamp: int
    block_number: int
    log_index: int
    applied: bool


@dataclass(frozen=True)
class SupplyChange:
    id: str
    type: SupplyChangeType
    account: str
    value: int
    timestamp: int
    block_number: int
    log_index: int
    applied: bool


@dataclass(frozen=True)
class Param:
    id: str
    kind: ParamKind
    value: str
    updated_at: int


@dataclass(frozen=True)
class ParamUpdate:
    id: str
    key: str
    kind: ParamKind
    value: str
    timestamp: int


Entity = (
    SystemState
    | Swap
    | PSMRoute
    | Allocator
    | AllocatorAction
    | User
    | SavingsAction
    | SupplyChange
    | Param
    | ParamUpdate
)

ENTITY_CLASSES: dict[EntityType, type] = {
    EntityType.SYSTEM_STATE: SystemState,
    EntityType.SWAP: Swap,
    EntityType.PSM_ROUTE: PSMRoute,
    EntityType.ALLOCATOR: Allocator,
    EntityType.ALLOCATOR_ACTION: AllocatorAction,
    EntityType.USER: User,
    EntityType.SAVINGS_ACTION: SavingsAction,
    EntityType.SUPPLY_CHANGE: SupplyChange,
    EntityType.PARAM: Param,
    EntityType.PARAM_UPDATE: ParamUpdate,
}


def entity_type_of(entity: Entity) -> EntityType:
    for entity_type, cls in ENTITY_CLASSES.items():
        if type(entity) is cls:
            return entity_type
    raise TypeError(f"Unsupported entity type: {type(entity).__name__}")
