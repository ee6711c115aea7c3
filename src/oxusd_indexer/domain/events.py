from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from functools import partial
from types import MappingProxyType
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from oxusd_indexer.errors import EventDecodeError

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MAX_SPREAD_BPS = 10_000

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")


class EventKind(StrEnum):
    SWAP_OBSERVED = "SwapObserved"
    ROUTE_UPDATED = "RouteUpdated"
    ALLOCATOR_MINT = "AllocatorMint"
    ALLOCATOR_REPAY = "AllocatorRepay"
    LINE_UPDATED = "LineUpdated"
    SAVINGS_DEPOSIT = "SavingsDeposit"
    SAVINGS_WITHDRAW = "SavingsWithdraw"
    TOKEN_TRANSFER = "TokenTransfer"
    ADDRESS_PARAM_UPDATED = "AddressParamUpdated"
    UINT_PARAM_UPDATED = "UintParamUpdated"
    BOOL_PARAM_UPDATED = "BoolParamUpdated"


def normalize_address(value: object) -> str:
    candidate = str(value).strip().lower()
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"invalid address: {value!r}")
    return candidate


def normalize_tx_hash(value: object) -> str:
    candidate = str(value).strip().lower()
    if not _HASH_RE.match(candidate):
        raise ValueError(f"invalid transaction hash: {value!r}")
    return candidate


def parse_uint(value: object, bits: int = 256) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not an unsigned integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            raise ValueError("empty integer value")
        parsed = int(raw, 16) if raw.lower().startswith("0x") else int(raw, 10)
    else:
        raise ValueError(f"unsupported integer value: {value!r}")
    if parsed < 0 or parsed > 2**bits - 1:
        raise ValueError(f"value out of uint{bits} range: {parsed}")
    return parsed


Address = Annotated[str, BeforeValidator(normalize_address)]
Uint256 = Annotated[int, BeforeValidator(parse_uint)]
Uint16 = Annotated[int, BeforeValidator(partial(parse_uint, bits=16))]
Uint8 = Annotated[int, BeforeValidator(partial(parse_uint, bits=8))]


class EventParams(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)


class SwapParams(EventParams):
    user: Address
    stable: Address
    amount_in: Uint256 = Field(alias="amountIn")
    amount_out: Uint256 = Field(alias="amountOut")
    fee_amount: Uint256 = Field(alias="feeAmount")


class RouteUpdatedParams(EventParams):
    stable: Address
    max_depth: Uint256 = Field(alias="maxDepth")
    spread_bps: Uint16 = Field(alias="spreadBps")
    buffer: Uint256 | None = None
    decimals: Uint8 | None = None
    halted: bool | None = None


class AllocatorMintParams(EventParams):
    allocator: Address
    to: Address
    amount: Uint256


class AllocatorRepayParams(EventParams):
    allocator: Address
    repayer: Address
    amount: Uint256


class LineUpdatedParams(EventParams):
    allocator: Address
    ceiling: Uint256
    daily_cap: Uint256 = Field(alias="dailyCap")


class SavingsDepositParams(EventParams):
    sender: Address
    owner: Address
    assets: Uint256
    shares: Uint256


class SavingsWithdrawParams(EventParams):
    sender: Address
    owner: Address
    assets: Uint256
    shares: Uint256
    receiver: Address | None = None


class TransferParams(EventParams):
    from_: Address = Field(alias="from")
    to: Address
    value: Uint256


class AddressParamParams(EventParams):
    key: str = Field(min_length=1)
    value: Address


class UintParamParams(EventParams):
    key: str = Field(min_length=1)
    value: Uint256


class BoolParamParams(EventParams):
    key: str = Field(min_length=1)
    value: bool


PARAM_SCHEMAS: dict[EventKind, type[EventParams]] = {
    EventKind.SWAP_OBSERVED: SwapParams,
    EventKind.ROUTE_UPDATED: RouteUpdatedParams,
    EventKind.ALLOCATOR_MINT: AllocatorMintParams,
    EventKind.ALLOCATOR_REPAY: AllocatorRepayParams,
    EventKind.LINE_UPDATED: LineUpdatedParams,
    EventKind.SAVINGS_DEPOSIT: SavingsDepositParams,
    EventKind.SAVINGS_WITHDRAW: SavingsWithdrawParams,
    EventKind.TOKEN_TRANSFER: TransferParams,
    EventKind.ADDRESS_PARAM_UPDATED: AddressParamParams,
    EventKind.UINT_PARAM_UPDATED: UintParamParams,
    EventKind.BOOL_PARAM_UPDATED: BoolParamParams,
}


@dataclass(frozen=True)
class EventEnvelope:
    """One delivered on-chain log, as handed over by the delivery layer.

    Addresses and the transaction hash are lowercased on construction so that
    every key derived from an envelope is stable across redeliveries.
    """

    contract: str
    kind: EventKind
    params: Mapping[str, Any]
    block_number: int
    log_index: int
    transaction_hash: str
    timestamp: int

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "contract", normalize_address(self.contract))
            object.__setattr__(self, "kind", EventKind(self.kind))
            object.__setattr__(self, "transaction_hash", normalize_tx_hash(self.transaction_hash))
        except ValueError as exc:
            raise EventDecodeError(str(exc)) from exc
        if self.block_number < 0 or self.log_index < 0 or self.timestamp < 0:
            raise EventDecodeError(
                f"negative envelope coordinates block={self.block_number} "
                f"log_index={self.log_index} timestamp={self.timestamp}"
            )
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> EventEnvelope:
        try:
            return cls(
                contract=raw["contract"],
                kind=raw["kind"],
                params=dict(raw.get("params") or {}),
                block_number=parse_uint(raw["blockNumber"], bits=64),
                log_index=parse_uint(raw["logIndex"], bits=64),
                transaction_hash=raw["transactionHash"],
                timestamp=parse_uint(raw["timestamp"], bits=64),
            )
        except EventDecodeError:
            raise
        except KeyError as exc:
            raise EventDecodeError(f"envelope missing field: {exc.args[0]}") from exc
        except (TypeError, ValueError) as exc:
            raise EventDecodeError(f"invalid envelope: {exc}") from exc

    @property
    def event_key(self) -> str:
        return f"{self.transaction_hash}-{self.log_index}"

    @property
    def stream_id(self) -> str:
        return self.contract

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    def decode_params(self) -> Any:
        schema = PARAM_SCHEMAS[self.kind]
        try:
            return schema.model_validate(dict(self.params))
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise EventDecodeError(
                f"invalid params for {self.kind.value} event_key={self.event_key}: "
                f"{location}: {first['msg']}"
            ) from exc

    def to_mapping(self) -> dict[str, Any]:
        return {
            "contract": self.contract,
            "kind": self.kind.value,
            "params": dict(self.params),
            "blockNumber": self.block_number,
            "logIndex": self.log_index,
            "transactionHash": self.transaction_hash,
            "timestamp": self.timestamp,
        }
