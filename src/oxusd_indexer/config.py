from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from oxusd_indexer.domain.events import EventKind, normalize_address
from oxusd_indexer.domain.integrity import NegativeBalancePolicy

_TOKEN_KINDS = frozenset({EventKind.TOKEN_TRANSFER})
_PSM_KINDS = frozenset({EventKind.SWAP_OBSERVED, EventKind.ROUTE_UPDATED})
_ALLOCATOR_KINDS = frozenset(
    {EventKind.ALLOCATOR_MINT, EventKind.ALLOCATOR_REPAY, EventKind.LINE_UPDATED}
)
_SAVINGS_KINDS = frozenset({EventKind.SAVINGS_DEPOSIT, EventKind.SAVINGS_WITHDRAW})
_PARAM_KINDS = frozenset(
    {
        EventKind.ADDRESS_PARAM_UPDATED,
        EventKind.UINT_PARAM_UPDATED,
        EventKind.BOOL_PARAM_UPDATED,
    }
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    state_db_path: str = Field(default="oxusd_state.db", alias="STATE_DB_PATH")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    negative_balance_policy: NegativeBalancePolicy = Field(
        default=NegativeBalancePolicy.REJECT, alias="NEGATIVE_BALANCE_POLICY"
    )
    projector_workers: int = Field(default=1, alias="PROJECTOR_WORKERS")
    check_invariants_after_batch: bool = Field(
        default=True, alias="CHECK_INVARIANTS_AFTER_BATCH"
    )

    token_address: str | None = Field(default=None, alias="TOKEN_ADDRESS")
    psm_address: str | None = Field(default=None, alias="PSM_ADDRESS")
    allocator_vault_address: str | None = Field(default=None, alias="ALLOCATOR_VAULT_ADDRESS")
    savings_vault_address: str | None = Field(default=None, alias="SAVINGS_VAULT_ADDRESS")
    param_registry_address: str | None = Field(default=None, alias="PARAM_REGISTRY_ADDRESS")

    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: str = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    otel_exporter_otlp_endpoint: str | None = Field(
        default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )

    @field_validator("negative_balance_policy", mode="before")
    def parse_negative_balance_policy(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("projector_workers")
    def validate_projector_workers(cls, value: int) -> int:
        if value < 1:
            raise ValueError("PROJECTOR_WORKERS must be >= 1")
        return value

    @field_validator(
        "token_address",
        "psm_address",
        "allocator_vault_address",
        "savings_vault_address",
        "param_registry_address",
        mode="before",
    )
    def parse_contract_address(cls, value: object) -> str | None:
        if value is None:
            return None
        raw = str(value).strip()
        if not raw:
            return None
        return normalize_address(raw)

    @field_validator("observability_metrics_exporter")
    def validate_metrics_exporter(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"none", "otlp"}:
            raise ValueError("OBSERVABILITY_METRICS_EXPORTER must be one of: none, otlp")
        return normalized

    def contract_routes(self) -> dict[str, frozenset[EventKind]]:
        """Map configured contract addresses to the event kinds they may emit.

        An empty mapping means no contract filter is applied.
        """
        routes: dict[str, frozenset[EventKind]] = {}
        for address, kinds in (
            (self.token_address, _TOKEN_KINDS),
            (self.psm_address, _PSM_KINDS),
            (self.allocator_vault_address, _ALLOCATOR_KINDS),
            (self.savings_vault_address, _SAVINGS_KINDS),
            (self.param_registry_address, _PARAM_KINDS),
        ):
            if address is not None:
                routes[address] = routes.get(address, frozenset()) | kinds
        return routes
