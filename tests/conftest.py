from __future__ import annotations

import os
from pathlib import Path

import pytest

from oxusd_indexer.config import Settings
from oxusd_indexer.domain.events import EventEnvelope

TOKEN = "0x" + "0a" * 20
PSM = "0x" + "0b" * 20
VAULT = "0x" + "0c" * 20
SAVINGS = "0x" + "0d" * 20
REGISTRY = "0x" + "0e" * 20


def addr(n: int) -> str:
    return f"0x{n:040x}"


def tx(n: int) -> str:
    return f"0x{n:064x}"


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "state.sqlite"))


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "projection.sqlite")


@pytest.fixture
def make_event():
    """Build envelopes with sequential positions unless given explicitly."""
    counter = {"n": 0}

    def _make(
        kind: str,
        params: dict[str, object],
        *,
        contract: str,
        block: int | None = None,
        log_index: int = 0,
        tx_n: int | None = None,
        timestamp: int = 1_700_000_000,
    ) -> EventEnvelope:
        counter["n"] += 1
        n = counter["n"]
        return EventEnvelope(
            contract=contract,
            kind=kind,
            params=params,
            block_number=block if block is not None else 100 + n,
            log_index=log_index,
            transaction_hash=tx(tx_n if tx_n is not None else n),
            timestamp=timestamp,
        )

    return _make
