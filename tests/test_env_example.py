from __future__ import annotations

from pathlib import Path

from oxusd_indexer.config import Settings

ENV_EXAMPLE = Path(__file__).resolve().parents[1] / ".env.example"


def _env_pairs() -> dict[str, str]:
    pairs: dict[str, str] = {}
    for line in ENV_EXAMPLE.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, _, value = stripped.partition("=")
        pairs[key] = value
    return pairs


def test_env_example_documents_every_setting() -> None:
    aliases = {field.alias for field in Settings.model_fields.values() if field.alias}
    assert aliases == set(_env_pairs())


def test_env_example_values_are_valid_settings() -> None:
    settings = Settings(_env_file=str(ENV_EXAMPLE))

    assert settings.projector_workers == 1
    assert settings.contract_routes() == {}
