from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from carrier_portal_sync.config import _parse_carrier_list_env, load_config


_ENV_VARS = (
    "STORE_DB_PATH",
    "LOG_LEVEL",
    "LOG_FILE",
    "BROWSER_HEADLESS",
    "BROWSER_SLOW_MO_MS",
    "BROWSER_CHANNEL",
    "BROWSER_STORAGE_STATE_DIR",
    "SYNC_EXTRACTION_TIMEOUT_S",
    "SYNC_MUTATION_ATTEMPTS",
    "SYNC_DUMP_RAW_PAYLOADS",
    "SYNC_DEBUG_DIR",
    "CARRIERS_ENABLED",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path: Path, name: str, text: str) -> Path:
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


def test_defaults_without_yaml(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "missing.yaml")
    assert cfg.store.db_path == "data/book.db"
    assert cfg.browser.headless is False
    assert cfg.browser.storage_state_dir == "data/browser"
    assert cfg.sync.extraction_timeout_s == 600.0
    assert cfg.sync.mutation_attempts == 3
    assert cfg.sync.dump_raw_payloads is False
    assert cfg.carriers.enabled == []


def test_env_only_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORE_DB_PATH", "/tmp/agency.db")
    monkeypatch.setenv("BROWSER_HEADLESS", "yes")
    monkeypatch.setenv("BROWSER_SLOW_MO_MS", "250")
    monkeypatch.setenv("SYNC_EXTRACTION_TIMEOUT_S", "90")
    monkeypatch.setenv("SYNC_DUMP_RAW_PAYLOADS", "1")
    monkeypatch.setenv("CARRIERS_ENABLED", "carrier-UHC, carrier-humana carrier-uhc")

    cfg = load_config(None)
    assert cfg.store.db_path == "/tmp/agency.db"
    assert cfg.browser.headless is True
    assert cfg.browser.slow_mo_ms == 250
    assert cfg.sync.extraction_timeout_s == 90.0
    assert cfg.sync.dump_raw_payloads is True
    assert cfg.carriers.enabled == ["carrier-uhc", "carrier-humana"]


def test_yaml_overrides_env_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORE_DB_PATH", "/tmp/from-env.db")
    monkeypatch.setenv("SYNC_MUTATION_ATTEMPTS", "5")
    cfg_path = _write(
        tmp_path,
        "cfg.yaml",
        """
store:
  db_path: "/srv/book.db"
browser:
  channel: "msedge"
carriers:
  enabled: ["carrier-devoted"]
""",
    )
    cfg = load_config(cfg_path)
    assert cfg.store.db_path == "/srv/book.db"
    assert cfg.browser.channel == "msedge"
    # Keys absent from YAML keep their env-derived values.
    assert cfg.sync.mutation_attempts == 5
    assert cfg.carriers.enabled == ["carrier-devoted"]


def test_yaml_env_var_expansion(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENCY_DATA", "/var/lib/agency")
    cfg_path = _write(
        tmp_path,
        "cfg.yaml",
        """
store:
  db_path: "${AGENCY_DATA}/book.db"
sync:
  debug_dir: "${UNSET_VAR_FOR_TEST}debug"
""",
    )
    cfg = load_config(cfg_path)
    assert cfg.store.db_path == "/var/lib/agency/book.db"
    assert cfg.sync.debug_dir == "debug"


def test_parse_carrier_list_env_json_syntax() -> None:
    assert _parse_carrier_list_env('["carrier-uhc", "Carrier-Humana"]') == ["carrier-uhc", "carrier-humana"]
    assert _parse_carrier_list_env("  ") == []


def test_invalid_values_rejected(tmp_path: Path) -> None:
    bad_timeout = _write(tmp_path, "t.yaml", "sync:\n  extraction_timeout_s: 0\n")
    with pytest.raises(ValidationError):
        load_config(bad_timeout)

    bad_attempts = _write(tmp_path, "a.yaml", "sync:\n  mutation_attempts: 0\n")
    with pytest.raises(ValidationError):
        load_config(bad_attempts)

    bad_carrier = _write(tmp_path, "c.yaml", 'carriers:\n  enabled: ["United Healthcare"]\n')
    with pytest.raises(ValidationError):
        load_config(bad_carrier)
