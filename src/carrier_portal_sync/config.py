from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Union

import yaml
from pydantic import BaseModel, Field, field_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
_CARRIER_ID_RE = re.compile(r"^[a-z0-9-]+$")


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _parse_carrier_list_env(value: str) -> list[str]:
    s = (value or "").strip()
    if not s:
        return []

    # Support JSON list syntax for power users: ["carrier-uhc","carrier-humana"]
    if s.startswith("["):
        try:
            data = json.loads(s)
        except ValueError:
            data = None
        items = [str(x) for x in data] if isinstance(data, list) else [s]
    else:
        # Comma and/or whitespace separated
        items = re.split(r"[,\s]+", s)

    out: list[str] = []
    for item in items:
        c = (item or "").strip().lower()
        if c and c not in out:
            out.append(c)
    return out


def _default_config_from_env() -> dict:
    """
    Provide a sensible env-only config so most users only need `.env`.

    YAML remains an optional advanced override.
    """
    return {
        "store": {
            "db_path": os.getenv("STORE_DB_PATH", "data/book.db"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/sync.log"),
        },
        "browser": {
            "headless": _env_bool("BROWSER_HEADLESS", default=False),
            "slow_mo_ms": os.getenv("BROWSER_SLOW_MO_MS", "0") or "0",
            "channel": os.getenv("BROWSER_CHANNEL", ""),
            "storage_state_dir": os.getenv("BROWSER_STORAGE_STATE_DIR", "data/browser"),
        },
        "sync": {
            "extraction_timeout_s": os.getenv("SYNC_EXTRACTION_TIMEOUT_S", "600") or "600",
            "mutation_attempts": os.getenv("SYNC_MUTATION_ATTEMPTS", "3") or "3",
            "dump_raw_payloads": _env_bool("SYNC_DUMP_RAW_PAYLOADS", default=False),
            "debug_dir": os.getenv("SYNC_DEBUG_DIR", "data/debug"),
        },
        "carriers": {
            "enabled": _parse_carrier_list_env(os.getenv("CARRIERS_ENABLED", "")),
        },
    }


class StoreConfig(BaseModel):
    db_path: str = "data/book.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/sync.log"


class BrowserConfig(BaseModel):
    # Headful by default: the user logs in to each portal by hand.
    headless: bool = False
    slow_mo_ms: int = Field(default=0, ge=0)
    # Optional system browser channel ("chrome", "msedge") instead of Playwright's bundled Chromium.
    channel: str = ""
    # Per-carrier persisted cookies; empty disables persistence.
    storage_state_dir: str = "data/browser"


class SyncConfig(BaseModel):
    extraction_timeout_s: float = Field(default=600.0, gt=0)
    mutation_attempts: int = Field(default=3, ge=1, le=10)

    # Opt-in copy of each raw portal payload for offline diagnosis. These contain member PII.
    dump_raw_payloads: bool = False
    debug_dir: str = "data/debug"


class CarriersConfig(BaseModel):
    # Allow-list of carrier ids; empty means every built-in carrier.
    enabled: list[str] = Field(default_factory=list)

    @field_validator("enabled")
    @classmethod
    def _validate_ids(cls, value: list[str]) -> list[str]:
        out: list[str] = []
        for c in value:
            cid = (c or "").strip().lower()
            if not cid:
                continue
            if not _CARRIER_ID_RE.match(cid):
                raise ValueError(f"carriers.enabled entries must be carrier ids like 'carrier-uhc' (got {c!r})")
            if cid not in out:
                out.append(cid)
        return out


class AppConfig(BaseModel):
    store: StoreConfig = StoreConfig()
    logging: LoggingConfig = LoggingConfig()
    browser: BrowserConfig = BrowserConfig()
    sync: SyncConfig = SyncConfig()
    carriers: CarriersConfig = CarriersConfig()


def load_config(path: Union[str, Path, None] = None) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
