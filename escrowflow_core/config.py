"""
TOML-based configuration for EscrowFlow.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from escrowflow_core.config import load_config
    cfg = load_config("escrowflow.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[import,no-redef]

DEFAULT_AUTHORITY_SEED = "escrowflow-dev-seed"


@dataclass
class EngineConfig:
    """State machine settings.

    ``authority_seed`` is the secret every vault authority is derived from.
    Changing it orphans the vaults of all existing escrows.
    """
    authority_seed: str = DEFAULT_AUTHORITY_SEED
    check_invariants: bool = True


@dataclass
class ClockConfig:
    """Slot source.

    ``manual`` keeps a counter in the database that only moves with
    ``advance-slot``; ``system`` divides wall-clock time since ``genesis``
    (unix seconds) into slots of ``slot_ms`` milliseconds.
    """
    mode: str = "manual"
    slot_ms: int = 400
    genesis: float = 0.0


@dataclass
class StorageConfig:
    """Persistence settings."""
    path: str = "data/escrowflow.db"


@dataclass
class APIConfig:
    """REST API settings."""
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)  # allowed CORS origins (empty = no CORS)
    max_body_bytes: int = 65_536


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class EscrowFlowConfig:
    """Top-level configuration container."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    clock: ClockConfig = field(default_factory=ClockConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    api: APIConfig = field(default_factory=APIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: str | None = None) -> EscrowFlowConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        ESCROWFLOW_AUTHORITY_SEED   -> engine.authority_seed
        ESCROWFLOW_CHECK_INVARIANTS -> engine.check_invariants
        ESCROWFLOW_CLOCK_MODE       -> clock.mode
        ESCROWFLOW_SLOT_MS          -> clock.slot_ms
        ESCROWFLOW_DB_PATH          -> storage.path
        ESCROWFLOW_API_HOST         -> api.host
        ESCROWFLOW_API_PORT         -> api.port
        ESCROWFLOW_API_KEY          -> api.api_key
        ESCROWFLOW_CORS_ORIGINS     -> api.cors_origins  (comma-separated)
        ESCROWFLOW_LOG_LEVEL        -> logging.level
        ESCROWFLOW_LOG_FMT          -> logging.format
        ESCROWFLOW_LOG_FILE         -> logging.file
    """
    cfg = EscrowFlowConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("engine", cfg.engine),
                ("clock", cfg.clock),
                ("storage", cfg.storage),
                ("api", cfg.api),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("ESCROWFLOW_AUTHORITY_SEED"):
        cfg.engine.authority_seed = v
    if v := os.environ.get("ESCROWFLOW_CHECK_INVARIANTS"):
        cfg.engine.check_invariants = _env_bool(v)
    if v := os.environ.get("ESCROWFLOW_CLOCK_MODE"):
        cfg.clock.mode = v.lower()
    if v := os.environ.get("ESCROWFLOW_SLOT_MS"):
        cfg.clock.slot_ms = int(v)
    if v := os.environ.get("ESCROWFLOW_DB_PATH"):
        cfg.storage.path = v
    if v := os.environ.get("ESCROWFLOW_API_HOST"):
        cfg.api.host = v
    if v := os.environ.get("ESCROWFLOW_API_PORT"):
        cfg.api.port = int(v)
    if v := os.environ.get("ESCROWFLOW_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("ESCROWFLOW_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("ESCROWFLOW_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("ESCROWFLOW_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("ESCROWFLOW_LOG_FILE"):
        cfg.logging.file = v

    if cfg.clock.mode not in ("manual", "system"):
        raise ValueError(f"clock.mode must be 'manual' or 'system', got {cfg.clock.mode!r}")

    return cfg
