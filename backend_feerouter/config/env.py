"""
Environment variable loading for Backend FeeRouter.

- FEEROUTER_DB_PATH: SQLite snapshot store path (default: feerouter.db)
- FEEROUTER_MIN_ROUNDS / FEEROUTER_MAX_ROUNDS: hop count bounds
- FEEROUTER_MIN_DELAY_MINUTES / FEEROUTER_MAX_DELAY_MINUTES: initial delay bounds
- FEEROUTER_MAX_WALLET_BALANCE: rotation threshold for inbound wallets
- FEEROUTER_CYCLE_INTERVAL_HOURS: retirement sweep period
- FEEROUTER_ENABLE_MIXING: 1/0, starts or suppresses the cycle timer
- FEEROUTER_API_HOST / FEEROUTER_API_PORT / FEEROUTER_HEARTBEAT_INTERVAL_SEC: process settings
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Project root: config is backend_feerouter/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _CONFIG_DIR.parent
_ROOT = _BACKEND_DIR.parent
_ENV_PATH = _ROOT / ".env"

ENV_PREFIX = "FEEROUTER_"


def load_feerouter_env() -> None:
    """Load .env from project root. Safe to call multiple times; never overrides real env."""
    load_dotenv(_ENV_PATH, override=False)


def env_str(name: str, default: str | None = None) -> str | None:
    """Return FEEROUTER_<name> stripped, or default when unset/blank."""
    load_feerouter_env()
    raw = (os.getenv(ENV_PREFIX + name) or "").strip()
    return raw if raw else default


def env_overrides(names: dict[str, str]) -> dict[str, str]:
    """
    Collect raw string values for the given env suffixes.

    names: mapping of env suffix (e.g. "MIN_ROUNDS") to config field name.
    Returns {field_name: raw_value} for every variable that is set.
    """
    out: dict[str, str] = {}
    for suffix, field_name in names.items():
        raw = env_str(suffix)
        if raw is not None:
            out[field_name] = raw
    return out
