"""
Application settings and mixing configuration.

Responsibilities:
- MixingConfig: operator-tunable mixing parameters as a frozen pydantic model,
  validated on construction, merged from partial updates at runtime.
- Settings: process-level settings (snapshot DB path, API host/port, heartbeat)
  loaded from environment variables and the project .env file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from backend_feerouter.config.env import env_overrides, env_str
from backend_feerouter.core.exceptions import ConfigError

DEFAULT_MIN_MIXING_ROUNDS = 3
DEFAULT_MAX_MIXING_ROUNDS = 7
DEFAULT_MIN_DELAY_MINUTES = 30
DEFAULT_MAX_DELAY_MINUTES = 180
DEFAULT_MAX_WALLET_BALANCE = Decimal("0.1")
DEFAULT_CYCLE_INTERVAL_HOURS = 6.0
# Inter-round hop delay and final dispersed -> completed delay (seconds)
DEFAULT_MIN_ROUND_DELAY_SEC = 5
DEFAULT_MAX_ROUND_DELAY_SEC = 30
DEFAULT_MIN_FINAL_DELAY_SEC = 30
DEFAULT_MAX_FINAL_DELAY_SEC = 120
# Wallets older than this many cycles are retired by the sweep
DEFAULT_RETIREMENT_AGE_CYCLES = 2
DEFAULT_WALLET_RETENTION_DAYS = 7.0

DEFAULT_DB_PATH = "feerouter.db"
DEFAULT_API_HOST = "0.0.0.0"
DEFAULT_API_PORT = 8000
DEFAULT_HEARTBEAT_INTERVAL_SEC = 30.0

# FEEROUTER_<suffix> -> MixingConfig field
_MIXING_ENV = {
    "MIN_ROUNDS": "min_mixing_rounds",
    "MAX_ROUNDS": "max_mixing_rounds",
    "MIN_DELAY_MINUTES": "min_delay_minutes",
    "MAX_DELAY_MINUTES": "max_delay_minutes",
    "MAX_WALLET_BALANCE": "max_wallet_balance",
    "CYCLE_INTERVAL_HOURS": "cycle_interval_hours",
    "ENABLE_MIXING": "enable_automated_mixing",
}

_RANGE_PAIRS = (
    ("min_mixing_rounds", "max_mixing_rounds"),
    ("min_delay_minutes", "max_delay_minutes"),
    ("min_round_delay_sec", "max_round_delay_sec"),
    ("min_final_delay_sec", "max_final_delay_sec"),
)


class MixingConfig(BaseModel):
    """
    Operator-tunable mixing parameters.

    Frozen: updates go through merged() which returns a new validated instance,
    so a reader holding a reference never observes a half-applied update.
    Transactions keep the rounds/delay drawn at creation time.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_mixing_rounds: int = Field(DEFAULT_MIN_MIXING_ROUNDS, ge=1)
    max_mixing_rounds: int = Field(DEFAULT_MAX_MIXING_ROUNDS, ge=1)
    min_delay_minutes: int = Field(DEFAULT_MIN_DELAY_MINUTES, ge=0)
    max_delay_minutes: int = Field(DEFAULT_MAX_DELAY_MINUTES, ge=0)
    max_wallet_balance: Decimal = Field(
        DEFAULT_MAX_WALLET_BALANCE,
        gt=0,
        description="Inbound wallets at or above this balance are rotated out of selection.",
    )
    cycle_interval_hours: float = Field(DEFAULT_CYCLE_INTERVAL_HOURS, gt=0, allow_inf_nan=False)
    enable_automated_mixing: bool = Field(True, description="Toggles the periodic retirement cycle timer.")
    min_round_delay_sec: int = Field(DEFAULT_MIN_ROUND_DELAY_SEC, ge=0)
    max_round_delay_sec: int = Field(DEFAULT_MAX_ROUND_DELAY_SEC, ge=0)
    min_final_delay_sec: int = Field(DEFAULT_MIN_FINAL_DELAY_SEC, ge=0)
    max_final_delay_sec: int = Field(DEFAULT_MAX_FINAL_DELAY_SEC, ge=0)
    retirement_age_cycles: int = Field(DEFAULT_RETIREMENT_AGE_CYCLES, ge=0)
    wallet_retention_days: float = Field(DEFAULT_WALLET_RETENTION_DAYS, ge=0, allow_inf_nan=False)

    @field_validator("*", mode="before")
    @classmethod
    def reject_boolean_numbers(cls, value: Any, info: ValidationInfo) -> Any:
        if isinstance(value, bool) and info.field_name != "enable_automated_mixing":
            raise ValueError("must be numeric, not a boolean")
        return value

    @model_validator(mode="after")
    def check_ranges(self) -> MixingConfig:
        for low, high in _RANGE_PAIRS:
            lo, hi = getattr(self, low), getattr(self, high)
            if lo > hi:
                raise ValueError(f"{low} ({lo}) must be <= {high} ({hi})")
        return self

    @property
    def cycle_interval_sec(self) -> float:
        return self.cycle_interval_hours * 3600.0

    @property
    def wallet_retention_sec(self) -> float:
        return self.wallet_retention_days * 86400.0

    def merged(self, partial: Mapping[str, Any]) -> MixingConfig:
        """Return a new config with partial applied. Invalid or unknown keys raise ConfigError."""
        unknown = sorted(set(partial) - set(type(self).model_fields))
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        try:
            return type(self).model_validate({**self.model_dump(), **dict(partial)})
        except ValidationError as exc:
            raise ConfigError(_describe(exc)) from exc

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_env(cls) -> MixingConfig:
        """Defaults overridden by FEEROUTER_* environment variables."""
        return cls().merged(env_overrides(_MIXING_ENV))


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err["loc"]) or "config"
        parts.append(f"{where}: {err['msg']}")
    return "; ".join(parts)


@dataclass
class Settings:
    """Process-level settings for the API server and the runtime worker."""

    db_path: Path = field(default_factory=lambda: Path(DEFAULT_DB_PATH))
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT
    heartbeat_interval_sec: float = DEFAULT_HEARTBEAT_INTERVAL_SEC
    mixing: MixingConfig = field(default_factory=MixingConfig)


def get_settings() -> Settings:
    """
    Return the current application settings from the environment.

    Returns:
        Settings with db_path, api_host, api_port, heartbeat_interval_sec and
        the MixingConfig built from FEEROUTER_* variables.
    """
    try:
        api_port = int(env_str("API_PORT", str(DEFAULT_API_PORT)))
        heartbeat = float(env_str("HEARTBEAT_INTERVAL_SEC", str(DEFAULT_HEARTBEAT_INTERVAL_SEC)))
    except ValueError as exc:
        raise ConfigError(f"Invalid numeric setting: {exc}") from exc
    return Settings(
        db_path=Path(env_str("DB_PATH", DEFAULT_DB_PATH)),
        api_host=env_str("API_HOST", DEFAULT_API_HOST),
        api_port=api_port,
        heartbeat_interval_sec=max(1.0, heartbeat),
        mixing=MixingConfig.from_env(),
    )


__all__ = ["MixingConfig", "Settings", "get_settings"]
