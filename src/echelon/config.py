"""Runtime configuration: ``~/.echelon/config.toml`` plus ``ECHELON_*`` overrides."""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    SettingsError,
    TomlConfigSettingsSource,
)

from echelon.errors import ConfigError

DEFAULT_HOME = Path.home() / ".echelon"
ENV_PREFIX = "ECHELON_"

ONE_USDC = 1_000_000

# Set by load_settings; plain Settings() reads defaults and the environment only.
_config_file: ContextVar[Path | None] = ContextVar("echelon_config_file", default=None)


@dataclass(frozen=True)
class Specialist:
    """A roster entry: which agent receives which share of a fan-out."""

    agent_id: int
    name: str
    address: str
    percentage: int
    win_rate: float
    min_profit: float
    max_profit: float

    def __post_init__(self) -> None:
        if not 0 < self.percentage <= 100:
            raise ValueError(f"percentage must be in (0, 100], got {self.percentage}")
        if not 0.0 <= self.win_rate <= 1.0:
            raise ValueError(f"win_rate must be in [0.0, 1.0], got {self.win_rate}")
        if self.min_profit > 0 or self.max_profit < 0:
            raise ValueError(
                f"{self.name}: expected min_profit <= 0 <= max_profit, "
                f"got {self.min_profit}, {self.max_profit}"
            )


DEFAULT_ROSTER: tuple[Specialist, ...] = (
    Specialist(2, "AlphaYield", "0x00000000000000000000000000000000000a1f01", 35, 0.75, -0.30, 0.40),
    Specialist(3, "ArbitrageKing", "0x00000000000000000000000000000000000a1f02", 25, 0.90, -0.05, 0.08),
    Specialist(4, "DCAWizard", "0x00000000000000000000000000000000000a1f03", 25, 0.85, -0.10, 0.15),
    Specialist(5, "MomentumMaster", "0x00000000000000000000000000000000000a1f04", 15, 0.70, -0.25, 0.35),
)


class Settings(BaseSettings):
    """All tunables for the ledger, dispatcher, engine and oracle services."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, frozen=True, extra="forbid")

    home: Path = DEFAULT_HOME
    log_level: str = "INFO"
    log_json: bool = False

    # Identities
    fund_manager_id: int = 1
    fund_manager_address: str = "0x00000000000000000000000000000000000f0001"
    treasury_address: str = "0x00000000000000000000000000000000000f7ea5"
    token_address: str = "0x0000000000000000000000000000000000005dc0"
    trade_token_address: str = "0x4200000000000000000000000000000000000006"
    roster: tuple[Specialist, ...] = DEFAULT_ROSTER

    # Discovery and loops (seconds)
    poll_interval: float = 10.0
    delegation_poll_interval: float = 30.0
    engine_interval: float = 60.0

    # Dispatcher
    redelegation_duration: int = 7 * 24 * 60 * 60
    inter_call_delay: float = 3.0
    rate_limit_cooldown: float = 10.0
    execution_delay: float = 5.0

    # Retry policy
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    # Execution engine
    min_trade_amount: int = Field(default=ONE_USDC, gt=0)
    max_trade_amount: int = 100 * ONE_USDC
    min_profit_percent: float = 0.5
    slippage: float = 0.005

    # Oracle sync
    oracle_interval: float = 300.0
    oracle_batch_size: int = Field(default=50, gt=0)
    oracle_page_size: int = 100
    oracle_max_agents: int = 10_000

    # Reputation
    min_executions_for_score: int = 5

    # Unknown config file keys, kept for extensions
    extra: Mapping[str, Any] = Field(default_factory=dict)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        path = _config_file.get()
        if path is None:
            return (init_settings, env_settings)
        return (init_settings, env_settings, TomlConfigSettingsSource(settings_cls, toml_file=path))

    @model_validator(mode="before")
    @classmethod
    def collect_extra(cls, data: Any) -> Any:
        """Move keys that are not settings into ``extra``."""
        if not isinstance(data, dict):
            return data
        unknown = {k: data[k] for k in list(data) if k not in cls.model_fields}
        if not unknown:
            return data
        known = {k: v for k, v in data.items() if k not in unknown}
        known["extra"] = {**dict(data.get("extra") or {}), **unknown}
        return known

    @field_validator("home")
    @classmethod
    def expand_home(cls, v: Path) -> Path:
        return v.expanduser()

    @field_validator("slippage")
    @classmethod
    def check_slippage(cls, v: float) -> float:
        if not 0.0 <= v < 1.0:
            raise ValueError(f"slippage must be in [0.0, 1.0), got {v}")
        return v

    @model_validator(mode="after")
    def check_roster_and_bounds(self) -> "Settings":
        if sum(s.percentage for s in self.roster) != 100:
            raise ValueError("roster percentages must sum to 100")
        if self.max_trade_amount < self.min_trade_amount:
            raise ValueError(
                f"invalid trade bounds [{self.min_trade_amount}, {self.max_trade_amount}]"
            )
        return self

    @property
    def db_path(self) -> Path:
        return self.home / "data" / "echelon.db"

    @property
    def oracle_state_path(self) -> Path:
        return self.home / "data" / "oracle-sync-state.json"

    @property
    def config_path(self) -> Path:
        return self.home / "config.toml"

    def specialist(self, agent_id: int) -> Specialist | None:
        for spec in self.roster:
            if spec.agent_id == agent_id:
                return spec
        return None


def load_settings(config_path: Path | None = None) -> Settings:
    """
    Build settings from defaults, the TOML file, then the environment.

    ``ECHELON_HOME`` selects the data directory (and therefore the default
    config file). Every other scalar field can be overridden with
    ``ECHELON_<FIELD_NAME>``.

    Raises:
        ConfigError: the file is not valid TOML or a value fails validation.
    """
    try:
        path = config_path or Settings().config_path
        token = _config_file.set(path)
        try:
            return Settings()
        finally:
            _config_file.reset(token)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: {e}") from e
    except (ValidationError, SettingsError) as e:
        raise ConfigError(str(e)) from e
