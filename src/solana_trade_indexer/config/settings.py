"""Configuration management for the trade indexer."""

from __future__ import annotations

import os
import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, cast

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from solders.pubkey import Pubkey

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
MODE_ENV_VAR = "INDEXER_MODE"


class ConfigurationError(ValueError):
    """Raised when configuration values cannot be used by the indexer."""


class AppMode(str, Enum):
    """Supported runtime modes."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return {}
    base_section = cast(Dict[str, Any], data.get("default", {}))
    requested_mode = os.getenv(MODE_ENV_VAR)
    if not requested_mode:
        mode_section = base_section.get("mode")
        if isinstance(mode_section, dict):
            requested_mode = cast(str, mode_section.get("active", AppMode.DEVELOPMENT.value))
        elif isinstance(mode_section, str):
            requested_mode = mode_section
    requested_mode = (requested_mode or AppMode.DEVELOPMENT.value).lower()

    if requested_mode in data and requested_mode != "default":
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested_mode]))
    if base_section:
        return base_section
    return data


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    if not isinstance(payload, dict):
        return {}, path
    merged = dict(_select_profile(payload))
    mode_section = merged.get("mode")
    if isinstance(mode_section, dict):
        mode_section = dict(mode_section)
        mode_section.setdefault("config_file", str(path))
        merged["mode"] = mode_section
    else:
        merged["mode"] = {"config_file": str(path)}
    return merged, path


def _validate_pubkey(value: str, field_name: str) -> str:
    try:
        Pubkey.from_string(value)
    except ValueError as exc:
        raise ConfigurationError(f"{field_name} is not a valid public key: {value!r}") from exc
    return value


class ModeConfig(BaseModel):
    """Runtime mode."""

    active: AppMode = Field(default=AppMode.DEVELOPMENT)
    config_file: Optional[Path] = None


class RPCConfig(BaseModel):
    """RPC configuration for the chain connectivity layer."""

    primary_url: AnyHttpUrl = Field(default="https://rpc.analos.io")
    fallback_urls: List[AnyHttpUrl] = Field(default_factory=list)
    request_timeout: float = Field(default=12.0, ge=1.0, le=60.0)
    commitment: str = Field(default="confirmed")
    request_concurrency: int = Field(default=4, ge=1, le=64)
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_wait_seconds: float = Field(default=0.5, ge=0.0, le=30.0)

    @field_validator("fallback_urls", mode="before")
    @classmethod
    def _unique_urls(cls, value: Iterable[AnyHttpUrl]) -> List[AnyHttpUrl]:
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",") if item.strip()]
        seen: set[str] = set()
        unique: List[AnyHttpUrl] = []
        for url in value:
            if str(url) not in seen:
                unique.append(url)
                seen.add(str(url))
        return unique


class ProgramsConfig(BaseModel):
    """Program identities whose logs produce trades."""

    bonding_curve: Optional[str] = None
    damm: Optional[str] = None

    @field_validator("bonding_curve", "damm")
    @classmethod
    def _check_program_id(cls, value: Optional[str], info) -> Optional[str]:
        if value is None:
            return None
        return _validate_pubkey(value, info.field_name)

    def venue_program_ids(self) -> Tuple[str, ...]:
        return tuple(pid for pid in (self.bonding_curve, self.damm) if pid)


class PricingConfig(BaseModel):
    """Reference asset and the heuristic bounds applied to derived prices."""

    reference_mint: str = Field(default="So11111111111111111111111111111111111111112")
    reference_decimals: int = Field(default=9, ge=0, le=18)
    default_token_decimals: int = Field(default=9, ge=0, le=18)
    sqrt_price_band: float = Field(default=5.0)
    derived_price_ceiling: float = Field(default=1_000.0, gt=0.0)
    max_pools_scanned: int = Field(default=6, ge=1, le=50)
    max_pools_retained: int = Field(default=2, ge=1, le=10)

    @field_validator("reference_mint")
    @classmethod
    def _check_reference_mint(cls, value: str) -> str:
        return _validate_pubkey(value, "reference_mint")

    @field_validator("sqrt_price_band")
    @classmethod
    def _check_band(cls, value: float) -> float:
        if value <= 1.0:
            raise ConfigurationError("sqrt_price_band must be greater than 1")
        return value


class StorageConfig(BaseModel):
    """Local persistence settings."""

    database_path: Path = Field(default=Path("./indexer.sqlite3"))
    volume_retention_hours: int = Field(default=48, ge=24)


class MonitoringConfig(BaseModel):
    """Logging configuration."""

    log_level: str = Field(default="INFO")
    debug_verbose: bool = False


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    mode: ModeConfig = Field(default_factory=ModeConfig)
    rpc: RPCConfig = Field(default_factory=RPCConfig)
    programs: ProgramsConfig = Field(default_factory=ProgramsConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, _ = _load_toml_config()
            return payload

        # Environment wins over the static file.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _apply_legacy_env(self) -> "AppConfig":
        rpc_url = os.getenv("RPC_URL")
        if rpc_url:
            previous_primary = str(self.rpc.primary_url)
            self.rpc.primary_url = rpc_url
            if previous_primary != rpc_url and previous_primary not in {
                str(url) for url in self.rpc.fallback_urls
            }:
                self.rpc.fallback_urls = [previous_primary, *self.rpc.fallback_urls]
        reference_mint = os.getenv("LOS_MINT")
        if reference_mint:
            self.pricing.reference_mint = _validate_pubkey(reference_mint, "LOS_MINT")
        for env_key, attr in (
            ("PROGRAM_BONDING_CURVE", "bonding_curve"),
            ("PROGRAM_DAMM", "damm"),
        ):
            value = os.getenv(env_key)
            if value:
                setattr(self.programs, attr, _validate_pubkey(value, env_key))
        if os.getenv("DEBUG_VERBOSE", "").strip().lower() in {"1", "true", "yes", "on"}:
            self.monitoring.debug_verbose = True
        return self


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "AppMode",
    "ConfigurationError",
    "ModeConfig",
    "MonitoringConfig",
    "PricingConfig",
    "ProgramsConfig",
    "RPCConfig",
    "StorageConfig",
    "get_app_config",
]
