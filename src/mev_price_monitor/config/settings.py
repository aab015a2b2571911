"""Comprehensive configuration management for the price monitor."""

from __future__ import annotations

import os
import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, cast

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..errors import ConfigurationError
from ..utils.constants import (
    DEFAULT_PAIRS,
    DEFAULT_VENUES,
    NETWORK_PRESETS,
    NETWORK_TOKEN_ADDRESSES,
    TOKEN_ADDRESSES,
    TOKEN_DECIMALS,
)

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
PROFILE_ENV_VAR = "MONITOR_PROFILE"
DEFAULT_PROFILE = "default"


class TransportKind(str, Enum):
    """How an endpoint is reached."""

    HTTP = "http"
    WEBSOCKET = "ws"


class VenueKind(str, Enum):
    """Pricing model of a venue; selects the quote source."""

    CONSTANT_PRODUCT = "constant_product"
    CONCENTRATED_LIQUIDITY = "concentrated_liquidity"
    OTHER = "other"


class SizingMode(str, Enum):
    """Policies for the notional size used in gross profit."""

    BUY_LIQUIDITY = "buy_liquidity"
    MIN_LIQUIDITY = "min_liquidity"
    FIXED = "fixed"


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
    base_section = cast(Dict[str, Any], data.get(DEFAULT_PROFILE, {}))
    requested = (os.getenv(PROFILE_ENV_VAR) or DEFAULT_PROFILE).lower()
    if requested != DEFAULT_PROFILE and requested in data:
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested]))
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
    merged["config_file"] = str(path)
    return merged, path


class EndpointConfig(BaseModel):
    """One candidate RPC endpoint for a network."""

    model_config = ConfigDict(frozen=True)

    url: str
    transport: Optional[TransportKind] = None
    max_retries: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="before")
    @classmethod
    def _accept_plain_url(cls, data: Any) -> Any:
        if isinstance(data, str):
            data = {"url": data}
        if isinstance(data, dict) and data.get("transport") is None and "url" in data:
            scheme = str(data["url"]).split(":", 1)[0].lower()
            data = {
                **data,
                "transport": TransportKind.WEBSOCKET if scheme in {"ws", "wss"} else TransportKind.HTTP,
            }
        return data


class NetworkConfig(BaseModel):
    """Static description of a monitored network and its endpoints."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    chain_id: Optional[int] = None
    block_time_seconds: float = Field(default=12.0, gt=0.0)
    gas_units: int = Field(default=300_000, ge=1)
    max_fee_per_gas_gwei: float = Field(default=50.0, ge=0.0)
    max_priority_fee_gwei: float = Field(default=2.0, ge=0.0)
    native_symbol: str = "ETH"
    endpoints: List[EndpointConfig]

    @model_validator(mode="before")
    @classmethod
    def _apply_preset(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        preset = NETWORK_PRESETS.get(str(data.get("id", "")).lower())
        merged: Dict[str, Any] = dict(preset or {})
        merged.update({key: value for key, value in data.items() if value is not None})
        merged.setdefault("name", str(merged.get("id", "")).title())
        return merged

    @field_validator("endpoints")
    @classmethod
    def _require_endpoints(cls, value: List[EndpointConfig]) -> List[EndpointConfig]:
        if not value:
            raise ValueError("at least one endpoint must be configured")
        seen: set[str] = set()
        unique: List[EndpointConfig] = []
        for endpoint in value:
            if endpoint.url in seen:
                continue
            seen.add(endpoint.url)
            unique.append(endpoint)
        return unique


class VenueConfig(BaseModel):
    """One exchange deployment on one network."""

    model_config = ConfigDict(frozen=True)

    name: str
    network: str
    kind: VenueKind
    factory_address: Optional[str] = None
    router_address: Optional[str] = None
    fee_tier: Optional[int] = Field(default=None, ge=0, le=1_000_000)
    pools: Dict[str, str] = Field(default_factory=dict)
    active: bool = True

    @property
    def key(self) -> str:
        return f"{self.network}:{self.name}"

    def pool_for(self, pair_id: str) -> Optional[str]:
        return self.pools.get(pair_id)


class TokenPairConfig(BaseModel):
    """A base/quote pair to monitor."""

    model_config = ConfigDict(frozen=True)

    base: str
    quote: str
    base_address: str
    quote_address: str
    base_decimals: int = Field(default=18, ge=0, le=36)
    quote_decimals: int = Field(default=18, ge=0, le=36)
    network_addresses: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    active: bool = True

    @property
    def id(self) -> str:
        return f"{self.base}/{self.quote}"

    def addresses_on(self, network: str) -> Tuple[str, str]:
        override = self.network_addresses.get(network, {})
        return (
            override.get("base", self.base_address),
            override.get("quote", self.quote_address),
        )


def _default_pairs() -> List[TokenPairConfig]:
    pairs: List[TokenPairConfig] = []
    for base, quote in DEFAULT_PAIRS:
        network_addresses = {
            network: {"base": tokens[base], "quote": tokens[quote]}
            for network, tokens in NETWORK_TOKEN_ADDRESSES.items()
            if base in tokens and quote in tokens
        }
        pairs.append(
            TokenPairConfig(
                base=base,
                quote=quote,
                base_address=TOKEN_ADDRESSES[base],
                quote_address=TOKEN_ADDRESSES[quote],
                base_decimals=TOKEN_DECIMALS[base],
                quote_decimals=TOKEN_DECIMALS[quote],
                network_addresses=network_addresses,
            )
        )
    return pairs


def _default_venues() -> List[VenueConfig]:
    return [VenueConfig(**entry) for entry in DEFAULT_VENUES]


class TradingConfig(BaseModel):
    """Profitability thresholds and trade sizing."""

    min_profit_threshold: float = Field(default=2.0, ge=0.0)
    max_gas_cost: float = Field(default=100.0, ge=0.0)
    min_liquidity_threshold: float = Field(default=10_000.0, ge=0.0)
    sizing_mode: SizingMode = Field(default=SizingMode.BUY_LIQUIDITY)
    trade_size_fraction: float = Field(default=1.0, gt=0.0, le=1.0)
    fixed_trade_size: float = Field(default=1.0, gt=0.0)


class SystemConfig(BaseModel):
    """Loop cadence, timeouts, and connection policy."""

    price_update_interval: float = Field(default=1.0, gt=0.0)
    health_check_interval: float = Field(default=30.0, gt=0.0)
    max_retries: int = Field(default=3, ge=1)
    connection_timeout: float = Field(default=10.0, gt=0.0)
    fetch_timeout: float = Field(default=5.0, gt=0.0)
    max_quote_age: float = Field(default=60.0, gt=0.0)
    min_refetch_interval: float = Field(default=1.0, ge=0.0)
    max_concurrent_requests: int = Field(default=10, ge=1, le=256)
    probe_attempts: int = Field(default=3, ge=1, le=10)
    probe_backoff_seconds: float = Field(default=0.25, ge=0.0)
    endpoint_cooldown_seconds: float = Field(default=300.0, ge=0.0)
    stall_tolerance_blocks: int = Field(default=20, ge=1)
    min_stall_tolerance_seconds: float = Field(default=60.0, ge=0.0)
    fee_rate_cache_seconds: float = Field(default=5.0, ge=0.0)
    shutdown_grace_seconds: float = Field(default=10.0, ge=0.0)
    retention_days: int = Field(default=7, ge=1)
    opportunity_retention_days: int = Field(default=30, ge=1)


class RatesConfig(BaseModel):
    """Native currency to USD conversion."""

    enabled: bool = True
    api_url: AnyHttpUrl = Field(default="https://api.coingecko.com/api/v3/simple/price")
    symbol_ids: Dict[str, str] = Field(
        default_factory=lambda: {"ETH": "ethereum", "MATIC": "matic-network"}
    )
    static_rates: Dict[str, float] = Field(default_factory=lambda: {"ETH": 2_000.0, "MATIC": 0.7})
    cache_ttl_seconds: int = Field(default=60, ge=0)
    failure_backoff_seconds: int = Field(default=60, ge=0)
    http_timeout: float = Field(default=5.0, ge=0.5, le=60.0)


class StorageConfig(BaseModel):
    """State persistence configuration."""

    database_path: Path = Field(default=Path("./data/mev_monitor.sqlite3"))


class MonitoringConfig(BaseModel):
    """Logging and alerting configuration."""

    log_level: str = Field(default="INFO")
    slack_webhook_url: Optional[AnyHttpUrl] = None
    webhook_urls: List[AnyHttpUrl] = Field(default_factory=list)
    alert_throttle_seconds: int = Field(default=60, ge=0)
    alert_on_network_down: bool = True
    persist_quotes: bool = True


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    config_file: Optional[Path] = None
    networks: Dict[str, NetworkConfig] = Field(default_factory=dict)
    venues: List[VenueConfig] = Field(default_factory=_default_venues)
    pairs: List[TokenPairConfig] = Field(default_factory=_default_pairs)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    system: SystemConfig = Field(default_factory=SystemConfig)
    rates: RatesConfig = Field(default_factory=RatesConfig)
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

        # Runtime environment variables win over static config file defaults.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )

    @field_validator("networks", mode="before")
    @classmethod
    def _inject_network_ids(cls, value: Any) -> Any:
        if isinstance(value, dict):
            injected: Dict[str, Any] = {}
            for key, item in value.items():
                if isinstance(item, dict):
                    item = {"id": key, **item}
                injected[str(key).lower()] = item
            value = injected
        else:
            value = {}
        # <NETWORK>_RPC_HTTP / <NETWORK>_RPC_WS take precedence as primary endpoints.
        for network_id in NETWORK_PRESETS:
            overrides = [
                url.strip()
                for url in (
                    os.getenv(f"{network_id.upper()}_RPC_HTTP"),
                    os.getenv(f"{network_id.upper()}_RPC_WS"),
                )
                if url and url.strip()
            ]
            if not overrides:
                continue
            entry = value.get(network_id)
            if isinstance(entry, NetworkConfig):
                entry = entry.model_dump()
            entry = dict(entry or {"id": network_id})
            existing = list(entry.get("endpoints") or [])
            entry["endpoints"] = [*overrides, *existing]
            value[network_id] = entry
        return value

    @field_validator("pairs")
    @classmethod
    def _unique_pairs(cls, value: List[TokenPairConfig]) -> List[TokenPairConfig]:
        seen: set[Tuple[str, str]] = set()
        for pair in value:
            if not pair.active:
                continue
            key = (pair.base.upper(), pair.quote.upper())
            if key in seen:
                raise ValueError(f"duplicate token pair {pair.id}")
            seen.add(key)
        return value

    def active_pairs(self) -> List[TokenPairConfig]:
        return [pair for pair in self.pairs if pair.active]

    def active_venues(self) -> List[VenueConfig]:
        """Active venues whose network is configured, in declaration order."""

        return [venue for venue in self.venues if venue.active and venue.network in self.networks]


def validate_for_startup(config: AppConfig) -> None:
    """Raise ``ConfigurationError`` when monitoring cannot start with ``config``."""

    if not config.networks:
        raise ConfigurationError(
            "No networks configured; supply endpoint lists under [networks.<id>]"
        )
    for network in config.networks.values():
        if not network.endpoints:
            raise ConfigurationError(f"Network {network.id} has no endpoints")
    seen_venues: set[str] = set()
    for venue in config.active_venues():
        if venue.key in seen_venues:
            raise ConfigurationError(f"Venue {venue.key} is defined more than once")
        seen_venues.add(venue.key)
    if not config.active_pairs():
        raise ConfigurationError("No active token pairs configured")


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "EndpointConfig",
    "MonitoringConfig",
    "NetworkConfig",
    "RatesConfig",
    "SizingMode",
    "StorageConfig",
    "SystemConfig",
    "TokenPairConfig",
    "TradingConfig",
    "TransportKind",
    "VenueConfig",
    "VenueKind",
    "get_app_config",
    "validate_for_startup",
]
