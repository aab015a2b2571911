from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from mev_price_monitor.config import settings
from mev_price_monitor.config.settings import (
    AppConfig,
    NetworkConfig,
    SizingMode,
    TransportKind,
    VenueKind,
    validate_for_startup,
)
from mev_price_monitor.errors import ConfigurationError


def test_app_config_loads_profiles_and_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_path = tmp_path / "app.toml"
    config_path.write_text(
        """
[default.networks.ethereum]
endpoints = ["https://eth-a.example", "wss://eth-b.example"]

[default.trading]
min_profit_threshold = 2.5
sizing_mode = "min_liquidity"

[default.system]
price_update_interval = 1.0
max_quote_age = 45.0

[staging.system]
price_update_interval = 3.0
"""
    )
    monkeypatch.setenv("APP_CONFIG_FILE", str(config_path))
    monkeypatch.setenv("MONITOR_PROFILE", "staging")
    monkeypatch.setenv("TRADING__MAX_GAS_COST", "75")

    settings.get_app_config.cache_clear()
    cfg = settings.get_app_config()

    assert cfg.config_file == config_path
    assert cfg.system.price_update_interval == 3.0
    assert cfg.system.max_quote_age == 45.0
    assert cfg.trading.min_profit_threshold == 2.5
    assert cfg.trading.sizing_mode == SizingMode.MIN_LIQUIDITY
    assert cfg.trading.max_gas_cost == 75.0

    ethereum = cfg.networks["ethereum"]
    assert ethereum.name == "Ethereum"
    assert ethereum.chain_id == 1
    assert [endpoint.transport for endpoint in ethereum.endpoints] == [
        TransportKind.HTTP,
        TransportKind.WEBSOCKET,
    ]


def test_defaults_follow_documented_thresholds() -> None:
    cfg = AppConfig()

    assert cfg.networks == {}
    assert cfg.trading.min_profit_threshold == 2.0
    assert cfg.trading.max_gas_cost == 100.0
    assert cfg.trading.min_liquidity_threshold == 10_000.0
    assert cfg.system.price_update_interval == 1.0
    assert cfg.system.health_check_interval == 30.0
    assert cfg.system.max_retries == 3
    assert cfg.system.connection_timeout == 10.0
    assert cfg.system.max_quote_age == 60.0
    assert cfg.system.max_concurrent_requests == 10
    assert {pair.id for pair in cfg.active_pairs()} == {"ETH/USDC", "ETH/USDT", "WBTC/USDC", "WBTC/ETH"}


def test_rpc_env_override_becomes_primary_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ARBITRUM_RPC_HTTP", "https://private-arb.example")

    cfg = AppConfig(networks={"arbitrum": {"endpoints": ["https://arb1.example"]}})

    urls = [endpoint.url for endpoint in cfg.networks["arbitrum"].endpoints]
    assert urls == ["https://private-arb.example", "https://arb1.example"]
    assert cfg.networks["arbitrum"].block_time_seconds == 1.0


def test_network_requires_endpoints_and_dedupes() -> None:
    with pytest.raises(ValidationError):
        NetworkConfig(id="ethereum", endpoints=[])

    network = NetworkConfig(
        id="ethereum",
        endpoints=["https://a.example", "https://a.example", {"url": "https://b.example", "max_retries": 5}],
    )
    assert [endpoint.url for endpoint in network.endpoints] == ["https://a.example", "https://b.example"]
    assert network.endpoints[1].max_retries == 5


def test_duplicate_active_pairs_rejected() -> None:
    pair = {"base": "WETH", "quote": "USDC", "base_address": "0x1", "quote_address": "0x2"}
    with pytest.raises(ValidationError):
        AppConfig(pairs=[pair, pair])

    inactive_copy = {**pair, "active": False}
    cfg = AppConfig(pairs=[pair, inactive_copy])
    assert len(cfg.active_pairs()) == 1


def test_validate_for_startup_requires_networks() -> None:
    with pytest.raises(ConfigurationError):
        validate_for_startup(AppConfig())


def test_validate_for_startup_rejects_duplicate_venues() -> None:
    venue = {"name": "uniswap_v2", "network": "ethereum", "kind": "constant_product"}
    cfg = AppConfig(
        networks={"ethereum": {"endpoints": ["https://a.example"]}},
        venues=[venue, venue],
    )
    with pytest.raises(ConfigurationError):
        validate_for_startup(cfg)


def test_active_venues_skip_unconfigured_networks() -> None:
    cfg = AppConfig(networks={"polygon": {"endpoints": ["https://polygon.example"]}})

    venues = cfg.active_venues()
    assert venues
    assert {venue.network for venue in venues} == {"polygon"}
    assert all(isinstance(venue.kind, VenueKind) for venue in venues)
    validate_for_startup(cfg)
