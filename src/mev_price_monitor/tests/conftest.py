from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

from mev_price_monitor.config import settings
from mev_price_monitor.config.settings import (
    NetworkConfig,
    SystemConfig,
    TokenPairConfig,
    VenueConfig,
    VenueKind,
)
from mev_price_monitor.datalake.schemas import BlockHeader, Quote
from mev_price_monitor.utils.constants import utc_now

WETH = "0x" + "11" * 20
USDC = "0x" + "22" * 20


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeChainClient:
    """Scriptable stand-in for a JSON-RPC endpoint."""

    def __init__(self, url: str, clock: Callable[[], datetime]) -> None:
        self.url = url
        self.clock = clock
        self.block = 1_000
        self.lag_seconds = 0.0
        self.fail = False
        self.gas_price = 20 * 10**9
        self.probes = 0
        self.closed = False
        self.responses: Dict[str, Any] = {}
        self.calls: List[Tuple[str, str, Tuple[Any, ...]]] = []

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError(f"{self.url} unreachable")

    async def get_latest_block(self) -> BlockHeader:
        self.probes += 1
        self._check()
        return BlockHeader(self.block, self.clock() - timedelta(seconds=self.lag_seconds))

    async def get_block_number(self) -> int:
        self._check()
        return self.block

    async def get_gas_price(self) -> int:
        self._check()
        return self.gas_price

    async def call(self, address: str, abi: Any, function: str, *args: Any) -> Any:
        self._check()
        self.calls.append((address, function, args))
        response = self.responses[function]
        if callable(response):
            return response(address, *args)
        return response

    async def close(self) -> None:
        self.closed = True


class FakeChain:
    """Connector that hands out one ``FakeChainClient`` per endpoint URL."""

    def __init__(self, clock: Callable[[], datetime]) -> None:
        self.clock = clock
        self.clients: Dict[str, FakeChainClient] = {}
        self.connects: Dict[str, int] = defaultdict(int)

    def client(self, url: str) -> FakeChainClient:
        if url not in self.clients:
            self.clients[url] = FakeChainClient(url, self.clock)
        return self.clients[url]

    def __call__(self, network: NetworkConfig, endpoint: Any) -> FakeChainClient:
        self.connects[endpoint.url] += 1
        return self.client(endpoint.url)


class StaticQuoteSource:
    """Quote source serving scripted prices per venue name."""

    kind = VenueKind.CONSTANT_PRODUCT

    def __init__(
        self, prices: Dict[str, Any], *, liquidity: float = 10.0, delay: Union[float, Dict[str, float]] = 0.0
    ) -> None:
        self.prices = prices
        self.liquidity = liquidity
        self.delay = delay
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_quote(self, venue: VenueConfig, pair: TokenPairConfig, connection: Any) -> Quote:
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delay.get(venue.name, 0.0) if isinstance(self.delay, dict) else self.delay
            if delay:
                await asyncio.sleep(delay)
            value = self.prices[venue.name]
            if isinstance(value, BaseException):
                raise value
            return Quote(
                network=venue.network,
                venue=venue.name,
                pair=pair.id,
                price=value,
                liquidity=self.liquidity,
                block_number=connection.block_number or 0,
            )
        finally:
            self.in_flight -= 1


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv(settings.CONFIG_FILE_ENV_VAR, str(tmp_path / "missing.toml"))
    monkeypatch.delenv(settings.PROFILE_ENV_VAR, raising=False)
    for network_id in ("ETHEREUM", "ARBITRUM", "POLYGON", "BASE"):
        monkeypatch.delenv(f"{network_id}_RPC_HTTP", raising=False)
        monkeypatch.delenv(f"{network_id}_RPC_WS", raising=False)
    settings.get_app_config.cache_clear()
    yield
    settings.get_app_config.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def chain(clock: FakeClock) -> FakeChain:
    return FakeChain(clock)


@pytest.fixture
def live_chain() -> FakeChain:
    return FakeChain(utc_now)


@pytest.fixture
def system() -> SystemConfig:
    return SystemConfig(
        probe_attempts=1,
        probe_backoff_seconds=0.0,
        connection_timeout=1.0,
        fetch_timeout=1.0,
        min_refetch_interval=0.0,
        fee_rate_cache_seconds=0.0,
        shutdown_grace_seconds=1.0,
    )


@pytest.fixture
def make_network() -> Callable[..., NetworkConfig]:
    def _make(network_id: str = "ethereum", count: int = 2, **overrides: Any) -> NetworkConfig:
        endpoints = [f"https://{network_id}-{index}.example" for index in range(count)]
        return NetworkConfig(id=network_id, endpoints=endpoints, **overrides)

    return _make


@pytest.fixture
def pair() -> TokenPairConfig:
    return TokenPairConfig(
        base="WETH",
        quote="USDC",
        base_address=WETH,
        quote_address=USDC,
        base_decimals=18,
        quote_decimals=6,
    )


@pytest.fixture
def make_venue() -> Callable[..., VenueConfig]:
    def _make(name: str, network: str = "ethereum", **overrides: Any) -> VenueConfig:
        fields: Dict[str, Any] = {
            "name": name,
            "network": network,
            "kind": VenueKind.CONSTANT_PRODUCT,
            "pools": {"WETH/USDC": "0x" + "33" * 20},
        }
        fields.update(overrides)
        return VenueConfig(**fields)

    return _make


@pytest.fixture
def make_quote() -> Callable[..., Quote]:
    def _make(venue: str, price: float, *, network: str = "ethereum", **overrides: Any) -> Quote:
        fields: Dict[str, Any] = {
            "network": network,
            "venue": venue,
            "pair": "WETH/USDC",
            "price": price,
            "liquidity": 10.0,
            "block_number": 1,
        }
        fields.update(overrides)
        return Quote(**fields)

    return _make


@pytest.fixture
def static_source() -> Callable[..., StaticQuoteSource]:
    return StaticQuoteSource
