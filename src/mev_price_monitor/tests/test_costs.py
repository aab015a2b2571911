from __future__ import annotations

import asyncio

import pytest

from mev_price_monitor.analysis.costs import CostEstimator
from mev_price_monitor.ingestion.rates import StaticRateProvider
from mev_price_monitor.monitoring.metrics import MetricsRecorder, MetricsRegistry
from mev_price_monitor.network.manager import ConnectionManager


def _estimator(networks, system, chain, fake_clock, rates, **kwargs) -> CostEstimator:
    manager = ConnectionManager(
        {network.id: network for network in networks}, system, connector=chain, clock=fake_clock
    )
    return CostEstimator(
        {network.id: network for network in networks}, manager, rates, **kwargs
    )


def test_cost_uses_live_fee_rate(make_network, system, chain, clock) -> None:
    network = make_network(gas_units=300_000)
    chain.client(network.endpoints[0].url).gas_price = 20 * 10**9
    estimator = _estimator([network], system, chain, clock, StaticRateProvider({"ETH": 2000.0}))

    cost = asyncio.run(estimator.estimate("ethereum"))

    # 20 gwei * 300k gas = 0.006 ETH
    assert cost == pytest.approx(12.0)


def test_unavailable_fee_rate_falls_back_to_ceiling(make_network, system, chain, clock) -> None:
    network = make_network(count=1, max_fee_per_gas_gwei=50.0, gas_units=300_000)
    chain.client(network.endpoints[0].url).fail = True
    registry = MetricsRegistry()
    estimator = _estimator(
        [network],
        system,
        chain,
        clock,
        StaticRateProvider({"ETH": 2000.0}),
        recorder=MetricsRecorder(registry),
    )

    cost = asyncio.run(estimator.estimate("ethereum"))

    assert cost == pytest.approx(30.0)
    assert registry.get("cost.estimate.failures") == 1


def test_missing_native_rate_yields_zero(make_network, system, chain, clock) -> None:
    network = make_network("polygon")
    estimator = _estimator([network], system, chain, clock, StaticRateProvider({"ETH": 2000.0}))

    assert asyncio.run(estimator.estimate("polygon")) == 0.0
    assert asyncio.run(estimator.estimate("unknown")) == 0.0


def test_fee_rate_is_cached(make_network, system, chain, clock) -> None:
    network = make_network()
    client = chain.client(network.endpoints[0].url)
    ticks = [0.0]
    estimator = _estimator(
        [network],
        system,
        chain,
        clock,
        StaticRateProvider({"ETH": 1000.0}),
        fee_cache_seconds=5.0,
        clock=lambda: ticks[0],
    )

    async def _exercise():
        first = await estimator.estimate("ethereum")
        client.gas_price *= 2
        cached = await estimator.estimate("ethereum")
        ticks[0] += 6.0
        refreshed = await estimator.estimate("ethereum")
        return first, cached, refreshed

    first, cached, refreshed = asyncio.run(_exercise())

    assert cached == first
    assert refreshed == pytest.approx(first * 2)


def test_estimate_many_covers_each_network_once(make_network, system, chain, clock) -> None:
    networks = [make_network("ethereum"), make_network("arbitrum")]
    estimator = _estimator(networks, system, chain, clock, StaticRateProvider({"ETH": 2000.0}))

    costs = asyncio.run(estimator.estimate_many(["arbitrum", "ethereum", "arbitrum"]))

    assert list(costs) == ["arbitrum", "ethereum"]
    assert costs["arbitrum"] == pytest.approx(20 * 10**9 * 1_000_000 / 10**18 * 2000.0)
