from __future__ import annotations

import asyncio

from mev_price_monitor.analysis.opportunities import OpportunityDetector
from mev_price_monitor.config.settings import TradingConfig, VenueKind
from mev_price_monitor.datalake.schemas import QuoteKey
from mev_price_monitor.errors import QuoteError
from mev_price_monitor.ingestion.poller import PricePoller, build_matrix
from mev_price_monitor.ingestion.price_cache import PriceCache
from mev_price_monitor.monitoring.metrics import MetricsRecorder, MetricsRegistry
from mev_price_monitor.network.manager import ConnectionManager


def _poller(venues, pair, system, manager, source, fake_clock, **kwargs):
    cache = PriceCache(system.max_quote_age, clock=fake_clock)
    poller = PricePoller(
        venues,
        [pair],
        system,
        manager,
        cache,
        sources={VenueKind.CONSTANT_PRODUCT: source},
        **kwargs,
    )
    return poller, cache


def test_build_matrix_requires_pool_or_factory(make_venue, pair) -> None:
    venues = [
        make_venue("with_pool"),
        make_venue("with_factory", pools={}, factory_address="0x" + "44" * 20),
        make_venue("bare", pools={}),
        make_venue("inactive", active=False),
        make_venue("elsewhere", network="base"),
    ]

    targets = build_matrix(venues, [pair], ["ethereum"])

    assert [target.venue.name for target in targets] == ["with_pool", "with_factory"]


def test_cycle_fills_cache_and_records_metrics(
    make_network, make_venue, pair, system, chain, clock, static_source
) -> None:
    manager = ConnectionManager({"ethereum": make_network()}, system, connector=chain, clock=clock)
    registry = MetricsRegistry()
    source = static_source({"uniswap_v2": 2000.0, "sushiswap": 2050.0})
    poller, cache = _poller(
        [make_venue("uniswap_v2"), make_venue("sushiswap")],
        pair,
        system,
        manager,
        source,
        clock,
        recorder=MetricsRecorder(registry),
    )

    result = asyncio.run(poller.run_cycle())

    assert result.attempted == 2
    assert result.succeeded == 2
    assert result.failed == 0
    assert [quote.price for quote in cache.all_fresh(clock())] == [2000.0, 2050.0]
    assert all(quote.block_number == 1_000 for quote in result.quotes)
    assert registry.get("quote.fetch.total") == 2
    assert registry.get("poll.cycle.total") == 1


def test_failed_fetch_keeps_previous_quote(
    make_network, make_venue, pair, system, chain, clock, static_source
) -> None:
    manager = ConnectionManager({"ethereum": make_network()}, system, connector=chain, clock=clock)
    source = static_source({"uniswap_v2": 2000.0})
    poller, cache = _poller([make_venue("uniswap_v2")], pair, system, manager, source, clock)
    key = QuoteKey("ethereum", "uniswap_v2", "WETH/USDC")

    asyncio.run(poller.run_cycle())
    original = cache.get(key)
    source.prices["uniswap_v2"] = QuoteError("pool has no base reserve")
    result = asyncio.run(poller.run_cycle())

    assert result.failed == 1
    assert result.errors[key] == "pool has no base reserve"
    assert cache.get(key) is original
    assert manager.connection_status() == {"ethereum": True}


def test_implausible_quote_is_rejected(
    make_network, make_venue, pair, system, chain, clock, static_source
) -> None:
    manager = ConnectionManager({"ethereum": make_network()}, system, connector=chain, clock=clock)
    registry = MetricsRegistry()
    source = static_source({"uniswap_v2": 0.0, "sushiswap": 2000.0})
    poller, cache = _poller(
        [make_venue("uniswap_v2"), make_venue("sushiswap")],
        pair,
        system,
        manager,
        source,
        clock,
        recorder=MetricsRecorder(registry),
    )

    result = asyncio.run(poller.run_cycle())

    assert result.rejected == 1
    assert result.succeeded == 1
    assert [quote.venue for quote in cache.all_fresh(clock())] == ["sushiswap"]
    assert registry.get("quote.fetch.failures") == 1


def test_connectivity_error_marks_network_for_reresolution(
    make_network, make_venue, pair, system, chain, clock, static_source
) -> None:
    manager = ConnectionManager({"ethereum": make_network()}, system, connector=chain, clock=clock)
    source = static_source({"uniswap_v2": ConnectionError("connection reset")})
    poller, _ = _poller([make_venue("uniswap_v2")], pair, system, manager, source, clock)

    result = asyncio.run(poller.run_cycle())

    assert result.failed == 1
    assert manager.connection_status() == {"ethereum": False}


def test_unhealthy_network_yields_no_quotes_while_others_continue(
    make_network, make_venue, pair, system, chain, clock, static_source
) -> None:
    ethereum = make_network("ethereum")
    arbitrum = make_network("arbitrum")
    for endpoint in arbitrum.endpoints:
        chain.client(endpoint.url).fail = True
    manager = ConnectionManager(
        {"ethereum": ethereum, "arbitrum": arbitrum}, system, connector=chain, clock=clock
    )
    source = static_source({"uniswap_v2": 2000.0, "camelot": 2100.0})
    poller, cache = _poller(
        [make_venue("uniswap_v2"), make_venue("camelot", network="arbitrum")],
        pair,
        system,
        manager,
        source,
        clock,
    )

    result = asyncio.run(poller.run_cycle())

    assert manager.connection_status() == {"ethereum": True, "arbitrum": False}
    assert [quote.network for quote in result.quotes] == ["ethereum"]
    assert result.errors[QuoteKey("arbitrum", "camelot", "WETH/USDC")] == "network unavailable"
    assert source.calls == 1
    assert {quote.network for quote in cache.all_fresh(clock())} == {"ethereum"}


def test_recently_fetched_targets_are_skipped(
    make_network, make_venue, pair, system, chain, clock, static_source
) -> None:
    system = system.model_copy(update={"min_refetch_interval": 5.0})
    manager = ConnectionManager({"ethereum": make_network()}, system, connector=chain, clock=clock)
    source = static_source({"uniswap_v2": 2000.0, "sushiswap": 2001.0})
    ticks = [100.0]
    poller, _ = _poller(
        [make_venue("uniswap_v2"), make_venue("sushiswap")],
        pair,
        system,
        manager,
        source,
        clock,
        clock=lambda: ticks[0],
    )

    asyncio.run(poller.run_cycle())
    second = asyncio.run(poller.run_cycle())
    ticks[0] += 6.0
    third = asyncio.run(poller.run_cycle())

    assert second.skipped == 2
    assert second.attempted == 0
    assert third.succeeded == 2
    assert source.calls == 4


def test_concurrent_fetches_respect_ceiling(
    make_network, make_venue, pair, system, chain, clock, static_source
) -> None:
    system = system.model_copy(update={"max_concurrent_requests": 2})
    manager = ConnectionManager({"ethereum": make_network()}, system, connector=chain, clock=clock)
    names = [f"venue_{index}" for index in range(6)]
    source = static_source({name: 2000.0 + index for index, name in enumerate(names)}, delay=0.01)
    poller, _ = _poller([make_venue(name) for name in names], pair, system, manager, source, clock)

    result = asyncio.run(poller.run_cycle())

    assert result.succeeded == 6
    assert source.max_in_flight == 2


def test_detection_order_follows_configured_venues(
    make_network, make_venue, pair, system, chain, clock, static_source
) -> None:
    manager = ConnectionManager({"ethereum": make_network()}, system, connector=chain, clock=clock)
    source = static_source(
        {"alpha": 2000.0, "beta": 2100.0, "gamma": 2200.0},
        delay={"alpha": 0.06, "beta": 0.03},
    )
    poller, cache = _poller(
        [make_venue("alpha"), make_venue("beta"), make_venue("gamma")],
        pair,
        system,
        manager,
        source,
        clock,
    )
    detector = OpportunityDetector(TradingConfig(), system.max_quote_age, clock=clock)

    asyncio.run(poller.run_cycle())
    opportunities = detector.detect_all(cache.all_fresh(clock()), {"ethereum": 0.0})

    assert [quote.venue for quote in cache.all_fresh(clock())] == ["alpha", "beta", "gamma"]
    assert [(item.buy.venue, item.sell.venue) for item in opportunities] == [
        ("alpha", "beta"),
        ("alpha", "gamma"),
        ("beta", "gamma"),
    ]
