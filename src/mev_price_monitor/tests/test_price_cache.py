from __future__ import annotations

from mev_price_monitor.datalake.schemas import QuoteKey
from mev_price_monitor.ingestion.price_cache import PriceCache


def test_latest_quote_replaces_previous(make_quote, clock) -> None:
    cache = PriceCache(60.0, clock=clock)
    first = make_quote("uniswap_v2", 2000.0, observed_at=clock())
    second = make_quote("uniswap_v2", 2010.0, observed_at=clock())

    cache.put(first)
    cache.put(second)

    assert len(cache) == 1
    assert cache.get(QuoteKey("ethereum", "uniswap_v2", "WETH/USDC")) is second


def test_staleness_is_applied_at_read_time(make_quote, clock) -> None:
    cache = PriceCache(60.0, clock=clock)
    old = make_quote("uniswap_v2", 2000.0, observed_at=clock())
    cache.put(old)
    clock.advance(30)
    fresh = make_quote("sushiswap", 2001.0, observed_at=clock())
    cache.put(fresh)

    assert cache.all_fresh() == [old, fresh]

    clock.advance(30)
    assert cache.all_fresh() == [fresh]
    assert cache.stale_keys() == [old.key]
    assert len(cache) == 2


def test_fresh_for_pair_filters_other_pairs(make_quote, clock) -> None:
    cache = PriceCache(60.0, clock=clock)
    weth = make_quote("uniswap_v2", 2000.0, observed_at=clock())
    wbtc = make_quote("uniswap_v2", 15.0, pair="WBTC/WETH", observed_at=clock())
    cache.put(weth)
    cache.put(wbtc)

    assert cache.fresh_for_pair("WBTC/WETH") == [wbtc]

    cache.clear()
    assert cache.keys() == []


def test_read_order_follows_configured_keys(make_quote, clock) -> None:
    cache = PriceCache(60.0, clock=clock)
    cache.set_order(
        [QuoteKey("ethereum", venue, "WETH/USDC") for venue in ("uniswap_v2", "sushiswap", "curve")]
    )

    for venue in ("extra", "curve", "uniswap_v2", "sushiswap"):
        cache.put(make_quote(venue, 2000.0, observed_at=clock()))

    assert [quote.venue for quote in cache.all_fresh()] == ["uniswap_v2", "sushiswap", "curve", "extra"]
