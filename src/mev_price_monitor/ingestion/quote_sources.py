"""Venue quote sources, one per pricing model.

Each source reads pool state through a ``ChainClient`` and returns a ``Quote``
whose price is quote-token units per base-token unit and whose liquidity is
the pool's base-token depth in base units.
"""

from __future__ import annotations

import asyncio
import math
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from web3 import Web3

from ..config.settings import TokenPairConfig, VenueConfig, VenueKind
from ..datalake.schemas import Quote
from ..errors import QuoteError
from ..network.manager import NetworkConnection

Q96 = 2**96

PAIR_ABI = [
    {
        "inputs": [],
        "name": "getReserves",
        "outputs": [
            {"internalType": "uint112", "name": "reserve0", "type": "uint112"},
            {"internalType": "uint112", "name": "reserve1", "type": "uint112"},
            {"internalType": "uint32", "name": "blockTimestampLast", "type": "uint32"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "token0",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

POOL_V3_ABI = [
    {
        "inputs": [],
        "name": "slot0",
        "outputs": [
            {"internalType": "uint160", "name": "sqrtPriceX96", "type": "uint160"},
            {"internalType": "int24", "name": "tick", "type": "int24"},
            {"internalType": "uint16", "name": "observationIndex", "type": "uint16"},
            {"internalType": "uint16", "name": "observationCardinality", "type": "uint16"},
            {"internalType": "uint16", "name": "observationCardinalityNext", "type": "uint16"},
            {"internalType": "uint8", "name": "feeProtocol", "type": "uint8"},
            {"internalType": "bool", "name": "unlocked", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "liquidity",
        "outputs": [{"internalType": "uint128", "name": "", "type": "uint128"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "token0",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ROUTER_ABI = [
    {
        "inputs": [
            {"internalType": "uint256", "name": "amountIn", "type": "uint256"},
            {"internalType": "address[]", "name": "path", "type": "address[]"},
        ],
        "name": "getAmountsOut",
        "outputs": [{"internalType": "uint256[]", "name": "amounts", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function",
    },
]

FACTORY_V2_ABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "tokenA", "type": "address"},
            {"internalType": "address", "name": "tokenB", "type": "address"},
        ],
        "name": "getPair",
        "outputs": [{"internalType": "address", "name": "pair", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

FACTORY_V3_ABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "tokenA", "type": "address"},
            {"internalType": "address", "name": "tokenB", "type": "address"},
            {"internalType": "uint24", "name": "fee", "type": "uint24"},
        ],
        "name": "getPool",
        "outputs": [{"internalType": "address", "name": "pool", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEFAULT_FEE_TIER = 3000

ERC20_ABI = [
    {
        "inputs": [{"internalType": "address", "name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


def price_from_reserves(
    base_reserve: int, quote_reserve: int, base_decimals: int, quote_decimals: int
) -> float:
    """Quote-per-base price of a constant-product pool."""

    if base_reserve <= 0:
        raise QuoteError("pool has no base reserve")
    return (quote_reserve / 10**quote_decimals) / (base_reserve / 10**base_decimals)


def price_from_sqrt_price_x96(sqrt_price_x96: int, token0_decimals: int, token1_decimals: int) -> float:
    """token1-per-token0 price encoded in a concentrated-liquidity ``sqrtPriceX96``."""

    if sqrt_price_x96 <= 0:
        raise QuoteError("pool sqrtPriceX96 is zero")
    raw = (sqrt_price_x96 / Q96) ** 2
    return raw * 10 ** (token0_decimals - token1_decimals)


def virtual_reserves(liquidity: int, sqrt_price_x96: int) -> Tuple[float, float]:
    """Virtual (token0, token1) reserves in raw units for the active tick range."""

    if sqrt_price_x96 <= 0:
        return 0.0, 0.0
    sqrt_price = sqrt_price_x96 / Q96
    return liquidity / sqrt_price, liquidity * sqrt_price


def _checksum(address: str) -> str:
    return Web3.to_checksum_address(address)


def _same_address(left: str, right: str) -> bool:
    return left.lower() == right.lower()


class QuoteSource(Protocol):
    kind: VenueKind

    async def fetch_quote(
        self, venue: VenueConfig, pair: TokenPairConfig, connection: NetworkConnection
    ) -> Quote:
        ...


class _PoolQuoteSource:
    """Shared plumbing: pool lookup, cached ``token0`` reads, block number.

    A pool address configured on the venue wins; otherwise the venue factory
    is asked once and the answer cached per (venue, pair).
    """

    kind: VenueKind

    def __init__(self) -> None:
        self._token0: Dict[str, str] = {}
        self._pools: Dict[Tuple[str, str], str] = {}

    async def _pool_address(
        self, venue: VenueConfig, pair: TokenPairConfig, connection: NetworkConnection
    ) -> str:
        configured = venue.pool_for(pair.id)
        if configured:
            return configured
        cache_key = (venue.key, pair.id)
        cached = self._pools.get(cache_key)
        if cached is not None:
            return cached
        if not venue.factory_address:
            raise QuoteError(
                f"no pool configured for {pair.id}", network=venue.network, venue=venue.name
            )
        base_address, quote_address = pair.addresses_on(venue.network)
        address = str(await self._lookup_pool(venue, connection, _checksum(base_address), _checksum(quote_address)))
        if not address or _same_address(address, ZERO_ADDRESS):
            raise QuoteError(
                f"factory has no pool for {pair.id}", network=venue.network, venue=venue.name
            )
        self._pools[cache_key] = address
        return address

    async def _lookup_pool(
        self, venue: VenueConfig, connection: NetworkConnection, base: str, quote: str
    ) -> Any:
        return await connection.client.call(venue.factory_address, FACTORY_V2_ABI, "getPair", base, quote)

    async def _token0_of(self, connection: NetworkConnection, pool: str, abi: Any) -> str:
        cached = self._token0.get(pool.lower())
        if cached is None:
            cached = str(await connection.client.call(pool, abi, "token0"))
            self._token0[pool.lower()] = cached
        return cached

    def _base_is_token0(
        self, venue: VenueConfig, pair: TokenPairConfig, token0: str
    ) -> bool:
        base_address, quote_address = pair.addresses_on(venue.network)
        if _same_address(token0, base_address):
            return True
        if _same_address(token0, quote_address):
            return False
        raise QuoteError(
            f"pool token0 {token0} matches neither side of {pair.id}",
            network=venue.network,
            venue=venue.name,
        )


class ConstantProductQuoteSource(_PoolQuoteSource):
    """Reserve-ratio pricing for Uniswap V2 style pairs."""

    kind = VenueKind.CONSTANT_PRODUCT

    async def fetch_quote(
        self, venue: VenueConfig, pair: TokenPairConfig, connection: NetworkConnection
    ) -> Quote:
        pool = await self._pool_address(venue, pair, connection)
        client = connection.client
        token0, reserves, block_number = await asyncio.gather(
            self._token0_of(connection, pool, PAIR_ABI),
            client.call(pool, PAIR_ABI, "getReserves"),
            client.get_block_number(),
        )
        reserve0, reserve1 = int(reserves[0]), int(reserves[1])
        if self._base_is_token0(venue, pair, token0):
            base_reserve, quote_reserve = reserve0, reserve1
        else:
            base_reserve, quote_reserve = reserve1, reserve0
        price = price_from_reserves(base_reserve, quote_reserve, pair.base_decimals, pair.quote_decimals)
        return Quote(
            network=venue.network,
            venue=venue.name,
            pair=pair.id,
            price=price,
            liquidity=base_reserve / 10**pair.base_decimals,
            block_number=int(block_number),
            fee_tier=venue.fee_tier,
            pool_address=pool,
        )


class ConcentratedLiquidityQuoteSource(_PoolQuoteSource):
    """``slot0`` pricing for Uniswap V3 style pools."""

    kind = VenueKind.CONCENTRATED_LIQUIDITY

    async def _lookup_pool(
        self, venue: VenueConfig, connection: NetworkConnection, base: str, quote: str
    ) -> Any:
        fee = venue.fee_tier if venue.fee_tier is not None else DEFAULT_FEE_TIER
        return await connection.client.call(venue.factory_address, FACTORY_V3_ABI, "getPool", base, quote, fee)

    async def fetch_quote(
        self, venue: VenueConfig, pair: TokenPairConfig, connection: NetworkConnection
    ) -> Quote:
        pool = await self._pool_address(venue, pair, connection)
        client = connection.client
        token0, slot0, liquidity, block_number = await asyncio.gather(
            self._token0_of(connection, pool, POOL_V3_ABI),
            client.call(pool, POOL_V3_ABI, "slot0"),
            client.call(pool, POOL_V3_ABI, "liquidity"),
            client.get_block_number(),
        )
        sqrt_price_x96 = int(slot0[0])
        base_is_token0 = self._base_is_token0(venue, pair, token0)
        if base_is_token0:
            token0_decimals, token1_decimals = pair.base_decimals, pair.quote_decimals
        else:
            token0_decimals, token1_decimals = pair.quote_decimals, pair.base_decimals
        token0_price = price_from_sqrt_price_x96(sqrt_price_x96, token0_decimals, token1_decimals)
        price = token0_price if base_is_token0 else 1.0 / token0_price
        reserve0, reserve1 = virtual_reserves(int(liquidity), sqrt_price_x96)
        base_raw = reserve0 if base_is_token0 else reserve1
        return Quote(
            network=venue.network,
            venue=venue.name,
            pair=pair.id,
            price=price,
            liquidity=base_raw / 10**pair.base_decimals,
            block_number=int(block_number),
            fee_tier=venue.fee_tier,
            pool_address=pool,
        )


class RouterQuoteSource(_PoolQuoteSource):
    """Router ``getAmountsOut`` pricing for venues without a standard pool interface.

    Liquidity is the base-token balance held by the configured pool address.
    """

    kind = VenueKind.OTHER

    async def fetch_quote(
        self, venue: VenueConfig, pair: TokenPairConfig, connection: NetworkConnection
    ) -> Quote:
        if not venue.router_address:
            raise QuoteError("venue has no router address", network=venue.network, venue=venue.name)
        pool = await self._pool_address(venue, pair, connection)
        base_address, quote_address = pair.addresses_on(venue.network)
        client = connection.client
        amount_in = 10**pair.base_decimals
        amounts, balance, block_number = await asyncio.gather(
            client.call(
                venue.router_address,
                ROUTER_ABI,
                "getAmountsOut",
                amount_in,
                [_checksum(base_address), _checksum(quote_address)],
            ),
            client.call(base_address, ERC20_ABI, "balanceOf", _checksum(pool)),
            client.get_block_number(),
        )
        amount_out = int(amounts[-1])
        if amount_out <= 0:
            raise QuoteError("router returned zero output", network=venue.network, venue=venue.name)
        return Quote(
            network=venue.network,
            venue=venue.name,
            pair=pair.id,
            price=amount_out / 10**pair.quote_decimals,
            liquidity=int(balance) / 10**pair.base_decimals,
            block_number=int(block_number),
            fee_tier=venue.fee_tier,
            pool_address=pool,
        )


_SOURCE_TYPES = {
    VenueKind.CONSTANT_PRODUCT: ConstantProductQuoteSource,
    VenueKind.CONCENTRATED_LIQUIDITY: ConcentratedLiquidityQuoteSource,
    VenueKind.OTHER: RouterQuoteSource,
}


def build_quote_sources() -> Dict[VenueKind, QuoteSource]:
    """One source instance per venue kind."""

    return {kind: source_type() for kind, source_type in _SOURCE_TYPES.items()}


def quote_source_for(
    kind: VenueKind, sources: Optional[Mapping[VenueKind, QuoteSource]] = None
) -> QuoteSource:
    registry = sources if sources is not None else build_quote_sources()
    try:
        return registry[kind]
    except KeyError:
        raise QuoteError(f"no quote source for venue kind {kind.value}") from None


def is_plausible(quote: Quote) -> Optional[str]:
    """Return a rejection reason for an implausible quote, or None."""

    if not math.isfinite(quote.price) or quote.price <= 0:
        return "non_positive_price"
    if not math.isfinite(quote.liquidity) or quote.liquidity < 0:
        return "negative_liquidity"
    if quote.block_number < 0:
        return "negative_block"
    return None


__all__ = [
    "ConcentratedLiquidityQuoteSource",
    "ConstantProductQuoteSource",
    "QuoteSource",
    "RouterQuoteSource",
    "build_quote_sources",
    "is_plausible",
    "price_from_reserves",
    "price_from_sqrt_price_x96",
    "quote_source_for",
    "virtual_reserves",
]
