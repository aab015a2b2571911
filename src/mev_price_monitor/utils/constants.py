"""Shared constants for chains, venues, and monitored pairs."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


WEI_PER_ETHER = 10**18
WEI_PER_GWEI = 10**9

# Expected block interval (seconds) and default gas model per supported network.
NETWORK_PRESETS: dict[str, dict] = {
    "ethereum": {
        "name": "Ethereum",
        "chain_id": 1,
        "block_time_seconds": 12.0,
        "gas_units": 300_000,
        "max_fee_per_gas_gwei": 50.0,
        "max_priority_fee_gwei": 2.0,
        "native_symbol": "ETH",
    },
    "arbitrum": {
        "name": "Arbitrum",
        "chain_id": 42161,
        "block_time_seconds": 1.0,
        "gas_units": 1_000_000,
        "max_fee_per_gas_gwei": 0.5,
        "max_priority_fee_gwei": 0.1,
        "native_symbol": "ETH",
    },
    "polygon": {
        "name": "Polygon",
        "chain_id": 137,
        "block_time_seconds": 2.0,
        "gas_units": 500_000,
        "max_fee_per_gas_gwei": 100.0,
        "max_priority_fee_gwei": 30.0,
        "native_symbol": "MATIC",
    },
    "base": {
        "name": "Base",
        "chain_id": 8453,
        "block_time_seconds": 2.0,
        "gas_units": 500_000,
        "max_fee_per_gas_gwei": 0.1,
        "max_priority_fee_gwei": 0.01,
        "native_symbol": "ETH",
    },
}

# Token addresses on Ethereum mainnet; other networks override per pair.
TOKEN_ADDRESSES: dict[str, str] = {
    "ETH": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
    "USDC": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    "USDT": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
    "WBTC": "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599",
}

NETWORK_TOKEN_ADDRESSES: dict[str, dict[str, str]] = {
    "arbitrum": {
        "ETH": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
        "USDC": "0xFF970A61A04b1cA14834A43f5dE4533eBDDB5CC8",
        "USDT": "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
        "WBTC": "0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f",
    },
    "polygon": {
        "ETH": "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619",
        "USDC": "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
        "USDT": "0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
        "WBTC": "0x1BFD67037B42Cf73acF2047067bd4F2C47D9BfD6",
    },
    "base": {
        "ETH": "0x4200000000000000000000000000000000000006",
        "USDC": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        "USDbC": "0xd9aAEc86B65D86f6A7B5B1b0c42FFA531710b6CA",
    },
}

TOKEN_DECIMALS: dict[str, int] = {"ETH": 18, "USDC": 6, "USDT": 6, "USDbC": 6, "WBTC": 8}

DEFAULT_PAIRS: list[tuple[str, str]] = [
    ("ETH", "USDC"),
    ("ETH", "USDT"),
    ("WBTC", "USDC"),
    ("WBTC", "ETH"),
]

UNISWAP_V3_FEE_TIERS = {"low": 500, "medium": 3000, "high": 10_000}

# Known DEX deployments. Pool addresses are deployment specific and come from configuration.
DEFAULT_VENUES: list[dict] = [
    {
        "name": "uniswap_v2",
        "network": "ethereum",
        "kind": "constant_product",
        "factory_address": "0x5C69bEe701ef814a2B6a3EDD4B1652CB9cc5aA6f",
        "router_address": "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D",
    },
    {
        "name": "uniswap_v3",
        "network": "ethereum",
        "kind": "concentrated_liquidity",
        "factory_address": "0x1F98431c8aD98523631AE4a59f267346ea31F984",
        "router_address": "0xE592427A0AEce92De3Edee1F18E0157C05861564",
        "fee_tier": UNISWAP_V3_FEE_TIERS["medium"],
    },
    {
        "name": "sushiswap",
        "network": "ethereum",
        "kind": "constant_product",
        "factory_address": "0xC0AEe478e3658e2610c5F7A4A2E1777cE9e4f2Ac",
        "router_address": "0xd9e1cE17f2641f24aE83637ab66a2cca9C378B9F",
    },
    {
        "name": "uniswap_v3",
        "network": "arbitrum",
        "kind": "concentrated_liquidity",
        "factory_address": "0x1F98431c8aD98523631AE4a59f267346ea31F984",
        "router_address": "0xE592427A0AEce92De3Edee1F18E0157C05861564",
        "fee_tier": UNISWAP_V3_FEE_TIERS["medium"],
    },
    {
        "name": "sushiswap",
        "network": "arbitrum",
        "kind": "constant_product",
        "factory_address": "0xc35DADB65012eC5796536bD9864eD8773aBc74C4",
        "router_address": "0x1b02dA8Cb0d097eB8D57A175b88c7D8b47997506",
    },
    {
        "name": "camelot",
        "network": "arbitrum",
        "kind": "constant_product",
        "factory_address": "0x6EcCab422D763aC031210895C81787E87B43A652",
        "router_address": "0xc873fEcbd354f5A56E00E71B0D8b3bdcDC261F1F",
    },
    {
        "name": "uniswap_v3",
        "network": "polygon",
        "kind": "concentrated_liquidity",
        "factory_address": "0x1F98431c8aD98523631AE4a59f267346ea31F984",
        "router_address": "0xE592427A0AEce92De3Edee1F18E0157C05861564",
        "fee_tier": UNISWAP_V3_FEE_TIERS["medium"],
    },
    {
        "name": "sushiswap",
        "network": "polygon",
        "kind": "constant_product",
        "factory_address": "0xc35DADB65012eC5796536bD9864eD8773aBc74C4",
        "router_address": "0x1b02dA8Cb0d097eB8D57A175b88c7D8b47997506",
    },
    {
        "name": "quickswap",
        "network": "polygon",
        "kind": "constant_product",
        "factory_address": "0x5757371414417b8C6CAad45bAeF941aBc7d3Ab32",
        "router_address": "0xa5E0829CaCEd8fFDD4De3c43696c57F7D7A678ff",
    },
    {
        "name": "uniswap_v3",
        "network": "base",
        "kind": "concentrated_liquidity",
        "factory_address": "0x33128a8fc17869897dE68FC026a6bCbBfbC6C3c0",
        "router_address": "0x2626664c2603336E57B271c5C0b26F421741e481",
        "fee_tier": UNISWAP_V3_FEE_TIERS["medium"],
    },
    {
        "name": "aerodrome",
        "network": "base",
        "kind": "other",
        "factory_address": "0x420DD381b31aEf6683db6B902084cB0FFECe40Da",
        "router_address": "0xcF77a3Ba9A5CA399B7c97c74d54e5b1Beb874E43",
    },
    {
        "name": "baseswap",
        "network": "base",
        "kind": "constant_product",
        "factory_address": "0xFDa619b6d20975be80A10332cD39b9a4b0FAa8BB",
        "router_address": "0x327Df1E6de05895d2ab08513aaDD9313Fe505d86",
    },
]

__all__ = [
    "utc_now",
    "WEI_PER_ETHER",
    "WEI_PER_GWEI",
    "NETWORK_PRESETS",
    "TOKEN_ADDRESSES",
    "NETWORK_TOKEN_ADDRESSES",
    "TOKEN_DECIMALS",
    "DEFAULT_PAIRS",
    "DEFAULT_VENUES",
    "UNISWAP_V3_FEE_TIERS",
]
