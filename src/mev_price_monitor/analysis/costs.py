"""Execution cost estimates per network, in USD."""

from __future__ import annotations

import asyncio
import math
import time
from typing import Callable, Dict, Iterable, Mapping, Optional

from cachetools import TTLCache

from ..config.settings import NetworkConfig
from ..ingestion.rates import RateProvider
from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRecorder
from ..network.manager import ConnectionManager
from ..utils.constants import WEI_PER_ETHER, WEI_PER_GWEI


class CostEstimator:
    """``fee_rate * gas_units`` converted to USD with the network's native rate.

    Never raises: an unavailable fee rate falls back to the network's
    configured fee ceiling, and an unavailable native rate yields ``0.0``.
    """

    def __init__(
        self,
        networks: Mapping[str, NetworkConfig],
        connections: ConnectionManager,
        rates: RateProvider,
        *,
        fee_cache_seconds: float = 5.0,
        recorder: Optional[MetricsRecorder] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._networks = dict(networks)
        self._connections = connections
        self._rates = rates
        self._recorder = recorder
        self._logger = get_logger(__name__)
        self._fee_cache: Optional[TTLCache] = None
        if fee_cache_seconds > 0:
            self._fee_cache = TTLCache(
                maxsize=max(len(self._networks), 1), ttl=fee_cache_seconds, timer=clock
            )

    async def fee_rate(self, network: str) -> int:
        """Gas price in wei, cached briefly."""

        if self._fee_cache is not None and network in self._fee_cache:
            return self._fee_cache[network]
        fee = await self._connections.current_fee_rate(network)
        if self._fee_cache is not None:
            self._fee_cache[network] = fee
        return fee

    async def native_rate(self, network: str) -> Optional[float]:
        symbol = self._networks[network].native_symbol
        try:
            rate = await asyncio.to_thread(self._rates.get_rate, symbol)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("Native rate lookup failed", extra={"symbol": symbol, "error": str(exc)})
            return None
        if rate is None or not math.isfinite(rate) or rate <= 0:
            return None
        return float(rate)

    def default_estimate(self, network: str, rate: Optional[float]) -> float:
        """Cost under the configured fee ceiling; ``0.0`` without a rate."""

        if rate is None:
            return 0.0
        config = self._networks[network]
        fee_wei = config.max_fee_per_gas_gwei * WEI_PER_GWEI
        return fee_wei * config.gas_units / WEI_PER_ETHER * rate

    async def estimate(self, network: str) -> float:
        config = self._networks.get(network)
        if config is None:
            self._logger.warning("Cost requested for unknown network", extra={"network": network})
            return 0.0
        started = time.perf_counter()
        rate = await self.native_rate(network)
        if rate is None:
            self._logger.warning(
                "No native rate available; cost estimate is zero",
                extra={"network": network, "symbol": config.native_symbol},
            )
            self._record(network, started, False, "no_rate")
            return 0.0
        try:
            fee_wei = await self.fee_rate(network)
        except Exception as exc:  # noqa: BLE001
            fallback = self.default_estimate(network, rate)
            self._logger.warning(
                "Fee rate unavailable; using default gas model",
                extra={"network": network, "error": str(exc) or type(exc).__name__, "cost_usd": fallback},
            )
            self._record(network, started, False, "fee_rate_unavailable")
            return fallback
        try:
            cost = fee_wei * config.gas_units / WEI_PER_ETHER * rate
        except OverflowError:
            cost = math.inf
        if not math.isfinite(cost) or cost < 0:
            self._record(network, started, False, "overflow")
            return self.default_estimate(network, rate)
        self._record(network, started, True, None)
        return cost

    async def estimate_many(self, networks: Iterable[str]) -> Dict[str, float]:
        ordered = list(dict.fromkeys(networks))
        results = await asyncio.gather(*(self.estimate(network) for network in ordered))
        return dict(zip(ordered, results))

    def _record(self, network: str, started: float, success: bool, reason: Optional[str]) -> None:
        if self._recorder is not None:
            self._recorder.record(
                "cost.estimate",
                (time.perf_counter() - started) * 1000,
                success,
                network=network,
                reason=reason,
            )


__all__ = ["CostEstimator"]
