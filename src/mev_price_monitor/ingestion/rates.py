"""Native-currency to USD conversion rates."""

from __future__ import annotations

import time
from typing import Callable, Dict, Iterable, Mapping, Optional, Protocol

import requests
from cachetools import TTLCache
from tenacity import retry, stop_after_attempt, wait_exponential

from ..config.settings import RatesConfig, get_app_config
from ..monitoring.logger import get_logger

DEFAULT_HEADERS = {"User-Agent": "mev-price-monitor/1.0", "Accept": "application/json"}


class RateProvider(Protocol):
    def get_rate(self, symbol: str) -> Optional[float]:
        ...


class StaticRateProvider:
    """Fixed rates, for offline runs and tests."""

    def __init__(self, rates: Mapping[str, float]) -> None:
        self._rates = {symbol.upper(): float(value) for symbol, value in rates.items()}

    def get_rate(self, symbol: str) -> Optional[float]:
        return self._rates.get(symbol.upper())


class HttpRateProvider:
    """Simple-price HTTP API client with caching and a static fallback."""

    def __init__(
        self,
        config: Optional[RatesConfig] = None,
        session: Optional[requests.Session] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or get_app_config().rates
        self._session = session or requests.Session()
        self._cache: TTLCache[str, float] = TTLCache(
            maxsize=64, ttl=max(self._config.cache_ttl_seconds, 1)
        )
        # Symbols whose last lookup failed are served from static rates until expiry.
        self._failed: TTLCache[str, bool] = TTLCache(
            maxsize=64, ttl=max(self._config.failure_backoff_seconds, 1), timer=clock
        )
        self._fallback = StaticRateProvider(self._config.static_rates)
        self._fallback_logged: set[str] = set()
        self._logger = get_logger(__name__)

    @retry(wait=wait_exponential(multiplier=0.5, min=0.5, max=4), stop=stop_after_attempt(3), reraise=True)
    def _request(self, ids: Iterable[str]) -> Dict[str, Dict[str, float]]:
        response = self._session.get(
            str(self._config.api_url),
            params={"ids": ",".join(ids), "vs_currencies": "usd"},
            headers=DEFAULT_HEADERS,
            timeout=self._config.http_timeout,
        )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("unexpected rate payload")
        return payload

    def get_rates(self, symbols: Iterable[str]) -> Dict[str, float]:
        ordered = list(dict.fromkeys(symbol.upper() for symbol in symbols))
        missing = [
            symbol for symbol in ordered if symbol not in self._cache and symbol not in self._failed
        ]
        if missing and self._config.enabled:
            ids = {
                self._config.symbol_ids[symbol]: symbol
                for symbol in missing
                if symbol in self._config.symbol_ids
            }
            if ids:
                try:
                    payload = self._request(tuple(ids))
                except (requests.RequestException, ValueError) as exc:
                    self._logger.warning("Rate lookup failed: %s", exc)
                    payload = {}
                for coin_id, symbol in ids.items():
                    value = payload.get(coin_id, {}).get("usd")
                    if isinstance(value, (int, float)) and value > 0:
                        self._cache[symbol] = float(value)
                    else:
                        self._failed[symbol] = True
        results: Dict[str, float] = {}
        for symbol in ordered:
            if symbol in self._cache:
                results[symbol] = self._cache[symbol]
                continue
            fallback = self._fallback.get_rate(symbol)
            if fallback is None:
                continue
            if symbol not in self._fallback_logged:
                self._logger.warning("Using static %s/USD rate %.4f", symbol, fallback)
                self._fallback_logged.add(symbol)
            results[symbol] = fallback
        return results

    def get_rate(self, symbol: str) -> Optional[float]:
        return self.get_rates([symbol]).get(symbol.upper())


__all__ = ["HttpRateProvider", "RateProvider", "StaticRateProvider"]
