"""Concurrent venue polling that feeds the price cache."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from cachetools import TTLCache

from ..config.settings import SystemConfig, TokenPairConfig, VenueConfig, VenueKind
from ..datalake.schemas import Quote, QuoteKey
from ..errors import AllEndpointsFailed, InvalidQuote
from ..monitoring.event_bus import EventBus, EventSeverity, EventType
from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRecorder
from ..network.manager import ConnectionManager
from .price_cache import PriceCache
from .quote_sources import QuoteSource, build_quote_sources, is_plausible

_CONNECTIVITY_ERRORS = (asyncio.TimeoutError, ConnectionError, OSError)


@dataclass(slots=True, frozen=True)
class PollTarget:
    venue: VenueConfig
    pair: TokenPairConfig

    @property
    def key(self) -> QuoteKey:
        return QuoteKey(self.venue.network, self.venue.name, self.pair.id)


@dataclass(slots=True)
class PollResult:
    """Outcome counts of one polling cycle."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    rejected: int = 0
    duration_ms: float = 0.0
    quotes: List[Quote] = field(default_factory=list)
    errors: Dict[QuoteKey, str] = field(default_factory=dict)


def build_matrix(
    venues: Sequence[VenueConfig], pairs: Sequence[TokenPairConfig], networks: Sequence[str]
) -> List[PollTarget]:
    """Active venues on known networks crossed with the active pairs each venue can price.

    A venue can price a pair when it names a pool for it or has a factory to
    discover one.
    """

    known = set(networks)
    targets: List[PollTarget] = []
    for venue in venues:
        if not venue.active or venue.network not in known:
            continue
        for pair in pairs:
            if pair.active and (venue.pool_for(pair.id) or venue.factory_address):
                targets.append(PollTarget(venue=venue, pair=pair))
    return targets


class PricePoller:
    """Fetches one quote per due (network, venue, pair) combination per cycle.

    Fetches run concurrently under a global ceiling. A failed fetch leaves the
    previously cached quote in place. A combination fetched successfully within
    ``min_refetch_interval`` is skipped.
    """

    def __init__(
        self,
        venues: Sequence[VenueConfig],
        pairs: Sequence[TokenPairConfig],
        system: SystemConfig,
        connections: ConnectionManager,
        cache: PriceCache,
        *,
        sources: Optional[Mapping[VenueKind, QuoteSource]] = None,
        recorder: Optional[MetricsRecorder] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._system = system
        self._connections = connections
        self._cache = cache
        self._sources = dict(sources) if sources is not None else build_quote_sources()
        self._recorder = recorder
        self._bus = bus
        self._logger = get_logger(__name__)
        self._targets = [
            target
            for target in build_matrix(venues, pairs, connections.networks)
            if target.venue.kind in self._sources
        ]
        cache.set_order(target.key for target in self._targets)
        self._semaphore = asyncio.Semaphore(system.max_concurrent_requests)
        self._recent: Optional[TTLCache] = None
        if system.min_refetch_interval > 0:
            self._recent = TTLCache(
                maxsize=max(len(self._targets), 1),
                ttl=system.min_refetch_interval,
                timer=clock,
            )

    @property
    def targets(self) -> List[PollTarget]:
        return list(self._targets)

    @property
    def cache(self) -> PriceCache:
        return self._cache

    async def run_cycle(self) -> PollResult:
        started = time.perf_counter()
        result = PollResult()
        due: List[PollTarget] = []
        for target in self._targets:
            if self._recent is not None and target.key in self._recent:
                result.skipped += 1
            else:
                due.append(target)

        available = await self._resolve_networks({target.venue.network for target in due})
        runnable: List[PollTarget] = []
        for target in due:
            result.attempted += 1
            if target.venue.network in available:
                runnable.append(target)
            else:
                result.failed += 1
                result.errors[target.key] = "network unavailable"

        outcomes = await asyncio.gather(
            *(self._fetch(target) for target in runnable), return_exceptions=True
        )
        for target, outcome in zip(runnable, outcomes):
            if isinstance(outcome, Quote):
                result.succeeded += 1
                result.quotes.append(outcome)
            elif isinstance(outcome, InvalidQuote):
                result.rejected += 1
                result.errors[target.key] = str(outcome)
            elif isinstance(outcome, BaseException):
                result.failed += 1
                result.errors[target.key] = _describe(outcome)

        result.duration_ms = (time.perf_counter() - started) * 1000
        self._record("poll.cycle", result.duration_ms, result.failed == 0)
        if result.quotes and self._bus is not None:
            self._bus.publish(EventType.QUOTE, {"quotes": list(result.quotes)})
        self._logger.debug(
            "Poll cycle complete",
            extra={
                "attempted": result.attempted,
                "succeeded": result.succeeded,
                "failed": result.failed,
                "rejected": result.rejected,
                "skipped": result.skipped,
                "duration_ms": round(result.duration_ms, 2),
            },
        )
        return result

    async def _resolve_networks(self, networks: set[str]) -> set[str]:
        ordered = sorted(networks)
        outcomes = await asyncio.gather(
            *(self._connections.resolve(network) for network in ordered), return_exceptions=True
        )
        available: set[str] = set()
        for network, outcome in zip(ordered, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, AllEndpointsFailed):
                    self._logger.warning(
                        "Network resolution failed",
                        extra={"network": network, "error": _describe(outcome)},
                    )
                continue
            available.add(network)
        return available

    async def _fetch(self, target: PollTarget) -> Quote:
        venue, pair = target.venue, target.pair
        labels = {"network": venue.network, "venue": venue.name, "pair": pair.id}
        async with self._semaphore:
            started = time.perf_counter()
            try:
                connection = await self._connections.resolve(venue.network)
                source = self._sources[venue.kind]
                quote = await asyncio.wait_for(
                    source.fetch_quote(venue, pair, connection), timeout=self._system.fetch_timeout
                )
            except Exception as exc:
                reason = _describe(exc)
                if isinstance(exc, _CONNECTIVITY_ERRORS):
                    self._connections.mark_unhealthy(venue.network, reason)
                self._record("quote.fetch", _elapsed_ms(started), False, reason=reason, **labels)
                self._logger.warning("Quote fetch failed", extra={**labels, "reason": reason})
                raise
        rejection = is_plausible(quote)
        if rejection is not None:
            self._record("quote.fetch", _elapsed_ms(started), False, reason=rejection, **labels)
            self._logger.warning(
                "Discarding implausible quote",
                extra={**labels, "reason": rejection, "price": quote.price, "liquidity": quote.liquidity},
            )
            if self._bus is not None:
                self._bus.publish(
                    EventType.DATA,
                    {"reason": rejection, "price": quote.price, "liquidity": quote.liquidity, **labels},
                    severity=EventSeverity.WARNING,
                )
            raise InvalidQuote(rejection, network=venue.network, venue=venue.name)
        self._cache.put(quote, target.key)
        if self._recent is not None:
            self._recent[target.key] = True
        self._record("quote.fetch", _elapsed_ms(started), True, **labels)
        return quote

    def _record(self, operation: str, duration_ms: float, success: bool, **labels: Optional[str]) -> None:
        if self._recorder is not None:
            self._recorder.record(operation, duration_ms, success, **labels)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    return str(exc) or type(exc).__name__


__all__ = ["PollResult", "PollTarget", "PricePoller", "build_matrix"]
