"""Entrypoint for the multi-network DEX price monitor."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from .analysis.costs import CostEstimator
from .analysis.opportunities import OpportunityDetector
from .config import settings
from .config.settings import AppConfig, VenueKind, get_app_config, validate_for_startup
from .datalake.schemas import HealthSnapshot, Opportunity
from .datalake.storage import SQLiteStorage, StorageAdapter
from .errors import ConfigurationError
from .ingestion.poller import PollResult, PricePoller
from .ingestion.price_cache import PriceCache
from .ingestion.quote_sources import QuoteSource
from .ingestion.rates import HttpRateProvider, RateProvider, StaticRateProvider
from .monitoring import bootstrap_observability
from .monitoring.alerts import AlertManager
from .monitoring.event_bus import EventSeverity, EventType
from .monitoring.logger import correlation_scope, get_logger
from .monitoring.metrics import METRICS, MetricsRegistry
from .network.manager import ConnectionManager, Connector
from .utils.constants import utc_now

logger = get_logger(__name__)

PURGE_INTERVAL = timedelta(days=1)
RECENT_FAILURE_LIMIT = 20


@dataclass(slots=True)
class CycleReport:
    """What one price-monitoring cycle produced."""

    poll: PollResult
    opportunities: List[Opportunity] = field(default_factory=list)
    profitable: List[Opportunity] = field(default_factory=list)
    costs: Dict[str, float] = field(default_factory=dict)
    duration_ms: float = 0.0

    def summary(self) -> Dict[str, Any]:
        return {
            "quotes_fetched": self.poll.succeeded,
            "fetch_failures": self.poll.failed,
            "quotes_rejected": self.poll.rejected,
            "skipped": self.poll.skipped,
            "opportunities": len(self.opportunities),
            "profitable": [opportunity.to_dict() for opportunity in self.profitable],
            "costs_usd": self.costs,
            "duration_ms": round(self.duration_ms, 2),
        }


class MonitorService:
    """Wires the pipeline together and drives the price and health loops."""

    def __init__(
        self,
        config: AppConfig,
        *,
        storage: Optional[StorageAdapter] = None,
        connector: Optional[Connector] = None,
        sources: Optional[Mapping[VenueKind, QuoteSource]] = None,
        rates: Optional[RateProvider] = None,
        alerts: Optional[AlertManager] = None,
        registry: Optional[MetricsRegistry] = None,
    ) -> None:
        validate_for_startup(config)
        self._config = config
        self._storage = storage if storage is not None else SQLiteStorage(config.storage.database_path)
        self._registry = registry or METRICS
        self._bus, self._recorder, self._alerts = bootstrap_observability(
            self._storage, config=config, registry=self._registry, alerts=alerts
        )
        system = config.system
        self._connections = ConnectionManager(
            config.networks,
            system,
            connector=connector,
            recorder=self._recorder,
            on_status_change=self._on_network_status,
        )
        self._cache = PriceCache(system.max_quote_age)
        self._poller = PricePoller(
            config.active_venues(),
            config.active_pairs(),
            system,
            self._connections,
            self._cache,
            sources=sources,
            recorder=self._recorder,
            bus=self._bus,
        )
        if rates is None:
            rates = (
                HttpRateProvider(config.rates)
                if config.rates.enabled
                else StaticRateProvider(config.rates.static_rates)
            )
        self._costs = CostEstimator(
            config.networks,
            self._connections,
            rates,
            fee_cache_seconds=system.fee_rate_cache_seconds,
            recorder=self._recorder,
        )
        self._detector = OpportunityDetector(
            config.trading, system.max_quote_age, cost_estimator=self._costs
        )
        self._stop: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []
        self._cycles = 0
        self._opportunities_seen = 0
        self._profitable_seen = 0
        self._last_purge: Optional[datetime] = None
        self._started_at: Optional[datetime] = None
        if not self._poller.targets:
            logger.warning("No venue has a pool configured for any active pair; nothing will be polled")

    @property
    def connections(self) -> ConnectionManager:
        return self._connections

    @property
    def cache(self) -> PriceCache:
        return self._cache

    @property
    def detector(self) -> OpportunityDetector:
        return self._detector

    @property
    def bus(self):
        return self._bus

    async def start(self) -> List[HealthSnapshot]:
        """Initial connection test; unreachable networks are reported, not fatal."""

        self._started_at = utc_now()
        logger.info(
            "Starting price monitor",
            extra={
                "networks": self._connections.networks,
                "targets": len(self._poller.targets),
                "min_profit_threshold": self._config.trading.min_profit_threshold,
            },
        )
        snapshots = await self.run_health_cycle()
        for snapshot in snapshots:
            if not snapshot.healthy:
                logger.error(
                    "Network unavailable at startup",
                    extra={"network": snapshot.network, "error": snapshot.error},
                )
        return snapshots

    async def run_price_cycle(self) -> CycleReport:
        started = time.perf_counter()
        with correlation_scope():
            poll = await self._poller.run_cycle()
            now = utc_now()
            quotes = self._cache.all_fresh(now)
            costs = await self._costs.estimate_many(quote.network for quote in quotes)
            detect_started = time.perf_counter()
            opportunities = self._detector.detect_all(quotes, costs, now)
            self._recorder.record(
                "detection.cycle", (time.perf_counter() - detect_started) * 1000, True
            )
            profitable = [opportunity for opportunity in opportunities if opportunity.profitable]
            for opportunity in profitable:
                self._bus.publish(EventType.OPPORTUNITY, {"opportunity": opportunity})
                logger.info(
                    "Profitable opportunity",
                    extra={
                        "pair": opportunity.pair,
                        "route": opportunity.route,
                        "net_profit": round(opportunity.net_profit, 2),
                        "net_margin_pct": round(opportunity.net_margin_pct, 2),
                    },
                )
        self._cycles += 1
        self._opportunities_seen += len(opportunities)
        self._profitable_seen += len(profitable)
        return CycleReport(
            poll=poll,
            opportunities=opportunities,
            profitable=profitable,
            costs=costs,
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    async def run_health_cycle(self) -> List[HealthSnapshot]:
        with correlation_scope():
            snapshots = await self._connections.health_check_all()
            for snapshot in snapshots:
                self._bus.publish(EventType.HEALTH, {"snapshot": snapshot})
            await self.maybe_purge()
        return snapshots

    async def maybe_purge(self, now: Optional[datetime] = None) -> Optional[Dict[str, int]]:
        """Daily retention sweep of stored history."""

        now = now or utc_now()
        if self._last_purge is not None and now - self._last_purge < PURGE_INTERVAL:
            return None
        purge = getattr(self._storage, "purge_before", None)
        self._last_purge = now
        if purge is None:
            return None
        system = self._config.system
        try:
            removed = await asyncio.to_thread(
                purge,
                now - timedelta(days=system.retention_days),
                long_lived_cutoff=now - timedelta(days=system.opportunity_retention_days),
            )
        except Exception:  # noqa: BLE001
            logger.exception("Retention sweep failed")
            return None
        logger.info("Retention sweep complete", extra={"removed": removed})
        return removed

    def status_report(self) -> Dict[str, Any]:
        counters = self._registry.snapshot()["counters"]
        return {
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "cycles": self._cycles,
            "connections": self._connections.connection_status(),
            "endpoints": self._connections.connection_details(),
            "cached_quotes": len(self._cache),
            "fresh_quotes": len(self._cache.all_fresh()),
            "opportunities_seen": self._opportunities_seen,
            "profitable_seen": self._profitable_seen,
            "quote_fetch_failures": counters.get("quote.fetch.failures", 0.0),
            "recent_failures": [
                event.to_dict() for event in self._recorder.recent(RECENT_FAILURE_LIMIT, failures_only=True)
            ],
        }

    def request_stop(self) -> None:
        if self._stop is not None and not self._stop.is_set():
            logger.info("Shutdown requested")
            self._stop.set()

    async def run(self, max_cycles: Optional[int] = None) -> None:
        self._stop = asyncio.Event()
        self._install_signal_handlers()
        await self.start()
        self._tasks = [
            asyncio.create_task(self._price_loop(max_cycles), name="price-loop"),
            asyncio.create_task(self._health_loop(), name="health-loop"),
        ]
        try:
            await self._stop.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        if self._stop is not None:
            self._stop.set()
        tasks = [task for task in self._tasks if not task.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._config.system.shutdown_grace_seconds)
            for task in pending:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        await self._connections.close()
        await asyncio.to_thread(self._bus.close)
        logger.info("Price monitor stopped", extra={"status": self.status_report()})

    async def _price_loop(self, max_cycles: Optional[int]) -> None:
        assert self._stop is not None
        interval = self._config.system.price_update_interval
        completed = 0
        while not self._stop.is_set():
            started = time.perf_counter()
            try:
                await self.run_price_cycle()
            except Exception:  # noqa: BLE001
                logger.exception("Price cycle failed")
            completed += 1
            if max_cycles is not None and completed >= max_cycles:
                self._stop.set()
                break
            await self._sleep(max(interval - (time.perf_counter() - started), 0.0))

    async def _health_loop(self) -> None:
        assert self._stop is not None
        interval = self._config.system.health_check_interval
        while not self._stop.is_set():
            await self._sleep(interval)
            if self._stop.is_set():
                break
            try:
                await self.run_health_cycle()
            except Exception:  # noqa: BLE001
                logger.exception("Health cycle failed")
            logger.info("Status", extra={"status": self.status_report()})

    async def _sleep(self, seconds: float) -> None:
        assert self._stop is not None
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_stop)
            except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
                continue

    def _on_network_status(self, network: str, healthy: bool, reason: Optional[str]) -> None:
        self._bus.publish(
            EventType.NETWORK,
            {"network": network, "healthy": healthy, "reason": reason},
            severity=EventSeverity.INFO if healthy else EventSeverity.ERROR,
        )


async def run_once(config: AppConfig) -> Dict[str, Any]:
    service = MonitorService(config)
    try:
        await service.start()
        report = await service.run_price_cycle()
        return report.summary()
    finally:
        await service.shutdown()


def load_config(config_file: Optional[str] = None, profile: Optional[str] = None) -> AppConfig:
    if config_file:
        os.environ[settings.CONFIG_FILE_ENV_VAR] = config_file
    if profile:
        os.environ[settings.PROFILE_ENV_VAR] = profile
    get_app_config.cache_clear()
    return get_app_config()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Monitor DEX prices across networks for arbitrage gaps")
    parser.add_argument("--config", default=None, help="Path to the TOML configuration file")
    parser.add_argument("--profile", default=None, help="Configuration profile section to apply")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single polling and detection cycle and print the result as JSON.",
    )
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Optional limit to the number of price cycles to execute.",
    )
    args = parser.parse_args(argv)
    try:
        config = load_config(args.config, args.profile)
        if args.log_level:
            config = config.model_copy(
                update={"monitoring": config.monitoring.model_copy(update={"log_level": args.log_level})}
            )
        validate_for_startup(config)
    except (ValidationError, ConfigurationError) as exc:
        logger.error("Invalid configuration: %s", exc)
        print(f"configuration error: {exc}", file=sys.stderr)
        return 2
    if args.once:
        summary = asyncio.run(run_once(config))
        print(json.dumps(summary, indent=2, default=str))
        return 0
    asyncio.run(MonitorService(config).run(max_cycles=args.max_cycles))
    return 0


if __name__ == "__main__":
    sys.exit(main())
