from __future__ import annotations

import json
import logging
import sqlite3
from datetime import timedelta
from pathlib import Path

from mev_price_monitor.analysis.opportunities import OpportunityDetector
from mev_price_monitor.config.settings import MonitoringConfig, TradingConfig
from mev_price_monitor.datalake.schemas import HealthSnapshot
from mev_price_monitor.datalake.storage import SCHEMA_VERSION, SQLiteStorage
from mev_price_monitor.monitoring.alerts import AlertManager
from mev_price_monitor.monitoring.event_bus import EventBus, EventSeverity, EventType
from mev_price_monitor.monitoring.logger import StructuredFormatter, correlation_scope
from mev_price_monitor.monitoring.metrics import MetricsRecorder, MetricsRegistry


class _RecordingSession:
    def __init__(self) -> None:
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json))
        return type("Response", (), {"raise_for_status": lambda self: None})()


def _opportunity(make_quote, clock):
    detector = OpportunityDetector(TradingConfig(), 60.0, clock=clock)
    quotes = [
        make_quote("uniswap_v2", 2000.0, observed_at=clock()),
        make_quote("sushiswap", 2050.0, observed_at=clock()),
    ]
    [opportunity] = detector.detect(quotes, {"ethereum": 25.0})
    return opportunity


def test_sqlite_storage_creates_schema(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "state.sqlite3")

    assert storage.schema_version() == SCHEMA_VERSION == 1
    with sqlite3.connect(tmp_path / "state.sqlite3") as con:
        tables = {row[0] for row in con.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"quotes", "opportunities", "system_health", "performance_metrics", "schema_migrations"} <= tables
    assert storage.list_quotes() == []
    assert storage.list_opportunities() == []
    assert storage.list_health_snapshots() == []
    assert storage.list_metric_events() == []
    SQLiteStorage(tmp_path / "state.sqlite3")
    assert storage.schema_version() == SCHEMA_VERSION


def test_storage_round_trips_records(tmp_path: Path, make_quote, clock) -> None:
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    opportunity = _opportunity(make_quote, clock)

    storage.record_quotes([opportunity.buy, opportunity.sell])
    storage.record_opportunity(opportunity)

    assert {quote.venue for quote in storage.list_quotes(pair="WETH/USDC")} == {"uniswap_v2", "sushiswap"}
    [stored] = storage.list_opportunities(profitable_only=True)
    assert stored["id"] == opportunity.id
    assert stored["buy_venue"] == "uniswap_v2"
    assert stored["net_profit"] == opportunity.net_profit
    assert stored["profitable"] is True


def test_purge_respects_separate_retention(tmp_path: Path, make_quote, clock) -> None:
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    opportunity = _opportunity(make_quote, clock)
    storage.record_quotes([opportunity.buy])
    storage.record_opportunity(opportunity)
    storage.record_health_snapshot(
        HealthSnapshot(network="ethereum", healthy=True, timestamp=clock())
    )

    removed = storage.purge_before(
        clock() + timedelta(days=1), long_lived_cutoff=clock() - timedelta(days=1)
    )

    assert removed["quotes"] == 1
    assert removed["system_health"] == 1
    assert removed["opportunities"] == 0
    assert len(storage.list_opportunities()) == 1


def test_event_bus_persists_and_counts(tmp_path: Path, make_quote, clock) -> None:
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    registry = MetricsRegistry()
    bus = EventBus()
    bus.attach_storage(storage)
    bus.attach_metrics(registry)
    recorder = MetricsRecorder(registry, bus=bus)
    try:
        bus.publish(EventType.QUOTE, {"quotes": [make_quote("uniswap_v2", 2000.0)]})
        bus.publish(
            EventType.HEALTH,
            {"snapshot": HealthSnapshot(network="ethereum", healthy=True, block_number=42, timestamp=clock())},
        )
        bus.publish(EventType.DATA, {"reason": "non_positive_price"}, severity=EventSeverity.WARNING)
        recorder.record("quote.fetch", 12.5, False, network="ethereum", reason="timeout")
        assert bus.flush()
    finally:
        bus.close()

    assert len(storage.list_quotes()) == 1
    assert storage.list_health_snapshots(network="ethereum")[0].block_number == 42
    [event] = storage.list_metric_events(operation="quote.fetch")
    assert event.reason == "timeout"
    assert registry.get("events.health") == 1
    assert registry.get("data_quality.non_positive_price") == 1
    assert registry.get("quote.fetch.failures") == 1
    assert registry.get_gauge("network_block.ethereum") == 42.0
    summary = storage.performance_summary(now=event.timestamp)
    assert summary["quote.fetch"]["success_rate"] == 0.0


def test_quotes_are_not_persisted_when_disabled(tmp_path: Path, make_quote) -> None:
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    bus = EventBus(persist_quotes=False)
    bus.attach_storage(storage)
    try:
        bus.publish(EventType.QUOTE, {"quotes": [make_quote("uniswap_v2", 2000.0)]})
        bus.flush()
    finally:
        bus.close()

    assert storage.list_quotes() == []


def test_alerts_are_throttled_per_key(make_quote, clock) -> None:
    session = _RecordingSession()
    ticks = [0.0]
    manager = AlertManager(
        MonitoringConfig(webhook_urls=["https://hooks.example/alerts"], alert_throttle_seconds=60),
        session=session,
        clock=lambda: ticks[0],
    )
    opportunity = _opportunity(make_quote, clock)

    assert manager.notify_opportunity(opportunity)
    assert not manager.notify_opportunity(opportunity)
    ticks[0] += 61
    assert manager.notify_opportunity(opportunity)
    assert manager.notify_network_down("arbitrum", "all endpoints failed")
    assert manager.notify_network_recovered("arbitrum")

    assert manager.sent_count == 4
    assert session.posts[0][0] == "https://hooks.example/alerts"
    assert session.posts[0][1]["extra"]["pair"] == "WETH/USDC"


def test_structured_formatter_includes_correlation_and_extras() -> None:
    formatter = StructuredFormatter()
    record = logging.LogRecord("mev", logging.INFO, __file__, 1, "Quote fetch failed", (), None)
    record.network = "ethereum"
    with correlation_scope("cycle-1") as correlation_id:
        record.correlation_id = correlation_id

    payload = json.loads(formatter.format(record))

    assert payload["message"] == "Quote fetch failed"
    assert payload["correlation_id"] == "cycle-1"
    assert payload["extra"] == {"network": "ethereum"}


def test_prometheus_export_sanitizes_names() -> None:
    registry = MetricsRegistry()
    recorder = MetricsRecorder(registry)
    recorder.record("quote.fetch", 10.0, True, network="ethereum")
    registry.gauge("network_block.ethereum", 19_000_000)

    exported = registry.export_prometheus()

    assert "# TYPE quote_fetch_total counter" in exported
    assert "quote_fetch_total 1.0" in exported
    assert "network_block_ethereum 19000000.0" in exported
    assert 'quote_fetch_duration_ms{quantile="p50"} 10.0' in exported


def test_recorder_keeps_bounded_recent_history() -> None:
    recorder = MetricsRecorder(MetricsRegistry(), history_size=3)
    for index in range(4):
        recorder.record("quote.fetch", float(index), index % 2 == 0, venue=f"venue-{index}")

    assert [event.venue for event in recorder.recent()] == ["venue-1", "venue-2", "venue-3"]
    assert [event.venue for event in recorder.recent(failures_only=True)] == ["venue-1", "venue-3"]
    assert [event.venue for event in recorder.recent(1)] == ["venue-3"]
