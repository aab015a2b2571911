"""Monitoring package exports and helpers."""

from __future__ import annotations

from typing import Optional, Tuple

from ..config.settings import AppConfig, get_app_config
from ..datalake.storage import StorageAdapter
from .alerts import AlertManager
from .event_bus import EventBus
from .logger import configure_logging
from .metrics import METRICS, MetricsRecorder, MetricsRegistry


def bootstrap_observability(
    storage: Optional[StorageAdapter],
    *,
    config: Optional[AppConfig] = None,
    registry: Optional[MetricsRegistry] = None,
    alerts: Optional[AlertManager] = None,
) -> Tuple[EventBus, MetricsRecorder, AlertManager]:
    """Configure logging, event bus persistence, and alert routing."""

    app_config = config or get_app_config()
    configure_logging(app_config.monitoring)
    registry = registry or METRICS
    manager = alerts or AlertManager(app_config.monitoring)
    bus = EventBus(persist_quotes=app_config.monitoring.persist_quotes)
    bus.attach_metrics(registry)
    bus.attach_alert_manager(manager)
    bus.attach_storage(storage)
    recorder = MetricsRecorder(registry, bus=bus)
    return bus, recorder, manager


__all__ = ["METRICS", "bootstrap_observability"]
