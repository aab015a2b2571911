"""Internal event bus that moves pipeline output off the hot path."""

from __future__ import annotations

import asyncio
import inspect
import logging
import queue
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional, Union

from .alerts import AlertManager
from .metrics import MetricsRegistry

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..datalake.storage import StorageAdapter


class EventType(str, Enum):
    """Supported event categories emitted by the monitor."""

    QUOTE = "quote"
    OPPORTUNITY = "opportunity"
    HEALTH = "health"
    METRIC = "metric"
    DATA = "data"
    NETWORK = "network"


class EventSeverity(str, Enum):
    """Severity levels associated with events."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(slots=True)
class Event:
    """Normalized representation of a pipeline event."""

    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: EventSeverity = EventSeverity.INFO
    correlation_id: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "correlation_id": self.correlation_id,
            "labels": self.labels,
        }


Subscriber = Callable[[Event], Union[None, Any]]

_STOP = object()


class EventBus:
    """Threaded event bus that fans out pipeline events to storage, alerts, and subscribers.

    Handlers run on a single worker thread in publish order. Failures in any
    handler are logged and never reach the publisher.
    """

    def __init__(self, history_size: int = 500, *, persist_quotes: bool = True) -> None:
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._subscribers: Dict[Optional[EventType], List[Subscriber]] = defaultdict(list)
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._lock = threading.RLock()
        self._logger = logging.getLogger(__name__)
        self._persist_quotes = persist_quotes
        self._metrics: Optional[MetricsRegistry] = None
        self._alerts: Optional[AlertManager] = None
        self._storage: Optional["StorageAdapter"] = None
        self._worker = threading.Thread(target=self._run, name="event-bus", daemon=True)
        self._worker.start()

    def attach_metrics(self, registry: Optional[MetricsRegistry]) -> None:
        self._metrics = registry

    def attach_alert_manager(self, manager: Optional[AlertManager]) -> None:
        self._alerts = manager

    def attach_storage(self, storage: Optional["StorageAdapter"]) -> None:
        self._storage = storage

    def subscribe(self, event_type: Optional[EventType], handler: Subscriber) -> None:
        """Register a subscriber for a specific event type or all events."""

        with self._lock:
            self._subscribers[event_type].append(handler)

    def publish(
        self,
        event_type: Union[EventType, str],
        payload: Optional[Dict[str, Any]] = None,
        *,
        severity: EventSeverity = EventSeverity.INFO,
        correlation_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Publish a new event onto the bus."""

        if isinstance(event_type, str):
            try:
                event_type = EventType(event_type)
            except ValueError as exc:
                raise ValueError(f"Unsupported event type: {event_type}") from exc
        event = Event(
            type=event_type,
            payload=dict(payload or {}),
            severity=severity,
            correlation_id=correlation_id,
            labels=dict(labels or {}),
        )
        self._queue.put(event)

    def history(self, limit: int = 100, event_type: Optional[EventType] = None) -> List[Event]:
        with self._lock:
            events = list(self._history)
        if event_type is not None:
            events = [event for event in events if event.type == event_type]
        return events[-limit:]

    def flush(self, timeout: float = 1.0) -> bool:
        """Best-effort wait for the queue to drain."""

        deadline = time.time() + timeout
        while time.time() < deadline:
            if self._queue.unfinished_tasks == 0:
                return True
            time.sleep(0.01)
        return self._queue.unfinished_tasks == 0

    def close(self, timeout: float = 5.0) -> None:
        """Drain pending events and stop the worker thread."""

        if not self._worker.is_alive():
            return
        self.flush(timeout)
        self._queue.put(_STOP)
        self._worker.join(timeout)

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self._dispatch(event)
            except Exception:  # pragma: no cover
                self._logger.exception("Failed to dispatch event %s", getattr(event, "type", event))
            finally:
                self._queue.task_done()

    def _dispatch(self, event: Event) -> None:
        with self._lock:
            self._history.append(event)
            handlers = list(self._subscribers.get(event.type, [])) + list(
                self._subscribers.get(None, [])
            )
        self._update_metrics(event)
        self._persist_event(event)
        self._trigger_alerts(event)
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    asyncio.run(result)
            except Exception:  # pragma: no cover - subscriber failures should never break dispatch
                self._logger.exception(
                    "Event handler %s failed for %s", getattr(handler, "__name__", handler), event.type.value
                )

    def _update_metrics(self, event: Event) -> None:
        if not self._metrics:
            return
        self._metrics.increment(f"events.{event.type.value}", 1.0)
        if event.type == EventType.DATA:
            reason = event.payload.get("reason")
            if isinstance(reason, str):
                self._metrics.increment(f"data_quality.{reason}", 1.0)
        if event.type == EventType.HEALTH:
            snapshot = event.payload.get("snapshot")
            if snapshot is not None:
                self._metrics.gauge(f"network_healthy.{snapshot.network}", 1.0 if snapshot.healthy else 0.0)
                if snapshot.block_number is not None:
                    self._metrics.gauge(f"network_block.{snapshot.network}", float(snapshot.block_number))

    def _persist_event(self, event: Event) -> None:
        if not self._storage:
            return
        try:
            if event.type == EventType.QUOTE and self._persist_quotes:
                self._storage.record_quotes(event.payload.get("quotes", []))
            elif event.type == EventType.OPPORTUNITY:
                self._storage.record_opportunity(event.payload["opportunity"])
            elif event.type == EventType.HEALTH:
                self._storage.record_health_snapshot(event.payload["snapshot"])
            elif event.type == EventType.METRIC:
                self._storage.record_metric_event(event.payload["event"])
        except Exception:  # pragma: no cover - persistence failures should be non-fatal
            self._logger.exception("Failed to persist %s event", event.type.value)

    def _trigger_alerts(self, event: Event) -> None:
        if not self._alerts:
            return
        if event.type == EventType.OPPORTUNITY:
            self._alerts.notify_opportunity(event.payload["opportunity"])
        elif event.type == EventType.NETWORK:
            network = str(event.payload.get("network"))
            if event.payload.get("healthy"):
                self._alerts.notify_network_recovered(network)
            else:
                self._alerts.notify_network_down(network, event.payload.get("reason"))


__all__ = [
    "Event",
    "EventBus",
    "EventSeverity",
    "EventType",
]
