"""Alerting utilities for Slack and generic webhooks."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests

from ..config.settings import MonitoringConfig, get_app_config
from ..datalake.schemas import Opportunity
from .logger import get_logger


class AlertSeverity(str, Enum):
    """Common severity levels recognised by the alert manager."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertManager:
    """Dispatch alerts to configured endpoints with throttling."""

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or get_app_config().monitoring
        self._session = session or requests.Session()
        self._clock = clock
        self._logger = get_logger(__name__)
        self._last_sent: Dict[str, float] = {}
        self._sent_count = 0

    @property
    def enabled(self) -> bool:
        return bool(self._config.slack_webhook_url or self._config.webhook_urls)

    @property
    def sent_count(self) -> int:
        return self._sent_count

    def send(
        self,
        message: str,
        *,
        severity: AlertSeverity = AlertSeverity.INFO,
        key: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Deliver ``message``; returns False when throttled."""

        key = key or message
        now = self._clock()
        throttle = max(self._config.alert_throttle_seconds, 0)
        last = self._last_sent.get(key)
        if last is not None and now - last < throttle:
            return False
        self._last_sent[key] = now
        payload = {
            "message": message,
            "severity": severity.value,
            "extra": extra or {},
        }
        if self._config.slack_webhook_url:
            self._post(
                str(self._config.slack_webhook_url),
                {"text": f"[{severity.value.upper()}] {message}"},
            )
        for url in self._config.webhook_urls:
            self._post(str(url), payload)
        self._sent_count += 1
        return True

    def notify_opportunity(self, opportunity: Opportunity) -> bool:
        message = (
            f"{opportunity.pair}: buy {opportunity.buy.venue}@{opportunity.buy.network} "
            f"{opportunity.buy.price:.6g}, sell {opportunity.sell.venue}@{opportunity.sell.network} "
            f"{opportunity.sell.price:.6g}, net ${opportunity.net_profit:,.2f} "
            f"({opportunity.net_margin_pct:.2f}%)"
        )
        return self.send(
            message,
            severity=AlertSeverity.INFO,
            key=f"opportunity:{opportunity.pair}:{opportunity.route}",
            extra=opportunity.to_dict(),
        )

    def notify_network_down(self, network: str, reason: Optional[str] = None) -> bool:
        if not self._config.alert_on_network_down:
            return False
        return self.send(
            f"Network {network} has no healthy endpoint" + (f": {reason}" if reason else ""),
            severity=AlertSeverity.ERROR,
            key=f"network_down:{network}",
            extra={"network": network, "reason": reason},
        )

    def notify_network_recovered(self, network: str) -> bool:
        if not self._config.alert_on_network_down:
            return False
        self._last_sent.pop(f"network_down:{network}", None)
        return self.send(
            f"Network {network} recovered",
            severity=AlertSeverity.INFO,
            key=f"network_up:{network}",
            extra={"network": network},
        )

    def _post(self, url: str, payload: Dict[str, Any]) -> None:
        try:
            response = self._session.post(url, json=payload, timeout=5)
            response.raise_for_status()
        except requests.RequestException as exc:  # pragma: no cover - network failures
            self._logger.warning("Failed to send alert to %s: %s", url, exc)


__all__ = ["AlertManager", "AlertSeverity"]
