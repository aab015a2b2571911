"""Per-network endpoint state: liveness, latency, and retry budget."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from ..config.settings import NetworkConfig, TransportKind

LATENCY_SMOOTHING = 0.3


@dataclass(slots=True)
class Endpoint:
    """One candidate access point for a network. Never removed, only deactivated."""

    index: int
    url: str
    transport: TransportKind
    max_retries: int
    active: bool = True
    error_count: int = 0
    last_used: Optional[datetime] = None
    latency_ms: Optional[float] = None
    deactivated_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def eligible(self) -> bool:
        return self.active and self.error_count < self.max_retries

    def record_success(self, latency_ms: float, now: datetime) -> None:
        if self.latency_ms is None:
            self.latency_ms = latency_ms
        else:
            self.latency_ms = (1 - LATENCY_SMOOTHING) * self.latency_ms + LATENCY_SMOOTHING * latency_ms
        self.error_count = 0
        self.active = True
        self.deactivated_at = None
        self.last_error = None
        self.last_used = now

    def record_failure(self, reason: str, now: datetime) -> bool:
        """Count one failure; returns True if this failure deactivated the endpoint."""

        self.error_count += 1
        self.last_error = reason
        self.last_used = now
        if self.active and self.error_count >= self.max_retries:
            self.active = False
            self.deactivated_at = now
            return True
        return False

    def reset(self) -> None:
        self.active = True
        self.error_count = 0
        self.deactivated_at = None
        self.last_error = None

    def cooled_down(self, now: datetime, cooldown_seconds: float) -> bool:
        if self.eligible:
            return False
        since = self.deactivated_at or self.last_used
        if since is None:
            return True
        return (now - since).total_seconds() >= cooldown_seconds

    def snapshot(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "url": self.url,
            "transport": self.transport.value,
            "active": self.active,
            "error_count": self.error_count,
            "max_retries": self.max_retries,
            "latency_ms": self.latency_ms,
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "deactivated_at": self.deactivated_at.isoformat() if self.deactivated_at else None,
            "last_error": self.last_error,
        }


class EndpointPool:
    """Ordered endpoints of one network."""

    def __init__(self, network: NetworkConfig, default_max_retries: int) -> None:
        self.network = network.id
        self._endpoints: List[Endpoint] = [
            Endpoint(
                index=index,
                url=endpoint.url,
                transport=endpoint.transport or TransportKind.HTTP,
                max_retries=endpoint.max_retries or default_max_retries,
            )
            for index, endpoint in enumerate(network.endpoints)
        ]

    def __iter__(self) -> Iterator[Endpoint]:
        return iter(self._endpoints)

    def __len__(self) -> int:
        return len(self._endpoints)

    def __getitem__(self, index: int) -> Endpoint:
        return self._endpoints[index]

    def eligible(self) -> List[Endpoint]:
        return [endpoint for endpoint in self._endpoints if endpoint.eligible]

    @property
    def active_count(self) -> int:
        return sum(1 for endpoint in self._endpoints if endpoint.eligible)

    def reactivate_cooled(self, now: datetime, cooldown_seconds: float) -> List[Endpoint]:
        revived = [endpoint for endpoint in self._endpoints if endpoint.cooled_down(now, cooldown_seconds)]
        for endpoint in revived:
            endpoint.reset()
        return revived

    def reset(self, index: Optional[int] = None) -> None:
        targets = self._endpoints if index is None else [self._endpoints[index]]
        for endpoint in targets:
            endpoint.reset()

    def snapshot(self) -> List[Dict[str, Any]]:
        return [endpoint.snapshot() for endpoint in self._endpoints]


__all__ = ["Endpoint", "EndpointPool"]
