"""Exception hierarchy shared by the monitoring pipeline."""

from __future__ import annotations

from typing import Optional


class MonitorError(Exception):
    """Base class for errors raised by the price monitor."""


class ConfigurationError(MonitorError, ValueError):
    """Raised when the configuration cannot be used to start monitoring."""


class EndpointError(MonitorError):
    """A single endpoint failed to answer a probe or read."""

    def __init__(self, network: str, url: str, reason: str) -> None:
        super().__init__(f"{network} endpoint {url} failed: {reason}")
        self.network = network
        self.url = url
        self.reason = reason


class AllEndpointsFailed(MonitorError):
    """No endpoint of a network could be connected."""

    def __init__(self, network: str, attempted: int = 0) -> None:
        super().__init__(f"All endpoints failed for network {network} ({attempted} attempted)")
        self.network = network
        self.attempted = attempted


class QuoteError(MonitorError):
    """A venue quote could not be produced."""

    def __init__(self, message: str, *, network: Optional[str] = None, venue: Optional[str] = None) -> None:
        super().__init__(message)
        self.network = network
        self.venue = venue


class InvalidQuote(QuoteError):
    """A quote was produced but failed plausibility checks."""


__all__ = [
    "AllEndpointsFailed",
    "ConfigurationError",
    "EndpointError",
    "InvalidQuote",
    "MonitorError",
    "QuoteError",
]
