"""Data models used across ingestion, analysis, and storage layers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, NamedTuple, Optional

from ..utils.constants import utc_now


def _new_id() -> str:
    return str(uuid.uuid4())


class QuoteKey(NamedTuple):
    """Identifies the cache slot of a quote."""

    network: str
    venue: str
    pair: str


@dataclass(slots=True, frozen=True)
class BlockHeader:
    """Minimal view of a chain head returned by a probe."""

    number: int
    timestamp: datetime


@dataclass(slots=True, frozen=True)
class Quote:
    """One price and liquidity observation for a pair on a venue."""

    network: str
    venue: str
    pair: str
    price: float
    liquidity: float
    block_number: int
    observed_at: datetime = field(default_factory=utc_now)
    fee_tier: Optional[int] = None
    pool_address: Optional[str] = None
    id: str = field(default_factory=_new_id)

    @property
    def key(self) -> QuoteKey:
        return QuoteKey(self.network, self.venue, self.pair)

    @property
    def venue_key(self) -> tuple[str, str]:
        return (self.network, self.venue)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.observed_at).total_seconds()

    def is_fresh(self, now: datetime, max_age_seconds: float) -> bool:
        return self.age_seconds(now) < max_age_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "network": self.network,
            "venue": self.venue,
            "pair": self.pair,
            "price": self.price,
            "liquidity": self.liquidity,
            "block_number": self.block_number,
            "observed_at": self.observed_at.isoformat(),
            "fee_tier": self.fee_tier,
            "pool_address": self.pool_address,
        }


@dataclass(slots=True, frozen=True)
class Opportunity:
    """A costed price discrepancy between two venues for the same pair.

    ``buy`` always carries the lower price. ``profitable`` is computed once at
    construction time from the other fields and never updated.
    """

    pair: str
    buy: Quote
    sell: Quote
    price_difference: float
    price_difference_pct: float
    trade_size: float
    gross_profit: float
    buy_cost: float
    sell_cost: float
    total_cost: float
    net_profit: float
    net_margin_pct: float
    profitable: bool
    min_profit_threshold: float
    max_gas_cost: float
    created_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=_new_id)

    @property
    def route(self) -> str:
        return (
            f"{self.buy.network}:{self.buy.venue} -> {self.sell.network}:{self.sell.venue}"
        )

    @property
    def cross_network(self) -> bool:
        return self.buy.network != self.sell.network

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pair": self.pair,
            "buy_network": self.buy.network,
            "buy_venue": self.buy.venue,
            "buy_price": self.buy.price,
            "sell_network": self.sell.network,
            "sell_venue": self.sell.venue,
            "sell_price": self.sell.price,
            "price_difference": self.price_difference,
            "price_difference_pct": self.price_difference_pct,
            "trade_size": self.trade_size,
            "gross_profit": self.gross_profit,
            "buy_cost": self.buy_cost,
            "sell_cost": self.sell_cost,
            "total_cost": self.total_cost,
            "net_profit": self.net_profit,
            "net_margin_pct": self.net_margin_pct,
            "profitable": self.profitable,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class HealthSnapshot:
    """Connection health of one network at a point in time."""

    network: str
    healthy: bool
    endpoint_url: Optional[str] = None
    block_number: Optional[int] = None
    block_time: Optional[datetime] = None
    latency_ms: Optional[float] = None
    error_count: int = 0
    active_endpoints: int = 0
    total_endpoints: int = 0
    timestamp: datetime = field(default_factory=utc_now)
    error: Optional[str] = None


@dataclass(slots=True, frozen=True)
class MetricEvent:
    """Duration and outcome of a single pipeline operation."""

    operation: str
    duration_ms: float
    success: bool
    network: Optional[str] = None
    venue: Optional[str] = None
    pair: Optional[str] = None
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "network": self.network,
            "venue": self.venue,
            "pair": self.pair,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


__all__ = [
    "BlockHeader",
    "HealthSnapshot",
    "MetricEvent",
    "Opportunity",
    "Quote",
    "QuoteKey",
]
