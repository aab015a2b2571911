"""Cross-venue price discrepancy detection and profitability modelling."""

from __future__ import annotations

import math
from datetime import datetime
from itertools import combinations
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from ..config.settings import SizingMode, TradingConfig
from ..datalake.schemas import Opportunity, Quote
from ..monitoring.logger import get_logger
from ..utils.constants import utc_now
from .costs import CostEstimator


def price_difference_pct(first: float, second: float) -> float:
    low = min(first, second)
    if low <= 0:
        return 0.0
    return abs(first - second) / low * 100


class OpportunityDetector:
    """Compares every venue pair for one token pair and costs the discrepancy."""

    def __init__(
        self,
        trading: TradingConfig,
        max_quote_age: float,
        *,
        cost_estimator: Optional[CostEstimator] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._trading = trading
        self._max_quote_age = max_quote_age
        self._costs = cost_estimator
        self._clock = clock
        self._logger = get_logger(__name__)

    def is_profitable(self, net_profit: float, net_margin_pct: float, total_cost: float) -> bool:
        return (
            net_profit > 0
            and net_margin_pct >= self._trading.min_profit_threshold
            and total_cost <= self._trading.max_gas_cost
        )

    def trade_size(self, buy: Quote, sell: Quote) -> float:
        mode = self._trading.sizing_mode
        if mode == SizingMode.FIXED:
            return self._trading.fixed_trade_size
        if mode == SizingMode.MIN_LIQUIDITY:
            size = min(buy.liquidity, sell.liquidity)
        else:
            size = buy.liquidity
        return size * self._trading.trade_size_fraction

    def eligible_quotes(self, quotes: Sequence[Quote], now: datetime) -> List[Quote]:
        eligible: List[Quote] = []
        for quote in quotes:
            if not quote.is_fresh(now, self._max_quote_age):
                continue
            if not math.isfinite(quote.price) or quote.price <= 0 or quote.liquidity < 0:
                continue
            if quote.liquidity * quote.price < self._trading.min_liquidity_threshold:
                continue
            eligible.append(quote)
        return eligible

    def detect(
        self,
        quotes: Sequence[Quote],
        costs: Mapping[str, float],
        now: Optional[datetime] = None,
    ) -> List[Opportunity]:
        """All costed discrepancies for one pair, in combination order.

        ``costs`` maps network id to the per-side execution cost in USD.
        """

        now = now or self._clock()
        fresh = self.eligible_quotes(quotes, now)
        if len(fresh) < 2:
            return []
        opportunities: List[Opportunity] = []
        for first, second in combinations(fresh, 2):
            if first.venue_key == second.venue_key:
                continue
            gap_pct = price_difference_pct(first.price, second.price)
            if gap_pct < self._trading.min_profit_threshold:
                continue
            buy, sell = (first, second) if first.price <= second.price else (second, first)
            opportunities.append(self._build(buy, sell, gap_pct, costs, now))
        return opportunities

    def detect_all(
        self,
        quotes: Sequence[Quote],
        costs: Mapping[str, float],
        now: Optional[datetime] = None,
    ) -> List[Opportunity]:
        now = now or self._clock()
        by_pair: Dict[str, List[Quote]] = {}
        for quote in quotes:
            by_pair.setdefault(quote.pair, []).append(quote)
        opportunities: List[Opportunity] = []
        for pair_quotes in by_pair.values():
            opportunities.extend(self.detect(pair_quotes, costs, now))
        return opportunities

    async def validate(self, opportunity: Opportunity, now: Optional[datetime] = None) -> bool:
        """Re-cost ``opportunity`` and confirm it is still fresh and profitable."""

        now = now or self._clock()
        if (now - opportunity.created_at).total_seconds() >= self._max_quote_age:
            return False
        if not (
            opportunity.buy.is_fresh(now, self._max_quote_age)
            and opportunity.sell.is_fresh(now, self._max_quote_age)
        ):
            return False
        if self._costs is None:
            buy_cost, sell_cost = opportunity.buy_cost, opportunity.sell_cost
        else:
            buy_cost = await self._costs.estimate(opportunity.buy.network)
            sell_cost = await self._costs.estimate(opportunity.sell.network)
        total_cost = buy_cost + sell_cost
        net_profit = opportunity.gross_profit - total_cost
        margin = net_profit / opportunity.gross_profit * 100 if opportunity.gross_profit > 0 else 0.0
        valid = self.is_profitable(net_profit, margin, total_cost)
        self._logger.debug(
            "Opportunity validated",
            extra={"opportunity_id": opportunity.id, "valid": valid, "net_profit": net_profit},
        )
        return valid

    def _side_cost(self, costs: Mapping[str, float], network: str) -> float:
        cost = costs.get(network)
        if cost is None or not math.isfinite(cost):
            self._logger.warning("Missing cost estimate; assuming the gas ceiling", extra={"network": network})
            return self._trading.max_gas_cost
        return cost

    def _build(
        self,
        buy: Quote,
        sell: Quote,
        gap_pct: float,
        costs: Mapping[str, float],
        now: datetime,
    ) -> Opportunity:
        difference = sell.price - buy.price
        size = self.trade_size(buy, sell)
        gross = difference * size
        buy_cost = self._side_cost(costs, buy.network)
        sell_cost = self._side_cost(costs, sell.network)
        total_cost = buy_cost + sell_cost
        net = gross - total_cost
        if gross > 0 and math.isfinite(gross):
            margin = net / gross * 100
            profitable = self.is_profitable(net, margin, total_cost)
        else:
            margin = 0.0
            profitable = False
        return Opportunity(
            pair=buy.pair,
            buy=buy,
            sell=sell,
            price_difference=difference,
            price_difference_pct=gap_pct,
            trade_size=size,
            gross_profit=gross,
            buy_cost=buy_cost,
            sell_cost=sell_cost,
            total_cost=total_cost,
            net_profit=net,
            net_margin_pct=margin,
            profitable=profitable,
            min_profit_threshold=self._trading.min_profit_threshold,
            max_gas_cost=self._trading.max_gas_cost,
            created_at=now,
        )


__all__ = ["OpportunityDetector", "price_difference_pct"]
