"""Latest-quote cache keyed by (network, venue, pair)."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from ..datalake.schemas import Quote, QuoteKey
from ..utils.constants import utc_now


class PriceCache:
    """Holds the most recent quote per key; staleness is applied at read time."""

    def __init__(self, max_age_seconds: float, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._max_age = max_age_seconds
        self._clock = clock
        self._entries: Dict[QuoteKey, Quote] = {}
        self._rank: Dict[QuoteKey, int] = {}
        self._lock = threading.Lock()

    @property
    def max_age_seconds(self) -> float:
        return self._max_age

    def set_order(self, keys: Iterable[QuoteKey]) -> None:
        """Fix the read order of ``keys``; unranked keys follow in insertion order."""

        with self._lock:
            self._rank = {key: index for index, key in enumerate(keys)}

    def put(self, quote: Quote, key: Optional[QuoteKey] = None) -> None:
        with self._lock:
            self._entries[key or quote.key] = quote

    def get(self, key: QuoteKey) -> Optional[Quote]:
        with self._lock:
            return self._entries.get(key)

    def all_fresh(self, now: Optional[datetime] = None) -> List[Quote]:
        """Quotes younger than the staleness window, in poll-target order."""

        now = now or self._clock()
        with self._lock:
            unranked = len(self._rank)
            ordered = sorted(self._entries.items(), key=lambda item: self._rank.get(item[0], unranked))
        quotes = [quote for _, quote in ordered]
        return [quote for quote in quotes if quote.is_fresh(now, self._max_age)]

    def fresh_for_pair(self, pair: str, now: Optional[datetime] = None) -> List[Quote]:
        return [quote for quote in self.all_fresh(now) if quote.pair == pair]

    def stale_keys(self, now: Optional[datetime] = None) -> List[QuoteKey]:
        now = now or self._clock()
        with self._lock:
            return [key for key, quote in self._entries.items() if not quote.is_fresh(now, self._max_age)]

    def keys(self) -> List[QuoteKey]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["PriceCache"]
