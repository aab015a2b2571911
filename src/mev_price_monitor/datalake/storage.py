"""Persistence layer for quotes, opportunities, and pipeline health."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol

from ..utils.constants import utc_now
from .schemas import HealthSnapshot, MetricEvent, Opportunity, Quote


class StorageAdapter(Protocol):
    """Interface describing storage backends (SQLite, Postgres, ...)."""

    def record_quotes(self, quotes: Iterable[Quote]) -> None:
        ...

    def record_opportunity(self, opportunity: Opportunity) -> None:
        ...

    def record_health_snapshot(self, snapshot: HealthSnapshot) -> None:
        ...

    def record_metric_event(self, event: MetricEvent) -> None:
        ...


CREATE_QUOTE_TABLE = """
CREATE TABLE IF NOT EXISTS quotes (
    id TEXT PRIMARY KEY,
    network TEXT NOT NULL,
    venue TEXT NOT NULL,
    pair TEXT NOT NULL,
    price REAL NOT NULL,
    liquidity REAL NOT NULL,
    block_number INTEGER NOT NULL,
    observed_at TEXT NOT NULL,
    fee_tier INTEGER,
    pool_address TEXT
);
"""

CREATE_QUOTE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_quotes_pair_observed ON quotes (pair, observed_at);
"""

CREATE_OPPORTUNITY_TABLE = """
CREATE TABLE IF NOT EXISTS opportunities (
    id TEXT PRIMARY KEY,
    pair TEXT NOT NULL,
    buy_quote_id TEXT NOT NULL,
    buy_network TEXT NOT NULL,
    buy_venue TEXT NOT NULL,
    buy_price REAL NOT NULL,
    sell_quote_id TEXT NOT NULL,
    sell_network TEXT NOT NULL,
    sell_venue TEXT NOT NULL,
    sell_price REAL NOT NULL,
    price_difference REAL NOT NULL,
    price_difference_pct REAL NOT NULL,
    trade_size REAL NOT NULL,
    gross_profit REAL NOT NULL,
    total_cost REAL NOT NULL,
    net_profit REAL NOT NULL,
    net_margin_pct REAL NOT NULL,
    profitable INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
"""

CREATE_HEALTH_TABLE = """
CREATE TABLE IF NOT EXISTS system_health (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    network TEXT NOT NULL,
    healthy INTEGER NOT NULL,
    endpoint_url TEXT,
    block_number INTEGER,
    block_time TEXT,
    latency_ms REAL,
    error_count INTEGER NOT NULL,
    active_endpoints INTEGER NOT NULL,
    total_endpoints INTEGER NOT NULL,
    error TEXT,
    timestamp TEXT NOT NULL
);
"""

CREATE_METRIC_TABLE = """
CREATE TABLE IF NOT EXISTS performance_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation TEXT NOT NULL,
    duration_ms REAL NOT NULL,
    success INTEGER NOT NULL,
    network TEXT,
    venue TEXT,
    pair TEXT,
    reason TEXT,
    timestamp TEXT NOT NULL
);
"""

CREATE_SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER NOT NULL
);
"""

SCHEMA_VERSION = 1

_QUOTE_COLUMNS = (
    "id, network, venue, pair, price, liquidity, block_number, observed_at, fee_tier, pool_address"
)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStorage:
    """SQLite-backed storage for observations, opportunities, and health history."""

    def __init__(self, database_path: Path) -> None:
        self._database_path = Path(database_path).resolve()
        self._initialize()

    @property
    def database_path(self) -> Path:
        return self._database_path

    def _initialize(self) -> None:
        self._database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute(CREATE_QUOTE_TABLE)
            con.execute(CREATE_OPPORTUNITY_TABLE)
            con.execute(CREATE_HEALTH_TABLE)
            con.execute(CREATE_METRIC_TABLE)
            con.execute(CREATE_QUOTE_INDEX)
            con.execute(CREATE_SCHEMA_VERSION_TABLE)
            self._apply_migrations(con)
            con.commit()

    def _apply_migrations(self, con: sqlite3.Connection) -> None:
        current = self._get_schema_version(con)
        if current != SCHEMA_VERSION:
            self._set_schema_version(con, SCHEMA_VERSION)

    def _get_schema_version(self, con: sqlite3.Connection) -> int:
        cur = con.execute("SELECT version FROM schema_migrations ORDER BY ROWID DESC LIMIT 1")
        row = cur.fetchone()
        if row is None:
            return 0
        try:
            return int(row[0])
        except (TypeError, ValueError):  # pragma: no cover
            return 0

    def _set_schema_version(self, con: sqlite3.Connection, version: int) -> None:
        con.execute("DELETE FROM schema_migrations")
        con.execute("INSERT INTO schema_migrations (version) VALUES (?)", (version,))

    def schema_version(self) -> int:
        with self._connect() as con:
            return self._get_schema_version(con)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self._database_path)
        try:
            yield con
        finally:
            con.close()

    # Quotes -----------------------------------------------------------------

    def record_quotes(self, quotes: Iterable[Quote]) -> None:
        rows = [
            (
                quote.id,
                quote.network,
                quote.venue,
                quote.pair,
                quote.price,
                quote.liquidity,
                quote.block_number,
                quote.observed_at.isoformat(),
                quote.fee_tier,
                quote.pool_address,
            )
            for quote in quotes
        ]
        if not rows:
            return
        with self._connect() as con:
            con.executemany(
                f"INSERT OR REPLACE INTO quotes ({_QUOTE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
            con.commit()

    def list_quotes(
        self,
        limit: int = 100,
        *,
        pair: Optional[str] = None,
        network: Optional[str] = None,
        venue: Optional[str] = None,
    ) -> List[Quote]:
        query = f"SELECT {_QUOTE_COLUMNS} FROM quotes"
        clauses: List[str] = []
        params: List[object] = []
        for column, value in (("pair", pair), ("network", network), ("venue", venue)):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY observed_at DESC LIMIT ?"
        params.append(limit)
        with self._connect() as con:
            rows = con.execute(query, params).fetchall()
        return [
            Quote(
                id=row[0],
                network=row[1],
                venue=row[2],
                pair=row[3],
                price=row[4],
                liquidity=row[5],
                block_number=row[6],
                observed_at=datetime.fromisoformat(row[7]),
                fee_tier=row[8],
                pool_address=row[9],
            )
            for row in rows
        ]

    # Opportunities ----------------------------------------------------------

    def record_opportunity(self, opportunity: Opportunity) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT OR REPLACE INTO opportunities (
                    id,
                    pair,
                    buy_quote_id,
                    buy_network,
                    buy_venue,
                    buy_price,
                    sell_quote_id,
                    sell_network,
                    sell_venue,
                    sell_price,
                    price_difference,
                    price_difference_pct,
                    trade_size,
                    gross_profit,
                    total_cost,
                    net_profit,
                    net_margin_pct,
                    profitable,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    opportunity.id,
                    opportunity.pair,
                    opportunity.buy.id,
                    opportunity.buy.network,
                    opportunity.buy.venue,
                    opportunity.buy.price,
                    opportunity.sell.id,
                    opportunity.sell.network,
                    opportunity.sell.venue,
                    opportunity.sell.price,
                    opportunity.price_difference,
                    opportunity.price_difference_pct,
                    opportunity.trade_size,
                    opportunity.gross_profit,
                    opportunity.total_cost,
                    opportunity.net_profit,
                    opportunity.net_margin_pct,
                    int(opportunity.profitable),
                    opportunity.created_at.isoformat(),
                ),
            )
            con.commit()

    def list_opportunities(
        self,
        limit: int = 50,
        *,
        profitable_only: bool = False,
        min_margin_pct: Optional[float] = None,
        pair: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return stored opportunities as plain dictionaries, best margin first."""

        query = (
            "SELECT id, pair, buy_network, buy_venue, buy_price, sell_network, sell_venue, "
            "sell_price, price_difference, price_difference_pct, trade_size, gross_profit, "
            "total_cost, net_profit, net_margin_pct, profitable, created_at FROM opportunities"
        )
        clauses: List[str] = []
        params: List[object] = []
        if profitable_only:
            clauses.append("profitable = 1")
        if min_margin_pct is not None:
            clauses.append("net_margin_pct >= ?")
            params.append(min_margin_pct)
        if pair:
            clauses.append("pair = ?")
            params.append(pair)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY net_margin_pct DESC, created_at DESC LIMIT ?"
        params.append(limit)
        with self._connect() as con:
            cur = con.execute(query, params)
            columns = [description[0] for description in cur.description]
            rows = cur.fetchall()
        results: List[Dict[str, Any]] = []
        for row in rows:
            record = dict(zip(columns, row))
            record["profitable"] = bool(record["profitable"])
            record["created_at"] = datetime.fromisoformat(record["created_at"])
            results.append(record)
        return results

    # Health -----------------------------------------------------------------

    def record_health_snapshot(self, snapshot: HealthSnapshot) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO system_health (
                    network,
                    healthy,
                    endpoint_url,
                    block_number,
                    block_time,
                    latency_ms,
                    error_count,
                    active_endpoints,
                    total_endpoints,
                    error,
                    timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.network,
                    int(snapshot.healthy),
                    snapshot.endpoint_url,
                    snapshot.block_number,
                    snapshot.block_time.isoformat() if snapshot.block_time else None,
                    snapshot.latency_ms,
                    snapshot.error_count,
                    snapshot.active_endpoints,
                    snapshot.total_endpoints,
                    snapshot.error,
                    snapshot.timestamp.isoformat(),
                ),
            )
            con.commit()

    def list_health_snapshots(
        self, limit: int = 200, network: Optional[str] = None
    ) -> List[HealthSnapshot]:
        query = (
            "SELECT network, healthy, endpoint_url, block_number, block_time, latency_ms, "
            "error_count, active_endpoints, total_endpoints, error, timestamp FROM system_health"
        )
        params: List[object] = []
        if network:
            query += " WHERE network = ?"
            params.append(network)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as con:
            rows = con.execute(query, params).fetchall()
        return [
            HealthSnapshot(
                network=row[0],
                healthy=bool(row[1]),
                endpoint_url=row[2],
                block_number=row[3],
                block_time=_parse_ts(row[4]),
                latency_ms=row[5],
                error_count=row[6],
                active_endpoints=row[7],
                total_endpoints=row[8],
                error=row[9],
                timestamp=datetime.fromisoformat(row[10]),
            )
            for row in rows
        ]

    # Metrics ----------------------------------------------------------------

    def record_metric_event(self, event: MetricEvent) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO performance_metrics (
                    operation, duration_ms, success, network, venue, pair, reason, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.operation,
                    event.duration_ms,
                    int(event.success),
                    event.network,
                    event.venue,
                    event.pair,
                    event.reason,
                    event.timestamp.isoformat(),
                ),
            )
            con.commit()

    def list_metric_events(
        self, limit: int = 200, operation: Optional[str] = None
    ) -> List[MetricEvent]:
        query = (
            "SELECT operation, duration_ms, success, network, venue, pair, reason, timestamp "
            "FROM performance_metrics"
        )
        params: List[object] = []
        if operation:
            query += " WHERE operation = ?"
            params.append(operation)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as con:
            rows = con.execute(query, params).fetchall()
        return [
            MetricEvent(
                operation=row[0],
                duration_ms=row[1],
                success=bool(row[2]),
                network=row[3],
                venue=row[4],
                pair=row[5],
                reason=row[6],
                timestamp=datetime.fromisoformat(row[7]),
            )
            for row in rows
        ]

    def performance_summary(
        self, hours: float = 24.0, *, now: Optional[datetime] = None
    ) -> Dict[str, Dict[str, float]]:
        """Aggregate metric events per operation over the trailing window."""

        cutoff = (now or utc_now()) - timedelta(hours=hours)
        with self._connect() as con:
            rows = con.execute(
                """
                SELECT operation, COUNT(*), SUM(success), AVG(duration_ms), MAX(duration_ms)
                FROM performance_metrics
                WHERE timestamp >= ?
                GROUP BY operation
                ORDER BY operation
                """,
                (cutoff.isoformat(),),
            ).fetchall()
        summary: Dict[str, Dict[str, float]] = {}
        for operation, count, successes, avg_ms, max_ms in rows:
            summary[operation] = {
                "count": float(count),
                "success_rate": float(successes or 0) / count if count else 0.0,
                "avg_duration_ms": float(avg_ms or 0.0),
                "max_duration_ms": float(max_ms or 0.0),
            }
        return summary

    # Retention --------------------------------------------------------------

    def purge_before(
        self,
        cutoff: datetime,
        *,
        long_lived_cutoff: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Delete rows older than ``cutoff``.

        Opportunities and performance metrics use ``long_lived_cutoff`` when
        given, so they can be kept longer than raw quotes.
        """

        long_cutoff = long_lived_cutoff or cutoff
        statements = (
            ("quotes", "DELETE FROM quotes WHERE observed_at < ?", cutoff),
            ("system_health", "DELETE FROM system_health WHERE timestamp < ?", cutoff),
            ("opportunities", "DELETE FROM opportunities WHERE created_at < ?", long_cutoff),
            ("performance_metrics", "DELETE FROM performance_metrics WHERE timestamp < ?", long_cutoff),
        )
        removed: Dict[str, int] = {}
        with self._connect() as con:
            for table, statement, threshold in statements:
                cur = con.execute(statement, (threshold.isoformat(),))
                removed[table] = cur.rowcount
            con.commit()
        return removed


__all__ = ["SQLiteStorage", "StorageAdapter"]
