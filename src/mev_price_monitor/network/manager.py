"""Per-network connection management with ordered failover and health checks."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from ..config.settings import NetworkConfig, SystemConfig
from ..datalake.schemas import BlockHeader, HealthSnapshot
from ..errors import AllEndpointsFailed, EndpointError
from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRecorder
from ..utils.constants import utc_now
from .client import ChainClient, Web3ChainClient
from .endpoints import Endpoint, EndpointPool

Connector = Callable[[NetworkConfig, Endpoint], ChainClient]
StatusListener = Callable[[str, bool, Optional[str]], None]


def web3_connector(network: NetworkConfig, endpoint: Endpoint) -> ChainClient:
    return Web3ChainClient(endpoint.url, endpoint.transport)


@dataclass(slots=True)
class NetworkConnection:
    """The live handle to a network. Owned and mutated by ``ConnectionManager`` only."""

    network: str
    client: ChainClient
    endpoint_index: int
    endpoint_url: str
    healthy: bool = True
    block_number: Optional[int] = None
    block_time: Optional[datetime] = None
    established_at: datetime = field(default_factory=utc_now)


class ConnectionManager:
    """Resolves a working connection per network.

    A healthy cached connection is returned without I/O. Otherwise endpoints
    are probed in configured order; every endpoint that fails its probe (after
    internal retries) has its error counter incremented once and is
    deactivated when the counter reaches its retry budget. Concurrent
    resolutions of the same network share one in-flight attempt.
    """

    def __init__(
        self,
        networks: Mapping[str, NetworkConfig],
        system: SystemConfig,
        *,
        connector: Optional[Connector] = None,
        recorder: Optional[MetricsRecorder] = None,
        clock: Callable[[], datetime] = utc_now,
        on_status_change: Optional[StatusListener] = None,
    ) -> None:
        self._networks = dict(networks)
        self._system = system
        self._connector = connector or web3_connector
        self._recorder = recorder
        self._clock = clock
        self._on_status_change = on_status_change
        self._logger = get_logger(__name__)
        self._pools: Dict[str, EndpointPool] = {
            network_id: EndpointPool(config, system.max_retries)
            for network_id, config in self._networks.items()
        }
        self._connections: Dict[str, NetworkConnection] = {}
        self._inflight: Dict[str, "asyncio.Future[NetworkConnection]"] = {}
        self._status: Dict[str, Optional[bool]] = {network_id: None for network_id in self._networks}
        self._last_error: Dict[str, Optional[str]] = {network_id: None for network_id in self._networks}

    @property
    def networks(self) -> List[str]:
        return list(self._networks)

    def network_config(self, network: str) -> NetworkConfig:
        try:
            return self._networks[network]
        except KeyError:
            raise KeyError(f"Unknown network: {network}") from None

    def pool(self, network: str) -> EndpointPool:
        self.network_config(network)
        return self._pools[network]

    def stall_tolerance_seconds(self, network: str) -> float:
        config = self.network_config(network)
        return max(
            config.block_time_seconds * self._system.stall_tolerance_blocks,
            self._system.min_stall_tolerance_seconds,
        )

    async def resolve(self, network: str) -> NetworkConnection:
        """Return a healthy connection for ``network`` or raise ``AllEndpointsFailed``."""

        self.network_config(network)
        connection = self._connections.get(network)
        if connection is not None and connection.healthy:
            return connection
        return await self._establish_once(network)

    async def current_block(self, network: str) -> int:
        connection = await self.resolve(network)
        number = await self._read(connection, "block_number", connection.client.get_block_number)
        connection.block_number = int(number)
        return connection.block_number

    async def current_fee_rate(self, network: str) -> int:
        """Current gas price in wei."""

        connection = await self.resolve(network)
        return int(await self._read(connection, "gas_price", connection.client.get_gas_price))

    def mark_unhealthy(self, network: str, reason: str) -> None:
        """Flag the current connection so the next caller re-resolves."""

        connection = self._connections.get(network)
        if connection is None or not connection.healthy:
            return
        connection.healthy = False
        endpoint = self._pools[network][connection.endpoint_index]
        if endpoint.record_failure(reason, self._clock()):
            self._logger.warning(
                "Endpoint deactivated",
                extra={"network": network, "endpoint": endpoint.url, "reason": reason},
            )
        self._logger.warning("Connection marked unhealthy", extra={"network": network, "reason": reason})

    async def health_check(self, network: str) -> HealthSnapshot:
        """Re-probe ``network`` from its first endpoint, even if the cached connection looks healthy."""

        pool = self.pool(network)
        now = self._clock()
        revived = pool.reactivate_cooled(now, self._system.endpoint_cooldown_seconds)
        for endpoint in revived:
            self._logger.info(
                "Endpoint reactivated after cool-down",
                extra={"network": network, "endpoint": endpoint.url},
            )
        started = time.perf_counter()
        error: Optional[str] = None
        try:
            await self._establish_once(network)
        except AllEndpointsFailed as exc:
            error = str(exc)
        duration_ms = (time.perf_counter() - started) * 1000
        self._record("connection.health_check", duration_ms, error is None, network=network, reason=error)
        return self.snapshot(network, error=error)

    async def health_check_all(self) -> List[HealthSnapshot]:
        results = await asyncio.gather(
            *(self.health_check(network) for network in self._networks), return_exceptions=True
        )
        snapshots: List[HealthSnapshot] = []
        for network, result in zip(self._networks, results):
            if isinstance(result, BaseException):
                self._logger.error(
                    "Health check crashed", extra={"network": network, "error": repr(result)}
                )
                snapshots.append(self.snapshot(network, error=repr(result)))
            else:
                snapshots.append(result)
        return snapshots

    def connection_status(self) -> Dict[str, bool]:
        return {
            network: bool(self._connections.get(network) and self._connections[network].healthy)
            for network in self._networks
        }

    def snapshot(self, network: str, *, error: Optional[str] = None) -> HealthSnapshot:
        pool = self._pools[network]
        connection = self._connections.get(network)
        healthy = bool(connection and connection.healthy)
        endpoint = pool[connection.endpoint_index] if connection else None
        return HealthSnapshot(
            network=network,
            healthy=healthy,
            endpoint_url=connection.endpoint_url if connection else None,
            block_number=connection.block_number if connection else None,
            block_time=connection.block_time if connection else None,
            latency_ms=endpoint.latency_ms if endpoint else None,
            error_count=sum(item.error_count for item in pool),
            active_endpoints=pool.active_count,
            total_endpoints=len(pool),
            timestamp=self._clock(),
            error=error or (None if healthy else self._last_error.get(network)),
        )

    def connection_details(self) -> Dict[str, Dict[str, Any]]:
        details: Dict[str, Dict[str, Any]] = {}
        for network in self._networks:
            connection = self._connections.get(network)
            details[network] = {
                "healthy": bool(connection and connection.healthy),
                "endpoint_index": connection.endpoint_index if connection else None,
                "endpoint_url": connection.endpoint_url if connection else None,
                "block_number": connection.block_number if connection else None,
                "block_time": connection.block_time.isoformat()
                if connection and connection.block_time
                else None,
                "last_error": self._last_error.get(network),
                "endpoints": self._pools[network].snapshot(),
            }
        return details

    def reset_endpoint(self, network: str, index: Optional[int] = None) -> None:
        """Clear error state for one endpoint, or every endpoint when ``index`` is None."""

        self.pool(network).reset(index)
        self._last_error[network] = None
        self._logger.info("Endpoint state reset", extra={"network": network, "index": index})

    async def close(self) -> None:
        for future in list(self._inflight.values()):
            future.cancel()
        self._inflight.clear()
        connections = list(self._connections.values())
        self._connections.clear()
        for connection in connections:
            await self._close_client(connection.client)

    async def _establish_once(self, network: str) -> NetworkConnection:
        future = self._inflight.get(network)
        if future is None:
            future = asyncio.ensure_future(self._establish(network))
            self._inflight[network] = future
            future.add_done_callback(lambda done, key=network: self._finish_inflight(key, done))
        return await asyncio.shield(future)

    def _finish_inflight(self, network: str, future: "asyncio.Future[NetworkConnection]") -> None:
        if self._inflight.get(network) is future:
            del self._inflight[network]
        if not future.cancelled():
            future.exception()

    async def _establish(self, network: str) -> NetworkConnection:
        config = self._networks[network]
        pool = self._pools[network]
        previous = self._connections.get(network)
        started = time.perf_counter()
        attempted = 0
        for endpoint in pool.eligible():
            attempted += 1
            reused = previous is not None and previous.endpoint_index == endpoint.index
            client = previous.client if reused else self._connector(config, endpoint)
            probe_started = time.perf_counter()
            try:
                header = await self._probe(network, endpoint, client)
            except Exception as exc:  # noqa: BLE001
                reason = str(exc) or type(exc).__name__
                if reused:
                    self._connections.pop(network, None)
                    previous = None
                await self._close_client(client)
                deactivated = endpoint.record_failure(reason, self._clock())
                self._logger.warning(
                    "Endpoint probe failed",
                    extra={
                        "network": network,
                        "endpoint": endpoint.url,
                        "error_count": endpoint.error_count,
                        "reason": reason,
                    },
                )
                if deactivated:
                    self._logger.warning(
                        "Endpoint deactivated", extra={"network": network, "endpoint": endpoint.url}
                    )
                self._last_error[network] = reason
                continue
            latency_ms = (time.perf_counter() - probe_started) * 1000
            now = self._clock()
            endpoint.record_success(latency_ms, now)
            connection = NetworkConnection(
                network=network,
                client=client,
                endpoint_index=endpoint.index,
                endpoint_url=endpoint.url,
                healthy=True,
                block_number=header.number,
                block_time=header.timestamp,
                established_at=previous.established_at if reused and previous else now,
            )
            self._connections[network] = connection
            if previous is not None and not reused:
                await self._close_client(previous.client)
            self._last_error[network] = None
            if not reused:
                self._logger.info(
                    "Connected",
                    extra={
                        "network": network,
                        "endpoint": endpoint.url,
                        "block_number": header.number,
                        "latency_ms": round(latency_ms, 2),
                    },
                )
            self._set_status(network, True, None)
            self._record(
                "connection.resolve", (time.perf_counter() - started) * 1000, True, network=network
            )
            return connection

        stale = self._connections.get(network)
        if stale is not None:
            stale.healthy = False
        reason = self._last_error.get(network) or "no eligible endpoints"
        self._last_error[network] = reason
        self._logger.error(
            "All endpoints failed",
            extra={"network": network, "attempted": attempted, "reason": reason},
        )
        self._set_status(network, False, reason)
        self._record(
            "connection.resolve",
            (time.perf_counter() - started) * 1000,
            False,
            network=network,
            reason=reason,
        )
        raise AllEndpointsFailed(network, attempted)

    async def _probe(self, network: str, endpoint: Endpoint, client: ChainClient) -> BlockHeader:
        header: Optional[BlockHeader] = None
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._system.probe_attempts),
            wait=wait_exponential(multiplier=self._system.probe_backoff_seconds, max=2.0),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                header = await asyncio.wait_for(
                    client.get_latest_block(), timeout=self._system.connection_timeout
                )
        if header is None:
            raise EndpointError(network, endpoint.url, "probe returned no block")
        lag = (self._clock() - header.timestamp).total_seconds()
        tolerance = self.stall_tolerance_seconds(network)
        if lag > tolerance:
            raise EndpointError(
                network,
                endpoint.url,
                f"chain head stalled at block {header.number} ({lag:.0f}s old, tolerance {tolerance:.0f}s)",
            )
        return header

    async def _read(self, connection: NetworkConnection, operation: str, reader: Callable[[], Any]) -> Any:
        try:
            return await asyncio.wait_for(reader(), timeout=self._system.fetch_timeout)
        except Exception as exc:  # noqa: BLE001
            reason = f"{operation} read failed: {exc or type(exc).__name__}"
            self.mark_unhealthy(connection.network, reason)
            raise EndpointError(connection.network, connection.endpoint_url, reason) from exc

    def _set_status(self, network: str, healthy: bool, reason: Optional[str]) -> None:
        previous = self._status.get(network)
        self._status[network] = healthy
        changed = previous != healthy if previous is not None else not healthy
        if changed and self._on_status_change is not None:
            try:
                self._on_status_change(network, healthy, reason)
            except Exception:  # noqa: BLE001
                self._logger.exception("Status listener failed", extra={"network": network})

    def _record(self, operation: str, duration_ms: float, success: bool, **labels: Any) -> None:
        if self._recorder is not None:
            self._recorder.record(operation, duration_ms, success, **labels)

    async def _close_client(self, client: ChainClient) -> None:
        try:
            await client.close()
        except Exception as exc:  # noqa: BLE001
            self._logger.debug("Failed to close client %s: %s", getattr(client, "url", client), exc)


__all__ = ["ConnectionManager", "Connector", "NetworkConnection", "web3_connector"]
