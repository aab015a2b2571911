"""EVM JSON-RPC client wrapper used by the connection manager."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Protocol, Sequence

from web3 import AsyncHTTPProvider, AsyncWeb3, WebSocketProvider

from ..config.settings import TransportKind
from ..datalake.schemas import BlockHeader
from ..monitoring.logger import get_logger


class ChainClient(Protocol):
    """Read-only operations the monitor needs from a chain endpoint."""

    url: str

    async def get_latest_block(self) -> BlockHeader:
        ...

    async def get_block_number(self) -> int:
        ...

    async def get_gas_price(self) -> int:
        ...

    async def call(self, address: str, abi: Sequence[Dict[str, Any]], function: str, *args: Any) -> Any:
        ...

    async def close(self) -> None:
        ...


class Web3ChainClient:
    """``ChainClient`` backed by ``web3.AsyncWeb3`` over HTTP or WebSocket."""

    def __init__(self, url: str, transport: TransportKind = TransportKind.HTTP) -> None:
        self.url = url
        self._transport = transport
        self._logger = get_logger(__name__)
        if transport == TransportKind.WEBSOCKET:
            self._w3 = AsyncWeb3(WebSocketProvider(url))
        else:
            self._w3 = AsyncWeb3(AsyncHTTPProvider(url))
        self._connected = transport != TransportKind.WEBSOCKET
        self._contracts: Dict[str, Any] = {}

    async def _ensure_connected(self) -> AsyncWeb3:
        if not self._connected:
            await self._w3.provider.connect()
            self._connected = True
        return self._w3

    async def get_latest_block(self) -> BlockHeader:
        w3 = await self._ensure_connected()
        block = await w3.eth.get_block("latest")
        return BlockHeader(
            number=int(block["number"]),
            timestamp=datetime.fromtimestamp(int(block["timestamp"]), timezone.utc),
        )

    async def get_block_number(self) -> int:
        w3 = await self._ensure_connected()
        return int(await w3.eth.block_number)

    async def get_gas_price(self) -> int:
        w3 = await self._ensure_connected()
        return int(await w3.eth.gas_price)

    async def call(self, address: str, abi: Sequence[Dict[str, Any]], function: str, *args: Any) -> Any:
        w3 = await self._ensure_connected()
        key = f"{address.lower()}:{id(abi)}"
        contract = self._contracts.get(key)
        if contract is None:
            contract = w3.eth.contract(address=w3.to_checksum_address(address), abi=list(abi))
            self._contracts[key] = contract
        return await getattr(contract.functions, function)(*args).call()

    async def close(self) -> None:
        provider = self._w3.provider
        if self._transport == TransportKind.WEBSOCKET:
            if self._connected:
                await provider.disconnect()
                self._connected = False
            return
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            try:
                await disconnect()
            except Exception as exc:  # noqa: BLE001
                self._logger.debug("Failed to close HTTP session for %s: %s", self.url, exc)


__all__ = ["ChainClient", "Web3ChainClient"]
