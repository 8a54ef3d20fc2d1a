"""
Modbus Connection Pool

Scoped pool of ModbusClient instances keyed by "host:port". A pool lives
for one orchestrator run: connections are reused across the data points
of that run and closed on exit, including on error paths.

Usage:
    async with ConnectionPool(timeout=5.0) as pool:
        client = await pool.get_connection(gateway.host, gateway.port)
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from gateway_poller.common.logging_setup import get_service_logger

from .modbus_client import ModbusClient, DEFAULT_TIMEOUT

logger = get_service_logger("device.pool")


@dataclass
class PooledConnection:
    """A pooled Modbus TCP connection"""
    client: ModbusClient
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    use_count: int = 0


class ConnectionPool:
    """Connections cached by host:port for the lifetime of one run."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        retry_delays: list[float] | None = None,
        client_factory: Callable[..., ModbusClient] = ModbusClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._connections: dict[str, PooledConnection] = {}
        self._lock = asyncio.Lock()
        self._timeout = timeout
        self._retry_delays = retry_delays
        self._client_factory = client_factory
        self._sleep = sleep
        self._closed = False

    async def __aenter__(self) -> "ConnectionPool":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.close_all()
        return False

    async def get_connection(self, host: str, port: int) -> ModbusClient:
        """
        Get or create the client for host:port.

        Connecting is left to the caller or the first read.
        """
        if self._closed:
            raise RuntimeError("Connection pool already closed")

        key = f"{host}:{port}"

        async with self._lock:
            pooled = self._connections.get(key)
            if pooled is None:
                client = self._client_factory(
                    host=host,
                    port=port,
                    timeout=self._timeout,
                    retry_delays=self._retry_delays,
                    sleep=self._sleep,
                )
                pooled = PooledConnection(client=client)
                self._connections[key] = pooled
                logger.debug(f"Created new connection: {key}")

            pooled.use_count += 1
            return pooled.client

    async def close_connection(self, host: str, port: int) -> None:
        """Force close a specific connection"""
        key = f"{host}:{port}"

        async with self._lock:
            pooled = self._connections.pop(key, None)
        if pooled:
            await pooled.client.close()

    async def close_all(self) -> None:
        """Close every connection; the pool cannot be reused afterwards"""
        async with self._lock:
            connections = list(self._connections.items())
            self._connections.clear()
            self._closed = True

        for key, pooled in connections:
            try:
                await pooled.client.close()
            except Exception as e:
                logger.warning(f"Error closing connection {key}: {e}")

        if connections:
            logger.debug(f"Closed {len(connections)} pooled connection(s)")

    def get_stats(self) -> dict:
        return {
            "connections": len(self._connections),
            "endpoints": {
                key: {
                    "connected": pooled.client.is_connected,
                    "use_count": pooled.use_count,
                }
                for key, pooled in self._connections.items()
            },
        }
