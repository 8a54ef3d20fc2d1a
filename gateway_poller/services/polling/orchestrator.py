"""
Poll Orchestrator

Polls one gateway: reads every enabled data point over a single pooled
connection, decodes and scales the words, persists one reading per point
through the duplicate guard, then updates the gateway's health counters
and lets the circuit breaker judge the result.

A failing point never aborts its siblings. If the connection cannot be
established the poll stops with one gateway-level error and stores nothing.
A session lost mid-poll marks the remaining points bad without further
network attempts.
"""

import asyncio
import functools
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from gateway_poller.common.config import DataPoint, Gateway, ModbusSettings, Quality, Reading
from gateway_poller.common.exceptions import CATEGORY_SEVERITY, CONNECTION_CATEGORIES, PollerError, categorize
from gateway_poller.common.logging_setup import get_service_logger, log_point_read, log_poll_result
from gateway_poller.common.timestamp import align_timestamp, to_iso, utc_now
from gateway_poller.services.device import register_codec
from gateway_poller.services.device.connection_pool import ConnectionPool
from gateway_poller.services.device.modbus_client import ModbusClient
from gateway_poller.storage.local_db import EntityStore

from .error_handler import ErrorHandler, ErrorInfo
from .notifier import ReadingPublisher

logger = get_service_logger("polling.orchestrator")


@dataclass
class PollResult:
    """Outcome of one gateway poll"""
    gateway_id: int
    success: bool
    read_at: datetime
    readings: list[Reading] = field(default_factory=list)
    errors: list[ErrorInfo] = field(default_factory=list)
    duration: float = 0.0
    duplicates: int = 0
    circuit_open: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "gateway_id": self.gateway_id,
            "success": self.success,
            "read_at": to_iso(self.read_at),
            "duration": round(self.duration, 3),
            "duplicates": self.duplicates,
            "circuit_open": self.circuit_open,
            "readings": [
                {
                    "id": r.id,
                    "data_point_id": r.data_point_id,
                    "quality": r.quality.value,
                    "scaled_value": r.scaled_value,
                    "raw_registers": r.raw_registers,
                }
                for r in self.readings
            ],
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class PointSample:
    """Decoded value of one data point, not yet persisted"""
    quality: Quality
    raw_registers: list[int] | None = None
    value: float | None = None
    error: ErrorInfo | None = None
    exception: PollerError | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "quality": self.quality.value,
            "raw_registers": self.raw_registers,
            "value": self.value,
            "error": self.error.to_dict() if self.error else None,
        }


class PollOrchestrator:
    """Runs gateway polls against the entity store"""

    def __init__(
        self,
        entities: EntityStore,
        error_handler: ErrorHandler | None = None,
        publisher: ReadingPublisher | None = None,
        circuit_breaker=None,
        modbus: ModbusSettings | None = None,
        client_factory: Callable[..., ModbusClient] = ModbusClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.entities = entities
        self.error_handler = error_handler or ErrorHandler()
        self.publisher = publisher
        self.circuit_breaker = circuit_breaker
        self.modbus = modbus or ModbusSettings()
        self._client_factory = client_factory
        self._sleep = sleep
        self._clock = clock

    async def _run_db(self, func, *args, **kwargs):
        """Run a blocking store call in a thread to avoid blocking the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    def _new_pool(self) -> ConnectionPool:
        return ConnectionPool(
            timeout=self.modbus.timeout,
            retry_delays=self.modbus.retry_delays,
            client_factory=self._client_factory,
            sleep=self._sleep,
        )

    async def poll_gateway(self, gateway: Gateway) -> PollResult:
        """
        Poll every enabled data point of a gateway.

        Never raises. Point faults are returned in PollResult.errors with a
        bad-quality reading per affected point; a failed connect is a single
        gateway-level error with no readings.
        """
        started = time.monotonic()
        read_at = align_timestamp(self._clock(), gateway.poll_interval)
        result = PollResult(gateway_id=gateway.id, success=False, read_at=read_at)
        points = gateway.enabled_points()

        if not points:
            logger.debug(f"Gateway {gateway.name} has no enabled data points")
            result.success = True
            result.duration = time.monotonic() - started
            return result

        connected = False

        try:
            async with self._new_pool() as pool:
                client = await pool.get_connection(gateway.host, gateway.port)
                await client.connect()
                connected = True
                connection_lost: PollerError | None = None

                for point in points:
                    if connection_lost is not None:
                        result.errors.append(self._cascade_error(connection_lost, gateway, point))
                        await self._persist(result, gateway, point, read_at, Quality.BAD)
                        continue

                    sample = await self._sample_point(client, gateway, point)

                    if sample.error is not None:
                        result.errors.append(sample.error)
                        log_point_read(logger.logger, gateway.name, point.label, None, success=False)
                        if sample.error.category in CONNECTION_CATEGORIES and not client.is_connected:
                            connection_lost = sample.exception
                    else:
                        log_point_read(logger.logger, gateway.name, point.label, sample.value)

                    await self._persist(
                        result, gateway, point, read_at,
                        sample.quality, sample.raw_registers, sample.value,
                    )

                if connection_lost is not None and len(points) > 1:
                    logger.warning(
                        f"Gateway {gateway.name} connection lost, "
                        f"remaining points recorded bad without reading"
                    )

        except Exception as e:
            result.errors.append(self.error_handler.handle(e, gateway))

        result.success = not result.errors
        result.duration = time.monotonic() - started

        log_poll_result(
            logger.logger,
            gateway.name,
            readings=len(result.readings),
            errors=len(result.errors),
            duration_ms=result.duration * 1000,
        )

        await self._update_health(result, gateway, connected)
        return result

    def _cascade_error(self, exc: PollerError, gateway: Gateway, point: DataPoint) -> ErrorInfo:
        """Error entry for a point skipped after the session dropped (not re-logged)"""
        category = categorize(exc)
        return ErrorInfo(
            category=category,
            severity=exc.severity,
            user_message=self.error_handler.user_message(category, gateway, point),
            point_id=point.id,
            point_label=point.label,
            diagnostic_info={"skipped": True, "cause": str(exc)},
        )

    async def _sample_point(self, client: ModbusClient, gateway: Gateway, point: DataPoint) -> PointSample:
        words: list[int] | None = None
        try:
            words = await client.read_registers(
                point.function_code,
                point.register_address,
                point.register_count,
                gateway.unit_id,
            )
            value = register_codec.decode(words, point.data_type, point.byte_order, point.swap_bytes)
        except PollerError as e:
            return PointSample(
                quality=Quality.BAD,
                raw_registers=words,
                error=self.error_handler.handle(e, gateway, point),
                exception=e,
            )

        if isinstance(value, float) and not math.isfinite(value):
            logger.info(
                f"Non-finite value from {gateway.name}.{point.label}, stored as uncertain",
                extra={"raw_registers": words},
            )
            return PointSample(quality=Quality.UNCERTAIN, raw_registers=words)

        return PointSample(
            quality=Quality.GOOD,
            raw_registers=words,
            value=register_codec.scale(value, point.scale_factor),
        )

    async def _persist(
        self,
        result: PollResult,
        gateway: Gateway,
        point: DataPoint,
        read_at: datetime,
        quality: Quality,
        raw_registers: list[int] | None = None,
        value: float | None = None,
    ) -> None:
        try:
            reading, created = await self._run_db(
                self.entities.insert_reading,
                point.id,
                read_at,
                quality,
                raw_registers=raw_registers,
                scaled_value=value,
            )
        except PollerError as e:
            result.errors.append(self.error_handler.handle(e, gateway, point))
            return

        result.readings.append(reading)
        if not created:
            result.duplicates += 1
            return

        if self.publisher:
            self.publisher.publish_reading(reading, gateway, point)

    async def _update_health(self, result: PollResult, gateway: Gateway, connected: bool) -> None:
        last_error = result.errors[-1].category.value if result.errors else None
        try:
            updated = await self._run_db(
                self.entities.record_poll_outcome,
                gateway.id,
                result.success,
                connected,
                seen_at=self._clock(),
                last_error=last_error,
            )
            if updated is not None and self.circuit_breaker is not None:
                result.circuit_open = await self._run_db(self.circuit_breaker.evaluate, updated)
        except Exception as e:
            logger.error(f"Failed to update health for gateway {gateway.name}: {e}", exc_info=True)
            category = categorize(e)
            result.errors.append(ErrorInfo(
                category=category,
                severity=CATEGORY_SEVERITY[category],
                user_message=self.error_handler.user_message(category, gateway),
                diagnostic_info=self.error_handler.diagnostic_info(e, gateway),
            ))
            result.success = False

    async def sample_point(self, gateway: Gateway, point: DataPoint) -> PointSample:
        """
        Read and decode one data point without persisting it.

        Uses its own short-lived pool; intended for configuration previews.
        """
        async with self._new_pool() as pool:
            client = await pool.get_connection(gateway.host, gateway.port)
            return await self._sample_point(client, gateway, point)
