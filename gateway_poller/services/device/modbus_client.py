"""
Async Modbus Client

Wrapper around pymodbus AsyncModbusTcpClient for function code 3/4 reads.
Connection attempts are retried with backoff; every fault is raised as a
categorised exception so the orchestrator can record it per data point.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ConnectionException, ModbusException, ModbusIOException

from gateway_poller.common.config import FunctionCode
from gateway_poller.common.exceptions import (
    ConnectionFailedError,
    ErrorCategory,
    FrameDecodeError,
    IllegalRegisterError,
    ModbusReadError,
    PeerRefusedError,
    ReadTimeoutError,
    UnsupportedFunctionError,
    categorize,
)
from gateway_poller.common.logging_setup import get_service_logger

logger = get_service_logger("device.modbus")

DEFAULT_TIMEOUT = 5.0
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]
MAX_CONNECT_ATTEMPTS = 3

# Modbus exception codes -> error class
EXCEPTION_CODE_ERRORS: dict[int, type[ModbusReadError]] = {
    0x01: UnsupportedFunctionError,  # Illegal function
    0x02: IllegalRegisterError,      # Illegal data address
    0x03: IllegalRegisterError,      # Illegal data value (count/range)
    0x0A: ReadTimeoutError,          # Gateway path unavailable
    0x0B: ReadTimeoutError,          # Gateway target device failed to respond
}


@dataclass
class ConnectionTest:
    """Result of a single-register connectivity probe"""
    success: bool
    latency_ms: float
    sample_value: int | None = None
    error: str | None = None
    error_type: str | None = None
    diagnostic_info: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "latency_ms": self.latency_ms,
            "sample_value": self.sample_value,
            "error": self.error,
            "error_type": self.error_type,
            "diagnostic_info": self.diagnostic_info,
        }


class ModbusClient:
    """
    Async Modbus TCP client for one host:port.

    Handles:
    - Connection retry (3 attempts, 1s/2s/4s backoff between attempts)
    - Holding (FC3) and input (FC4) register reads
    - 1-based configured address -> 0-based PDU address
    - Fault classification into ErrorCategory
    """

    def __init__(
        self,
        host: str,
        port: int = 502,
        timeout: float = DEFAULT_TIMEOUT,
        retry_delays: list[float] | None = None,
        max_attempts: int = MAX_CONNECT_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.retry_delays = list(DEFAULT_RETRY_DELAYS if retry_delays is None else retry_delays)
        self.max_attempts = max(1, max_attempts)
        self._sleep = sleep

        self._client: AsyncModbusTcpClient | None = None
        self._lock = asyncio.Lock()
        self._connected = False

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None and bool(self._client.connected)

    async def connect(self) -> None:
        """
        Establish the TCP session.

        Raises:
            ConnectionFailedError: every attempt failed; carries the
                category (timeout/refused) and cause of the last attempt
        """
        async with self._lock:
            if self.is_connected:
                return

            last_error: Exception | None = None
            category = ErrorCategory.CONNECTION_TIMEOUT

            for attempt in range(1, self.max_attempts + 1):
                started = time.monotonic()
                client = AsyncModbusTcpClient(
                    host=self.host,
                    port=self.port,
                    timeout=self.timeout,
                    retries=0,
                )
                try:
                    connected = await asyncio.wait_for(client.connect(), timeout=self.timeout)
                    if connected and client.connected:
                        self._client = client
                        self._connected = True
                        logger.debug(f"Connected to Modbus gateway at {self.endpoint}")
                        return

                    client.close()
                    elapsed = time.monotonic() - started
                    category = (
                        ErrorCategory.CONNECTION_TIMEOUT
                        if elapsed >= self.timeout
                        else ErrorCategory.CONNECTION_REFUSED
                    )
                    last_error = ConnectionError(f"{self.endpoint} did not accept the connection")

                except asyncio.TimeoutError as e:
                    client.close()
                    category = ErrorCategory.CONNECTION_TIMEOUT
                    last_error = e
                except (OSError, ModbusException) as e:
                    client.close()
                    category = categorize(e)
                    if category not in (ErrorCategory.CONNECTION_TIMEOUT, ErrorCategory.CONNECTION_REFUSED):
                        category = ErrorCategory.CONNECTION_REFUSED
                    last_error = e

                if attempt < self.max_attempts:
                    delay = self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)] if self.retry_delays else 0
                    logger.warning(
                        f"Connection attempt {attempt}/{self.max_attempts} to {self.endpoint} "
                        f"failed ({category.value}), retrying in {delay}s"
                    )
                    await self._sleep(delay)

            self._connected = False
            logger.error(
                f"Connection to {self.endpoint} failed after {self.max_attempts} attempts: {last_error}",
                extra={"host": self.host, "port": self.port, "category": category.value},
            )
            raise ConnectionFailedError(
                self.host,
                self.port,
                attempts=self.max_attempts,
                category=category,
                cause=last_error,
            )

    async def close(self) -> None:
        """Close connection"""
        async with self._lock:
            self._drop_client()
            logger.debug(f"Disconnected from {self.endpoint}")

    def _drop_client(self) -> None:
        if self._client:
            self._client.close()
            self._client = None
        self._connected = False

    async def read_registers(
        self,
        function_code: int,
        register_address: int,
        count: int,
        unit_id: int = 1,
    ) -> list[int]:
        """
        Read registers.

        Args:
            function_code: 3 (holding) or 4 (input)
            register_address: 1-based configured address
            count: Number of registers
            unit_id: Modbus unit identifier

        Returns:
            Exactly `count` register words

        Raises:
            ConnectionFailedError, ReadTimeoutError, PeerRefusedError,
            IllegalRegisterError, UnsupportedFunctionError, FrameDecodeError
        """
        context = {
            "host": self.host,
            "port": self.port,
            "function_code": function_code,
            "address": register_address,
        }

        if function_code not in (FunctionCode.READ_HOLDING_REGISTERS, FunctionCode.READ_INPUT_REGISTERS):
            raise UnsupportedFunctionError(f"Function code {function_code} is not supported", **context)

        if not 1 <= register_address <= 0xFFFF or register_address + count - 1 > 0xFFFF:
            raise IllegalRegisterError(
                f"Register range {register_address}+{count} outside 1-65535", **context
            )

        if not self.is_connected:
            await self.connect()

        if function_code == FunctionCode.READ_HOLDING_REGISTERS:
            request = self._client.read_holding_registers
        else:
            request = self._client.read_input_registers

        pdu_address = register_address - 1

        try:
            response = await asyncio.wait_for(
                request(address=pdu_address, count=count, device_id=unit_id),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            self._drop_client()
            raise ReadTimeoutError(
                f"Read of register {register_address} timed out after {self.timeout}s", **context
            ) from None
        except ConnectionException as e:
            self._drop_client()
            raise PeerRefusedError(f"Connection lost: {e}", **context) from e
        except ModbusIOException as e:
            self._drop_client()
            raise ReadTimeoutError(f"No response: {e}", **context) from e
        except ModbusException as e:
            raise FrameDecodeError(f"Malformed response: {e}", **context) from e
        except OSError as e:
            self._drop_client()
            raise PeerRefusedError(f"Socket error: {e}", **context) from e

        if response.isError():
            code = getattr(response, "exception_code", None)
            error_class = EXCEPTION_CODE_ERRORS.get(code, ModbusReadError)
            raise error_class(f"Device returned exception code {code}: {response}", **context)

        registers = list(getattr(response, "registers", None) or [])
        if len(registers) < count:
            raise FrameDecodeError(
                f"Expected {count} registers, response carried {len(registers)}", **context
            )

        return registers[:count]

    @classmethod
    async def test_connection(
        cls,
        host: str,
        port: int = 502,
        unit_id: int = 1,
        test_register: int = 1,
        timeout: float = DEFAULT_TIMEOUT,
        function_code: int = FunctionCode.READ_HOLDING_REGISTERS,
    ) -> ConnectionTest:
        """
        Probe a gateway by reading one register over a fresh connection.

        Never touches a pool and never retries; returns a result instead
        of raising.
        """
        client = cls(host=host, port=port, timeout=timeout, retry_delays=[], max_attempts=1)
        started = time.monotonic()
        diagnostic_info: dict[str, Any] = {
            "host": host,
            "port": port,
            "unit_id": unit_id,
            "test_register": test_register,
            "function_code": int(function_code),
            "timeout": timeout,
        }

        try:
            words = await client.read_registers(function_code, test_register, 1, unit_id)
            latency_ms = round((time.monotonic() - started) * 1000, 2)
            logger.info(f"Connection test to {host}:{port} succeeded in {latency_ms}ms")
            return ConnectionTest(
                success=True,
                latency_ms=latency_ms,
                sample_value=words[0],
                diagnostic_info=diagnostic_info,
            )

        except (ConnectionFailedError, ModbusReadError) as e:
            latency_ms = round((time.monotonic() - started) * 1000, 2)
            diagnostic_info["elapsed_ms"] = latency_ms
            logger.warning(f"Connection test to {host}:{port} failed: {e}")
            return ConnectionTest(
                success=False,
                latency_ms=latency_ms,
                error=str(e),
                error_type=e.category.value,
                diagnostic_info=diagnostic_info,
            )

        finally:
            await client.close()
