"""Tests for the Modbus client: retries, classification and PDU addressing."""

import asyncio

import pytest
from pymodbus.exceptions import ConnectionException, ModbusIOException

from gateway_poller.common.exceptions import (
    ConnectionFailedError,
    ErrorCategory,
    FrameDecodeError,
    IllegalRegisterError,
    ModbusReadError,
    PeerRefusedError,
    ReadTimeoutError,
    UnsupportedFunctionError,
)
from gateway_poller.services.device.connection_pool import ConnectionPool
from gateway_poller.services.device.modbus_client import ModbusClient


@pytest.fixture
def client(network, fake_sleep) -> ModbusClient:
    return ModbusClient("10.0.0.1", 502, timeout=5.0, sleep=fake_sleep)


async def test_refused_connection_retries_three_times(network, client, sleeps):
    with pytest.raises(ConnectionFailedError) as exc_info:
        await client.connect()

    error = exc_info.value
    assert error.attempts == 3
    assert error.category == ErrorCategory.CONNECTION_REFUSED
    assert len(network.clients) == 3
    # Delays only between attempts
    assert sleeps == [1.0, 2.0]


async def test_connect_timeout_is_classified(network, client):
    device = network.add("10.0.0.1")
    device.connect_timeout = True

    with pytest.raises(ConnectionFailedError) as exc_info:
        await client.connect()

    assert exc_info.value.category == ErrorCategory.CONNECTION_TIMEOUT
    assert device.connect_calls == 3


async def test_connect_succeeds_after_retry(network, fake_sleep, sleeps):
    device = network.add("10.0.0.1")
    device.refuse_first = 1
    client = ModbusClient("10.0.0.1", 502, sleep=fake_sleep)

    await client.connect()

    assert client.is_connected
    assert device.connect_calls == 2
    assert sleeps == [1.0]


async def test_read_sends_zero_based_pdu_address(network, client):
    device = network.add("10.0.0.1")
    device.set_words(3, 40001, [0x1234, 0x5678])

    words = await client.read_registers(3, 40001, 2, unit_id=7)

    assert words == [0x1234, 0x5678]
    assert device.requests == [(3, 40000, 2, 7)]


async def test_input_registers_use_function_4(network, client):
    device = network.add("10.0.0.1")
    device.set_words(4, 1, [42])

    assert await client.read_registers(4, 1, 1) == [42]
    assert device.requests[0][0] == 4


async def test_unsupported_function_code_rejected_without_io(network, client):
    device = network.add("10.0.0.1")

    with pytest.raises(UnsupportedFunctionError):
        await client.read_registers(6, 1, 1)

    assert device.connect_calls == 0


@pytest.mark.parametrize("address, count", [(0, 1), (65535, 2), (70000, 1)])
async def test_address_outside_range_is_illegal_register(network, client, address, count):
    with pytest.raises(IllegalRegisterError):
        await client.read_registers(3, address, count)


@pytest.mark.parametrize(
    "code, error_class",
    [
        (0x01, UnsupportedFunctionError),
        (0x02, IllegalRegisterError),
        (0x03, IllegalRegisterError),
        (0x0B, ReadTimeoutError),
    ],
)
async def test_exception_codes_map_to_categories(network, client, code, error_class):
    device = network.add("10.0.0.1")
    device.exception_codes[(3, 99)] = code

    with pytest.raises(error_class):
        await client.read_registers(3, 100, 1)


async def test_unknown_exception_code_is_unknown_category(network, client):
    device = network.add("10.0.0.1")
    device.exception_codes[(3, 0)] = 0x04

    with pytest.raises(ModbusReadError) as exc_info:
        await client.read_registers(3, 1, 1)

    assert exc_info.value.category == ErrorCategory.UNKNOWN


async def test_read_timeout_drops_connection(network, client):
    device = network.add("10.0.0.1")
    device.read_error = asyncio.TimeoutError()

    with pytest.raises(ReadTimeoutError):
        await client.read_registers(3, 1, 1)

    assert not client.is_connected


async def test_lost_connection_is_peer_refused(network, client):
    device = network.add("10.0.0.1")
    device.read_error = ConnectionException("reset by peer")

    with pytest.raises(PeerRefusedError) as exc_info:
        await client.read_registers(3, 1, 1)

    assert exc_info.value.category == ErrorCategory.CONNECTION_REFUSED
    assert not client.is_connected


async def test_no_response_is_timeout(network, client):
    device = network.add("10.0.0.1")
    device.read_error = ModbusIOException("no response")

    with pytest.raises(ReadTimeoutError):
        await client.read_registers(3, 1, 1)


async def test_short_response_is_frame_decode_error(network, client):
    device = network.add("10.0.0.1")
    device.short_response = True

    with pytest.raises(FrameDecodeError) as exc_info:
        await client.read_registers(3, 1, 2)

    assert exc_info.value.category == ErrorCategory.DECODE_FAILURE


async def test_test_connection_success(network):
    device = network.add("10.0.0.9", 5020)
    device.set_words(3, 1, [321])

    result = await ModbusClient.test_connection("10.0.0.9", 5020, unit_id=3)

    assert result.success
    assert result.sample_value == 321
    assert result.error is None
    assert device.connect_calls == 1
    assert result.to_dict()["diagnostic_info"]["unit_id"] == 3


async def test_test_connection_failure_is_single_attempt(network):
    result = await ModbusClient.test_connection("10.0.0.9", 502)

    assert not result.success
    assert result.error_type == ErrorCategory.CONNECTION_REFUSED.value
    assert len(network.clients) == 1


async def test_pool_reuses_client_and_closes_on_exit(network, fake_sleep):
    network.add("10.0.0.1")

    async with ConnectionPool(sleep=fake_sleep) as pool:
        first = await pool.get_connection("10.0.0.1", 502)
        second = await pool.get_connection("10.0.0.1", 502)
        await first.read_registers(3, 1, 1)
        assert first is second
        assert pool.get_stats()["endpoints"]["10.0.0.1:502"]["use_count"] == 2

    assert not first.is_connected
    with pytest.raises(RuntimeError):
        await pool.get_connection("10.0.0.1", 502)


async def test_pool_closes_connections_on_error(network, fake_sleep):
    network.add("10.0.0.1")

    with pytest.raises(ValueError):
        async with ConnectionPool(sleep=fake_sleep) as pool:
            client = await pool.get_connection("10.0.0.1", 502)
            await client.read_registers(3, 1, 1)
            raise ValueError("boom")

    assert not client.is_connected
