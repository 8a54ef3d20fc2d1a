"""Tests for gateway polls: good/bad paths, cascade, duplicates, health counters."""

import asyncio
import sqlite3

import pytest

from gateway_poller.common.config import DataPoint, DataType, Quality
from gateway_poller.common.exceptions import ErrorCategory
from gateway_poller.common.state import schedule_key
from gateway_poller.common.timestamp import to_iso
from gateway_poller.services.device import register_codec
from gateway_poller.services.polling.error_handler import ErrorHandler
from gateway_poller.services.polling.notifier import EVENT_GATEWAY_STATUS, EVENT_NEW_READING, ReadingPublisher
from gateway_poller.services.polling.orchestrator import PollOrchestrator
from gateway_poller.services.scheduling.circuit_breaker import CircuitBreaker


@pytest.fixture
def publisher() -> ReadingPublisher:
    return ReadingPublisher()


@pytest.fixture
def events(publisher) -> list:
    received = []
    publisher.subscribe(received.append)
    return received


@pytest.fixture
def orchestrator(entities, publisher, fake_sleep, clock) -> PollOrchestrator:
    return PollOrchestrator(
        entities,
        error_handler=ErrorHandler(),
        publisher=publisher,
        sleep=fake_sleep,
        clock=clock,
    )


@pytest.fixture
def device(network):
    device = network.add("10.0.0.1")
    device.set_words(3, 1, register_codec.encode(230.0, DataType.FLOAT32))
    device.set_words(3, 3, [1])
    device.set_words(3, 10, [12345, 0])
    return device


def values_by_point(gateway, result):
    labels = {p.id: p.label for p in gateway.data_points}
    return {labels[r.data_point_id]: r for r in result.readings}


async def test_good_poll_stores_scaled_readings(entities, orchestrator, gateway_factory, device, events):
    gateway = gateway_factory()

    result = await orchestrator.poll_gateway(gateway)

    assert result.success
    assert result.errors == []
    readings = values_by_point(gateway, result)
    assert readings["voltage"].scaled_value == 230.0
    assert readings["status"].scaled_value == 1
    assert readings["power"].scaled_value == pytest.approx(1234.5)
    assert readings["power"].raw_registers == [12345, 0]
    assert all(r.quality == Quality.GOOD for r in result.readings)

    # One nominal timestamp for the whole poll, aligned to the interval
    assert {to_iso(r.read_at) for r in result.readings} == {"2024-05-01T12:00:00+00:00"}

    stored = entities.get_gateway(gateway.id)
    assert stored.success_count == 1
    assert stored.failure_count == 0
    assert stored.consecutive_failures == 0
    assert stored.last_seen_at is not None

    assert [e.name for e in events] == [EVENT_NEW_READING] * 3


async def test_point_error_does_not_abort_siblings(entities, orchestrator, gateway_factory, device):
    device.exception_codes[(3, 2)] = 0x02
    gateway = gateway_factory()

    result = await orchestrator.poll_gateway(gateway)

    assert not result.success
    assert len(result.errors) == 1
    error = result.errors[0]
    assert error.category == ErrorCategory.ILLEGAL_REGISTER
    assert error.point_label == "status"
    assert "status" in error.user_message
    assert "Traceback" not in error.user_message
    assert error.diagnostic_info["data_point_config"]["register"] == 3
    assert error.suggested_actions

    readings = values_by_point(gateway, result)
    assert readings["status"].quality == Quality.BAD
    assert readings["status"].scaled_value is None
    assert readings["voltage"].quality == Quality.GOOD
    assert readings["power"].quality == Quality.GOOD

    stored = entities.get_gateway(gateway.id)
    assert stored.failure_count == 1
    assert stored.consecutive_failures == 1
    # The device answered, so it counts as seen
    assert stored.last_seen_at is not None


async def test_unreachable_gateway_is_one_gateway_error(entities, orchestrator, gateway_factory, network, sleeps):
    gateway = gateway_factory()

    result = await orchestrator.poll_gateway(gateway)

    assert not result.success
    assert len(result.errors) == 1
    error = result.errors[0]
    assert error.category == ErrorCategory.CONNECTION_REFUSED
    assert error.point_id is None
    assert result.readings == []
    assert entities.count_readings() == 0

    # One connect sequence with its retries
    assert len(network.clients) == 3
    assert sleeps == [1.0, 2.0]

    stored = entities.get_gateway(gateway.id)
    assert stored.failure_count == 1
    assert stored.consecutive_failures == 1
    assert stored.last_seen_at is None
    assert stored.last_error == ErrorCategory.CONNECTION_REFUSED.value


async def test_reads_timing_out_after_connect_still_count_as_seen(entities, orchestrator, gateway_factory, device):
    device.read_error = asyncio.TimeoutError()
    gateway = gateway_factory()

    result = await orchestrator.poll_gateway(gateway)

    assert not result.success
    assert {e.category for e in result.errors} == {ErrorCategory.CONNECTION_TIMEOUT}
    assert all(r.quality == Quality.BAD for r in result.readings)
    # Session dropped on the first timeout; the rest are recorded without reading
    assert device.connect_calls == 1
    assert len(device.requests) == 1
    assert [e.diagnostic_info.get("skipped") for e in result.errors] == [None, True, True]

    stored = entities.get_gateway(gateway.id)
    assert stored.last_seen_at is not None
    assert stored.consecutive_failures == 1


async def test_repeated_poll_in_same_interval_is_deduplicated(entities, orchestrator, gateway_factory, device, events):
    gateway = gateway_factory()

    first = await orchestrator.poll_gateway(gateway)
    second = await orchestrator.poll_gateway(gateway)

    assert first.duplicates == 0
    assert second.duplicates == 3
    assert second.success
    assert [r.id for r in second.readings] == [r.id for r in first.readings]
    assert entities.count_readings() == 3
    # Only newly inserted readings are announced
    assert len(events) == 3


async def test_next_interval_stores_new_readings(entities, orchestrator, gateway_factory, device, clock):
    gateway = gateway_factory()

    await orchestrator.poll_gateway(gateway)
    clock.advance(10)
    result = await orchestrator.poll_gateway(gateway)

    assert result.duplicates == 0
    assert entities.count_readings() == 6
    voltage_id = next(p.id for p in gateway.data_points if p.label == "voltage")
    history = entities.list_readings(voltage_id)
    assert len(history) == 2
    assert history[0].read_at > history[1].read_at


async def test_non_finite_value_is_uncertain(entities, orchestrator, gateway_factory, device):
    device.set_words(3, 1, [0x7FC0, 0x0000])
    gateway = gateway_factory()

    result = await orchestrator.poll_gateway(gateway)

    assert result.success
    voltage = values_by_point(gateway, result)["voltage"]
    assert voltage.quality == Quality.UNCERTAIN
    assert voltage.scaled_value is None
    assert voltage.raw_registers == [0x7FC0, 0x0000]


async def test_gateway_without_enabled_points_is_a_no_op(entities, orchestrator, gateway_factory, network):
    gateway = gateway_factory(data_points=[
        DataPoint(label="spare", register_address=1, is_enabled=False),
    ])

    result = await orchestrator.poll_gateway(gateway)

    assert result.success
    assert result.readings == []
    assert network.clients == []
    assert entities.get_gateway(gateway.id).success_count == 0


async def test_failing_listener_does_not_affect_poll(orchestrator, publisher, gateway_factory, device):
    def broken(event):
        raise RuntimeError("listener down")

    publisher.subscribe(broken)
    gateway = gateway_factory()

    result = await orchestrator.poll_gateway(gateway)

    assert result.success
    assert publisher.failures == 3


async def test_unsubscribed_listener_stops_receiving(orchestrator, publisher, events, gateway_factory, device, clock):
    gateway = gateway_factory()
    await orchestrator.poll_gateway(gateway)
    publisher.unsubscribe(events.append)
    clock.advance(10)

    await orchestrator.poll_gateway(gateway)

    assert len(events) == 3


async def test_unexpected_error_is_reported_not_raised(entities, gateway_factory, fake_sleep, clock):
    def exploding_factory(**kwargs):
        raise RuntimeError("boom")

    orchestrator = PollOrchestrator(entities, client_factory=exploding_factory, sleep=fake_sleep, clock=clock)
    gateway = gateway_factory()

    result = await orchestrator.poll_gateway(gateway)

    assert not result.success
    assert result.errors[0].category == ErrorCategory.UNKNOWN
    assert entities.get_gateway(gateway.id).consecutive_failures == 1


async def test_circuit_breaker_trips_after_consecutive_failures(
    entities, coordination, publisher, events, gateway_factory, network, fake_sleep, clock
):
    breaker = CircuitBreaker(entities, coordination, publisher=publisher, failure_threshold=2)
    orchestrator = PollOrchestrator(
        entities, publisher=publisher, circuit_breaker=breaker, sleep=fake_sleep, clock=clock
    )
    gateway = gateway_factory()
    coordination.put(schedule_key(gateway.id), {"gateway_id": gateway.id}, ttl=60)

    first = await orchestrator.poll_gateway(gateway)
    clock.advance(10)
    second = await orchestrator.poll_gateway(gateway)

    assert not first.circuit_open
    assert second.circuit_open
    stored = entities.get_gateway(gateway.id)
    assert not stored.is_active
    assert stored.consecutive_failures == 2
    assert not coordination.has(schedule_key(gateway.id))

    status_events = [e for e in events if e.name == EVENT_GATEWAY_STATUS]
    assert len(status_events) == 1
    assert status_events[0].payload["reason"] == "circuit_breaker"


async def test_partial_failures_trip_the_breaker(entities, coordination, gateway_factory, device, fake_sleep, clock):
    device.exception_codes[(3, 2)] = 0x02
    breaker = CircuitBreaker(entities, coordination)
    orchestrator = PollOrchestrator(entities, circuit_breaker=breaker, sleep=fake_sleep, clock=clock)
    gateway = gateway_factory()

    results = []
    for _ in range(10):
        results.append(await orchestrator.poll_gateway(gateway))
        clock.advance(10)

    assert [r.circuit_open for r in results] == [False] * 9 + [True]
    stored = entities.get_gateway(gateway.id)
    assert stored.consecutive_failures == 10
    assert not stored.is_active


async def test_health_update_failure_is_reported(entities, orchestrator, gateway_factory, device, monkeypatch):
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(entities, "record_poll_outcome", locked)
    gateway = gateway_factory()

    result = await orchestrator.poll_gateway(gateway)

    assert not result.success
    assert len(result.readings) == 3
    assert result.errors[-1].category == ErrorCategory.UNKNOWN
    assert result.errors[-1].point_id is None


async def test_successful_poll_resets_failure_run(entities, orchestrator, gateway_factory, network, clock):
    gateway = gateway_factory()
    await orchestrator.poll_gateway(gateway)
    assert entities.get_gateway(gateway.id).consecutive_failures == 1

    device = network.add("10.0.0.1")
    device.set_words(3, 1, [0x4366, 0])
    clock.advance(10)
    result = await orchestrator.poll_gateway(gateway)

    assert result.success
    stored = entities.get_gateway(gateway.id)
    assert stored.consecutive_failures == 0
    assert stored.success_count == 1
    assert stored.failure_count == 1


async def test_sample_point_reads_without_persisting(entities, orchestrator, gateway_factory, device):
    gateway = gateway_factory()
    point = next(p for p in gateway.data_points if p.label == "power")

    sample = await orchestrator.sample_point(gateway, point)

    assert sample.quality == Quality.GOOD
    assert sample.value == pytest.approx(1234.5)
    assert sample.to_dict()["raw_registers"] == [12345, 0]
    assert entities.count_readings() == 0
