"""Tests for the consecutive-failure circuit breaker."""

import pytest

from conftest import make_gateway

from gateway_poller.common.state import schedule_key
from gateway_poller.services.polling.notifier import ReadingPublisher
from gateway_poller.services.scheduling.circuit_breaker import CircuitBreaker


@pytest.fixture
def publisher():
    return ReadingPublisher()


@pytest.fixture
def breaker(entities, coordination, publisher):
    return CircuitBreaker(entities, coordination, publisher=publisher, failure_threshold=3)


def fail(entities, gateway, times):
    for _ in range(times):
        gateway = entities.record_poll_outcome(gateway.id, poll_ok=False, connected=False)
    return gateway


def test_below_threshold_does_not_trip(entities, breaker, gateway_factory):
    gateway = fail(entities, gateway_factory(), 2)

    assert not breaker.evaluate(gateway)
    assert entities.get_gateway(gateway.id).is_active


def test_trips_at_threshold(entities, coordination, breaker, publisher, gateway_factory):
    events = []
    publisher.subscribe(events.append)
    gateway = gateway_factory()
    coordination.put(schedule_key(gateway.id), {"gateway_id": gateway.id})

    gateway = fail(entities, gateway, 3)

    assert breaker.evaluate(gateway)
    assert not entities.get_gateway(gateway.id).is_active
    assert not coordination.has(schedule_key(gateway.id))
    assert events[0].payload["previous_status"] == "active"
    assert events[0].payload["new_status"] == "inactive"


def test_intermittent_success_resets_run(entities, breaker, gateway_factory):
    gateway = fail(entities, gateway_factory(), 2)
    gateway = entities.record_poll_outcome(gateway.id, poll_ok=True, connected=True)
    gateway = fail(entities, gateway, 2)

    # Four failed polls in total, but never three in a row
    assert gateway.failure_count == 4
    assert gateway.consecutive_failures == 2
    assert not breaker.evaluate(gateway)


def test_failed_poll_with_contact_still_counts(entities, breaker, gateway_factory):
    gateway = gateway_factory()
    for _ in range(3):
        gateway = entities.record_poll_outcome(gateway.id, poll_ok=False, connected=True)

    assert gateway.consecutive_failures == 3
    assert gateway.last_seen_at is not None
    assert breaker.evaluate(gateway)


def test_tripped_gateway_stays_disabled_until_reenabled(entities, breaker, gateway_factory):
    gateway = fail(entities, gateway_factory(), 3)
    breaker.evaluate(gateway)

    # Already inactive: evaluating again is a no-op
    assert not breaker.evaluate(entities.get_gateway(gateway.id))

    entities.set_gateway_active(gateway.id, True)
    restored = entities.get_gateway(gateway.id)
    assert restored.is_active
    assert restored.consecutive_failures == 0


def test_startup_sync_keeps_tripped_gateway_disabled(entities, breaker, gateway_factory):
    gateway = fail(entities, gateway_factory(), 3)
    breaker.evaluate(gateway)

    entities.sync_config([make_gateway()])
    assert not entities.get_gateway(gateway.id).is_active

    entities.sync_config([make_gateway()], apply_active=True)
    assert entities.get_gateway(gateway.id).is_active


def test_disabled_breaker_never_trips(entities, coordination, gateway_factory):
    breaker = CircuitBreaker(entities, coordination, failure_threshold=1, enabled=False)
    gateway = fail(entities, gateway_factory(), 5)

    assert not breaker.evaluate(gateway)
