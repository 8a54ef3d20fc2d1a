"""Exactly-once reading persistence under concurrent writers."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from gateway_poller.common.config import Quality
from gateway_poller.storage.local_db import EntityStore

READ_AT = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_first_insert_creates_second_returns_existing(entities, gateway_factory):
    point = gateway_factory().data_points[0]

    first, created = entities.insert_reading(point.id, READ_AT, Quality.GOOD, [1, 2], 3.0)
    second, created_again = entities.insert_reading(point.id, READ_AT, Quality.BAD)

    assert created
    assert not created_again
    assert second.id == first.id
    # The stored reading wins; the late writer's values are discarded
    assert second.quality == Quality.GOOD
    assert second.scaled_value == 3.0
    assert second.raw_registers == [1, 2]


def test_different_points_same_instant_are_independent(entities, gateway_factory):
    gateway = gateway_factory()

    for point in gateway.data_points:
        _, created = entities.insert_reading(point.id, READ_AT, Quality.GOOD)
        assert created

    assert entities.count_readings() == len(gateway.data_points)


def test_concurrent_writers_store_one_reading(db_path, gateway_factory):
    point = gateway_factory().data_points[0]
    writers = 8
    barrier = threading.Barrier(writers)

    def write(n):
        # Separate store instance per writer, as separate processes would have
        store = EntityStore(db_path)
        barrier.wait()
        return store.insert_reading(point.id, READ_AT, Quality.GOOD, [n], float(n))

    with ThreadPoolExecutor(max_workers=writers) as pool:
        results = list(pool.map(write, range(writers)))

    created = [reading for reading, was_created in results if was_created]
    assert len(created) == 1
    assert {reading.id for reading, _ in results} == {created[0].id}
    assert EntityStore(db_path).count_readings(point.id) == 1


def test_get_reading_by_nominal_timestamp(entities, gateway_factory):
    point = gateway_factory().data_points[0]
    reading, _ = entities.insert_reading(point.id, READ_AT, Quality.UNCERTAIN, [0x7FC0, 0])

    fetched = entities.get_reading(point.id, READ_AT)

    assert fetched.id == reading.id
    assert fetched.quality == Quality.UNCERTAIN
    assert fetched.scaled_value is None
    assert fetched.read_at == READ_AT
