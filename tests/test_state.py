"""Tests for the TTL coordination store and its scoped locks."""

import pytest

from gateway_poller.common.exceptions import StoreError
from gateway_poller.common.state import (
    CoordinationStore,
    SCHEDULE_PREFIX,
    get_service_health,
    schedule_key,
    set_service_health,
)


def test_put_get_roundtrip(coordination):
    coordination.put("status:system", {"active_gateways": 2})
    assert coordination.get("status:system") == {"active_gateways": 2}
    assert coordination.get("missing", "default") == "default"


def test_value_expires_after_ttl(coordination, clock):
    coordination.put("k", "v", ttl=10)

    clock.advance(9)
    assert coordination.has("k")
    assert coordination.ttl_remaining("k") == pytest.approx(1.0)

    clock.advance(1)
    assert not coordination.has("k")
    assert coordination.get("k") is None


def test_add_only_when_absent_or_expired(coordination, clock):
    assert coordination.add("k", 1, ttl=5)
    assert not coordination.add("k", 2, ttl=5)
    assert coordination.get("k") == 1

    clock.advance(5)
    assert coordination.add("k", 3, ttl=5)
    assert coordination.get("k") == 3


def test_delete_reports_live_records(coordination, clock):
    coordination.put("k", 1, ttl=5)
    assert coordination.delete("k")
    assert not coordination.delete("k")

    coordination.put("old", 1, ttl=1)
    clock.advance(2)
    assert not coordination.delete("old")


def test_delete_prefix_and_keys(coordination):
    for gateway_id in (1, 2, 3):
        coordination.put(schedule_key(gateway_id), {"gateway_id": gateway_id})
    coordination.put("lock:system", {})

    assert coordination.keys(SCHEDULE_PREFIX) == [schedule_key(1), schedule_key(2), schedule_key(3)]
    assert coordination.delete_prefix(SCHEDULE_PREFIX) == 3
    assert coordination.keys() == ["lock:system"]


def test_purge_expired_removes_files(coordination, clock):
    coordination.put("short", 1, ttl=1)
    coordination.put("long", 1, ttl=100)
    clock.advance(2)

    assert coordination.purge_expired() == 1
    assert coordination.keys() == ["long"]


def test_values_shared_between_instances(tmp_path, clock):
    writer = CoordinationStore(tmp_path / "shared", clock=clock.timestamp)
    reader = CoordinationStore(tmp_path / "shared", clock=clock.timestamp)

    writer.put("k", [1, 2, 3], ttl=60)

    assert reader.get("k") == [1, 2, 3]


def test_unserializable_value_raises_store_error(coordination):
    with pytest.raises(StoreError):
        coordination.put("k", object())
    assert coordination.keys() == []


def test_lock_excludes_second_holder_and_releases(coordination):
    with coordination.lock("lock:gateway:1", ttl=60) as acquired:
        assert acquired
        with coordination.lock("lock:gateway:1", ttl=60) as second:
            assert not second
        # A failed attempt must not release the holder's lock
        assert coordination.has("lock:gateway:1")

    assert not coordination.has("lock:gateway:1")


def test_lock_released_on_exception(coordination):
    with pytest.raises(RuntimeError):
        with coordination.lock("lock:system", ttl=60) as acquired:
            assert acquired
            raise RuntimeError("boom")

    assert not coordination.has("lock:system")


def test_expired_lock_taken_over_is_not_released_by_old_holder(coordination, clock):
    with coordination.lock("lock:gateway:1", ttl=5) as acquired:
        assert acquired
        clock.advance(6)
        assert coordination.add("lock:gateway:1", {"owner": "other-process"}, ttl=60)

    assert coordination.get("lock:gateway:1")["owner"] == "other-process"


def test_service_health_helpers(coordination):
    set_service_health(coordination, "poller", {"status": "running"})

    health = get_service_health(coordination, "poller")

    assert health["status"] == "running"
    assert "updated_at" in health
    assert get_service_health(coordination, "other") == {}
