"""Tests for the claim-once poll task queue."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from gateway_poller.storage.task_queue import (
    STATUS_CLAIMED,
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_PENDING,
    TaskQueue,
)


def test_claim_returns_oldest_pending(queue):
    first = queue.enqueue(1)
    queue.enqueue(2)

    task = queue.claim("worker-a")

    assert task.id == first
    assert task.status == STATUS_CLAIMED
    assert task.worker == "worker-a"
    assert queue.pending_count() == 1


def test_claim_on_empty_queue(queue):
    assert queue.claim("worker-a") is None


def test_complete_records_status_and_error(queue):
    task_id = queue.enqueue(1)
    queue.claim("worker-a")

    queue.complete(task_id, STATUS_FAILED, error="2 point errors")

    task = queue.get_task(task_id)
    assert task.status == STATUS_FAILED
    assert task.error == "2 point errors"
    assert task.finished_at is not None


def test_complete_rejects_non_final_status(queue):
    task_id = queue.enqueue(1)
    with pytest.raises(ValueError):
        queue.complete(task_id, STATUS_PENDING)


def test_each_task_claimed_by_one_worker(db_path, clock):
    setup = TaskQueue(db_path, clock=clock)
    for gateway_id in range(10):
        setup.enqueue(gateway_id)

    workers = 5
    barrier = threading.Barrier(workers)

    def drain(n):
        queue = TaskQueue(db_path, clock=clock)
        barrier.wait()
        claimed = []
        while (task := queue.claim(f"worker-{n}")) is not None:
            claimed.append(task.id)
        return claimed

    with ThreadPoolExecutor(max_workers=workers) as pool:
        claimed = [task_id for ids in pool.map(drain, range(workers)) for task_id in ids]

    assert sorted(claimed) == sorted(set(claimed))
    assert len(claimed) == 10


def test_fail_stuck_claimed_and_pending(queue, clock):
    claimed_id = queue.enqueue(1)
    queue.claim("worker-a")
    pending_id = queue.enqueue(2)

    clock.advance(3601)
    fresh_id = queue.enqueue(3)

    assert queue.fail_stuck(3600) == 2
    assert queue.get_task(claimed_id).error == "stuck: claimed too long"
    assert queue.get_task(pending_id).error == "stuck: never claimed"
    assert queue.get_task(fresh_id).status == STATUS_PENDING


def test_purge_finished_keeps_recent_and_open_tasks(queue, clock):
    old_id = queue.enqueue(1)
    queue.claim("worker-a")
    queue.complete(old_id, STATUS_DONE)
    open_id = queue.enqueue(2)

    clock.advance(100)
    recent_id = queue.enqueue(3)
    queue.complete(recent_id, STATUS_DONE)

    assert queue.purge_finished(50) == 1
    assert queue.get_task(old_id) is None
    assert queue.get_task(open_id) is not None
    assert queue.get_task(recent_id) is not None


def test_list_tasks_filters(queue):
    queue.enqueue(1)
    queue.enqueue(2)
    queue.enqueue(1)

    assert [t.gateway_id for t in queue.list_tasks(gateway_id=1)] == [1, 1]
    assert queue.pending_count(gateway_id=2) == 1
