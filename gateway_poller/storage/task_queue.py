"""
Poll Task Queue

SQLite-backed queue of "poll gateway" tasks shared by scheduler and worker
processes. A task moves pending -> claimed -> done|failed|skipped and is
claimed by exactly one worker: the claim is a conditional UPDATE that only
one connection can win.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from gateway_poller.common.logging_setup import get_service_logger
from gateway_poller.common.timestamp import parse_iso, to_iso, utc_now

from .local_db import SqliteStore

logger = get_service_logger("storage.task_queue")

STATUS_PENDING = "pending"
STATUS_CLAIMED = "claimed"
STATUS_DONE = "done"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

FINAL_STATUSES = (STATUS_DONE, STATUS_FAILED, STATUS_SKIPPED)


@dataclass
class PollTask:
    """A queued request to poll one gateway"""
    id: int
    gateway_id: int
    status: str
    enqueued_at: datetime
    claimed_at: datetime | None = None
    finished_at: datetime | None = None
    worker: str | None = None
    error: str | None = None


class TaskQueue(SqliteStore):
    """Claim-once task queue on the poller database"""

    def __init__(
        self,
        db_path: Path | str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._clock = clock
        super().__init__(db_path)

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS poll_tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    gateway_id INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    enqueued_at TEXT NOT NULL,
                    claimed_at TEXT,
                    finished_at TEXT,
                    worker TEXT,
                    error TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_poll_tasks_status
                ON poll_tasks(status, enqueued_at)
            """)
            conn.commit()

    @staticmethod
    def _row_to_task(row) -> PollTask:
        return PollTask(
            id=row["id"],
            gateway_id=row["gateway_id"],
            status=row["status"],
            enqueued_at=parse_iso(row["enqueued_at"]),
            claimed_at=parse_iso(row["claimed_at"]),
            finished_at=parse_iso(row["finished_at"]),
            worker=row["worker"],
            error=row["error"],
        )

    def enqueue(self, gateway_id: int) -> int:
        """Add a poll task; returns its id"""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO poll_tasks (gateway_id, status, enqueued_at) VALUES (?, ?, ?)",
                (gateway_id, STATUS_PENDING, to_iso(self._clock())),
            )
            conn.commit()
            task_id = cursor.lastrowid

        logger.debug(f"Enqueued poll task #{task_id} for gateway {gateway_id}")
        return task_id

    def claim(self, worker: str) -> PollTask | None:
        """
        Claim the oldest pending task.

        Returns:
            The claimed task, or None if the queue is empty
        """
        with self._get_connection() as conn:
            while True:
                row = conn.execute("""
                    SELECT id FROM poll_tasks
                    WHERE status = ?
                    ORDER BY enqueued_at, id
                    LIMIT 1
                """, (STATUS_PENDING,)).fetchone()
                if row is None:
                    return None

                cursor = conn.execute("""
                    UPDATE poll_tasks
                    SET status = ?, claimed_at = ?, worker = ?
                    WHERE id = ? AND status = ?
                """, (STATUS_CLAIMED, to_iso(self._clock()), worker, row["id"], STATUS_PENDING))
                conn.commit()

                # Lost the race to another worker, try the next task
                if cursor.rowcount != 1:
                    continue

                task_row = conn.execute(
                    "SELECT * FROM poll_tasks WHERE id = ?", (row["id"],)
                ).fetchone()
                return self._row_to_task(task_row)

    def complete(self, task_id: int, status: str = STATUS_DONE, error: str | None = None) -> None:
        """Mark a claimed task finished"""
        if status not in FINAL_STATUSES:
            raise ValueError(f"Invalid final status: {status}")

        with self._get_connection() as conn:
            conn.execute("""
                UPDATE poll_tasks
                SET status = ?, finished_at = ?, error = ?
                WHERE id = ?
            """, (status, to_iso(self._clock()), error, task_id))
            conn.commit()

    def get_task(self, task_id: int) -> PollTask | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM poll_tasks WHERE id = ?", (task_id,)).fetchone()
            return self._row_to_task(row) if row else None

    def list_tasks(self, status: str | None = None, gateway_id: int | None = None) -> list[PollTask]:
        query = "SELECT * FROM poll_tasks WHERE 1 = 1"
        params: list = []
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        if gateway_id is not None:
            query += " AND gateway_id = ?"
            params.append(gateway_id)
        query += " ORDER BY id"

        with self._get_connection() as conn:
            return [self._row_to_task(r) for r in conn.execute(query, params).fetchall()]

    def pending_count(self, gateway_id: int | None = None) -> int:
        return len(self.list_tasks(status=STATUS_PENDING, gateway_id=gateway_id))

    def fail_stuck(self, max_age_seconds: int = 3600) -> int:
        """
        Fail tasks that have sat claimed or pending longer than max_age_seconds.

        Returns:
            Number of tasks failed
        """
        cutoff = to_iso(self._clock() - timedelta(seconds=max_age_seconds))
        finished_at = to_iso(self._clock())

        with self._get_connection() as conn:
            claimed = conn.execute("""
                UPDATE poll_tasks
                SET status = ?, finished_at = ?, error = 'stuck: claimed too long'
                WHERE status = ? AND claimed_at < ?
            """, (STATUS_FAILED, finished_at, STATUS_CLAIMED, cutoff)).rowcount
            pending = conn.execute("""
                UPDATE poll_tasks
                SET status = ?, finished_at = ?, error = 'stuck: never claimed'
                WHERE status = ? AND enqueued_at < ?
            """, (STATUS_FAILED, finished_at, STATUS_PENDING, cutoff)).rowcount
            conn.commit()

        total = claimed + pending
        if total:
            logger.warning(f"Failed {total} stuck poll task(s) ({claimed} claimed, {pending} pending)")
        return total

    def purge_finished(self, older_than_seconds: int = 86400) -> int:
        """Delete finished tasks older than the cutoff"""
        cutoff = to_iso(self._clock() - timedelta(seconds=older_than_seconds))
        placeholders = ", ".join("?" for _ in FINAL_STATUSES)

        with self._get_connection() as conn:
            deleted = conn.execute(
                f"DELETE FROM poll_tasks WHERE status IN ({placeholders}) AND finished_at < ?",
                (*FINAL_STATUSES, cutoff),
            ).rowcount
            conn.commit()
        return deleted
