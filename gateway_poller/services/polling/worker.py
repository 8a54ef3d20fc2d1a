"""
Poll Worker

Claims poll tasks from the shared queue and runs them. Gateways are polled
in parallel, bounded by the configured concurrency; a gateway whose
is_active flag was cleared after the task was enqueued is skipped, while a
poll already in flight is always allowed to finish.
"""

import asyncio
import functools
import os
import socket

from gateway_poller.common.config import WorkerSettings
from gateway_poller.common.logging_setup import get_service_logger
from gateway_poller.storage.local_db import EntityStore
from gateway_poller.storage.task_queue import (
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_SKIPPED,
    PollTask,
    TaskQueue,
)

from .orchestrator import PollOrchestrator, PollResult

logger = get_service_logger("polling.worker")


def default_worker_name() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class PollWorker:
    """Runs queued gateway polls"""

    def __init__(
        self,
        queue: TaskQueue,
        entities: EntityStore,
        orchestrator: PollOrchestrator,
        settings: WorkerSettings | None = None,
        name: str | None = None,
    ):
        self.queue = queue
        self.entities = entities
        self.orchestrator = orchestrator
        self.settings = settings or WorkerSettings()
        self.name = name or default_worker_name()

        self._semaphore = asyncio.Semaphore(max(1, self.settings.concurrency))
        self._in_flight: set[asyncio.Task] = set()
        self._running = False
        self._task: asyncio.Task | None = None

        # Stats
        self.completed = 0
        self.failed = 0
        self.skipped = 0

    async def _run_db(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"Poll worker {self.name} started",
            extra={"concurrency": self.settings.concurrency},
        )

    async def stop(self) -> None:
        """Stop claiming and wait for in-flight polls to finish"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

        logger.info(f"Poll worker {self.name} stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                await self._semaphore.acquire()
                try:
                    task = await self._run_db(self.queue.claim, self.name)
                except Exception:
                    self._semaphore.release()
                    raise

                if task is None:
                    self._semaphore.release()
                    await asyncio.sleep(self.settings.idle_sleep)
                    continue

                job = asyncio.create_task(self._execute(task))
                self._in_flight.add(job)
                job.add_done_callback(self._in_flight.discard)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in worker loop: {e}", exc_info=True)
                await asyncio.sleep(self.settings.idle_sleep)

    async def _execute(self, task: PollTask) -> PollResult | None:
        try:
            return await self.process(task)
        finally:
            self._semaphore.release()

    async def process(self, task: PollTask) -> PollResult | None:
        """
        Run one claimed task and record its final status.

        Returns:
            The poll result, or None if the task was skipped or failed
        """
        try:
            gateway = await self._run_db(self.entities.get_gateway, task.gateway_id)
            if gateway is None or not gateway.is_active:
                logger.info(f"Skipping task #{task.id}: gateway {task.gateway_id} missing or inactive")
                await self._run_db(self.queue.complete, task.id, STATUS_SKIPPED)
                self.skipped += 1
                return None

            result = await self.orchestrator.poll_gateway(gateway)

        except Exception as e:
            logger.error(f"Poll task #{task.id} failed: {e}", exc_info=True)
            self.failed += 1
            await self._run_db(self.queue.complete, task.id, STATUS_FAILED, str(e))
            return None

        error = None
        if not result.success:
            gateway_errors = [e for e in result.errors if e.point_id is None]
            if gateway_errors:
                error = gateway_errors[0].category.value
            else:
                error = f"{len(result.errors)} point errors"
        await self._run_db(self.queue.complete, task.id, STATUS_DONE, error)
        self.completed += 1
        return result

    async def drain(self) -> int:
        """Claim and run every pending task now (used by one-shot runs)"""
        jobs = []
        while True:
            task = await self._run_db(self.queue.claim, self.name)
            if task is None:
                break
            jobs.append(asyncio.create_task(self._bounded(task)))

        if jobs:
            await asyncio.gather(*jobs)
        return len(jobs)

    async def _bounded(self, task: PollTask) -> PollResult | None:
        async with self._semaphore:
            return await self.process(task)

    def get_stats(self) -> dict:
        return {
            "worker": self.name,
            "running": self._running,
            "in_flight": len(self._in_flight),
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
        }
