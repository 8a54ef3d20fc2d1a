"""
Poller Service

Long-running process that ties the poller together:
- Syncs configured gateways into the entity store on startup
- Bootstraps scheduling (system lock) and runs the repair loop
- Runs the periodic audit
- Runs the poll worker
- Serves the operational HTTP surface (health, status, repair, audit)
"""

import asyncio
import functools
import signal
from dataclasses import dataclass
from datetime import datetime, timezone

from aiohttp import web

from gateway_poller.common.config import PollerConfig
from gateway_poller.common.logging_setup import get_service_logger
from gateway_poller.common.scheduler import SchedulerGroup
from gateway_poller.common.state import CoordinationStore, set_service_health
from gateway_poller.services.scheduling.circuit_breaker import CircuitBreaker
from gateway_poller.services.scheduling.reliable_polling import ReliablePollingService
from gateway_poller.storage.local_db import EntityStore
from gateway_poller.storage.task_queue import TaskQueue

from .error_handler import ErrorHandler
from .notifier import ReadingPublisher
from .orchestrator import PollOrchestrator
from .worker import PollWorker

logger = get_service_logger("polling.service")

SERVICE_NAME = "poller"


@dataclass
class PollerComponents:
    """Wired-up poller objects sharing one database and state directory"""
    config: PollerConfig
    entities: EntityStore
    queue: TaskQueue
    coordination: CoordinationStore
    publisher: ReadingPublisher
    breaker: CircuitBreaker
    orchestrator: PollOrchestrator
    reliable: ReliablePollingService


def build_components(config: PollerConfig) -> PollerComponents:
    """Create stores and services for a configuration"""
    entities = EntityStore(config.db_path)
    queue = TaskQueue(config.db_path)
    coordination = CoordinationStore(config.state_dir)
    publisher = ReadingPublisher()

    breaker = CircuitBreaker(
        entities,
        coordination,
        publisher=publisher,
        failure_threshold=config.circuit_breaker.failure_threshold,
        enabled=config.circuit_breaker.enabled,
    )
    orchestrator = PollOrchestrator(
        entities,
        error_handler=ErrorHandler(),
        publisher=publisher,
        circuit_breaker=breaker,
        modbus=config.modbus,
    )
    reliable = ReliablePollingService(entities, coordination, queue, config.scheduler)

    return PollerComponents(
        config=config,
        entities=entities,
        queue=queue,
        coordination=coordination,
        publisher=publisher,
        breaker=breaker,
        orchestrator=orchestrator,
        reliable=reliable,
    )


class PollerService:
    """
    Poller Service

    Runs scheduling, audit and polling in one process. Several instances
    may share a database and state directory; they coordinate through
    the TTL locks and the claim-once task queue.
    """

    def __init__(self, config: PollerConfig, components: PollerComponents | None = None):
        self.config = config
        self.components = components or build_components(config)
        self.worker = PollWorker(
            self.components.queue,
            self.components.entities,
            self.components.orchestrator,
            settings=config.worker,
        )
        self.loops = SchedulerGroup()

        self._start_time = datetime.now(timezone.utc)
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Health server
        self._health_app: web.Application | None = None
        self._health_runner: web.AppRunner | None = None

        # Last report of each periodic job
        self._last_sync: dict | None = None
        self._last_audit: dict | None = None

    @property
    def reliable(self) -> ReliablePollingService:
        return self.components.reliable

    async def _run_db(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    def _sync_interval(self) -> float:
        """Repair tick: never slower than the fastest active gateway"""
        intervals = [g.poll_interval for g in self.config.gateways if g.is_active]
        return min([self.config.scheduler.tick_seconds, *intervals])

    async def start(self) -> None:
        """Start the poller service and block until shutdown"""
        logger.info("Starting Poller Service")
        self._running = True

        self._set_health("starting", False)

        counts = await self._run_db(self.components.entities.sync_config, self.config.gateways)
        logger.info("Configured gateways synced", extra=counts)

        await self._run_db(self.reliable.start_reliable_polling)

        self.loops.add("sync", self._sync_interval(), self._sync_tick, run_immediately=True)
        self.loops.add("audit", self.config.scheduler.audit_interval_seconds, self._audit_tick)
        await self.loops.start_all()
        await self.worker.start()

        if self.config.health.enabled:
            await self._start_health_server()

        self._set_health("running", True, started_at=self._start_time.isoformat())
        logger.info(
            f"Poller Service started ({len(self.config.gateways)} gateways)",
            extra={"gateway_count": len(self.config.gateways)},
        )

        self._setup_signal_handlers()
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop loops, let in-flight polls finish, release resources"""
        logger.info("Stopping Poller Service")
        self._running = False

        await self.loops.stop_all()
        await self.worker.stop()
        await self.components.publisher.drain()
        await self._stop_health_server()

        self._set_health("stopped", False)
        logger.info("Poller Service stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    def _set_health(self, status: str, is_healthy: bool, **extra) -> None:
        try:
            set_service_health(self.components.coordination, SERVICE_NAME, {
                "status": status,
                "is_healthy": is_healthy,
                **extra,
            })
        except Exception as e:
            logger.warning(f"Failed to record service health: {e}")

    async def _sync_tick(self) -> None:
        report = await self._run_db(self.reliable.ensure_active_gateways_polling)
        self._last_sync = report.to_dict()

    async def _audit_tick(self) -> None:
        report = await self._run_db(self.reliable.audit_and_cleanup)
        self._last_audit = report.to_dict()

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/status", self._status_handler)
        app.router.add_get("/validate", self._validate_handler)
        app.router.add_post("/repair", self._repair_handler)
        app.router.add_post("/audit", self._audit_handler)
        return app

    async def _start_health_server(self) -> None:
        """Start the operational HTTP server"""
        self._health_app = self.create_app()
        self._health_runner = web.AppRunner(self._health_app)
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, self.config.health.host, self.config.health.port)
        await site.start()

        logger.info(f"Health server started on {self.config.health.host}:{self.config.health.port}")

    async def _stop_health_server(self) -> None:
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return web.json_response({
            "status": "healthy" if self._running else "unhealthy",
            "service": SERVICE_NAME,
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "worker": self.worker.get_stats(),
            "loops": self.loops.get_stats(),
            "last_sync": self._last_sync,
            "last_audit": self._last_audit,
            "publisher_failures": self.components.publisher.failures,
        })

    async def _status_handler(self, request: web.Request) -> web.Response:
        status = await self._run_db(self.reliable.get_system_status)
        return web.json_response(status)

    async def _validate_handler(self, request: web.Request) -> web.Response:
        report = await self._run_db(self.reliable.validate_polling_integrity)
        return web.json_response(report.to_dict())

    async def _repair_handler(self, request: web.Request) -> web.Response:
        report = await self._run_db(self.reliable.ensure_active_gateways_polling)
        self._last_sync = report.to_dict()
        return web.json_response(report.to_dict())

    async def _audit_handler(self, request: web.Request) -> web.Response:
        report = await self._run_db(self.reliable.audit_and_cleanup)
        self._last_audit = report.to_dict()
        return web.json_response(report.to_dict())


async def run_service(config: PollerConfig) -> None:
    """Run the poller service until a shutdown signal arrives"""
    service = PollerService(config)

    try:
        await service.start()
    finally:
        await service.stop()
