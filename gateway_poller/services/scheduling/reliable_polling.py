"""
Reliable Polling Service

Keeps the actual schedule state in the coordination store in line with
each gateway's desired state (is_active). Scheduling a gateway means
enqueueing a poll task and recording a schedule entry; every decision is
taken under a short per-gateway TTL lock so any number of scheduler
processes can run side by side.

Periodic entry points (run from the poller service loops, or on demand
from the CLI and the HTTP surface):
    ensure_active_gateways_polling  - repair drift, start missing/overdue
    audit_and_cleanup               - drop inactive/stale entries and locks
    validate_polling_integrity      - read-only report of drift
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from gateway_poller.common.config import Gateway, PollingState, SchedulerSettings
from gateway_poller.common.logging_setup import get_service_logger
from gateway_poller.common.state import (
    GATEWAY_LOCK_PREFIX,
    SCHEDULE_PREFIX,
    SYSTEM_LOCK_KEY,
    SYSTEM_STATUS_KEY,
    CoordinationStore,
    gateway_lock_key,
    schedule_key,
)
from gateway_poller.common.timestamp import parse_iso, to_iso, utc_now
from gateway_poller.storage.local_db import EntityStore
from gateway_poller.storage.task_queue import TaskQueue

logger = get_service_logger("scheduling.reliable")

# Outcomes of a single start attempt
STARTED = "started"
ALREADY_ACTIVE = "already_active"
INACTIVE = "inactive"
LOCKED = "locked"
FAILED = "failed"

# Gateway health labels
HEALTH_ONLINE = "online"
HEALTH_DEGRADED = "degraded"
HEALTH_OFFLINE = "offline"
HEALTH_PAUSED = "paused"

ONLINE_INTERVALS = 2
OFFLINE_INTERVALS = 5
DEGRADED_ERROR_RATE = 20.0


@dataclass
class AuditReport:
    """Counts of entries removed by audit_and_cleanup"""
    inactive_polling: int = 0
    stale_statuses: int = 0
    orphaned_locks: int = 0
    stuck_tasks: int = 0
    purged_tasks: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class IntegrityReport:
    """Drift between desired and actual schedule state"""
    checked: int = 0
    issues: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues and not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked": self.checked,
            "issues": list(self.issues),
            "errors": list(self.errors),
        }


@dataclass
class SyncReport:
    """Result of one repair pass"""
    checked: int = 0
    started: int = 0
    already_active: int = 0
    failed: int = 0
    stopped_inactive: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def gateway_health(gateway: Gateway, now: datetime) -> str:
    """
    Health label from contact recency and lifetime error rate.

    online:   seen within 2x poll_interval, error rate at most 20%
    offline:  never seen, or silent for more than 5x poll_interval
    paused:   polling disabled
    degraded: anything in between
    """
    if not gateway.is_active:
        return HEALTH_PAUSED
    if gateway.last_seen_at is None:
        return HEALTH_OFFLINE

    silent_for = (now - gateway.last_seen_at).total_seconds()
    if silent_for > gateway.poll_interval * OFFLINE_INTERVALS:
        return HEALTH_OFFLINE

    attempts = gateway.success_count + gateway.failure_count
    error_rate = (gateway.failure_count / attempts * 100.0) if attempts else 0.0
    if silent_for < gateway.poll_interval * ONLINE_INTERVALS and error_rate <= DEGRADED_ERROR_RATE:
        return HEALTH_ONLINE
    return HEALTH_DEGRADED


class ReliablePollingService:
    """Lock-guarded scheduling of gateway polls with audit and repair"""

    def __init__(
        self,
        entities: EntityStore,
        coordination: CoordinationStore,
        queue: TaskQueue,
        settings: SchedulerSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.entities = entities
        self.coordination = coordination
        self.queue = queue
        self.settings = settings or SchedulerSettings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Schedule entries
    # ------------------------------------------------------------------

    def _schedule_entry(self, gateway_id: int) -> dict | None:
        entry = self.coordination.get(schedule_key(gateway_id))
        return entry if isinstance(entry, dict) else None

    @staticmethod
    def _last_scheduled(entry: dict) -> datetime | None:
        return parse_iso(entry.get("last_scheduled"))

    def _is_overdue(self, entry: dict, gateway: Gateway, now: datetime) -> bool:
        last = self._last_scheduled(entry)
        if last is None:
            return True
        return last + timedelta(seconds=gateway.poll_interval) <= now

    def gateway_state(self, gateway: Gateway) -> PollingState:
        """Current scheduling state of a gateway"""
        if not gateway.is_active:
            return PollingState.DISABLED
        entry = self._schedule_entry(gateway.id)
        if entry is None:
            return PollingState.UNSCHEDULED
        if self._is_overdue(entry, gateway, self._clock()):
            return PollingState.OVERDUE
        return PollingState.SCHEDULED

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    def _start(self, gateway: Gateway) -> str:
        if not gateway.is_active:
            logger.debug(f"Gateway {gateway.name} is inactive, skipping")
            return INACTIVE

        try:
            with self.coordination.lock(gateway_lock_key(gateway.id), self.settings.gateway_lock_ttl) as acquired:
                if not acquired:
                    logger.debug(f"Could not acquire lock for gateway {gateway.name}, another scheduler has it")
                    return LOCKED

                # Desired state may have changed since the caller loaded it
                current = self.entities.get_gateway(gateway.id)
                if current is None or not current.is_active:
                    self.coordination.delete(schedule_key(gateway.id))
                    logger.info(f"Gateway {gateway.name} became inactive before scheduling")
                    return INACTIVE

                now = self._clock()
                entry = self._schedule_entry(current.id)
                if entry is not None and not self._is_overdue(entry, current, now):
                    logger.debug(f"Gateway {current.name} already has active polling")
                    return ALREADY_ACTIVE

                task_id = self.queue.enqueue(current.id)
                self.coordination.put(
                    schedule_key(current.id),
                    {
                        "gateway_id": current.id,
                        "last_scheduled": to_iso(now),
                        "poll_interval": current.poll_interval,
                        "status": "scheduled",
                        "task_id": task_id,
                    },
                    ttl=current.poll_interval * 2,
                )

        except Exception as e:
            logger.error(
                f"Failed to start polling for gateway {gateway.name}: {e}",
                extra={"gateway_id": gateway.id},
                exc_info=True,
            )
            return FAILED

        logger.info(
            f"Started polling for gateway {current.name} (task #{task_id})",
            extra={"gateway_id": current.id, "task_id": task_id},
        )
        return STARTED

    def start_gateway_polling(self, gateway: Gateway) -> bool:
        """
        Schedule one poll of a gateway.

        Returns:
            True if a poll task was enqueued by this call
        """
        return self._start(gateway) == STARTED

    def stop_gateway_polling(self, gateway: Gateway) -> bool:
        """Clear the gateway's schedule entry; True if one existed"""
        try:
            removed = self.coordination.delete(schedule_key(gateway.id))
        except Exception as e:
            logger.error(f"Failed to stop polling for gateway {gateway.name}: {e}", exc_info=True)
            return False

        logger.info(f"Stopped polling for gateway {gateway.name}", extra={"gateway_id": gateway.id})
        return removed

    def start_reliable_polling(self) -> bool:
        """
        Bootstrap scheduling for every active gateway.

        Only one scheduler runs this at a time (system lock). Returns False
        when another instance holds the lock or the bootstrap failed.
        """
        try:
            with self.coordination.lock(SYSTEM_LOCK_KEY, self.settings.system_lock_ttl) as acquired:
                if not acquired:
                    logger.info("Polling system already running, skipping startup")
                    return False

                logger.info("Starting reliable polling system")
                gateways = self.entities.list_gateways(active_only=True)
                outcomes = [self._start(g) for g in gateways]
                started = outcomes.count(STARTED)
                scheduled = started + outcomes.count(ALREADY_ACTIVE)

                self.coordination.put(
                    SYSTEM_STATUS_KEY,
                    {
                        "started_at": to_iso(self._clock()),
                        "active_gateways": scheduled,
                        "total_gateways": len(gateways),
                    },
                    ttl=self.settings.status_ttl,
                )

        except Exception as e:
            logger.error(f"Polling system bootstrap failed: {e}", exc_info=True)
            return False

        logger.info(f"Reliable polling system started for {scheduled}/{len(gateways)} gateways")
        return True

    def stop_all_polling(self) -> int:
        """
        Clear every schedule entry plus the system lock and snapshot.

        Returns:
            Number of schedule entries removed
        """
        logger.info("Stopping all gateway polling")
        removed = self.coordination.delete_prefix(SCHEDULE_PREFIX)
        self.coordination.delete(SYSTEM_LOCK_KEY)
        self.coordination.delete(SYSTEM_STATUS_KEY)
        logger.info(f"All polling stopped, {removed} schedule entries cleared")
        return removed

    def enable_gateway(self, gateway_id: int) -> bool:
        """Re-enable a gateway (resets the failure run) and schedule it"""
        if not self.entities.set_gateway_active(gateway_id, True):
            return False
        gateway = self.entities.get_gateway(gateway_id)
        logger.info(f"Gateway {gateway.name} enabled", extra={"gateway_id": gateway_id})
        self._start(gateway)
        return True

    def disable_gateway(self, gateway_id: int) -> bool:
        """Disable a gateway and clear its schedule entry"""
        gateway = self.entities.get_gateway(gateway_id)
        if gateway is None:
            return False
        self.entities.set_gateway_active(gateway_id, False)
        logger.info(f"Gateway {gateway.name} disabled", extra={"gateway_id": gateway_id})
        self.stop_gateway_polling(gateway)
        return True

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_system_status(self) -> dict[str, Any]:
        now = self._clock()
        system = self.coordination.get(SYSTEM_STATUS_KEY, {}) or {}
        gateways = self.entities.list_gateways()

        rows = []
        actively_polling = 0
        for gateway in gateways:
            entry = self._schedule_entry(gateway.id)
            last = self._last_scheduled(entry) if entry else None
            row = {
                "id": gateway.id,
                "name": gateway.name,
                "is_active": gateway.is_active,
                "poll_interval": gateway.poll_interval,
                "is_polling": entry is not None,
                "last_scheduled": to_iso(last),
                "next_poll_due": to_iso(last + timedelta(seconds=gateway.poll_interval)) if last else None,
                "state": self.gateway_state(gateway).value,
                "health": gateway_health(gateway, now),
                "consecutive_failures": gateway.consecutive_failures,
                "success_rate": round(gateway.success_rate, 2),
                "last_seen_at": to_iso(gateway.last_seen_at),
                "last_error": gateway.last_error,
            }
            if entry is not None and gateway.is_active:
                actively_polling += 1
            rows.append(row)

        return {
            "system": system,
            "summary": {
                "total_gateways": len(gateways),
                "active_gateways": sum(1 for g in gateways if g.is_active),
                "actively_polling": actively_polling,
                "system_running": bool(system),
                "pending_tasks": self.queue.pending_count(),
            },
            "gateways": rows,
        }

    # ------------------------------------------------------------------
    # Audit / validate / repair
    # ------------------------------------------------------------------

    def audit_and_cleanup(self) -> AuditReport:
        """Remove schedule entries and locks that no longer reflect real work"""
        logger.info("Starting polling system audit and cleanup")
        report = AuditReport()
        now = self._clock()

        try:
            gateways = self.entities.list_gateways()
        except Exception as e:
            logger.error(f"Audit could not load gateways: {e}", exc_info=True)
            report.errors.append(str(e))
            return report

        for gateway in gateways:
            try:
                entry = self._schedule_entry(gateway.id)

                if entry is not None and not gateway.is_active:
                    self.coordination.delete(schedule_key(gateway.id))
                    report.inactive_polling += 1
                    logger.info(f"Cleaned polling status for inactive gateway {gateway.name}")
                elif entry is not None:
                    last = self._last_scheduled(entry)
                    max_age = timedelta(seconds=gateway.poll_interval * self.settings.stale_multiplier)
                    if last is None or last + max_age <= now:
                        self.coordination.delete(schedule_key(gateway.id))
                        report.stale_statuses += 1
                        logger.info(f"Cleaned stale polling status for gateway {gateway.name}")

                if self.coordination.delete(gateway_lock_key(gateway.id)):
                    report.orphaned_locks += 1
                    logger.info(f"Cleaned orphaned lock for gateway {gateway.name}")

            except Exception as e:
                logger.error(f"Audit failed for gateway {gateway.name}: {e}", exc_info=True)
                report.errors.append(f"{gateway.name}: {e}")

        # Locks for gateways that no longer exist
        known = {gateway_lock_key(g.id) for g in gateways}
        for key in self.coordination.keys(GATEWAY_LOCK_PREFIX):
            if key not in known and self.coordination.delete(key):
                report.orphaned_locks += 1

        try:
            report.stuck_tasks = self.queue.fail_stuck(self.settings.stuck_task_seconds)
            report.purged_tasks = self.queue.purge_finished(self.settings.status_ttl)
        except Exception as e:
            logger.error(f"Failed to clear stuck tasks: {e}", exc_info=True)
            report.errors.append(f"stuck_tasks: {e}")

        logger.info("Polling system audit completed", extra=report.to_dict())
        return report

    def validate_polling_integrity(self) -> IntegrityReport:
        """Report active gateways with missing or overdue schedules"""
        report = IntegrityReport()
        now = self._clock()

        try:
            gateways = self.entities.list_gateways(active_only=True)
        except Exception as e:
            logger.error(f"Integrity check could not load gateways: {e}", exc_info=True)
            report.errors.append(str(e))
            return report

        for gateway in gateways:
            report.checked += 1
            entry = self._schedule_entry(gateway.id)

            if entry is None:
                report.issues.append({
                    "type": "missing_polling",
                    "gateway_id": gateway.id,
                    "gateway": gateway.name,
                    "message": "Active gateway has no polling scheduled",
                })
                continue

            last = self._last_scheduled(entry)
            if self._is_overdue(entry, gateway, now):
                expected = last + timedelta(seconds=gateway.poll_interval) if last else now
                overdue = int((now - expected).total_seconds())
                report.issues.append({
                    "type": "overdue_polling",
                    "gateway_id": gateway.id,
                    "gateway": gateway.name,
                    "message": f"Polling is {overdue} seconds overdue",
                })

        return report

    def ensure_active_gateways_polling(self) -> SyncReport:
        """Start missing or overdue schedules, clear those of inactive gateways"""
        logger.debug("Ensuring all active gateways have polling scheduled")
        report = SyncReport()
        now = self._clock()

        try:
            gateways = self.entities.list_gateways()
        except Exception as e:
            logger.error(f"Repair could not load gateways: {e}", exc_info=True)
            report.errors.append(str(e))
            return report

        for gateway in gateways:
            report.checked += 1
            try:
                entry = self._schedule_entry(gateway.id)

                if not gateway.is_active:
                    if entry is not None:
                        self.stop_gateway_polling(gateway)
                        report.stopped_inactive += 1
                    continue

                if entry is not None:
                    if not self._is_overdue(entry, gateway, now):
                        report.already_active += 1
                        continue
                    self.stop_gateway_polling(gateway)

                outcome = self._start(gateway)
                if outcome == STARTED:
                    report.started += 1
                elif outcome in (ALREADY_ACTIVE, LOCKED):
                    # Another scheduler got there first
                    report.already_active += 1
                elif outcome == INACTIVE:
                    report.stopped_inactive += 1
                else:
                    report.failed += 1
                    logger.warning(f"Failed to start polling for active gateway {gateway.name}")

            except Exception as e:
                report.failed += 1
                report.errors.append(f"{gateway.name}: {e}")
                logger.error(f"Repair failed for gateway {gateway.name}: {e}", exc_info=True)

        if report.started or report.stopped_inactive or report.failed:
            logger.info("Gateway polling synchronization completed", extra=report.to_dict())
        return report
