"""
Gateway Circuit Breaker

Disables a gateway after a run of consecutive failed polls. The run is a
real counter kept on the gateway row: every poll with an error increments
it, including polls where only some points failed, and a clean poll resets
it. Once tripped the gateway stays inactive until an operator re-enables it.
"""

from gateway_poller.common.config import Gateway
from gateway_poller.common.exceptions import CircuitOpenError
from gateway_poller.common.logging_setup import get_service_logger
from gateway_poller.common.state import CoordinationStore, schedule_key
from gateway_poller.services.polling.notifier import ReadingPublisher
from gateway_poller.storage.local_db import EntityStore

logger = get_service_logger("scheduling.breaker")

DEFAULT_FAILURE_THRESHOLD = 10


class CircuitBreaker:
    """Trips gateways whose consecutive failures reach the threshold"""

    def __init__(
        self,
        entities: EntityStore,
        coordination: CoordinationStore,
        publisher: ReadingPublisher | None = None,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        enabled: bool = True,
    ):
        self.entities = entities
        self.coordination = coordination
        self.publisher = publisher
        self.failure_threshold = failure_threshold
        self.enabled = enabled

    def should_trip(self, gateway: Gateway) -> bool:
        return (
            self.enabled
            and gateway.is_active
            and gateway.consecutive_failures >= self.failure_threshold
        )

    def evaluate(self, gateway: Gateway) -> bool:
        """
        Check a gateway after its health counters were updated.

        Returns:
            True if the breaker tripped and the gateway was deactivated
        """
        if not self.should_trip(gateway):
            return False

        error = CircuitOpenError(gateway.id, gateway.consecutive_failures)

        self.entities.set_gateway_active(gateway.id, False)
        self.coordination.delete(schedule_key(gateway.id))
        gateway.is_active = False

        logger.warning(
            f"{error.message}; gateway {gateway.name} disabled until re-enabled",
            extra={
                "gateway_id": gateway.id,
                "gateway": gateway.name,
                "consecutive_failures": gateway.consecutive_failures,
                "success_count": gateway.success_count,
                "failure_count": gateway.failure_count,
            },
        )

        if self.publisher:
            self.publisher.publish_status_change(
                gateway, "active", "inactive", reason="circuit_breaker"
            )

        return True
