"""
Reading Publisher

Fire-and-forget notification of newly stored readings and gateway status
changes to in-process listeners. A failing listener is logged and never
affects the poll that produced the event.
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable

from gateway_poller.common.config import DataPoint, Gateway, Reading
from gateway_poller.common.logging_setup import get_service_logger

logger = get_service_logger("polling.notifier")

EVENT_NEW_READING = "new_reading"
EVENT_GATEWAY_STATUS = "gateway_status_changed"


@dataclass
class Event:
    """Event delivered to listeners"""
    name: str
    payload: dict[str, Any]


Listener = Callable[[Event], Any]


class ReadingPublisher:
    """Dispatches events to registered listeners"""

    def __init__(self):
        self._listeners: list[Listener] = []
        self._pending: set[asyncio.Task] = set()
        self.failures = 0

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish_reading(self, reading: Reading, gateway: Gateway, point: DataPoint) -> None:
        """Announce a newly inserted reading"""
        self._dispatch(Event(EVENT_NEW_READING, {
            "reading_id": reading.id,
            "data_point_id": reading.data_point_id,
            "gateway_id": gateway.id,
            "gateway": gateway.name,
            "label": point.label,
            "group": point.group_name,
            "value": reading.scaled_value,
            "unit": point.unit,
            "quality": reading.quality.value,
            "read_at": reading.read_at.isoformat() if reading.read_at else None,
        }))

    def publish_status_change(self, gateway: Gateway, previous: str, current: str, reason: str = "") -> None:
        """Announce a gateway activation change"""
        self._dispatch(Event(EVENT_GATEWAY_STATUS, {
            "gateway_id": gateway.id,
            "gateway": gateway.name,
            "previous_status": previous,
            "new_status": current,
            "reason": reason,
            "success_count": gateway.success_count,
            "failure_count": gateway.failure_count,
        }))

    def _dispatch(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_done)
            except Exception as e:
                self.failures += 1
                logger.warning(f"Listener failed for {event.name}: {e}")

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failures += 1
            logger.warning(f"Async listener failed: {exc}")

    async def drain(self) -> None:
        """Wait for in-flight async listeners (used at shutdown)"""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
