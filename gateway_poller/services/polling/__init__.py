"""
Polling Layer

Responsibilities:
- Poll a gateway's data points and persist readings (orchestrator)
- Claim and run queued poll tasks (worker)
- Categorise errors and render user messages (error_handler)
- Notify listeners of new readings (notifier)
"""

from .error_handler import ErrorHandler, ErrorInfo
from .notifier import ReadingPublisher
from .orchestrator import PollOrchestrator, PollResult, PointSample
from .worker import PollWorker

__all__ = [
    "ErrorHandler",
    "ErrorInfo",
    "ReadingPublisher",
    "PollOrchestrator",
    "PollResult",
    "PointSample",
    "PollWorker",
]
