"""
Scheduling Layer

Lock-guarded scheduling, audit/validate/repair and the circuit breaker.
"""

from .circuit_breaker import CircuitBreaker
from .reliable_polling import AuditReport, IntegrityReport, ReliablePollingService, SyncReport

__all__ = [
    "CircuitBreaker",
    "AuditReport",
    "IntegrityReport",
    "ReliablePollingService",
    "SyncReport",
]
