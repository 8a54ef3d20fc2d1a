"""
Common Utilities

Shared modules used across all services:
- state.py - TTL coordination store (locks, schedule state)
- config.py - Configuration and entity dataclasses
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Interval loops
- timestamp.py - UTC and interval alignment helpers
"""

from .state import CoordinationStore
from .config import (
    DataPoint,
    Gateway,
    Reading,
    DataType,
    ByteOrder,
    FunctionCode,
    Quality,
    PollingState,
    PollerConfig,
    ModbusSettings,
    SchedulerSettings,
    WorkerSettings,
    CircuitBreakerSettings,
    HealthSettings,
    LoggingSettings,
    load_poller_config,
)
from .exceptions import (
    ErrorCategory,
    Severity,
    PollerError,
    ConfigError,
    CodecError,
    DecodeError,
    InsufficientRegistersError,
    CommunicationError,
    ConnectionFailedError,
    ModbusReadError,
    StoreError,
    CircuitOpenError,
    categorize,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    LogContext,
    log_point_read,
    log_poll_result,
)

__all__ = [
    # State
    "CoordinationStore",
    # Config
    "DataPoint",
    "Gateway",
    "Reading",
    "DataType",
    "ByteOrder",
    "FunctionCode",
    "Quality",
    "PollingState",
    "PollerConfig",
    "ModbusSettings",
    "SchedulerSettings",
    "WorkerSettings",
    "CircuitBreakerSettings",
    "HealthSettings",
    "LoggingSettings",
    "load_poller_config",
    # Exceptions
    "ErrorCategory",
    "Severity",
    "PollerError",
    "ConfigError",
    "CodecError",
    "DecodeError",
    "InsufficientRegistersError",
    "CommunicationError",
    "ConnectionFailedError",
    "ModbusReadError",
    "StoreError",
    "CircuitOpenError",
    "categorize",
    # Logging
    "setup_logging",
    "get_service_logger",
    "LogContext",
    "log_point_read",
    "log_poll_result",
]
