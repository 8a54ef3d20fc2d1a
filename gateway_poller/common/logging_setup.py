"""
Structured Logging Setup

Consistent logging configuration across all services.
Uses JSON format for structured logs in production.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "service",
    "message", "taskName",
})


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields passed via extra={...}
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def _formatter(json_format: bool) -> logging.Formatter:
    if json_format:
        return JsonFormatter()
    return logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "polling", "scheduling")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"gateway_poller.{service_name}")
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(_formatter(json_format))
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Level and format come from POLLER_LOG_LEVEL / POLLER_LOG_FORMAT.
    """
    log_level = os.environ.get("POLLER_LOG_LEVEL", "INFO")
    json_format = os.environ.get("POLLER_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def reconfigure_all(log_level: str, json_format: bool) -> None:
    """Apply a new level/format to every gateway_poller logger already created"""
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = _formatter(json_format)

    for name, logger in logging.Logger.manager.loggerDict.items():
        if not name.startswith("gateway_poller.") or not isinstance(logger, logging.Logger):
            continue
        logger.setLevel(numeric_level)
        for handler in logger.handlers:
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)


class LogContext:
    """
    Context manager for adding temporary context to logs.

    Usage:
        with LogContext(logger, gateway_id=3, operation="poll"):
            logger.info("Polling gateway")
    """

    def __init__(self, logger: logging.Logger, **context: Any):
        self.logger = logger
        self.context = context
        self._original_factory = None

    def __enter__(self):
        self._original_factory = logging.getLogRecordFactory()

        def record_factory(*args, **kwargs):
            record = self._original_factory(*args, **kwargs)
            for key, value in self.context.items():
                setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        logging.setLogRecordFactory(self._original_factory)
        return False


def log_point_read(
    logger: logging.Logger,
    gateway_name: str,
    point_label: str,
    value: Any,
    success: bool = True,
) -> None:
    """Log a data point read"""
    if success:
        logger.debug(
            f"Read {gateway_name}.{point_label} = {value}",
            extra={"gateway": gateway_name, "point": point_label, "value": value},
        )
    else:
        logger.warning(
            f"Failed to read {gateway_name}.{point_label}",
            extra={"gateway": gateway_name, "point": point_label},
        )


def log_poll_result(
    logger: logging.Logger,
    gateway_name: str,
    readings: int,
    errors: int,
    duration_ms: float,
) -> None:
    """Log the outcome of one gateway poll"""
    log_method = logger.info if errors == 0 else logger.warning
    log_method(
        f"Poll {gateway_name}: readings={readings}, errors={errors}, "
        f"duration={duration_ms:.0f}ms",
        extra={
            "gateway": gateway_name,
            "readings": readings,
            "errors": errors,
            "duration_ms": duration_ms,
        },
    )
