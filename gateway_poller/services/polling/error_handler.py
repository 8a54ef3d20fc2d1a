"""
Poll Error Handler

Turns a categorised exception into the structured error entry attached
to a PollResult: category, severity, a template-rendered user message,
suggested actions and full diagnostic context. Diagnostics go to the log;
the user message never contains stack traces or raw exception text.
"""

import traceback
from dataclasses import dataclass, field
from typing import Any

from gateway_poller.common.config import ByteOrder, DataPoint, DataType, Gateway
from gateway_poller.common.exceptions import (
    CATEGORY_SEVERITY,
    ErrorCategory,
    Severity,
    categorize,
)
from gateway_poller.common.logging_setup import get_service_logger
from gateway_poller.common.timestamp import to_iso, utc_now

logger = get_service_logger("polling.errors")

MESSAGE_TEMPLATES: dict[ErrorCategory, str] = {
    ErrorCategory.CONNECTION_TIMEOUT: (
        "Connection to gateway {gateway} timed out{point}. "
        "The device may be offline or the network may be unreachable."
    ),
    ErrorCategory.CONNECTION_REFUSED: (
        "Connection to gateway {gateway} was refused{point}. "
        "The device may not be running a Modbus service on the configured port."
    ),
    ErrorCategory.ILLEGAL_REGISTER: (
        "Invalid register address{point} on gateway {gateway}. "
        "The requested register may not exist on this device."
    ),
    ErrorCategory.UNSUPPORTED_FUNCTION: (
        "Unsupported Modbus function{point} on gateway {gateway}. "
        "The device may not support the requested operation."
    ),
    ErrorCategory.DECODE_FAILURE: (
        "Failed to decode data{point} from gateway {gateway}. "
        "The data type or byte order configuration may be incorrect."
    ),
    ErrorCategory.INSUFFICIENT_REGISTERS: (
        "Insufficient register data{point} from gateway {gateway}. "
        "The register count may be too small for the data type."
    ),
    ErrorCategory.DUPLICATE_READING: (
        "A reading{point} from gateway {gateway} was already stored for this interval."
    ),
    ErrorCategory.UNKNOWN: (
        "An unexpected error occurred while communicating with gateway {gateway}{point}."
    ),
}

SUGGESTED_ACTIONS: dict[ErrorCategory, list[str]] = {
    ErrorCategory.CONNECTION_TIMEOUT: [
        "Check network connectivity to the device",
        "Verify the IP address and port are correct",
        "Increase the connection timeout if the network is slow",
        "Check if the device is powered on and responding",
    ],
    ErrorCategory.CONNECTION_REFUSED: [
        "Verify the Modbus TCP service is running on the device",
        "Check if the port number is correct (default: 502)",
        "Ensure no firewall is blocking the connection",
    ],
    ErrorCategory.ILLEGAL_REGISTER: [
        "Check the device documentation for valid register addresses",
        "Verify the register address is within the supported range",
        "Ensure the function code is appropriate for the register",
    ],
    ErrorCategory.UNSUPPORTED_FUNCTION: [
        "Check if the device supports the requested Modbus function",
        "Try function 3 (holding registers) instead of 4 (input registers) or vice versa",
    ],
    ErrorCategory.DECODE_FAILURE: [
        "Verify the data type matches the device specification",
        "Check if the byte order is correct",
    ],
    ErrorCategory.INSUFFICIENT_REGISTERS: [
        "Set the register count to match the data type",
        "Check device documentation for register layout",
    ],
    ErrorCategory.DUPLICATE_READING: [],
    ErrorCategory.UNKNOWN: [
        "Verify all configuration parameters are correct",
        "Check the poller logs for the full diagnostic record",
    ],
}


@dataclass
class ErrorInfo:
    """Structured error entry for one failed data point or gateway"""
    category: ErrorCategory
    severity: Severity
    user_message: str
    point_id: int | None = None
    point_label: str | None = None
    diagnostic_info: dict[str, Any] = field(default_factory=dict)
    suggested_actions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "point_id": self.point_id,
            "point_label": self.point_label,
            "error_category": self.category.value,
            "severity": self.severity.value,
            "user_message": self.user_message,
            "diagnostic_info": self.diagnostic_info,
            "suggested_actions": list(self.suggested_actions),
        }


class ErrorHandler:
    """Categorises poll errors and renders user-facing messages"""

    def handle(
        self,
        exc: BaseException,
        gateway: Gateway,
        point: DataPoint | None = None,
    ) -> ErrorInfo:
        """
        Build the error entry for exc and log its diagnostic context.

        Args:
            exc: The exception raised while polling
            gateway: Gateway being polled
            point: Data point being read, if the error is point-specific
        """
        category = categorize(exc)
        severity = CATEGORY_SEVERITY[category]
        diagnostic_info = self.diagnostic_info(exc, gateway, point)

        info = ErrorInfo(
            category=category,
            severity=severity,
            user_message=self.user_message(category, gateway, point),
            point_id=point.id if point else None,
            point_label=point.label if point else None,
            diagnostic_info=diagnostic_info,
            suggested_actions=list(SUGGESTED_ACTIONS[category]),
        )

        log_method = {
            Severity.HIGH: logger.error,
            Severity.MEDIUM: logger.warning,
            Severity.LOW: logger.warning,
            Severity.INFO: logger.info,
        }[severity]
        log_method(
            f"Modbus error on {gateway.name}"
            f"{'.' + point.label if point else ''}: {category.value}: {exc}",
            extra={
                "gateway_id": gateway.id,
                "gateway": gateway.name,
                "data_point_id": point.id if point else None,
                "error_category": category.value,
                "severity": severity.value,
                "diagnostic_info": diagnostic_info,
            },
            exc_info=exc if category == ErrorCategory.UNKNOWN else None,
        )

        return info

    def user_message(
        self,
        category: ErrorCategory,
        gateway: Gateway,
        point: DataPoint | None = None,
    ) -> str:
        gateway_info = f"{gateway.name} ({gateway.host}:{gateway.port})"
        point_info = f" for data point '{point.label}'" if point else ""
        return MESSAGE_TEMPLATES[category].format(gateway=gateway_info, point=point_info)

    def diagnostic_info(
        self,
        exc: BaseException,
        gateway: Gateway,
        point: DataPoint | None = None,
    ) -> dict[str, Any]:
        frames = traceback.extract_tb(exc.__traceback__) if exc.__traceback__ else []
        origin = frames[-1] if frames else None

        info: dict[str, Any] = {
            "gateway_config": {
                "host": gateway.host,
                "port": gateway.port,
                "unit_id": gateway.unit_id,
                "poll_interval": gateway.poll_interval,
                "is_active": gateway.is_active,
            },
            "error_details": {
                "type": type(exc).__name__,
                "message": str(exc),
                "file": origin.filename.rsplit("/", 1)[-1] if origin else None,
                "line": origin.lineno if origin else None,
                "timestamp": to_iso(utc_now()),
            },
            "network_info": {
                "last_seen": to_iso(gateway.last_seen_at),
                "success_count": gateway.success_count,
                "failure_count": gateway.failure_count,
                "consecutive_failures": gateway.consecutive_failures,
                "success_rate": round(gateway.success_rate, 2),
            },
        }

        if point:
            info["data_point_config"] = {
                "label": point.label,
                "group": point.group_name,
                "function": int(point.function_code),
                "register": point.register_address,
                "count": point.register_count,
                "data_type": DataType(point.data_type).value,
                "byte_order": ByteOrder(point.byte_order).value,
                "swap_bytes": point.swap_bytes,
            }

        return info
