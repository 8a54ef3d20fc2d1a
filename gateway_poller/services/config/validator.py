"""
Configuration Validator

Validates the raw poller configuration (parsed YAML) before it is synced
into the entity store.
"""

from typing import Any

from gateway_poller.common.config import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PORT,
    DEFAULT_UNIT_ID,
    REGISTER_COUNTS,
    ByteOrder,
    DataType,
    FunctionCode,
)
from gateway_poller.common.logging_setup import get_service_logger

logger = get_service_logger("config.validator")

MAX_REGISTER_ADDRESS = 65535
MIN_POLL_INTERVAL = 1
MAX_POLL_INTERVAL = 3600


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ConfigValidator:
    """Validates gateway and data point configuration"""

    def validate(self, config: dict[str, Any]) -> tuple[bool, list[str]]:
        """
        Validate configuration.

        Args:
            config: Configuration dictionary

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        errors: list[str] = []

        gateways = config.get("gateways", [])
        if not isinstance(gateways, list):
            errors.append("'gateways' must be a list")
            gateways = []

        errors.extend(self._validate_settings(config))

        names: set[str] = set()
        endpoints: dict[tuple, str] = {}

        for index, gateway in enumerate(gateways):
            if not isinstance(gateway, dict):
                errors.append(f"Gateway #{index + 1}: must be a mapping")
                continue

            name = gateway.get("name") or f"#{index + 1}"
            if not gateway.get("name"):
                errors.append(f"Gateway {name}: missing name")
            elif name in names:
                errors.append(f"Duplicate gateway name: {name}")
            names.add(name)

            gateway_errors = self._validate_gateway(gateway, name)
            errors.extend(gateway_errors)

            endpoint = (
                gateway.get("host"),
                _as_int(gateway.get("port", DEFAULT_PORT)),
                _as_int(gateway.get("unit_id", DEFAULT_UNIT_ID)),
            )
            if endpoint in endpoints:
                errors.append(
                    f"Gateway {name}: host/port/unit {endpoint[0]}:{endpoint[1]}/{endpoint[2]} "
                    f"already used by {endpoints[endpoint]}"
                )
            else:
                endpoints[endpoint] = name

            errors.extend(self._validate_points(gateway.get("data_points", []), name))

        is_valid = len(errors) == 0

        if not is_valid:
            logger.warning(
                f"Config validation failed: {len(errors)} errors",
                extra={"errors": errors},
            )
        else:
            logger.debug("Config validation passed")

        return is_valid, errors

    def _validate_settings(self, config: dict[str, Any]) -> list[str]:
        """Validate service-level settings"""
        errors = []

        modbus = config.get("modbus", {}) or {}
        timeout = modbus.get("timeout", 5.0)
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            errors.append("modbus.timeout must be a positive number")

        delays = modbus.get("retry_delays", [1, 2, 4])
        if not isinstance(delays, list) or any(
            not isinstance(d, (int, float)) or d < 0 for d in delays
        ):
            errors.append("modbus.retry_delays must be a list of non-negative numbers")

        worker = config.get("worker", {}) or {}
        concurrency = _as_int(worker.get("concurrency", 8))
        if concurrency is None or concurrency < 1:
            errors.append("worker.concurrency must be at least 1")

        breaker = config.get("circuit_breaker", {}) or {}
        threshold = _as_int(breaker.get("failure_threshold", 10))
        if threshold is None or threshold < 1:
            errors.append("circuit_breaker.failure_threshold must be at least 1")

        return errors

    def _validate_gateway(self, gateway: dict[str, Any], name: str) -> list[str]:
        """Validate connection settings of one gateway"""
        errors = []

        if not gateway.get("host"):
            errors.append(f"Gateway {name}: missing host")

        port = _as_int(gateway.get("port", DEFAULT_PORT))
        if port is None or not 1 <= port <= 65535:
            errors.append(f"Gateway {name}: port must be between 1 and 65535")

        unit_id = _as_int(gateway.get("unit_id", DEFAULT_UNIT_ID))
        if unit_id is None or not 1 <= unit_id <= 255:
            errors.append(f"Gateway {name}: unit_id must be between 1 and 255")

        interval = _as_int(gateway.get("poll_interval", DEFAULT_POLL_INTERVAL))
        if interval is None or not MIN_POLL_INTERVAL <= interval <= MAX_POLL_INTERVAL:
            errors.append(
                f"Gateway {name}: poll_interval must be between "
                f"{MIN_POLL_INTERVAL} and {MAX_POLL_INTERVAL} seconds"
            )

        return errors

    def _validate_points(self, points: Any, gateway_name: str) -> list[str]:
        """Validate data points of one gateway, including register overlap"""
        errors = []

        if not isinstance(points, list):
            return [f"Gateway {gateway_name}: 'data_points' must be a list"]

        labels: set[str] = set()
        # (function_code, first, last, label) of every valid range
        ranges: list[tuple[int, int, int, str]] = []

        for index, point in enumerate(points):
            if not isinstance(point, dict):
                errors.append(f"Gateway {gateway_name}: data point #{index + 1} must be a mapping")
                continue

            label = point.get("label") or f"#{index + 1}"
            prefix = f"Gateway {gateway_name}, point {label}"

            if not point.get("label"):
                errors.append(f"{prefix}: missing label")
            elif label in labels:
                errors.append(f"Gateway {gateway_name}: duplicate data point label {label}")
            labels.add(label)

            try:
                data_type = DataType(point.get("data_type", "uint16"))
            except ValueError:
                errors.append(f"{prefix}: unsupported data_type {point.get('data_type')!r}")
                data_type = None

            try:
                ByteOrder(point.get("byte_order", "big_endian"))
            except ValueError:
                errors.append(f"{prefix}: unsupported byte_order {point.get('byte_order')!r}")

            function_code = _as_int(point.get("function_code", 3))
            if function_code not in {fc.value for fc in FunctionCode}:
                errors.append(f"{prefix}: function_code must be 3 or 4")
                function_code = None

            address = _as_int(point.get("register_address"))
            if address is None or not 1 <= address <= MAX_REGISTER_ADDRESS:
                errors.append(f"{prefix}: register_address must be between 1 and {MAX_REGISTER_ADDRESS}")
                address = None

            count = _as_int(point.get("register_count", 0))
            if data_type is not None and count == 0:
                count = REGISTER_COUNTS[data_type]
            if count is None or not 1 <= count <= 4:
                errors.append(f"{prefix}: register_count must be between 1 and 4")
                count = None
            elif data_type is not None and count != REGISTER_COUNTS[data_type]:
                errors.append(
                    f"{prefix}: {data_type.value} requires {REGISTER_COUNTS[data_type]} "
                    f"registers, got {count}"
                )

            if address is not None and count is not None:
                last = address + count - 1
                if last > MAX_REGISTER_ADDRESS:
                    errors.append(f"{prefix}: register range {address}-{last} exceeds {MAX_REGISTER_ADDRESS}")
                elif function_code is not None:
                    ranges.append((function_code, address, last, label))

            scale = point.get("scale_factor", 1.0)
            if not isinstance(scale, (int, float)) or isinstance(scale, bool) or scale == 0:
                errors.append(f"{prefix}: scale_factor must be a non-zero number")

        errors.extend(self._find_overlaps(ranges, gateway_name))
        return errors

    @staticmethod
    def _find_overlaps(ranges: list[tuple[int, int, int, str]], gateway_name: str) -> list[str]:
        errors = []
        previous = None
        for current in sorted(ranges):
            # Holding and input registers are separate tables
            if previous is None or previous[0] != current[0]:
                previous = current
                continue
            if current[1] <= previous[2]:
                errors.append(
                    f"Gateway {gateway_name}: registers of {current[3]} ({current[1]}-{current[2]}) "
                    f"overlap {previous[3]} ({previous[1]}-{previous[2]}) on function {current[0]}"
                )
            # Keep the range reaching furthest as the reference
            if current[2] > previous[2]:
                previous = current
        return errors
