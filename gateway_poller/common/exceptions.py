"""
Custom Exception Classes for Gateway Poller

Hierarchical exception structure for error handling across services.
Every error raised on the poll path carries an ErrorCategory so the
orchestrator can attach it to a reading without string matching.
"""

from enum import Enum


class ErrorCategory(str, Enum):
    """Categorised poll errors"""
    CONNECTION_TIMEOUT = "connection_timeout"
    CONNECTION_REFUSED = "connection_refused"
    ILLEGAL_REGISTER = "illegal_register"
    UNSUPPORTED_FUNCTION = "unsupported_function"
    DECODE_FAILURE = "decode_failure"
    INSUFFICIENT_REGISTERS = "insufficient_registers"
    DUPLICATE_READING = "duplicate_reading"
    UNKNOWN = "unknown_error"


class Severity(str, Enum):
    """Error severity levels"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


CATEGORY_SEVERITY: dict[ErrorCategory, Severity] = {
    ErrorCategory.CONNECTION_TIMEOUT: Severity.HIGH,
    ErrorCategory.CONNECTION_REFUSED: Severity.HIGH,
    ErrorCategory.ILLEGAL_REGISTER: Severity.MEDIUM,
    ErrorCategory.UNSUPPORTED_FUNCTION: Severity.MEDIUM,
    ErrorCategory.DECODE_FAILURE: Severity.LOW,
    ErrorCategory.INSUFFICIENT_REGISTERS: Severity.LOW,
    ErrorCategory.DUPLICATE_READING: Severity.INFO,
    ErrorCategory.UNKNOWN: Severity.MEDIUM,
}

# Connection-level categories abort the rest of a gateway poll
CONNECTION_CATEGORIES = frozenset({
    ErrorCategory.CONNECTION_TIMEOUT,
    ErrorCategory.CONNECTION_REFUSED,
})


class PollerError(Exception):
    """Base exception for all gateway poller errors"""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)

    @property
    def severity(self) -> Severity:
        return CATEGORY_SEVERITY[self.category]


class ConfigError(PollerError):
    """Configuration-related errors"""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(f"Config Error: {message}", recoverable)


class CodecError(PollerError):
    """Register decoding/encoding errors"""

    category = ErrorCategory.DECODE_FAILURE

    def __init__(self, message: str):
        super().__init__(message, recoverable=False)


class DecodeError(CodecError):
    """Unknown data type, byte order or malformed response frame"""


class InsufficientRegistersError(CodecError):
    """Fewer words than the data type requires"""

    category = ErrorCategory.INSUFFICIENT_REGISTERS

    def __init__(self, data_type: str, required: int, received: int):
        self.data_type = data_type
        self.required = required
        self.received = received
        super().__init__(
            f"{data_type.capitalize()} requires at least {required} registers, got {received}"
        )


class CommunicationError(PollerError):
    """Modbus/network communication errors"""

    def __init__(
        self,
        message: str,
        host: str | None = None,
        port: int | None = None,
        recoverable: bool = True,
    ):
        self.host = host
        self.port = port
        super().__init__(message, recoverable)


class ConnectionFailedError(CommunicationError):
    """All connection attempts to a gateway failed"""

    def __init__(
        self,
        host: str,
        port: int,
        attempts: int,
        category: ErrorCategory = ErrorCategory.CONNECTION_TIMEOUT,
        cause: Exception | None = None,
    ):
        self.attempts = attempts
        self.category = category
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(
            f"Connection to {host}:{port} failed after {attempts} attempts{detail}",
            host=host,
            port=port,
        )


class ModbusReadError(CommunicationError):
    """A register read was rejected or did not complete"""

    def __init__(
        self,
        message: str,
        host: str | None = None,
        port: int | None = None,
        function_code: int | None = None,
        address: int | None = None,
    ):
        self.function_code = function_code
        self.address = address
        super().__init__(message, host=host, port=port)


class ReadTimeoutError(ModbusReadError):
    category = ErrorCategory.CONNECTION_TIMEOUT


class PeerRefusedError(ModbusReadError):
    category = ErrorCategory.CONNECTION_REFUSED


class IllegalRegisterError(ModbusReadError):
    category = ErrorCategory.ILLEGAL_REGISTER


class UnsupportedFunctionError(ModbusReadError):
    category = ErrorCategory.UNSUPPORTED_FUNCTION


class FrameDecodeError(ModbusReadError):
    """Malformed or short response frame"""
    category = ErrorCategory.DECODE_FAILURE


class StoreError(PollerError):
    """Entity store or coordination store errors"""

    def __init__(self, message: str, operation: str | None = None):
        self.operation = operation
        super().__init__(f"Store Error: {message}", recoverable=True)


class CircuitOpenError(PollerError):
    """Circuit breaker is open - too many consecutive failures"""

    def __init__(self, gateway_id: int, failure_count: int):
        self.gateway_id = gateway_id
        self.failure_count = failure_count
        super().__init__(
            f"Circuit open for gateway {gateway_id} after {failure_count} consecutive failures",
            recoverable=False,
        )


def categorize(exc: BaseException) -> ErrorCategory:
    """Map any exception to its poll error category"""
    if isinstance(exc, PollerError):
        return exc.category
    if isinstance(exc, TimeoutError):
        return ErrorCategory.CONNECTION_TIMEOUT
    if isinstance(exc, ConnectionRefusedError):
        return ErrorCategory.CONNECTION_REFUSED
    return ErrorCategory.UNKNOWN
