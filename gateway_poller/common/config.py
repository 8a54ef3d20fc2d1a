"""
Configuration Dataclasses

Type-safe configuration and entity structures for the poller.
Gateways and data points are declared in the YAML config file and
synced into the entity store; readings only ever come from polls.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class DataType(str, Enum):
    """Modbus register data types"""
    INT16 = "int16"
    UINT16 = "uint16"
    INT32 = "int32"
    UINT32 = "uint32"
    FLOAT32 = "float32"
    FLOAT64 = "float64"


class ByteOrder(str, Enum):
    """Word ordering of multi-register values"""
    BIG_ENDIAN = "big_endian"
    LITTLE_ENDIAN = "little_endian"
    WORD_SWAPPED = "word_swapped"


class FunctionCode(int, Enum):
    """Supported Modbus read function codes"""
    READ_HOLDING_REGISTERS = 3
    READ_INPUT_REGISTERS = 4


class Quality(str, Enum):
    """Per-reading quality tag"""
    GOOD = "good"
    BAD = "bad"
    UNCERTAIN = "uncertain"


class PollingState(str, Enum):
    """Scheduling state of a gateway"""
    UNSCHEDULED = "unscheduled"
    SCHEDULED = "scheduled"
    OVERDUE = "overdue"
    DISABLED = "disabled"


# Words per data type
REGISTER_COUNTS: dict[DataType, int] = {
    DataType.INT16: 1,
    DataType.UINT16: 1,
    DataType.INT32: 2,
    DataType.UINT32: 2,
    DataType.FLOAT32: 2,
    DataType.FLOAT64: 4,
}

DEFAULT_PORT = 502
DEFAULT_UNIT_ID = 1
DEFAULT_POLL_INTERVAL = 10


@dataclass
class DataPoint:
    """A register range on a gateway decoded into one measurement"""
    label: str
    register_address: int
    data_type: DataType = DataType.UINT16
    byte_order: ByteOrder = ByteOrder.BIG_ENDIAN
    function_code: int = FunctionCode.READ_HOLDING_REGISTERS.value
    register_count: int = 0  # 0 = use data type default
    scale_factor: float = 1.0
    is_enabled: bool = True
    swap_bytes: bool = False  # swap the two bytes inside every word
    unit: str = ""
    group_name: str = ""
    id: int | None = None
    gateway_id: int | None = None

    def __post_init__(self) -> None:
        if self.register_count == 0:
            self.register_count = REGISTER_COUNTS[DataType(self.data_type)]


@dataclass
class Gateway:
    """A Modbus TCP endpoint and its health counters"""
    name: str
    host: str
    port: int = DEFAULT_PORT
    unit_id: int = DEFAULT_UNIT_ID
    poll_interval: int = DEFAULT_POLL_INTERVAL
    is_active: bool = True
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    last_seen_at: datetime | None = None
    last_error: str | None = None
    id: int | None = None
    data_points: list[DataPoint] = field(default_factory=list)

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def success_rate(self) -> float:
        total = self.success_count + self.failure_count
        return (self.success_count / total * 100) if total else 0.0

    def enabled_points(self) -> list[DataPoint]:
        return [p for p in self.data_points if p.is_enabled]


@dataclass
class Reading:
    """One persisted sample of a data point"""
    data_point_id: int
    read_at: datetime
    quality: Quality
    raw_registers: list[int] | None = None
    scaled_value: float | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class ModbusSettings:
    """Protocol client settings"""
    timeout: float = 5.0
    retry_delays: list[float] = field(default_factory=lambda: [1.0, 2.0, 4.0])
    test_timeout: float = 5.0


@dataclass
class SchedulerSettings:
    """Reliability layer timings"""
    tick_seconds: float = 30.0
    audit_interval_seconds: float = 300.0
    system_lock_ttl: int = 300
    gateway_lock_ttl: int = 60
    status_ttl: int = 86400
    stale_multiplier: int = 3
    stuck_task_seconds: int = 3600


@dataclass
class WorkerSettings:
    """Poll worker settings"""
    concurrency: int = 8
    idle_sleep: float = 1.0


@dataclass
class CircuitBreakerSettings:
    """Circuit breaker settings"""
    enabled: bool = True
    failure_threshold: int = 10


@dataclass
class HealthSettings:
    """Operational HTTP server settings"""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8090


@dataclass
class LoggingSettings:
    """Log output settings"""
    level: str = "INFO"
    format: str = "json"  # json, text


@dataclass
class PollerConfig:
    """Complete poller configuration"""
    state_dir: Path = Path("/var/lib/gateway-poller/state")
    db_path: Path = Path("/var/lib/gateway-poller/poller.db")
    modbus: ModbusSettings = field(default_factory=ModbusSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    gateways: list[Gateway] = field(default_factory=list)

    def get_gateway(self, name: str) -> Gateway | None:
        return next((g for g in self.gateways if g.name == name), None)


def load_data_point(data: dict[str, Any]) -> DataPoint:
    """Load a DataPoint from a dictionary"""
    return DataPoint(
        label=data["label"],
        register_address=int(data["register_address"]),
        data_type=DataType(data.get("data_type", "uint16")),
        byte_order=ByteOrder(data.get("byte_order", "big_endian")),
        function_code=int(data.get("function_code", 3)),
        register_count=int(data.get("register_count", 0)),
        scale_factor=float(data.get("scale_factor", 1.0)),
        is_enabled=bool(data.get("is_enabled", True)),
        swap_bytes=bool(data.get("swap_bytes", False)),
        unit=data.get("unit", ""),
        group_name=data.get("group_name", ""),
    )


def load_gateway(data: dict[str, Any]) -> Gateway:
    """Load a Gateway (with its data points) from a dictionary"""
    return Gateway(
        name=data["name"],
        host=data["host"],
        port=int(data.get("port", DEFAULT_PORT)),
        unit_id=int(data.get("unit_id", DEFAULT_UNIT_ID)),
        poll_interval=int(data.get("poll_interval", DEFAULT_POLL_INTERVAL)),
        is_active=bool(data.get("is_active", True)),
        data_points=[load_data_point(p) for p in data.get("data_points", [])],
    )


# Helper function to load config from dict
def load_poller_config(data: dict) -> PollerConfig:
    """Load PollerConfig from dictionary (e.g., parsed YAML)"""
    modbus_data = data.get("modbus", {})
    modbus = ModbusSettings(
        timeout=float(modbus_data.get("timeout", 5.0)),
        retry_delays=[float(d) for d in modbus_data.get("retry_delays", [1.0, 2.0, 4.0])],
        test_timeout=float(modbus_data.get("test_timeout", 5.0)),
    )

    scheduler_data = data.get("scheduler", {})
    scheduler = SchedulerSettings(
        tick_seconds=float(scheduler_data.get("tick_seconds", 30.0)),
        audit_interval_seconds=float(scheduler_data.get("audit_interval_seconds", 300.0)),
        system_lock_ttl=int(scheduler_data.get("system_lock_ttl", 300)),
        gateway_lock_ttl=int(scheduler_data.get("gateway_lock_ttl", 60)),
        status_ttl=int(scheduler_data.get("status_ttl", 86400)),
        stale_multiplier=int(scheduler_data.get("stale_multiplier", 3)),
        stuck_task_seconds=int(scheduler_data.get("stuck_task_seconds", 3600)),
    )

    worker_data = data.get("worker", {})
    worker = WorkerSettings(
        concurrency=int(worker_data.get("concurrency", 8)),
        idle_sleep=float(worker_data.get("idle_sleep", 1.0)),
    )

    breaker_data = data.get("circuit_breaker", {})
    circuit_breaker = CircuitBreakerSettings(
        enabled=bool(breaker_data.get("enabled", True)),
        failure_threshold=int(breaker_data.get("failure_threshold", 10)),
    )

    health_data = data.get("health", {})
    health = HealthSettings(
        enabled=bool(health_data.get("enabled", True)),
        host=health_data.get("host", "127.0.0.1"),
        port=int(health_data.get("port", 8090)),
    )

    logging_data = data.get("logging", {})
    logging_settings = LoggingSettings(
        level=logging_data.get("level", "INFO"),
        format=logging_data.get("format", "json"),
    )

    defaults = PollerConfig()

    return PollerConfig(
        state_dir=Path(data.get("state_dir", defaults.state_dir)),
        db_path=Path(data.get("db_path", defaults.db_path)),
        modbus=modbus,
        scheduler=scheduler,
        worker=worker,
        circuit_breaker=circuit_breaker,
        health=health,
        logging=logging_settings,
        gateways=[load_gateway(g) for g in data.get("gateways", [])],
    )
