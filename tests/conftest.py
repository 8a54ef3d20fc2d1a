"""Shared fixtures: temporary stores, a fake Modbus network and clocks."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from gateway_poller.common.config import ByteOrder, DataPoint, DataType, Gateway
from gateway_poller.common.state import CoordinationStore
from gateway_poller.services.device import modbus_client
from gateway_poller.storage.local_db import EntityStore
from gateway_poller.storage.task_queue import TaskQueue


class FakeResponse:
    def __init__(self, registers=None, exception_code=None):
        self.registers = registers or []
        self.exception_code = exception_code

    def isError(self):
        return self.exception_code is not None

    def __str__(self):
        return f"FakeResponse(exception_code={self.exception_code})"


class FakeDevice:
    """Programmable Modbus TCP slave"""

    def __init__(self):
        self.tables = {3: {}, 4: {}}  # function code -> {pdu address: word}
        self.accept = True
        self.refuse_first = 0  # refuse this many connects before accepting
        self.connect_timeout = False
        self.read_error: BaseException | None = None
        self.exception_codes: dict[tuple[int, int], int] = {}
        self.short_response = False
        self.connect_calls = 0
        self.requests: list[tuple[int, int, int, int]] = []

    def set_words(self, function_code: int, register_address: int, words: list[int]) -> None:
        """Store words starting at a 1-based register address"""
        for offset, word in enumerate(words):
            self.tables[function_code][register_address - 1 + offset] = word

    def read(self, function_code: int, address: int, count: int, device_id: int) -> FakeResponse:
        self.requests.append((function_code, address, count, device_id))
        if self.read_error is not None:
            raise self.read_error
        code = self.exception_codes.get((function_code, address))
        if code is not None:
            return FakeResponse(exception_code=code)
        table = self.tables[function_code]
        words = [table.get(address + i, 0) for i in range(count)]
        if self.short_response:
            words = words[:-1]
        return FakeResponse(registers=words)


class FakeNetwork:
    """Endpoints reachable through the patched AsyncModbusTcpClient"""

    def __init__(self):
        self.devices: dict[tuple[str, int], FakeDevice] = {}
        self.clients: list["FakeModbusTcpClient"] = []

    def add(self, host: str, port: int = 502) -> FakeDevice:
        device = FakeDevice()
        self.devices[(host, port)] = device
        return device

    def client(self, host, port=502, timeout=None, retries=None, **kwargs):
        client = FakeModbusTcpClient(self, host, port)
        self.clients.append(client)
        return client


class FakeModbusTcpClient:
    def __init__(self, network: FakeNetwork, host: str, port: int):
        self.network = network
        self.host = host
        self.port = port
        self.connected = False

    @property
    def device(self) -> FakeDevice | None:
        return self.network.devices.get((self.host, self.port))

    async def connect(self):
        device = self.device
        if device is None:
            return False
        device.connect_calls += 1
        if device.connect_timeout:
            raise asyncio.TimeoutError()
        self.connected = device.accept and device.connect_calls > device.refuse_first
        return self.connected

    def close(self):
        self.connected = False

    async def read_holding_registers(self, address, count=1, device_id=1):
        return self.device.read(3, address, count, device_id)

    async def read_input_registers(self, address, count=1, device_id=1):
        return self.device.read(4, address, count, device_id)


@pytest.fixture
def network(monkeypatch) -> FakeNetwork:
    net = FakeNetwork()
    monkeypatch.setattr(modbus_client, "AsyncModbusTcpClient", net.client)
    return net


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)
    return _sleep


class FakeClock:
    """Settable UTC clock shared by services and the coordination store"""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, 3, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "poller.db"


@pytest.fixture
def entities(db_path) -> EntityStore:
    return EntityStore(db_path)


@pytest.fixture
def queue(db_path, clock) -> TaskQueue:
    return TaskQueue(db_path, clock=clock)


@pytest.fixture
def coordination(tmp_path, clock) -> CoordinationStore:
    return CoordinationStore(tmp_path / "state", clock=clock.timestamp)


def make_gateway(name: str = "gw-1", host: str = "10.0.0.1", **kwargs) -> Gateway:
    points = kwargs.pop("data_points", None)
    if points is None:
        points = [
            DataPoint(label="voltage", register_address=1, data_type=DataType.FLOAT32),
            DataPoint(label="status", register_address=3, data_type=DataType.UINT16),
            DataPoint(
                label="power",
                register_address=10,
                data_type=DataType.INT32,
                byte_order=ByteOrder.WORD_SWAPPED,
                scale_factor=0.1,
            ),
        ]
    return Gateway(name=name, host=host, data_points=points, **kwargs)


@pytest.fixture
def gateway_factory(entities):
    """Create gateways in the entity store and return the stored copies"""
    def _create(name: str = "gw-1", host: str = "10.0.0.1", **kwargs) -> Gateway:
        gateway = make_gateway(name, host, **kwargs)
        existing = [g for g in entities.list_gateways() if g.name != name]
        entities.sync_config([*existing, gateway], apply_active=True)
        return entities.get_gateway_by_name(name)
    return _create
