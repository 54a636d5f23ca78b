"""
Shared pytest fixtures for battery monitor tests.
"""

import asyncio
import threading
import time
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest  # type: ignore[import-untyped]  # pylint: disable=E0401
from pubsub import pub

from zmk_battery_monitor.ble.constants import BATTERY_LEVEL_UUID, BATTERY_SERVICE_UUID
from zmk_battery_monitor.ble.errors import CycleCancelled
from zmk_battery_monitor.ble.gateway import BatteryConnection, BatteryGateway
from zmk_battery_monitor.models import DeviceConfig, Half
from zmk_battery_monitor.poller import PollerSettings
from zmk_battery_monitor.policies import BackoffPolicy
from zmk_battery_monitor.store import SnapshotStore

CORNE = "AA:BB:CC:DD:EE:01"
LILY = "AA:BB:CC:DD:EE:02"


class FakeClock:
    """Manually advanced clock returning epoch-like seconds."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGateway(BatteryGateway):
    """
    Scriptable in-memory gateway.

    - ``levels[address][half]`` is an int to return or an exception to raise; addresses
      without an entry read ``default_levels``.
    - ``connect_errors[address]`` is a FIFO of exceptions raised by successive connects.
    - ``connect_gate`` / ``read_gate`` block the matching call until set; a set cancel event
      interrupts the wait with CycleCancelled, like the bleak client does.
    - ``disconnect_delay`` slows every disconnect down.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.default_levels: Dict[Half, object] = {Half.CENTRAL: 80, Half.PERIPHERAL: 75}
        self.levels: Dict[str, Dict[Half, object]] = {}
        self.connect_errors: Dict[str, List[Exception]] = {}
        self.connect_gate: Optional[threading.Event] = None
        self.read_gate: Optional[threading.Event] = None
        self.disconnect_delay = 0.0
        self.connect_started = threading.Event()
        self.read_started = threading.Event()
        self.connect_calls: List[str] = []
        self.disconnects: List[str] = []
        self.open: List[BatteryConnection] = []
        self.closed = False

    def connect(self, address, timeout, *, cancel_event=None):
        with self._lock:
            self.connect_calls.append(address)
        self.connect_started.set()
        self._wait(self.connect_gate, cancel_event, "Connect")
        with self._lock:
            errors = self.connect_errors.get(address)
            error = errors.pop(0) if errors else None
        if error is not None:
            raise error
        connection = BatteryConnection(address, SimpleNamespace(cancel_event=cancel_event))
        with self._lock:
            self.open.append(connection)
        return connection

    def read_level(self, connection, half, timeout):
        self.read_started.set()
        self._wait(self.read_gate, connection.handle.cancel_event, "Battery read")
        value = self.levels.get(connection.address, self.default_levels)[half]
        if isinstance(value, Exception):
            raise value
        return value

    def disconnect(self, connection, timeout):
        if self.disconnect_delay:
            time.sleep(self.disconnect_delay)
        with self._lock:
            if connection.closed:
                return
            connection.closed = True
            self.disconnects.append(connection.address)
            self.open.remove(connection)

    def close(self):
        self.closed = True
        for connection in list(self.open):
            self.disconnect(connection, 1.0)

    @staticmethod
    def _wait(gate, cancel_event, label):
        if gate is None:
            return
        while not gate.wait(0.01):
            if cancel_event is not None and cancel_event.is_set():
                raise CycleCancelled(f"{label} cancelled")


class FakeBleakClient:
    """Async stand-in for bleak.BleakClient exposing two battery services."""

    instances: List["FakeBleakClient"] = []

    def __init__(self, address, disconnected_callback=None, **_kwargs):
        self.address = address
        self.disconnected_callback = disconnected_callback
        self.connected = False
        self.connect_error: Optional[Exception] = None
        self.connect_delay = 0.0
        self.values = {0x10: b"\x50", 0x20: b"\x4b"}
        self.services = [
            _service(BATTERY_SERVICE_UUID, 0x20, [_char(BATTERY_LEVEL_UUID, 0x22)]),
            _service(BATTERY_SERVICE_UUID, 0x10, [_char(BATTERY_LEVEL_UUID, 0x12)]),
        ]
        FakeBleakClient.instances.append(self)

    async def connect(self, **_kwargs):
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def disconnect(self, **_kwargs):
        self.connected = False

    async def read_gatt_char(self, characteristic):
        return bytearray(self.values[characteristic.handle - 2])

    @property
    def is_connected(self):
        return self.connected

    def drop(self):
        self.connected = False
        if self.disconnected_callback:
            self.disconnected_callback(self)


def _service(uuid, handle, characteristics):
    return SimpleNamespace(uuid=uuid, handle=handle, characteristics=characteristics)


def _char(uuid, handle):
    return SimpleNamespace(uuid=uuid, handle=handle)


@pytest.fixture(autouse=True)
def reset_pubsub():
    """Drop listeners registered by a test so topics do not leak between tests."""
    yield
    pub.unsubAll()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_gateway():
    gateway = FakeGateway()
    yield gateway
    # Release anything a failing test left blocked
    for gate in (gateway.connect_gate, gateway.read_gate):
        if gate is not None:
            gate.set()


@pytest.fixture
def store():
    return SnapshotStore()


@pytest.fixture
def corne():
    return DeviceConfig(name="Corne", address=CORNE)


@pytest.fixture
def lily():
    return DeviceConfig(name="Lily58", address=LILY, low_battery_threshold=15)


@pytest.fixture
def fast_settings():
    """Short timings so threaded tests finish quickly."""
    return PollerSettings(
        interval=60.0,
        connect_timeout=1.0,
        read_timeout=1.0,
        disconnect_timeout=1.0,
        backoff_policy=BackoffPolicy(initial_delay=0.01, max_delay=0.05, jitter_ratio=0.0),
    )


@pytest.fixture
def fake_bleak_client(monkeypatch):
    """Replace the bleak client class used by BLEClient with FakeBleakClient."""
    FakeBleakClient.instances = []
    monkeypatch.setattr("zmk_battery_monitor.ble.client.BleakRootClient", FakeBleakClient)
    return FakeBleakClient
