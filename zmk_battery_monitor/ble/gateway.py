"""Capability interface over the host BLE stack and the open-connection registry."""

from abc import ABC, abstractmethod
from threading import Event, RLock
from typing import Any, Dict, List, Optional

from zmk_battery_monitor.models import Half


class BatteryConnection:
    """An open link to one device, as handed out by a gateway."""

    def __init__(self, address: str, handle: Any = None):
        self.address = address
        self.handle = handle
        self.closed = False

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<BatteryConnection {self.address} {state}>"


class BatteryGateway(ABC):
    """
    Narrow capability interface the pollers use to talk to keyboards.

    Implementations raise the exceptions from ``zmk_battery_monitor.ble.errors``:
    ``connect`` raises ConnectFailure or GatewayTimeout, ``read_level`` raises
    GatewayTimeout, ReadFailure or UnexpectedDisconnect. ``disconnect`` and ``close`` never
    raise.
    """

    @abstractmethod
    def connect(
        self, address: str, timeout: float, *, cancel_event: Optional[Event] = None
    ) -> BatteryConnection:
        """Open a connection to ``address``."""

    @abstractmethod
    def read_level(
        self, connection: BatteryConnection, half: Half, timeout: float
    ) -> int:
        """Read the battery percentage of ``half``."""

    @abstractmethod
    def disconnect(self, connection: BatteryConnection, timeout: float) -> None:
        """Release ``connection``; best effort."""

    @abstractmethod
    def close(self) -> None:
        """Release every connection still open."""


class ConnectionRegistry:
    """Process-wide bookkeeping of open connections so shutdown can release stragglers."""

    def __init__(self):
        self._lock = RLock()
        self._connections: Dict[int, BatteryConnection] = {}

    def add(self, connection: BatteryConnection) -> None:
        with self._lock:
            self._connections[id(connection)] = connection

    def claim(self, connection: BatteryConnection) -> bool:
        """Untrack ``connection``; True only for the caller that actually removed it."""
        with self._lock:
            return self._connections.pop(id(connection), None) is not None

    def drain(self) -> List[BatteryConnection]:
        """Remove and return every tracked connection."""
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        return connections

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)
