"""Data model shared by the poller, the snapshot store and the presentation layers."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

_MAC_RE = re.compile(r"^[0-9A-F]{2}(:[0-9A-F]{2}){5}$")


class Half(Enum):
    """One physical half of a split keyboard."""

    CENTRAL = "central"
    PERIPHERAL = "peripheral"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class ErrorKind(Enum):
    """Classification of a failed poll step."""

    CONNECT_FAILURE = "connect_failure"
    TIMEOUT = "timeout"
    READ_FAILURE = "read_failure"
    UNEXPECTED_DISCONNECT = "unexpected_disconnect"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


class PollerState(Enum):
    """Connection state of a device poller."""

    IDLE = "idle"
    CONNECTING = "connecting"
    READING = "reading"
    BACKING_OFF = "backing_off"


def normalize_address(address: str) -> str:
    """
    Normalize a BLE MAC address to upper case with ``:`` separators.

    Dashes and underscores are accepted as separators, as is a bare 12 digit hex string.

    Raises:
        ValueError: If the result is not a six octet MAC address.
    """
    cleaned = (address or "").strip().upper().replace("-", ":").replace("_", ":")
    if ":" not in cleaned and len(cleaned) == 12:
        cleaned = ":".join(cleaned[i : i + 2] for i in range(0, 12, 2))
    if not _MAC_RE.match(cleaned):
        raise ValueError(f"Invalid BLE address: {address!r}")
    return cleaned


@dataclass(frozen=True)
class DeviceConfig:
    """A configured keyboard. Identity for polling is the normalized address."""

    name: str
    address: str
    enabled: bool = True
    low_battery_threshold: int = 20

    def __post_init__(self):
        object.__setattr__(self, "address", normalize_address(self.address))
        if not 0 <= self.low_battery_threshold <= 100:
            raise ValueError(
                f"low_battery_threshold must be between 0 and 100, got {self.low_battery_threshold}"
            )


@dataclass(frozen=True)
class BatteryReading:
    """Battery level of one half at the moment it was read."""

    level: int
    timestamp: float

    def __post_init__(self):
        if not 0 <= self.level <= 100:
            raise ValueError(f"battery level must be between 0 and 100, got {self.level}")


@dataclass(frozen=True)
class ErrorRecord:
    """The most recent failure recorded for a device."""

    kind: ErrorKind
    timestamp: float
    half: Optional[Half] = None
    message: str = ""


@dataclass(frozen=True)
class Backoff:
    """Active backoff window of a poller."""

    duration: float
    until: float


@dataclass(frozen=True)
class DeviceSnapshot:
    """
    Last known battery state of a device.

    Snapshots are immutable; the store replaces them wholesale so readers never observe a
    partially applied update.
    """

    address: str
    central: Optional[BatteryReading] = None
    peripheral: Optional[BatteryReading] = None
    state: PollerState = PollerState.IDLE
    backoff: Optional[Backoff] = None
    last_error: Optional[ErrorRecord] = None
    failure_count: int = 0
    last_cycle_at: Optional[float] = field(default=None)

    def reading(self, half: Half) -> Optional[BatteryReading]:
        return self.central if half is Half.CENTRAL else self.peripheral

    @property
    def has_data(self) -> bool:
        return self.central is not None or self.peripheral is not None

    @property
    def lowest_level(self) -> Optional[int]:
        levels = [r.level for r in (self.central, self.peripheral) if r is not None]
        return min(levels) if levels else None

    def is_stale(self, now: float, max_age: float) -> bool:
        """
        Return True when the shown readings should be flagged as outdated.

        A snapshot is stale when any present reading is older than ``max_age`` or when the
        latest recorded error happened after the newest reading.
        """
        readings = [r for r in (self.central, self.peripheral) if r is not None]
        if not readings:
            return False
        if any(now - r.timestamp > max_age for r in readings):
            return True
        newest = max(r.timestamp for r in readings)
        return self.last_error is not None and self.last_error.timestamp > newest
