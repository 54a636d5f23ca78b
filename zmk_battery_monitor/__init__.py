"""Battery monitor for ZMK split keyboards over Bluetooth LE.

Each enabled keyboard gets a DevicePoller that connects on an interval, reads the Battery
Level characteristic of both halves and stores the result in a SnapshotStore. The CLI and
the tray indicator only ever read that store.
"""

from zmk_battery_monitor.config import Config, ConfigError
from zmk_battery_monitor.coordinator import PollingCoordinator
from zmk_battery_monitor.models import (
    BatteryReading,
    DeviceConfig,
    DeviceSnapshot,
    ErrorKind,
    ErrorRecord,
    Half,
    PollerState,
)
from zmk_battery_monitor.poller import DevicePoller, PollerSettings
from zmk_battery_monitor.store import SnapshotStore

__version__ = "0.1.0"

__all__ = [
    "BatteryReading",
    "Config",
    "ConfigError",
    "DeviceConfig",
    "DevicePoller",
    "DeviceSnapshot",
    "ErrorKind",
    "ErrorRecord",
    "Half",
    "PollerSettings",
    "PollerState",
    "PollingCoordinator",
    "SnapshotStore",
]
