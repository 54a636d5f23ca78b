"""BLE adapter gateway for reading keyboard battery levels."""

from zmk_battery_monitor.ble.constants import (
    BATTERY_LEVEL_UUID,
    BATTERY_SERVICE_UUID,
    BLEConfig,
    logger,
)
from zmk_battery_monitor.ble.errors import (
    ConnectFailure,
    CycleCancelled,
    ErrorHandler,
    GatewayError,
    GatewayTimeout,
    ReadFailure,
    UnexpectedDisconnect,
)
from zmk_battery_monitor.ble.gateway import (
    BatteryConnection,
    BatteryGateway,
    ConnectionRegistry,
)
from zmk_battery_monitor.ble.gatt import map_battery_characteristics, parse_battery_level
from zmk_battery_monitor.ble.client import BLEClient
from zmk_battery_monitor.ble.bleak_gateway import BleakGateway

__all__ = [
    "BATTERY_LEVEL_UUID",
    "BATTERY_SERVICE_UUID",
    "BLEClient",
    "BLEConfig",
    "BatteryConnection",
    "BatteryGateway",
    "BleakGateway",
    "ConnectFailure",
    "ConnectionRegistry",
    "CycleCancelled",
    "ErrorHandler",
    "GatewayError",
    "GatewayTimeout",
    "ReadFailure",
    "UnexpectedDisconnect",
    "logger",
    "map_battery_characteristics",
    "parse_battery_level",
]
