"""BLE constants and configuration."""

import importlib.metadata
import logging
from typing import Optional

logger = logging.getLogger("zmk_battery_monitor.ble")

# Get bleak version using importlib.metadata (reliable method)
BLEAK_VERSION = importlib.metadata.version("bleak")

# GATT Battery Service and its characteristics
BATTERY_SERVICE_UUID = "0000180f-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL_UUID = "00002a19-0000-1000-8000-00805f9b34fb"


class BLEConfig:
    """Default timeouts and backoff bounds for battery polling."""

    UPDATE_INTERVAL = 60.0
    CONNECT_TIMEOUT = 20.0
    READ_TIMEOUT = 10.0
    DISCONNECT_TIMEOUT = 5.0
    BACKOFF_INITIAL_DELAY = 5.0
    BACKOFF_MAX_DELAY = 300.0
    BACKOFF_MULTIPLIER = 2.0
    BACKOFF_JITTER_RATIO = 0.1
    # Granularity at which blocking BLE waits check for cancellation
    CANCEL_POLL_INTERVAL = 0.1
    CLIENT_THREAD_JOIN_TIMEOUT = 2.0
    POLLER_JOIN_GRACE: Optional[float] = 5.0


# Error message constants
ERROR_TIMEOUT = "{0} timed out after {1:.1f} seconds"
ERROR_CONNECTION_FAILED = "Connection to {0} failed: {1}"
ERROR_NO_BATTERY_SERVICE = "No battery service for {0} half on {1}"
ERROR_CANCELLED = "{0} cancelled"

__all__ = [
    "BATTERY_LEVEL_UUID",
    "BATTERY_SERVICE_UUID",
    "BLEAK_VERSION",
    "BLEConfig",
    "ERROR_CANCELLED",
    "ERROR_CONNECTION_FAILED",
    "ERROR_NO_BATTERY_SERVICE",
    "ERROR_TIMEOUT",
    "logger",
]
