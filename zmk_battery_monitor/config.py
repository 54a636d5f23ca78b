"""TOML configuration: location, loading, defaults and the commented template."""

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from zmk_battery_monitor.ble.constants import BLEConfig
from zmk_battery_monitor.models import DeviceConfig
from zmk_battery_monitor.poller import PollerSettings
from zmk_battery_monitor.policies import BackoffPolicy

logger = logging.getLogger(__name__)

APP_DIR_NAME = "zmk-battery-monitor"
CONFIG_FILE_NAME = "config.toml"
LOG_LEVELS = ("trace", "debug", "info", "warn", "warning", "error")

CONFIG_TEMPLATE = """# ZMK Battery Monitor Configuration

[general]
# Update interval in seconds
update_interval = 60
# Log level: trace, debug, info, warn, error
log_level = "info"
# Retry delay after a failed poll, doubling up to backoff_max (seconds)
backoff_initial = 5.0
backoff_max = 300.0
# Per-step timeouts (seconds)
connect_timeout = 20.0
read_timeout = 10.0
disconnect_timeout = 5.0

# Define your keyboards here
# You can have multiple devices and enable/disable them individually

[[devices]]
name = "My ZMK Keyboard"
address = "00:00:00:00:00:00"  # Replace with your keyboard's MAC address
enabled = true
low_battery_threshold = 20

# Example of a second keyboard (disabled)
# [[devices]]
# name = "Second Keyboard"
# address = "11:11:11:11:11:11"
# enabled = false
# low_battery_threshold = 15

[tray]
enabled = true
show_percentage_in_tray = false
icon_theme = "battery"  # Built-in battery glyph, or a path to an image file
"""


class ConfigError(Exception):
    """The configuration file is missing required data or holds invalid values."""


@dataclass(frozen=True)
class GeneralConfig:
    update_interval: float = BLEConfig.UPDATE_INTERVAL
    log_level: str = "info"
    backoff_initial: float = BLEConfig.BACKOFF_INITIAL_DELAY
    backoff_max: float = BLEConfig.BACKOFF_MAX_DELAY
    connect_timeout: float = BLEConfig.CONNECT_TIMEOUT
    read_timeout: float = BLEConfig.READ_TIMEOUT
    disconnect_timeout: float = BLEConfig.DISCONNECT_TIMEOUT


@dataclass(frozen=True)
class TrayConfig:
    enabled: bool = True
    show_percentage_in_tray: bool = False
    icon_theme: str = "battery"


@dataclass(frozen=True)
class Config:
    general: GeneralConfig = field(default_factory=GeneralConfig)
    devices: List[DeviceConfig] = field(default_factory=list)
    tray: TrayConfig = field(default_factory=TrayConfig)

    def enabled_devices(self) -> List[DeviceConfig]:
        return [d for d in self.devices if d.enabled]

    def primary_device(self) -> Optional[DeviceConfig]:
        """Return the first enabled device, if any."""
        return next(iter(self.enabled_devices()), None)

    def poller_settings(self) -> PollerSettings:
        general = self.general
        return PollerSettings(
            interval=general.update_interval,
            connect_timeout=general.connect_timeout,
            read_timeout=general.read_timeout,
            disconnect_timeout=general.disconnect_timeout,
            backoff_policy=BackoffPolicy(
                initial_delay=general.backoff_initial, max_delay=general.backoff_max
            ),
        )


def config_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.join(Path.home(), ".config")
    return Path(base) / APP_DIR_NAME


def config_path() -> Path:
    """Default location of the configuration file."""
    return config_dir() / CONFIG_FILE_NAME


def generate_template() -> str:
    return CONFIG_TEMPLATE


def load(path: Optional[Path] = None) -> Config:
    """
    Load the configuration, creating the default file first if it does not exist.

    Raises:
        ConfigError: The file cannot be read, parsed or validated.
    """
    path = Path(path) if path is not None else config_path()
    if not path.exists():
        logger.info("No config file found at %s; creating default config", path)
        save_template(path)
    return load_from_file(path)


def load_from_file(path: Path) -> Config:
    try:
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    return parse(data, source=str(path))


def save_template(path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(CONFIG_TEMPLATE, encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to write config file {path}: {exc}") from exc
    logger.info("Config saved to %s", path)


def parse(data: Dict[str, Any], source: str = "<config>") -> Config:
    """Build a validated Config from parsed TOML data."""
    general = _parse_general(_table(data, "general", source), source)
    tray = _parse_tray(_table(data, "tray", source), source)

    raw_devices = data.get("devices")
    if raw_devices is None:
        raise ConfigError(f"{source}: missing [[devices]] entries")
    if not isinstance(raw_devices, list):
        raise ConfigError(f"{source}: 'devices' must be an array of tables")
    devices = [_parse_device(raw, index, source) for index, raw in enumerate(raw_devices)]
    return Config(general=general, devices=devices, tray=tray)


def _table(data: Dict[str, Any], key: str, source: str) -> Dict[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"{source}: [{key}] must be a table")
    return value


def _number(table: Dict[str, Any], key: str, default: float, where: str) -> float:
    value = table.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{where}.{key} must be a number, got {value!r}")
    if value <= 0:
        raise ConfigError(f"{where}.{key} must be > 0, got {value}")
    return float(value)


def _bool(table: Dict[str, Any], key: str, default: bool, where: str) -> bool:
    value = table.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{where}.{key} must be true or false, got {value!r}")
    return value


def _parse_general(table: Dict[str, Any], source: str) -> GeneralConfig:
    where = f"{source}: general"
    defaults = GeneralConfig()
    log_level = str(table.get("log_level", defaults.log_level)).lower()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"{where}.log_level must be one of {', '.join(LOG_LEVELS)}")
    general = GeneralConfig(
        update_interval=_number(table, "update_interval", defaults.update_interval, where),
        log_level=log_level,
        backoff_initial=_number(table, "backoff_initial", defaults.backoff_initial, where),
        backoff_max=_number(table, "backoff_max", defaults.backoff_max, where),
        connect_timeout=_number(table, "connect_timeout", defaults.connect_timeout, where),
        read_timeout=_number(table, "read_timeout", defaults.read_timeout, where),
        disconnect_timeout=_number(
            table, "disconnect_timeout", defaults.disconnect_timeout, where
        ),
    )
    if general.backoff_max < general.backoff_initial:
        raise ConfigError(f"{where}.backoff_max must be >= backoff_initial")
    return general


def _parse_tray(table: Dict[str, Any], source: str) -> TrayConfig:
    where = f"{source}: tray"
    defaults = TrayConfig()
    icon_theme = table.get("icon_theme", defaults.icon_theme)
    if not isinstance(icon_theme, str) or not icon_theme:
        raise ConfigError(f"{where}.icon_theme must be a non-empty string")
    return TrayConfig(
        enabled=_bool(table, "enabled", defaults.enabled, where),
        show_percentage_in_tray=_bool(
            table, "show_percentage_in_tray", defaults.show_percentage_in_tray, where
        ),
        icon_theme=icon_theme,
    )


def _parse_device(raw: Any, index: int, source: str) -> DeviceConfig:
    where = f"{source}: devices[{index}]"
    if not isinstance(raw, dict):
        raise ConfigError(f"{where} must be a table")
    for key in ("name", "address"):
        if not isinstance(raw.get(key), str) or not raw[key].strip():
            raise ConfigError(f"{where}.{key} is required")
    threshold = raw.get("low_battery_threshold", 20)
    if isinstance(threshold, bool) or not isinstance(threshold, int):
        raise ConfigError(f"{where}.low_battery_threshold must be an integer")
    try:
        return DeviceConfig(
            name=raw["name"].strip(),
            address=raw["address"],
            enabled=_bool(raw, "enabled", True, where),
            low_battery_threshold=threshold,
        )
    except ValueError as exc:
        raise ConfigError(f"{where}: {exc}") from exc
