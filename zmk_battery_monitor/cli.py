"""Command line entry point: ``zmk-battery-monitor``."""

import argparse
import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

from zmk_battery_monitor import config as config_module
from zmk_battery_monitor import report
from zmk_battery_monitor.ble.bleak_gateway import BleakGateway
from zmk_battery_monitor.ble.gateway import BatteryGateway
from zmk_battery_monitor.config import Config, ConfigError
from zmk_battery_monitor.coordinator import PollingCoordinator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2

REPORT_GRACE = 5.0

NO_DATA_HINTS = """
No battery levels could be read. Make sure:
  1. The keyboard is powered on and paired with this computer
  2. Battery reporting is enabled in the ZMK firmware
     (CONFIG_ZMK_SPLIT_BLE_CENTRAL_BATTERY_LEVEL_FETCHING=y for the peripheral half)
  3. The device address in the config file is correct"""

_LEVEL_NAMES = {"trace": "DEBUG", "warn": "WARNING"}


def log_level(name: str) -> int:
    """Map a configured level name (``trace``, ``warn`` included) to a logging level."""
    name = name.lower()
    return getattr(logging, _LEVEL_NAMES.get(name, name.upper()), logging.INFO)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zmk-battery-monitor",
        description="Monitor the battery levels of both halves of ZMK split keyboards over BLE.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to the config file (default: $XDG_CONFIG_HOME/zmk-battery-monitor/config.toml)",
    )
    parser.add_argument(
        "--log-level",
        choices=config_module.LOG_LEVELS,
        help="Override the log level from the config file.",
    )
    subparsers = parser.add_subparsers(dest="command")

    report_parser = subparsers.add_parser(
        "report", help="Poll every enabled device once and print a table (default)."
    )
    report_parser.add_argument(
        "--timeout",
        type=float,
        help="Seconds to wait for the first poll of every device.",
    )

    watch_parser = subparsers.add_parser(
        "watch", help="Keep polling and reprint the table; SIGHUP reloads the config."
    )
    watch_parser.add_argument(
        "--interval", type=float, help="Seconds between tables (default: update_interval)."
    )
    watch_parser.add_argument(
        "--count", type=int, help="Exit after printing this many tables."
    )

    subparsers.add_parser("tray", help="Run the system tray indicator.")

    config_parser = subparsers.add_parser("config", help="Inspect the configuration.")
    config_parser.add_argument(
        "action",
        nargs="?",
        choices=("show", "generate", "path"),
        default="show",
        help="show the parsed config, print a template, or print the config path",
    )
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=log_level(level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(
    argv: Optional[List[str]] = None,
    *,
    gateway_factory: Callable[[], BatteryGateway] = BleakGateway,
) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or "info")
    command = args.command or "report"

    try:
        if command == "config":
            return cmd_config(args)
        config = config_module.load(args.config)
    except ConfigError as exc:
        print(f"Error loading config: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if not args.log_level:
        logging.getLogger().setLevel(log_level(config.general.log_level))

    coordinator = PollingCoordinator(
        gateway_factory(), settings=config.poller_settings()
    )
    try:
        if command == "watch":
            return cmd_watch(args, config, coordinator)
        if command == "tray":
            return cmd_tray(args, config, coordinator)
        return cmd_report(args, config, coordinator)
    finally:
        coordinator.shutdown()


def cmd_report(args, config: Config, coordinator: PollingCoordinator) -> int:
    devices = config.enabled_devices()
    if not devices:
        print(report.render_table([], time.time(), 0))
        return EXIT_OK
    timeout = getattr(args, "timeout", None)
    if timeout is None:
        timeout = coordinator.settings.cycle_budget + REPORT_GRACE

    coordinator.apply_config(devices)
    if not coordinator.wait_for_first_cycle(timeout):
        logger.warning("Timed out after %.1fs waiting for every device to be polled", timeout)
    print(_table(coordinator, config))
    if not any(snapshot.has_data for _, snapshot in coordinator.get_all_snapshots()):
        print(NO_DATA_HINTS)
    return EXIT_OK


def cmd_watch(args, config: Config, coordinator: PollingCoordinator) -> int:
    reload_requested = threading.Event()
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, lambda _signum, _frame: reload_requested.set())

    coordinator.apply_config(config.enabled_devices())
    printed = 0
    try:
        while True:
            interval = args.interval or config.general.update_interval
            if printed == 0:
                coordinator.wait_for_first_cycle(coordinator.settings.cycle_budget)
            print(_table(coordinator, config), flush=True)
            printed += 1
            if args.count and printed >= args.count:
                break
            if reload_requested.wait(interval):
                reload_requested.clear()
                config = _reload(args, config, coordinator)
            print()
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    return EXIT_OK


def cmd_tray(args, config: Config, coordinator: PollingCoordinator) -> int:
    if not config.tray.enabled:
        print("The tray is disabled in the config ([tray] enabled = false).", file=sys.stderr)
        return EXIT_FAILURE
    # Imported here so the other commands work without a desktop session.
    from zmk_battery_monitor.tray import BatteryTray  # pylint: disable=import-outside-toplevel

    coordinator.apply_config(config.enabled_devices())

    def reload_config() -> Config:
        return _reload(args, tray.config, coordinator)

    tray = BatteryTray(coordinator, config, reload_config=reload_config)
    tray.run()
    return EXIT_OK


def cmd_config(args) -> int:
    path = args.config or config_module.config_path()
    if args.action == "path":
        print(path)
        return EXIT_OK
    if args.action == "generate":
        print(config_module.generate_template())
        return EXIT_OK

    if not Path(path).exists():
        print(f"No config file found at: {path}")
        print("\nRun 'zmk-battery-monitor config generate > config.toml' to create a template,")
        print("or run any other command to create a default config automatically.")
        return EXIT_FAILURE
    config = config_module.load_from_file(Path(path))
    print(f"Config file: {path}")
    print(format_config(config))
    return EXIT_OK


def format_config(config: Config) -> str:
    general = config.general
    lines = [
        "General:",
        f"  Update interval: {general.update_interval:g} seconds",
        f"  Log level: {general.log_level}",
        f"  Backoff: {general.backoff_initial:g}s doubling up to {general.backoff_max:g}s",
        f"  Timeouts: connect {general.connect_timeout:g}s, read {general.read_timeout:g}s,"
        f" disconnect {general.disconnect_timeout:g}s",
        "Devices:",
    ]
    if not config.devices:
        lines.append("  (none)")
    for device in config.devices:
        status = "enabled" if device.enabled else "disabled"
        lines.append(f"  - {device.name} ({device.address}) [{status}]")
        lines.append(f"    Low battery threshold: {device.low_battery_threshold}%")
    lines += [
        "Tray:",
        f"  Enabled: {config.tray.enabled}",
        f"  Show percentage: {config.tray.show_percentage_in_tray}",
        f"  Icon theme: {config.tray.icon_theme}",
    ]
    return "\n".join(lines)


def _table(coordinator: PollingCoordinator, config: Config) -> str:
    return report.render_table(
        coordinator.get_all_snapshots(),
        time.time(),
        max_age=2 * config.general.update_interval,
    )


def _reload(args, current: Config, coordinator: PollingCoordinator) -> Config:
    """Reload the config file and reconcile the pollers; keep ``current`` on error."""
    try:
        config = config_module.load(args.config)
    except ConfigError as exc:
        logger.error("Config reload failed, keeping the previous config: %s", exc)
        return current
    if config.general != current.general:
        logger.info("Timing changes in [general] take effect after a restart")
    coordinator.apply_config(config.enabled_devices())
    logger.info("Config reloaded: %d enabled device(s)", len(config.enabled_devices()))
    return config


if __name__ == "__main__":
    sys.exit(main())
