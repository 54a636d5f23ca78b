"""System tray indicator showing keyboard battery levels."""

import logging
import time
from threading import Event
from typing import Callable, Optional

import pystray
from pystray import Menu, MenuItem

from zmk_battery_monitor import report
from zmk_battery_monitor.ble.errors import ErrorHandler
from zmk_battery_monitor.config import Config
from zmk_battery_monitor.coordination import ThreadCoordinator
from zmk_battery_monitor.coordinator import PollingCoordinator
from zmk_battery_monitor.icons import load_icon

logger = logging.getLogger(__name__)

TRAY_REFRESH_INTERVAL = 5.0


class BatteryTray:
    """
    pystray icon that renders the coordinator's snapshots.

    The tray never waits on BLE: a background thread re-reads the snapshot store every
    ``refresh_interval`` seconds and redraws icon, tooltip and menu.
    """

    def __init__(
        self,
        coordinator: PollingCoordinator,
        config: Config,
        *,
        reload_config: Optional[Callable[[], Config]] = None,
        refresh_interval: float = TRAY_REFRESH_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        self.coordinator = coordinator
        self.config = config
        self.error_handler = ErrorHandler()
        self._reload_config = reload_config
        self._refresh_interval = refresh_interval
        self._clock = clock
        self._stop_event = Event()
        self._threads = ThreadCoordinator()
        self.icon = pystray.Icon(
            "zmk-battery-monitor",
            icon=self._image(),
            title=self._title(),
            menu=Menu(self._menu_items),
        )

    @property
    def _max_age(self) -> float:
        return 2 * self.config.general.update_interval

    def _image(self):
        rows = self.coordinator.get_all_snapshots()
        # Low means some device is at or under its own threshold
        return load_icon(
            self.config.tray.icon_theme,
            report.lowest_level(rows),
            threshold=min((d.low_battery_threshold for d, _ in rows), default=20),
            low=report.any_low(rows),
        )

    def _title(self) -> str:
        rows = self.coordinator.get_all_snapshots()
        heading = report.tray_title(
            rows, show_percentage=self.config.tray.show_percentage_in_tray
        )
        return f"{heading}\n{report.tooltip_text(rows, self._clock(), self._max_age)}"

    def _menu_items(self):
        now = self._clock()
        for device, snapshot in self.coordinator.get_all_snapshots():
            yield MenuItem(
                report.device_summary(device, snapshot, now, self._max_age),
                None,
                enabled=False,
            )
        yield Menu.SEPARATOR
        yield MenuItem("Refresh", self._on_refresh, default=True)
        if self._reload_config is not None:
            yield MenuItem("Reload config", self._on_reload)
        yield MenuItem("Quit", self._on_quit)

    def update(self) -> None:
        """Redraw icon, tooltip and menu from the current snapshots."""
        self.icon.icon = self._image()
        self.icon.title = self._title()
        self.icon.update_menu()

    def run(self) -> None:
        """Run the tray main loop; returns after Quit."""
        logger.info("Battery monitor tray started")
        self.icon.run(setup=self._setup)

    def _setup(self, icon) -> None:
        icon.visible = True
        thread = self._threads.create_thread(
            target=self._update_loop, name="BatteryTrayUpdate", daemon=True
        )
        self._threads.start_thread(thread)

    def _update_loop(self) -> None:
        while not self._stop_event.wait(self._refresh_interval):
            self.error_handler.safe_execute(self.update, error_msg="Error updating tray")

    def _on_refresh(self, _icon=None, _item=None) -> None:
        self.coordinator.refresh()

    def _on_reload(self, _icon=None, _item=None) -> None:
        config = self.error_handler.safe_execute(
            self._reload_config, error_msg="Error reloading config"
        )
        if config is not None:
            self.config = config
            self.update()

    def _on_quit(self, _icon=None, _item=None) -> None:
        self._stop_event.set()
        self.coordinator.shutdown()
        self._threads.join_all(timeout=self._refresh_interval)
        self.icon.stop()
