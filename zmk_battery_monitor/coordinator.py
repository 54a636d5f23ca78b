"""Polling coordinator: keeps one poller per enabled device."""

import atexit
import contextlib
import logging
import time
from threading import RLock
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pubsub import pub

from zmk_battery_monitor.ble.errors import ErrorHandler
from zmk_battery_monitor.ble.gateway import BatteryGateway
from zmk_battery_monitor.coordination import ThreadCoordinator
from zmk_battery_monitor.models import DeviceConfig, DeviceSnapshot
from zmk_battery_monitor.poller import DevicePoller, PollerSettings
from zmk_battery_monitor.store import SnapshotStore

logger = logging.getLogger(__name__)

TOPIC_POLLER_STARTED = "zmk_battery.poller.started"
TOPIC_POLLER_STOPPED = "zmk_battery.poller.stopped"
TOPIC_CONFIG_APPLIED = "zmk_battery.config.applied"


class PollingCoordinator:
    """
    Own the live pollers and keep them in line with the configured devices.

    The snapshot store is passed in so presentation layers can share it; the coordinator
    only creates and removes entries as pollers come and go.

    Lifecycle events are published on the pypubsub bus:
        - ``zmk_battery.poller.started`` (coordinator, address, name)
        - ``zmk_battery.poller.stopped`` (coordinator, address, name)
        - ``zmk_battery.config.applied`` (coordinator, addresses)
    """

    def __init__(
        self,
        gateway: BatteryGateway,
        store: Optional[SnapshotStore] = None,
        settings: Optional[PollerSettings] = None,
        *,
        clock: Callable[[], float] = time.time,
        register_atexit: bool = True,
    ):
        self.gateway = gateway
        self.store = store if store is not None else SnapshotStore()
        self.settings = settings or PollerSettings()
        self.error_handler = ErrorHandler()
        self.thread_coordinator = ThreadCoordinator()
        self._clock = clock
        self._lock = RLock()
        # Serializes reconciliation so a retired entry is removed before it can be re-added
        self._apply_lock = RLock()
        self._pollers: Dict[str, DevicePoller] = {}
        self._order: List[str] = []
        self._closed = False
        self._exit_handler = None
        if register_atexit:
            self._exit_handler = atexit.register(self.shutdown)

    @property
    def addresses(self) -> List[str]:
        with self._lock:
            return list(self._order)

    def poller(self, address: str) -> Optional[DevicePoller]:
        with self._lock:
            return self._pollers.get(address)

    def apply_config(self, devices: Iterable[DeviceConfig]) -> None:
        """
        Reconcile the running pollers with ``devices``.

        Enabled devices without a poller get a fresh store entry and a started poller.
        Pollers whose device is gone or disabled are stopped and their entry removed.
        Devices present before and after keep their poller and readings; only their
        DeviceConfig is replaced. Applying the same configuration twice changes nothing.
        """
        wanted: Dict[str, DeviceConfig] = {}
        for device in devices:
            if not device.enabled:
                continue
            if device.address in wanted:
                logger.warning(
                    "Device %s listed more than once; using the first entry",
                    device.address,
                )
                continue
            wanted[device.address] = device

        with self._apply_lock:
            self._reconcile(wanted)

    def _reconcile(self, wanted: Dict[str, DeviceConfig]) -> None:
        with self._lock:
            if self._closed:
                logger.debug("apply_config called after shutdown; ignoring")
                return
            retired = [
                self._pollers.pop(address)
                for address in list(self._pollers)
                if address not in wanted
            ]
            started: List[DevicePoller] = []
            for address, device in wanted.items():
                existing = self._pollers.get(address)
                if existing is not None:
                    existing.device = device
                    continue
                self.store.create(address)
                poller = DevicePoller(
                    device,
                    self.gateway,
                    self.store,
                    self.settings,
                    thread_coordinator=self.thread_coordinator,
                    clock=self._clock,
                )
                self._pollers[address] = poller
                started.append(poller)
            self._order = list(wanted)

        for poller in retired:
            self._retire(poller)
        for poller in started:
            poller.start()
            logger.info("Polling %s (%s)", poller.device.name, poller.address)
            self._publish(
                TOPIC_POLLER_STARTED, address=poller.address, name=poller.device.name
            )
        self._publish(TOPIC_CONFIG_APPLIED, addresses=list(wanted))

    def get_all_snapshots(self) -> List[Tuple[DeviceConfig, DeviceSnapshot]]:
        """Return ``(device, snapshot)`` pairs for every polled device in config order."""
        with self._lock:
            pollers = [self._pollers[address] for address in self._order]
        result = []
        for poller in pollers:
            snapshot = self.store.get(poller.address)
            if snapshot is not None:
                result.append((poller.device, snapshot))
        return result

    def refresh(self) -> None:
        """Ask every poller for an immediate cycle."""
        with self._lock:
            pollers = list(self._pollers.values())
        for poller in pollers:
            poller.refresh()

    def wait_for_first_cycle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every polled device has finished at least one cycle.

        Returns:
            bool: False if ``timeout`` elapsed first.
        """
        addresses = set(self.addresses)

        def _all_polled(snapshots) -> bool:
            done = {a for a, s in snapshots if s.last_cycle_at is not None}
            return addresses <= done

        return self.store.wait_for(_all_polled, timeout)

    def shutdown(self) -> None:
        """
        Stop every poller and release all BLE resources.

        Pollers release their own connections as they stop; the gateway is closed afterwards
        so any connection still registered is explicitly disconnected. Safe to call more
        than once.
        """
        with self._apply_lock:
            self._shutdown()

    def _shutdown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            pollers = list(self._pollers.values())
            self._pollers.clear()
            self._order = []

        for poller in pollers:
            poller.request_stop()  # interrupt all in-flight cycles before joining any
        for poller in pollers:
            self._retire(poller)
        self.error_handler.safe_cleanup(self.gateway.close, "gateway close")
        self.thread_coordinator.join_all(timeout=self.settings.disconnect_timeout)

        if self._exit_handler:
            with contextlib.suppress(ValueError):
                atexit.unregister(self._exit_handler)
            self._exit_handler = None
        logger.debug("Polling coordinator shut down")

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.shutdown()

    def _retire(self, poller: DevicePoller) -> None:
        if not poller.stop():
            logger.warning(
                "Poller for %s did not stop in time; its connection is released on exit",
                poller.address,
            )
        self.store.remove(poller.address)
        logger.info("Stopped polling %s (%s)", poller.device.name, poller.address)
        self._publish(
            TOPIC_POLLER_STOPPED, address=poller.address, name=poller.device.name
        )

    def _publish(self, topic: str, **kwargs) -> None:
        self.error_handler.safe_execute(
            lambda: pub.sendMessage(topic, coordinator=self, **kwargs),
            error_msg=f"Error publishing {topic}",
        )
