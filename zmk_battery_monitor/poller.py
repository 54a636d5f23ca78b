"""Per-device polling state machine."""

import logging
import time
from threading import Event, Lock, Thread
from typing import Callable, Dict, List, Optional

from zmk_battery_monitor.ble.constants import BLEConfig
from zmk_battery_monitor.ble.errors import (
    CycleCancelled,
    ErrorHandler,
    GatewayError,
)
from zmk_battery_monitor.ble.gateway import BatteryConnection, BatteryGateway
from zmk_battery_monitor.ble.gatt import HALF_ORDER
from zmk_battery_monitor.coordination import ThreadCoordinator
from zmk_battery_monitor.models import (
    Backoff,
    BatteryReading,
    DeviceConfig,
    ErrorKind,
    ErrorRecord,
    Half,
    PollerState,
)
from zmk_battery_monitor.policies import BackoffPolicy
from zmk_battery_monitor.state import PollerStateMachine
from zmk_battery_monitor.store import SnapshotStore

logger = logging.getLogger(__name__)


class PollerSettings:
    """Timing knobs of a poller; defaults come from BLEConfig."""

    def __init__(
        self,
        *,
        interval: float = BLEConfig.UPDATE_INTERVAL,
        connect_timeout: float = BLEConfig.CONNECT_TIMEOUT,
        read_timeout: float = BLEConfig.READ_TIMEOUT,
        disconnect_timeout: float = BLEConfig.DISCONNECT_TIMEOUT,
        backoff_policy: Optional[BackoffPolicy] = None,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.interval = interval
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.disconnect_timeout = disconnect_timeout
        self.backoff_policy = backoff_policy or BackoffPolicy()

    @property
    def cycle_budget(self) -> float:
        """Upper bound of one cycle's blocking time."""
        return (
            self.connect_timeout
            + len(HALF_ORDER) * self.read_timeout
            + self.disconnect_timeout
        )


class DevicePoller:
    """
    Drive one keyboard's connect / read / disconnect cycles on a fixed interval.

    The poller owns a worker thread that ticks every ``interval`` seconds after a cycle that
    read at least one half, or when the backoff window ends after a cycle that read nothing.
    At most one cycle is in flight at a time: a tick that arrives while a cycle runs is
    dropped, not queued. All outcomes go to the SnapshotStore entry for the device; errors
    never escape the poller.
    """

    def __init__(
        self,
        device: DeviceConfig,
        gateway: BatteryGateway,
        store: SnapshotStore,
        settings: Optional[PollerSettings] = None,
        *,
        thread_coordinator: Optional[ThreadCoordinator] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.device = device
        self.address = device.address
        self.settings = settings or PollerSettings()
        self.error_handler = ErrorHandler()
        self._gateway = gateway
        self._store = store
        self._clock = clock
        self._threads = thread_coordinator or ThreadCoordinator()
        self._state = PollerStateMachine(name=device.address)
        self._cycle_lock = Lock()
        self._stop_event = Event()
        self._wake_event = Event()
        self._thread: Optional[Thread] = None
        self._backoff: Optional[Backoff] = None

    @property
    def state(self) -> PollerState:
        return self._state.state

    @property
    def backoff(self) -> Optional[Backoff]:
        return self._backoff

    @property
    def cycle_in_flight(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the scheduling thread. Calling start on a running poller is a no-op."""
        if self._thread is not None:
            return
        self._thread = self._threads.create_thread(
            target=self._run, name=f"BatteryPoller-{self.address}", daemon=True
        )
        self._threads.start_thread(self._thread)

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop the poller, interrupting an in-flight cycle at its next blocking boundary.

        The cycle's connection is released before the thread exits.

        Parameters:
            timeout (Optional[float]): Seconds to wait for the thread; defaults to the
                disconnect timeout plus POLLER_JOIN_GRACE.

        Returns:
            bool: True if the worker thread has exited.
        """
        self.request_stop()
        if self._thread is None:
            return True
        if timeout is None:
            timeout = self.settings.disconnect_timeout + (BLEConfig.POLLER_JOIN_GRACE or 0)
        return self._threads.join_thread(self._thread, timeout=timeout)

    def request_stop(self) -> None:
        """Signal the poller to stop without waiting for it."""
        self._stop_event.set()
        self._wake_event.set()

    def refresh(self) -> bool:
        """
        Request an immediate cycle.

        Returns:
            bool: False if a cycle is already in flight (the request is dropped).
        """
        if self.cycle_in_flight or self._stop_event.is_set():
            return False
        self._wake_event.set()
        return True

    def tick(self) -> bool:
        """
        Run one cycle unless another one is still in flight.

        Returns:
            bool: True if a cycle ran, False if the tick was skipped.
        """
        if self._stop_event.is_set():
            return False
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Cycle for %s still in flight; skipping tick", self.address)
            return False
        try:
            self.run_cycle()
        finally:
            self._cycle_lock.release()
        return True

    def run_cycle(self) -> bool:
        """
        Connect, read the Central then the Peripheral half, and disconnect.

        Each half is attempted even if the other failed. Results are committed to the store
        once the connection is released.

        Returns:
            bool: True if at least one half was read.
        """
        if self._state.is_backing_off:
            self._end_backoff()
        self._enter(PollerState.CONNECTING)

        successes: Dict[Half, BatteryReading] = {}
        errors: List[ErrorRecord] = []
        cancelled = False
        connection: Optional[BatteryConnection] = None
        try:
            try:
                connection = self._gateway.connect(
                    self.address,
                    self.settings.connect_timeout,
                    cancel_event=self._stop_event,
                )
            except CycleCancelled:
                cancelled = True
            except GatewayError as exc:
                errors.append(self._classify(exc, ErrorKind.CONNECT_FAILURE))
            except Exception as exc:  # noqa: BLE001 - the poller must outlive any failure
                logger.exception("Unexpected error connecting to %s", self.address)
                errors.append(self._classify(exc, ErrorKind.CONNECT_FAILURE))

            if connection is not None:
                self._enter(PollerState.READING)
                for half in HALF_ORDER:
                    if self._stop_event.is_set():
                        cancelled = True
                        break
                    try:
                        level = self._gateway.read_level(
                            connection, half, self.settings.read_timeout
                        )
                        successes[half] = BatteryReading(level, self._clock())
                    except CycleCancelled:
                        cancelled = True
                        break
                    except GatewayError as exc:
                        errors.append(self._classify(exc, ErrorKind.READ_FAILURE, half))
                    except Exception as exc:  # noqa: BLE001
                        logger.exception(
                            "Unexpected error reading %s half of %s",
                            half.label,
                            self.address,
                        )
                        errors.append(self._classify(exc, ErrorKind.READ_FAILURE, half))
        finally:
            if connection is not None:
                self.error_handler.safe_cleanup(
                    lambda: self._gateway.disconnect(
                        connection, self.settings.disconnect_timeout
                    ),
                    f"disconnect from {self.address}",
                )

        if cancelled and not successes:
            logger.debug("Cycle for %s cancelled", self.address)
            self._enter(PollerState.IDLE)
            return False
        self._commit(successes, errors)
        return bool(successes)

    def _commit(self, successes: Dict[Half, BatteryReading], errors: List[ErrorRecord]):
        now = self._clock()
        for half, reading in successes.items():
            self._store.update_reading(self.address, half, reading)

        if successes:
            for error in errors:
                self._store.record_failure(self.address, error, increment=False)
            logger.debug(
                "Battery %s (%s): %s",
                self.device.name,
                self.address,
                ", ".join(f"{h.label} {r.level}%" for h, r in successes.items()),
            )
            self._backoff = None
            self._enter(PollerState.IDLE)
        else:
            if not errors:
                errors.append(ErrorRecord(ErrorKind.READ_FAILURE, now, None, "no data"))
            for error in errors[:-1]:
                self._store.record_failure(self.address, error, increment=False)
            failure_count = self._store.record_failure(self.address, errors[-1])
            duration = self.settings.backoff_policy.get_delay(failure_count)
            self._backoff = Backoff(duration=duration, until=now + duration)
            log = logger.warning if failure_count <= 1 else logger.debug
            log(
                "Polling %s (%s) failed [%s]: %s; retrying in %.1fs (failure %d)",
                self.device.name,
                self.address,
                errors[-1].kind.label,
                errors[-1].message,
                duration,
                failure_count,
            )
            self._enter(PollerState.BACKING_OFF)
        self._store.mark_cycle(self.address, now)

    def _classify(
        self, exc: Exception, fallback: ErrorKind, half: Optional[Half] = None
    ) -> ErrorRecord:
        kind = getattr(exc, "kind", None) or fallback
        return ErrorRecord(
            kind=kind,
            timestamp=self._clock(),
            half=getattr(exc, "half", None) or half,
            message=str(exc) or type(exc).__name__,
        )

    def _enter(self, state: PollerState) -> None:
        if self._state.state == state:
            return
        if self._state.transition_to(state):
            self._store.set_state(self.address, state, self._backoff)

    def _end_backoff(self) -> None:
        self._backoff = None
        self._enter(PollerState.IDLE)

    def _next_delay(self) -> float:
        if self._state.is_backing_off and self._backoff is not None:
            return max(0.0, self._backoff.until - self._clock())
        return self.settings.interval

    def _run(self) -> None:
        logger.debug("Poller for %s started", self.address)
        while not self._stop_event.is_set():
            self._wake_event.clear()
            self.error_handler.safe_execute(
                self.tick, error_msg=f"Error polling {self.address}"
            )
            if self._stop_event.is_set():
                break
            self._wake_event.wait(self._next_delay())
            if self._state.is_backing_off and not self._stop_event.is_set():
                self._end_backoff()
        logger.debug("Poller for %s stopped", self.address)
