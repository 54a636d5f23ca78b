"""BLE client management and async operations."""

import asyncio
from concurrent.futures import TimeoutError as FutureTimeoutError
from threading import Event, Thread
from typing import Optional

from bleak import BleakClient as BleakRootClient

from zmk_battery_monitor.ble.constants import (
    BLEConfig,
    ERROR_CANCELLED,
    ERROR_TIMEOUT,
    logger,
)
from zmk_battery_monitor.ble.errors import CycleCancelled, ErrorHandler, GatewayTimeout


class BLEClient:
    """
    Client wrapper for one BLE device connection with thread-safe async operations.

    Provides a synchronous interface to Bleak's async operations by running a private event
    loop in a dedicated thread. Every blocking call is bounded by a timeout and can be
    interrupted through ``cancel_event``.
    """

    def __init__(
        self,
        address: str,
        *,
        cancel_event: Optional[Event] = None,
        **kwargs,
    ) -> None:
        """
        Create the event loop thread and the underlying Bleak client for ``address``.

        Parameters:
            address (str): BLE address of the device.
            cancel_event (Optional[Event]): When set, pending waits are cancelled at their next
                poll and raise CycleCancelled.
            **kwargs: Forwarded to the Bleak client constructor.
        """
        self.error_handler = ErrorHandler()
        self.address = address
        self.cancel_event = cancel_event or Event()
        self.disconnected_event = Event()
        self._eventLoop = asyncio.new_event_loop()
        self._eventThread = Thread(
            target=self._run_event_loop, name=f"BLEClient-{address}", daemon=True
        )
        try:
            self._eventThread.start()
        except RuntimeError:
            self._eventLoop.close()
            raise

        try:
            self.bleak_client = BleakRootClient(
                address, disconnected_callback=self._on_disconnect, **kwargs
            )
        except Exception:
            # No adapter or unsupported backend: stop the loop thread started above.
            self.close()
            raise

    def _on_disconnect(self, _client) -> None:
        logger.debug("Link to %s dropped", self.address)
        self.disconnected_event.set()

    def connect(self, *, timeout: float) -> None:
        """Connect to the device, giving up after ``timeout`` seconds."""
        self.disconnected_event.clear()
        self.async_await(
            self.bleak_client.connect(timeout=timeout), timeout=timeout, label="Connect"
        )

    def is_connected(self) -> bool:
        """Return True if the underlying Bleak client reports an active connection."""

        def _check_connection():
            connected = getattr(self.bleak_client, "is_connected", False)
            if callable(connected):
                connected = connected()
            return bool(connected)

        return self.error_handler.safe_execute(
            _check_connection,
            default_return=False,
            error_msg="Unable to read bleak connection state",
        )

    @property
    def services(self):
        return getattr(self.bleak_client, "services", None)

    def read_gatt_char(self, characteristic, *, timeout: float) -> bytes:
        """Read a GATT characteristic and return its raw value."""
        return bytes(
            self.async_await(
                self.bleak_client.read_gatt_char(characteristic),
                timeout=timeout,
                label="Battery read",
            )
        )

    def disconnect(self, *, timeout: float) -> None:
        """Disconnect from the device. Not interruptible so the link is always released."""
        self.async_await(
            self.bleak_client.disconnect(),
            timeout=timeout,
            label="Disconnect",
            cancellable=False,
        )

    def close(self) -> None:
        """
        Shut down the client's asyncio event loop and its background thread.

        Logs a warning if the thread does not terminate within CLIENT_THREAD_JOIN_TIMEOUT.
        """
        if self._eventLoop.is_closed():
            return
        self._eventLoop.call_soon_threadsafe(self._eventLoop.stop)
        self._eventThread.join(timeout=BLEConfig.CLIENT_THREAD_JOIN_TIMEOUT)
        if self._eventThread.is_alive():
            logger.warning(
                "BLE event thread for %s did not exit within %.1fs",
                self.address,
                BLEConfig.CLIENT_THREAD_JOIN_TIMEOUT,
            )

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.close()

    def async_await(
        self,
        coro,
        *,
        timeout: float,
        label: str = "BLE operation",
        cancellable: bool = True,
    ):
        """
        Wait for ``coro`` to complete on the client's event loop and return its result.

        The wait is sliced into CANCEL_POLL_INTERVAL steps so a set ``cancel_event`` interrupts
        it. On timeout or cancellation the pending task is cancelled.

        Raises:
            GatewayTimeout: If the coroutine does not finish within ``timeout`` seconds.
            CycleCancelled: If ``cancel_event`` is set while waiting.
        """
        # Exception mapping contract:
        #   - timeout -> GatewayTimeout, cancel_event -> CycleCancelled
        #   - Bleak* exceptions propagate so the gateway can classify them.
        future = asyncio.run_coroutine_threadsafe(coro, self._eventLoop)
        remaining = timeout
        try:
            while True:
                if cancellable and self.cancel_event.is_set():
                    raise CycleCancelled(ERROR_CANCELLED.format(label))
                step = min(BLEConfig.CANCEL_POLL_INTERVAL, remaining)
                try:
                    return future.result(step)
                except FutureTimeoutError:
                    if future.done():
                        raise  # the coroutine itself raised TimeoutError
                    remaining -= step
                    if remaining <= 0:
                        raise GatewayTimeout(ERROR_TIMEOUT.format(label, timeout)) from None
        except (GatewayTimeout, CycleCancelled):
            future.cancel()
            # Consume any late exceptions to avoid "Task exception was never retrieved"
            future.add_done_callback(
                lambda f: f.exception() if not f.cancelled() else None
            )
            raise

    def _run_event_loop(self):
        self.error_handler.safe_execute(
            self._eventLoop.run_forever, error_msg="Error in event loop"
        )
        self._eventLoop.close()  # Clean up resources when loop stops
