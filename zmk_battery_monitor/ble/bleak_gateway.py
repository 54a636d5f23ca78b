"""Battery gateway backed by bleak (BlueZ over D-Bus on Linux)."""

import asyncio
from threading import Event
from typing import Any, Callable, Dict, Optional

from bleak.exc import BleakDBusError, BleakDeviceNotFoundError, BleakError

from zmk_battery_monitor.ble.client import BLEClient
from zmk_battery_monitor.ble.constants import (
    BLEAK_VERSION,
    BLEConfig,
    ERROR_CONNECTION_FAILED,
    ERROR_NO_BATTERY_SERVICE,
    ERROR_TIMEOUT,
    logger,
)
from zmk_battery_monitor.ble.errors import (
    ConnectFailure,
    CycleCancelled,
    ErrorHandler,
    GatewayTimeout,
    ReadFailure,
    UnexpectedDisconnect,
)
from zmk_battery_monitor.ble.gatt import map_battery_characteristics, parse_battery_level
from zmk_battery_monitor.ble.gateway import (
    BatteryConnection,
    BatteryGateway,
    ConnectionRegistry,
)
from zmk_battery_monitor.models import Half


class _BleakLink:
    """Per-connection state: the client and its resolved battery characteristics."""

    def __init__(self, client: BLEClient, characteristics: Dict[Half, Any]):
        self.client = client
        self.characteristics = characteristics


class BleakGateway(BatteryGateway):
    """
    BatteryGateway implementation that opens one BLEClient per connection.

    Each client runs its own event loop thread, so connections to different keyboards never
    wait on each other.
    """

    def __init__(self, client_factory: Optional[Callable[..., BLEClient]] = None):
        self.error_handler = ErrorHandler()
        self._client_factory = client_factory or BLEClient
        self._registry = ConnectionRegistry()
        logger.debug("Using bleak %s", BLEAK_VERSION)

    @property
    def open_connections(self) -> int:
        return len(self._registry)

    def connect(
        self, address: str, timeout: float, *, cancel_event: Optional[Event] = None
    ) -> BatteryConnection:
        """
        Connect to ``address`` and resolve the Battery Level characteristic of each half.

        Raises:
            ConnectFailure: Device not found (unreachable) or the stack refused the link.
            GatewayTimeout: The connection was not established within ``timeout``.
            CycleCancelled: ``cancel_event`` was set while connecting.
        """
        try:
            client = self._client_factory(address, cancel_event=cancel_event)
        except (BleakError, OSError) as exc:
            raise ConnectFailure(
                ERROR_CONNECTION_FAILED.format(address, exc),
                reason=ConnectFailure.UNREACHABLE,
            ) from exc
        try:
            client.connect(timeout=timeout)
        except (GatewayTimeout, CycleCancelled):
            self._discard_client(client)
            raise
        except asyncio.TimeoutError as exc:
            self._discard_client(client)
            raise GatewayTimeout(ERROR_TIMEOUT.format("Connect", timeout)) from exc
        except BleakDeviceNotFoundError as exc:
            self._discard_client(client)
            raise ConnectFailure(
                ERROR_CONNECTION_FAILED.format(address, exc),
                reason=ConnectFailure.UNREACHABLE,
            ) from exc
        except BleakDBusError as exc:
            self._discard_client(client)
            raise ConnectFailure(
                ERROR_CONNECTION_FAILED.format(address, exc),
                reason=ConnectFailure.REFUSED,
            ) from exc
        except (BleakError, OSError) as exc:
            self._discard_client(client)
            raise ConnectFailure(
                ERROR_CONNECTION_FAILED.format(address, exc),
                reason=ConnectFailure.UNREACHABLE,
            ) from exc

        link = _BleakLink(client, {})
        connection = BatteryConnection(address, link)
        self._registry.add(connection)
        try:
            link.characteristics = map_battery_characteristics(client.services)
        except Exception:
            self.disconnect(connection, BLEConfig.DISCONNECT_TIMEOUT)
            raise
        logger.debug(
            "Connected to %s; battery characteristics for %s",
            address,
            ", ".join(h.label for h in link.characteristics) or "no halves",
        )
        return connection

    def read_level(
        self, connection: BatteryConnection, half: Half, timeout: float
    ) -> int:
        """
        Read and decode the battery level of ``half``.

        Raises:
            UnexpectedDisconnect: The link is gone.
            ReadFailure: The half has no battery characteristic or the value is malformed.
            GatewayTimeout: The read did not complete within ``timeout``.
        """
        link: _BleakLink = connection.handle
        if connection.closed or link.client.disconnected_event.is_set():
            raise UnexpectedDisconnect(
                f"{connection.address} disconnected before {half.label} read", half=half
            )
        characteristic = link.characteristics.get(half)
        if characteristic is None:
            raise ReadFailure(
                ERROR_NO_BATTERY_SERVICE.format(half.label, connection.address),
                reason=ReadFailure.NOT_FOUND,
                half=half,
            )
        try:
            data = link.client.read_gatt_char(characteristic, timeout=timeout)
        except GatewayTimeout as exc:
            if link.client.disconnected_event.is_set():
                raise UnexpectedDisconnect(
                    f"{connection.address} dropped during {half.label} read", half=half
                ) from exc
            exc.half = half
            raise
        except CycleCancelled:
            raise
        except (BleakError, OSError) as exc:
            if link.client.disconnected_event.is_set() or not link.client.is_connected():
                raise UnexpectedDisconnect(
                    f"{connection.address} dropped during {half.label} read: {exc}",
                    half=half,
                ) from exc
            raise ReadFailure(
                f"{half.label} read failed: {exc}", reason=ReadFailure.MALFORMED, half=half
            ) from exc
        return parse_battery_level(data, half)

    def disconnect(self, connection: BatteryConnection, timeout: float) -> None:
        """Release ``connection`` once; later calls and calls racing ``close`` are no-ops."""
        if self._registry.claim(connection):
            self._release(connection, timeout)

    def close(self) -> None:
        """Disconnect every connection still registered."""
        stragglers = self._registry.drain()
        if stragglers:
            logger.info("Closing %d BLE connection(s) left open", len(stragglers))
        for connection in stragglers:
            self._release(connection, BLEConfig.DISCONNECT_TIMEOUT)

    def _release(self, connection: BatteryConnection, timeout: float) -> None:
        connection.closed = True
        link: _BleakLink = connection.handle
        if link.client.is_connected():
            self.error_handler.safe_cleanup(
                lambda: link.client.disconnect(timeout=timeout),
                f"disconnect from {connection.address}",
            )
        self._discard_client(link.client)

    def _discard_client(self, client: BLEClient) -> None:
        self.error_handler.safe_cleanup(client.close, "client close")
