"""GATT Battery Service helpers."""

from typing import Any, Dict, Iterable, List, Optional

from zmk_battery_monitor.ble.constants import BATTERY_LEVEL_UUID, BATTERY_SERVICE_UUID
from zmk_battery_monitor.ble.errors import ReadFailure
from zmk_battery_monitor.models import Half

# Split firmware exposes one Battery Service per half, central first in handle order.
HALF_ORDER = (Half.CENTRAL, Half.PERIPHERAL)


def parse_battery_level(data: Optional[bytes], half: Optional[Half] = None) -> int:
    """
    Decode a Battery Level characteristic value.

    The value is a single unsigned byte holding a percentage. Trailing bytes are ignored.

    Raises:
        ReadFailure: If the payload is empty or the level is above 100.
    """
    if not data:
        raise ReadFailure("Empty battery level value", half=half)
    level = data[0]
    if level > 100:
        raise ReadFailure(f"Battery level out of range: {level}", half=half)
    return level


def map_battery_characteristics(services: Optional[Iterable[Any]]) -> Dict[Half, Any]:
    """
    Map each keyboard half to its Battery Level characteristic.

    Parameters:
        services: Discovered GATT services (a bleak service collection or any iterable of
            objects exposing ``uuid``, ``handle`` and ``characteristics``).

    Returns:
        Dict[Half, Any]: Characteristic objects keyed by half; halves without a battery
        service are absent.
    """
    battery_services: List[Any] = sorted(
        (s for s in (services or []) if str(s.uuid).lower() == BATTERY_SERVICE_UUID),
        key=lambda s: s.handle,
    )
    mapping: Dict[Half, Any] = {}
    for half, service in zip(HALF_ORDER, battery_services):
        for characteristic in service.characteristics:
            if str(characteristic.uuid).lower() == BATTERY_LEVEL_UUID:
                mapping[half] = characteristic
                break
    return mapping
