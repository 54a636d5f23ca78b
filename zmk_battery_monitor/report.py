"""Text rendering of battery snapshots for the CLI and the tray tooltip."""

from typing import List, Optional, Sequence, Tuple

from tabulate import tabulate

from zmk_battery_monitor.models import (
    BatteryReading,
    DeviceConfig,
    DeviceSnapshot,
    Half,
    PollerState,
)

DeviceRows = Sequence[Tuple[DeviceConfig, DeviceSnapshot]]

NO_DATA = "no data"
HEADERS = ["Device", "Address", "Central", "Peripheral", "State", "Last error"]


def timeago(delta_secs: int) -> str:
    """
    Format a past time interval given in seconds into a short human-readable string.

    Returns:
        str: ``"now"`` for zero or negative inputs; otherwise a string like ``"30 secs ago"``
        or ``"1 hour ago"`` using the largest whole unit that fits.
    """
    intervals = (
        ("day", 60 * 60 * 24),
        ("hour", 60 * 60),
        ("min", 60),
        ("sec", 1),
    )
    for name, interval_duration in intervals:
        if delta_secs < interval_duration:
            continue
        x = delta_secs // interval_duration
        plur = "s" if x > 1 else ""
        return f"{x} {name}{plur} ago"
    return "now"


def format_reading(
    reading: Optional[BatteryReading],
    now: float,
    *,
    stale: bool = False,
    threshold: Optional[int] = None,
) -> str:
    if reading is None:
        return NO_DATA
    text = f"{reading.level}%"
    if threshold is not None and reading.level <= threshold:
        text += " low"
    if stale:
        text += f" ({timeago(int(now - reading.timestamp))})"
    return text


def format_error(snapshot: DeviceSnapshot, now: float) -> str:
    error = snapshot.last_error
    if error is None:
        return ""
    where = f"{error.half.label} " if error.half else ""
    text = f"{where}{error.kind.label} ({timeago(int(now - error.timestamp))})"
    if snapshot.failure_count > 1:
        text += f" x{snapshot.failure_count}"
    return text


def format_state(snapshot: DeviceSnapshot, now: float) -> str:
    if snapshot.state is PollerState.BACKING_OFF and snapshot.backoff is not None:
        remaining = max(0, int(snapshot.backoff.until - now))
        return f"retry in {remaining}s"
    if snapshot.last_cycle_at is None and snapshot.state is PollerState.IDLE:
        return "waiting"
    return snapshot.state.value.replace("_", " ")


def report_rows(rows: DeviceRows, now: float, max_age: float) -> List[List[str]]:
    table = []
    for device, snapshot in rows:
        stale = snapshot.is_stale(now, max_age)
        table.append(
            [
                device.name,
                device.address,
                *(
                    format_reading(
                        snapshot.reading(half),
                        now,
                        stale=stale,
                        threshold=device.low_battery_threshold,
                    )
                    for half in Half
                ),
                format_state(snapshot, now),
                format_error(snapshot, now),
            ]
        )
    return table


def render_table(
    rows: DeviceRows, now: float, max_age: float, tablefmt: str = "simple"
) -> str:
    """Render the per-device report printed by the CLI."""
    if not rows:
        return "No enabled devices configured."
    return tabulate(report_rows(rows, now, max_age), headers=HEADERS, tablefmt=tablefmt)


def device_summary(
    device: DeviceConfig, snapshot: DeviceSnapshot, now: float, max_age: float
) -> str:
    """One line per device: ``Corne: Central 80% / Peripheral 75%``."""
    if not snapshot.has_data:
        error = snapshot.last_error
        reason = f" ({error.kind.label})" if error else ""
        return f"{device.name}: {NO_DATA}{reason}"
    stale = snapshot.is_stale(now, max_age)
    halves = " / ".join(
        f"{half.label} {format_reading(snapshot.reading(half), now, threshold=device.low_battery_threshold)}"
        for half in Half
    )
    if stale:
        newest = max(
            r.timestamp for r in (snapshot.central, snapshot.peripheral) if r is not None
        )
        halves += f" (last seen {timeago(int(now - newest))})"
    return f"{device.name}: {halves}"


def tooltip_text(rows: DeviceRows, now: float, max_age: float) -> str:
    if not rows:
        return "No enabled devices configured"
    return "\n".join(device_summary(d, s, now, max_age) for d, s in rows)


def lowest_level(rows: DeviceRows) -> Optional[int]:
    levels = [s.lowest_level for _, s in rows if s.lowest_level is not None]
    return min(levels) if levels else None


def any_low(rows: DeviceRows) -> bool:
    return any(
        s.lowest_level is not None and s.lowest_level <= d.low_battery_threshold
        for d, s in rows
    )


def tray_title(rows: DeviceRows, *, show_percentage: bool) -> str:
    title = "ZMK Battery Monitor"
    level = lowest_level(rows)
    if show_percentage and level is not None:
        return f"{level}% - {title}"
    return title
