"""Battery snapshot store shared between pollers and presentation layers."""

import logging
from dataclasses import replace
from threading import Condition, Lock, RLock
from typing import Callable, Dict, List, Optional, Tuple

from zmk_battery_monitor.models import (
    Backoff,
    BatteryReading,
    DeviceSnapshot,
    ErrorRecord,
    Half,
    PollerState,
)

logger = logging.getLogger(__name__)

SnapshotList = List[Tuple[str, DeviceSnapshot]]


class _Entry:
    __slots__ = ("lock", "snapshot")

    def __init__(self, snapshot: DeviceSnapshot):
        self.lock = Lock()
        self.snapshot = snapshot


class SnapshotStore:
    """
    Latest battery state per device address.

    Each entry has a single writer (the device's poller) and any number of readers. Entries
    hold immutable DeviceSnapshot objects that are swapped under a short per-entry lock, so a
    reader always gets a fully committed snapshot. Writes for an address that has no entry
    are dropped: a poller racing its own removal cannot resurrect it.
    """

    def __init__(self):
        self._lock = RLock()
        self._entries: Dict[str, _Entry] = {}
        self._changed = Condition(Lock())

    def create(self, address: str) -> DeviceSnapshot:
        """Create a fresh entry for ``address``, replacing any previous one."""
        snapshot = DeviceSnapshot(address=address)
        with self._lock:
            self._entries[address] = _Entry(snapshot)
        self._notify()
        return snapshot

    def remove(self, address: str) -> bool:
        with self._lock:
            removed = self._entries.pop(address, None) is not None
        if removed:
            self._notify()
        return removed

    def get(self, address: str) -> Optional[DeviceSnapshot]:
        with self._lock:
            entry = self._entries.get(address)
        if entry is None:
            return None
        with entry.lock:
            return entry.snapshot

    def get_all(self) -> SnapshotList:
        """Return ``(address, snapshot)`` pairs in creation order."""
        with self._lock:
            entries = list(self._entries.items())
        result: SnapshotList = []
        for address, entry in entries:
            with entry.lock:
                result.append((address, entry.snapshot))
        return result

    def __contains__(self, address: object) -> bool:
        with self._lock:
            return address in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def update_reading(self, address: str, half: Half, reading: BatteryReading) -> bool:
        """
        Store ``reading`` for ``half`` if it is newer than the one held.

        A successful read always clears the error, backoff and failure count, even when the
        reading itself is not newer than the stored one.

        Returns:
            bool: True if the reading replaced (or became) the stored reading.
        """
        stored = False

        def apply(snapshot: DeviceSnapshot) -> DeviceSnapshot:
            nonlocal stored
            current = snapshot.reading(half)
            changes = {"failure_count": 0, "last_error": None, "backoff": None}
            if current is None or reading.timestamp > current.timestamp:
                changes[half.value] = reading
                stored = True
            else:
                logger.debug(
                    "Ignoring %s reading for %s: %.3f is not newer than %.3f",
                    half.label,
                    address,
                    reading.timestamp,
                    current.timestamp,
                )
            return replace(snapshot, **changes)

        self._mutate(address, apply)
        return stored

    def record_failure(
        self, address: str, error: ErrorRecord, *, increment: bool = True
    ) -> int:
        """
        Record ``error`` as the latest failure without touching any reading.

        Parameters:
            increment (bool): Count this failure towards the consecutive failure count.

        Returns:
            int: The failure count after the update (0 if the entry is gone).
        """
        updated = self._mutate(
            address,
            lambda s: replace(
                s,
                last_error=error,
                failure_count=s.failure_count + 1 if increment else s.failure_count,
            ),
        )
        return updated.failure_count if updated else 0

    def set_state(
        self, address: str, state: PollerState, backoff: Optional[Backoff] = None
    ) -> None:
        if state is not PollerState.BACKING_OFF:
            backoff = None
        self._mutate(address, lambda s: replace(s, state=state, backoff=backoff))

    def mark_cycle(self, address: str, at: float) -> None:
        self._mutate(address, lambda s: replace(s, last_cycle_at=at))

    def wait_for(
        self, predicate: Callable[[SnapshotList], bool], timeout: Optional[float] = None
    ) -> bool:
        """
        Block until ``predicate(get_all())`` holds or ``timeout`` elapses.

        Returns:
            bool: The last value of the predicate.
        """
        with self._changed:
            return self._changed.wait_for(lambda: predicate(self.get_all()), timeout)

    def _mutate(
        self, address: str, fn: Callable[[DeviceSnapshot], DeviceSnapshot]
    ) -> Optional[DeviceSnapshot]:
        with self._lock:
            entry = self._entries.get(address)
        if entry is None:
            logger.debug("Dropping update for untracked device %s", address)
            return None
        with entry.lock:
            entry.snapshot = fn(entry.snapshot)
            snapshot = entry.snapshot
        self._notify()
        return snapshot

    def _notify(self) -> None:
        with self._changed:
            self._changed.notify_all()
