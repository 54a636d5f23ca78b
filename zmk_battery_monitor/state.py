"""Poller connection state management."""

import logging
from threading import RLock

from zmk_battery_monitor.models import PollerState

logger = logging.getLogger(__name__)

_VALID_TRANSITIONS = {
    PollerState.IDLE: {PollerState.CONNECTING},
    # CONNECTING -> IDLE only when a stop interrupts the connect
    PollerState.CONNECTING: {
        PollerState.READING,
        PollerState.BACKING_OFF,
        PollerState.IDLE,
    },
    PollerState.READING: {PollerState.IDLE, PollerState.BACKING_OFF},
    PollerState.BACKING_OFF: {PollerState.IDLE},
}


class PollerStateMachine:
    """Thread-safe state machine for one device poller.

    Replaces ad hoc flags with a single validated state so every transition of the
    connect / read / back off cycle is explicit.
    """

    def __init__(self, name: str = ""):
        self._lock = RLock()
        self._state = PollerState.IDLE
        self._name = name

    @property
    def state(self) -> PollerState:
        with self._lock:
            return self._state

    @property
    def is_idle(self) -> bool:
        return self.state == PollerState.IDLE

    @property
    def is_backing_off(self) -> bool:
        return self.state == PollerState.BACKING_OFF

    def transition_to(self, new_state: PollerState) -> bool:
        """
        Apply ``new_state`` if the transition is allowed.

        Returns:
            True if the transition was valid and applied, False otherwise.
        """
        with self._lock:
            if new_state in _VALID_TRANSITIONS[self._state]:
                old_state = self._state
                self._state = new_state
                logger.debug(
                    "%s state transition: %s → %s",
                    self._name,
                    old_state.value,
                    new_state.value,
                )
                return True
            logger.warning(
                "%s invalid state transition: %s → %s",
                self._name,
                self._state.value,
                new_state.value,
            )
            return False
