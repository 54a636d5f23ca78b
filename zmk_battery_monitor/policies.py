"""Backoff policy applied after failed poll cycles."""

import random

from zmk_battery_monitor.ble.constants import BLEConfig


class BackoffPolicy:
    """
    Bounded exponential backoff with jitter.

    The delay doubles (by default) with every consecutive failed cycle, starting at
    ``initial_delay``, and never exceeds ``max_delay`` even after jitter is applied.
    """

    def __init__(
        self,
        *,
        initial_delay: float = BLEConfig.BACKOFF_INITIAL_DELAY,
        max_delay: float = BLEConfig.BACKOFF_MAX_DELAY,
        backoff: float = BLEConfig.BACKOFF_MULTIPLIER,
        jitter_ratio: float = BLEConfig.BACKOFF_JITTER_RATIO,
        random_source=None,
    ):
        if initial_delay <= 0:
            raise ValueError(f"initial_delay must be > 0, got {initial_delay}")
        if max_delay < initial_delay:
            raise ValueError(
                f"max_delay ({max_delay}) must be >= initial_delay ({initial_delay})"
            )
        if backoff <= 1.0:
            raise ValueError(f"backoff must be > 1.0, got {backoff}")
        if not 0.0 <= jitter_ratio <= 1.0:
            raise ValueError(
                f"jitter_ratio must be between 0.0 and 1.0, got {jitter_ratio}"
            )
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff = backoff
        self.jitter_ratio = jitter_ratio
        self._random = random_source or random

    def get_delay(self, failure_count: int) -> float:
        """
        Compute the jittered delay to wait after ``failure_count`` consecutive failures.

        Parameters:
            failure_count (int): Consecutive failed cycles, counting the one just finished.

        Returns:
            float: Seconds to back off, in ``(0, max_delay]``.
        """
        exponent = max(failure_count - 1, 0)
        try:
            delay = min(self.initial_delay * (self.backoff**exponent), self.max_delay)
        except OverflowError:
            delay = self.max_delay
        jitter = delay * self.jitter_ratio * (self._random.random() * 2.0 - 1.0)
        return min(max(0.001, delay + jitter), self.max_delay)
