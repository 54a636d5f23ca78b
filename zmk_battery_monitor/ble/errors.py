"""Error taxonomy and error handling utilities for BLE operations."""

from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional

from bleak.exc import BleakDBusError, BleakError

from zmk_battery_monitor.ble.constants import logger
from zmk_battery_monitor.models import ErrorKind, Half


class GatewayError(Exception):
    """Base class for failures reported by a battery gateway."""

    kind: Optional[ErrorKind] = None

    def __init__(self, message: str, *, half: Optional[Half] = None):
        super().__init__(message)
        self.half = half


class ConnectFailure(GatewayError):
    """The device could not be reached or refused the connection."""

    kind = ErrorKind.CONNECT_FAILURE
    UNREACHABLE = "unreachable"
    REFUSED = "refused"

    def __init__(self, message: str, *, reason: str = UNREACHABLE):
        super().__init__(message)
        self.reason = reason


class GatewayTimeout(GatewayError):
    """A connect, read or disconnect exceeded its time budget."""

    kind = ErrorKind.TIMEOUT


class ReadFailure(GatewayError):
    """The battery characteristic is missing or returned an unusable value."""

    kind = ErrorKind.READ_FAILURE
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"

    def __init__(
        self, message: str, *, reason: str = MALFORMED, half: Optional[Half] = None
    ):
        super().__init__(message, half=half)
        self.reason = reason


class UnexpectedDisconnect(GatewayError):
    """The link dropped while the cycle still needed it."""

    kind = ErrorKind.UNEXPECTED_DISCONNECT


class CycleCancelled(GatewayError):
    """A blocking BLE wait was interrupted because the poller is stopping."""


class ErrorHandler:
    """Helper class for consistent error handling in BLE operations.

    Features:
        - Safe execution with fallback return values
        - Cleanup operations that never raise exceptions
    """

    @staticmethod
    def safe_execute(
        func,
        default_return=None,
        log_error: bool = True,
        error_msg: str = "Error in operation",
        reraise: bool = False,
    ):
        """
        Execute a zero-argument callable and return its result, falling back to a provided default on failure.

        BLE-related exceptions (GatewayError, BleakError, BleakDBusError, FutureTimeoutError) are
        logged at debug level; anything else is logged with its traceback.

        Parameters:
            func (callable): A zero-argument callable to execute.
            default_return: Value to return if execution fails.
            log_error (bool): If True, log caught exceptions.
            error_msg (str): Message prefix used when logging errors.
            reraise (bool): If True, re-raise any caught exception instead of returning default_return.
        """
        try:
            return func()
        except (GatewayError, BleakError, BleakDBusError, FutureTimeoutError) as e:
            if log_error:
                logger.debug("%s: %s", error_msg, e)
            if reraise:
                raise
            return default_return
        except Exception:
            if log_error:
                logger.exception("%s", error_msg)
            if reraise:
                raise
            return default_return

    @staticmethod
    def safe_cleanup(func, cleanup_name: str = "cleanup operation"):
        """Execute a cleanup callable, logging and suppressing any exception it raises."""
        try:
            func()
        except Exception as e:  # noqa: BLE001 - cleanup paths must not raise
            logger.debug("Error during %s: %s", cleanup_name, e)


__all__ = [
    "ConnectFailure",
    "CycleCancelled",
    "ErrorHandler",
    "GatewayError",
    "GatewayTimeout",
    "ReadFailure",
    "UnexpectedDisconnect",
]
