"""Error types and error handling utilities for BLE operations."""

from concurrent.futures import TimeoutError as FutureTimeoutError

from bleak.exc import BleakDBusError, BleakError

from bletether.interfaces.ble.constants import logger

__all__ = [
    "BLEError",
    "BLEAuthorizationError",
    "BLELinkError",
    "BLEOperationIssueError",
    "BLEErrorHandler",
]


class BLEError(Exception):
    """Base class of every error raised by bletether."""


class BLEAuthorizationError(BLEError):
    """Raised when permissions are missing or the radio cannot be used. Never retried."""


class BLELinkError(BLEError):
    """Raised on transient link failures; recovered through the reconnect policy."""


class BLEOperationIssueError(BLEError):
    """Raised when a GATT operation cannot be started, e.g. because the link is busy."""


class BLEErrorHandler:
    """
    Run best-effort calls (listener callbacks, teardown steps, state queries) without letting them raise.

    Backend and timeout failures are expected on a flaky radio and are logged
    at debug level; anything else is a bug and is logged with its traceback.
    """

    EXPECTED_ERRORS = (BleakError, BleakDBusError, BLEError, FutureTimeoutError)

    @staticmethod
    def safe_execute(func, default_return=None, error_msg: str = "Error in operation"):
        """
        Return `func()`, or `default_return` if it raised.

        Parameters:
            func: Zero-argument callable.
            default_return: Value returned when `func` fails.
            error_msg: Prefix of the log line written on failure.
        """
        try:
            return func()
        except BLEErrorHandler.EXPECTED_ERRORS as e:
            logger.debug("%s: %s", error_msg, e)
        except Exception:  # noqa: BLE001 - callers rely on this never raising
            logger.exception("%s", error_msg)
        return default_return

    @staticmethod
    def safe_cleanup(func, cleanup_name: str = "cleanup operation") -> None:
        """Run one teardown step; failures are logged at debug level only."""
        try:
            func()
        except Exception as e:  # noqa: BLE001 - teardown continues past failed steps
            logger.debug("Error during %s: %s", cleanup_name, e)
