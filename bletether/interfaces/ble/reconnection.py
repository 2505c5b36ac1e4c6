"""Cancellable timers for reconnect, scan auto-stop and GATT operation deadlines."""

import itertools
from threading import RLock, Timer
from typing import Any, Callable, Dict, Optional, Tuple

from bletether.interfaces.ble.constants import logger

# Timer names used by the connection manager and the GATT orchestrator
RECONNECT_TIMER = "reconnect"
SCAN_AUTO_STOP_TIMER = "scan_auto_stop"
CONNECT_TIMEOUT_TIMER = "connect_timeout"
READ_RETRY_TIMER = "read_retry"
READ_TIMEOUT_TIMER = "read_timeout"


def _daemon_timer(delay: float, function: Callable[[], None]) -> Timer:
    """Create a daemon threading.Timer so pending timers never keep the process alive."""
    timer = Timer(delay, function)
    timer.daemon = True
    return timer


class ReconnectScheduler:
    """Own every named timer of one connection manager.

    A fired timer does not run its callback on the timer thread: it queues the
    callback onto the manager's serial executor, and the callback only runs if
    the timer is still the one registered under its name. Rescheduling or
    cancelling a name therefore invalidates the previous timer by identity, so a
    stale timer can never act on a newer session.
    """

    def __init__(self, executor: Any, timer_factory: Optional[Callable[..., Any]] = None):
        """
        Parameters:
            executor: Serial execution context with a `queueWork(callable)` method.
            timer_factory: Callable `(delay, function)` returning an object with `start()` and `cancel()`; defaults to a daemon threading.Timer.
        """
        self._executor = executor
        self._timer_factory = timer_factory or _daemon_timer
        self._lock = RLock()
        self._tokens = itertools.count(1)
        self._pending: Dict[str, Tuple[int, Any]] = {}

    def schedule(self, name: str, delay: float, callback: Callable[[], None]) -> int:
        """
        Arm the timer `name`, replacing any timer already registered under it.

        Returns:
            int: Token identifying this particular timer.
        """
        with self._lock:
            self._cancel_locked(name)
            token = next(self._tokens)
            timer = self._timer_factory(
                delay, lambda: self._executor.queueWork(lambda: self._fire(name, token, callback))
            )
            self._pending[name] = (token, timer)
        logger.debug("Timer %s armed for %.2fs (token %d)", name, delay, token)
        timer.start()
        return token

    def cancel(self, name: str) -> bool:
        """Cancel the timer `name`; returns True if one was pending."""
        with self._lock:
            return self._cancel_locked(name)

    def cancel_all(self) -> None:
        """Cancel every pending timer."""
        with self._lock:
            for name in list(self._pending):
                self._cancel_locked(name)

    def is_pending(self, name: str) -> bool:
        """Check whether the timer `name` is armed and has not fired yet."""
        with self._lock:
            return name in self._pending

    def _cancel_locked(self, name: str) -> bool:
        entry = self._pending.pop(name, None)
        if entry is None:
            return False
        token, timer = entry
        timer.cancel()
        logger.debug("Timer %s cancelled (token %d)", name, token)
        return True

    def _fire(self, name: str, token: int, callback: Callable[[], None]) -> None:
        with self._lock:
            entry = self._pending.get(name)
            if entry is None or entry[0] != token:
                logger.debug("Ignoring stale timer %s (token %d)", name, token)
                return
            del self._pending[name]
        callback()
