"""Utility functions and helper classes for bletether."""

import logging
import queue
import re
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class DeferredExecution:
    """A thread that accepts closures to run, and runs them as they are received.

    All work queued on one instance runs on the same thread in submission
    order, which makes it usable as a single serial execution context.
    """

    def __init__(self, name: Optional[str] = None):
        self.queue: "queue.Queue[Optional[Callable[[], None]]]" = queue.Queue()
        self.thread = threading.Thread(target=self._run, args=(), name=name, daemon=True)
        self.thread.start()

    def queueWork(self, runnable: Callable[[], None]) -> None:
        """Queue up the work (a closure) for later execution on our thread."""
        self.queue.put(runnable)

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop the worker once everything queued so far has run.

        Parameters:
            timeout (Optional[float]): Seconds to wait for the worker thread to exit; `None` waits indefinitely.
        """
        self.queue.put(None)
        if self.thread is not threading.current_thread():
            self.thread.join(timeout=timeout)

    def _run(self):
        while True:
            runnable = self.queue.get()
            if runnable is None:
                return
            try:
                runnable()
            except Exception:  # noqa: BLE001 - the worker must survive bad closures
                logger.exception("Unexpected error in deferred execution")


def sanitize_address(address: Optional[str]) -> Optional[str]:
    """
    Normalize a BLE address or identifier by removing common separators and lowercasing.

    Returns:
        The normalized address with dashes, underscores, colons, and spaces removed, or None if the input is None or only whitespace.
    """
    if address is None or not address.strip():
        return None
    return re.sub(r"[-_:\s]", "", address.strip()).lower()
