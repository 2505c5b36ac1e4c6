"""Observable values published through pypubsub."""

from collections import deque
from threading import RLock
from typing import Any, Callable, Deque, Generic, List, Optional, TypeVar

from pubsub import pub

import bletether
from bletether.interfaces.ble.errors import BLEErrorHandler

T = TypeVar("T")


def _resolve_publisher(publisher: Any) -> Any:
    # Looked up at call time so the module-wide thread can be swapped in tests
    return publisher if publisher is not None else bletether.publishingThread


class ObservableValue(Generic[T]):
    """
    Hold the current value of one observable and publish every change.

    Readers can always fetch the latest value synchronously through `value`.
    Changes are delivered on the publishing thread, both to pypubsub
    subscribers of `topic` (as `value=..., source=...`) and to listeners
    registered with `add_listener`. Setting an equal value publishes nothing.
    """

    def __init__(
        self,
        topic: str,
        initial: T,
        *,
        source: Any = None,
        publisher: Any = None,
    ):
        self.topic = topic
        self._value = initial
        self._source = source
        self._publisher = publisher
        self._listeners: List[Callable[[T], None]] = []
        self._lock = RLock()

    @property
    def value(self) -> T:
        with self._lock:
            return self._value

    def set(self, value: T) -> bool:
        """Store `value` and publish it; returns False (and publishes nothing) if unchanged."""
        with self._lock:
            if value == self._value:
                return False
            self._value = value
            listeners = list(self._listeners)
        _resolve_publisher(self._publisher).queueWork(
            lambda: self._deliver(value, listeners)
        )
        return True

    def add_listener(self, listener: Callable[[T], None]) -> None:
        """Register a callable invoked with every new value (strong reference, unlike pubsub)."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[T], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _deliver(self, value: T, listeners: List[Callable[[T], None]]) -> None:
        for listener in listeners:
            BLEErrorHandler.safe_execute(
                lambda: listener(value),
                error_msg=f"Error in {self.topic} listener",
            )
        BLEErrorHandler.safe_execute(
            lambda: pub.sendMessage(self.topic, value=value, source=self._source),
            error_msg=f"Error publishing {self.topic}",
        )


class UpdateStream(ObservableValue[Optional[T]]):
    """
    Best-effort event stream that never blocks its producer.

    Every emitted event is published (events are never deduplicated) and kept
    in a bounded buffer that drops the oldest entries on bursts; `drain()`
    hands the buffered events to a polling consumer.
    """

    def __init__(
        self,
        topic: str,
        *,
        maxlen: int,
        source: Any = None,
        publisher: Any = None,
    ):
        super().__init__(topic, None, source=source, publisher=publisher)
        self._buffer: Deque[T] = deque(maxlen=maxlen)
        self.dropped = 0

    def emit(self, event: T) -> None:
        with self._lock:
            if len(self._buffer) == self._buffer.maxlen:
                self.dropped += 1
            self._buffer.append(event)
            self._value = event
            listeners = list(self._listeners)
        _resolve_publisher(self._publisher).queueWork(
            lambda: self._deliver(event, listeners)
        )

    def set(self, value: Optional[T]) -> bool:
        if value is None:
            return False
        self.emit(value)
        return True

    def drain(self) -> List[T]:
        """Remove and return every buffered event, oldest first."""
        with self._lock:
            events = list(self._buffer)
            self._buffer.clear()
            return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)
