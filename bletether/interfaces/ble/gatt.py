"""GATT operation orchestration: read serialization, subscriptions and value routing."""

from collections import deque
from threading import RLock
from typing import Callable, Deque, Iterable, List, Optional, Tuple

from bletether.interfaces.ble.adapter import BLEAdapter
from bletether.interfaces.ble.constants import (
    BATTERY_LEVEL_UUID,
    BATTERY_SERVICE_UUID,
    DEVICE_NAME_UUID,
    GATT_IO_TIMEOUT,
    HEART_RATE_MEASUREMENT_UUID,
    HEART_RATE_SERVICE_UUID,
    BLEConfig,
    logger,
)
from bletether.interfaces.ble.decoder import (
    decode_battery_level,
    decode_characteristic,
    decode_device_name,
    normalize_uuid,
)
from bletether.interfaces.ble.errors import BLEError, BLEOperationIssueError
from bletether.interfaces.ble.models import (
    BatteryLevel,
    CharacteristicUpdate,
    CustomData,
    GattCharacteristic,
    GattService,
    HeartRate,
    SubscriptionMode,
)
from bletether.interfaces.ble.notifications import NotificationManager
from bletether.interfaces.ble.observable import UpdateStream
from bletether.interfaces.ble.reconnection import (
    READ_RETRY_TIMER,
    READ_TIMEOUT_TIMER,
    ReconnectScheduler,
)


class PendingReadQueue:
    """
    Ordered characteristics awaiting a read, plus the one read currently in flight.

    At most one read is ever in flight: `pop_next()` returns nothing until the
    in-flight read has been completed with `complete()`.
    """

    def __init__(self):
        self._queue: Deque[GattCharacteristic] = deque()
        self._in_flight: Optional[GattCharacteristic] = None
        self._lock = RLock()

    @property
    def in_flight(self) -> Optional[GattCharacteristic]:
        with self._lock:
            return self._in_flight

    def enqueue(self, characteristic: GattCharacteristic) -> bool:
        """Queue a read; returns False if the characteristic is already queued or in flight."""
        with self._lock:
            if self._in_flight is not None and self._in_flight.uuid == characteristic.uuid:
                return False
            if any(queued.uuid == characteristic.uuid for queued in self._queue):
                return False
            self._queue.append(characteristic)
            return True

    def pop_next(self) -> Optional[GattCharacteristic]:
        """Mark the next queued read as in flight and return it, or None if busy or empty."""
        with self._lock:
            if self._in_flight is not None or not self._queue:
                return None
            self._in_flight = self._queue.popleft()
            return self._in_flight

    def complete(self, uuid: Optional[str] = None) -> Optional[GattCharacteristic]:
        """
        Clear the in-flight read.

        Parameters:
            uuid (Optional[str]): When given, only complete if it matches the in-flight read.

        Returns:
            The completed characteristic, or None if nothing matching was in flight.
        """
        with self._lock:
            current = self._in_flight
            if current is None or (uuid is not None and current.uuid != uuid):
                return None
            self._in_flight = None
            return current

    def clear(self) -> None:
        with self._lock:
            self._queue.clear()
            self._in_flight = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)


def _find_characteristic(
    services: Iterable[GattService], service_uuid: str, characteristic_uuid: str
) -> Optional[GattCharacteristic]:
    for service in services:
        if service.uuid == service_uuid:
            found = service.get_characteristic(characteristic_uuid)
            if found is not None:
                return found
    return None


class GattOrchestrator:
    """
    Decide what to read and subscribe once services are known, and serialize the reads.

    Every method must be called from the connection manager's serial executor;
    the scheduler queues its timer callbacks there as well, so the orchestrator
    never needs to guard its own state against concurrent mutation.

    Decoded values are emitted on `updates`; battery, heart rate and device
    name changes are also reported through `on_device_info(**changes)` so the
    connection manager can fold them into the connected device snapshot.
    When reads can no longer be issued or completed, `on_stalled(reason)` is
    called and the caller is expected to treat the link as lost.
    """

    def __init__(
        self,
        adapter: BLEAdapter,
        scheduler: ReconnectScheduler,
        *,
        updates: UpdateStream,
        vendor_service_uuid: Optional[str] = None,
        on_device_info: Optional[Callable[..., None]] = None,
        on_stalled: Optional[Callable[[str], None]] = None,
        read_retry_delay: float = BLEConfig.READ_ISSUE_RETRY_DELAY,
        read_max_retries: int = BLEConfig.READ_ISSUE_MAX_RETRIES,
        read_timeout: float = GATT_IO_TIMEOUT,
    ):
        self.adapter = adapter
        self.scheduler = scheduler
        self.updates = updates
        self.vendor_service_uuid = (
            normalize_uuid(vendor_service_uuid) if vendor_service_uuid else None
        )
        self._on_device_info = on_device_info or (lambda **_changes: None)
        self._on_stalled = on_stalled or (lambda _reason: None)
        self.read_retry_delay = read_retry_delay
        self.read_max_retries = read_max_retries
        self.read_timeout = read_timeout

        self.reads = PendingReadQueue()
        self.notifications = NotificationManager()
        self._services: Tuple[GattService, ...] = ()
        self._has_standard_battery = False
        self._vendor_battery_uuid: Optional[str] = None
        self._issue_failures = 0

    @property
    def is_reading_characteristic(self) -> bool:
        return self.reads.in_flight is not None

    @property
    def vendor_battery_uuid(self) -> Optional[str]:
        """UUID adopted as the battery source for this connection, if any."""
        return self._vendor_battery_uuid

    @property
    def services(self) -> Tuple[GattService, ...]:
        return self._services

    def on_services_discovered(self, services: Iterable[GattService]) -> None:
        """
        Plan and start the initial subscriptions and read sequence for a fresh link.

        The standard battery characteristic wins over a configured vendor
        service, which wins over reading everything readable. The heart-rate
        measurement is subscribed to whenever it exists and is never read.
        Subscriptions are issued first, then the reads are drained one by one.
        """
        self._services = tuple(services)
        reads: List[GattCharacteristic] = []
        subscriptions: List[GattCharacteristic] = []

        battery = _find_characteristic(self._services, BATTERY_SERVICE_UUID, BATTERY_LEVEL_UUID)
        vendor = self._vendor_service()
        self._has_standard_battery = battery is not None
        if battery is not None:
            logger.debug("Using standard battery characteristic")
            reads.append(battery)
            subscriptions.append(battery)
        elif vendor is not None:
            logger.debug("Using vendor service %s", vendor.uuid)
            reads.extend(ch for ch in vendor.characteristics if ch.readable)
            subscriptions.extend(ch for ch in vendor.characteristics if ch.subscription_mode)
        else:
            logger.debug("No known battery source, reading every readable characteristic")
            reads.extend(
                ch
                for service in self._services
                for ch in service.characteristics
                if ch.readable and ch.uuid != HEART_RATE_MEASUREMENT_UUID
            )

        heart_rate = _find_characteristic(
            self._services, HEART_RATE_SERVICE_UUID, HEART_RATE_MEASUREMENT_UUID
        )
        if heart_rate is not None:
            subscriptions.append(heart_rate)

        for characteristic in subscriptions:
            self._subscribe(characteristic)
        for characteristic in reads:
            self.reads.enqueue(characteristic)
        self._drain()

    def request_read(self, characteristic: GattCharacteristic) -> bool:
        """
        Queue a read of `characteristic`.

        Returns:
            bool: True if the read was issued right away, False if it was
            deferred behind the read in flight (or was already queued).
        """
        if not self.reads.enqueue(characteristic):
            return False
        if self.is_reading_characteristic:
            logger.debug("Read of %s deferred behind the read in flight", characteristic.uuid)
            return False
        self._drain()
        in_flight = self.reads.in_flight
        return in_flight is not None and in_flight.uuid == characteristic.uuid

    def on_characteristic_value(self, uuid: str, data: bytes, from_read: bool = False) -> None:
        """Route a read completion or notification; a read completion advances the queue."""
        key = normalize_uuid(uuid)
        self._route_value(key, data)
        if from_read and self.reads.complete(key) is not None:
            self.scheduler.cancel(READ_TIMEOUT_TIMER)
            self._drain()

    def on_operation_failed(self, uuid: str, operation: str, reason: str = "") -> None:
        """A started operation failed on the peripheral side; failed reads are skipped."""
        key = normalize_uuid(uuid)
        if operation == "read":
            if self.reads.complete(key) is not None:
                logger.warning("Read of %s failed: %s", key, reason)
                self.scheduler.cancel(READ_TIMEOUT_TIMER)
                self._drain()
            return
        logger.warning("%s on %s failed: %s", operation.capitalize(), key, reason)

    def reset(self) -> None:
        """Forget everything tied to the current link."""
        self.scheduler.cancel(READ_RETRY_TIMER)
        self.scheduler.cancel(READ_TIMEOUT_TIMER)
        self.reads.clear()
        self.notifications.cleanup_all()
        self._services = ()
        self._has_standard_battery = False
        self._vendor_battery_uuid = None
        self._issue_failures = 0

    def _vendor_service(self) -> Optional[GattService]:
        if not self.vendor_service_uuid:
            return None
        for service in self._services:
            if service.uuid == self.vendor_service_uuid:
                return service
        return None

    def _subscribe(self, characteristic: GattCharacteristic) -> None:
        if self.notifications.is_subscribed(characteristic.uuid):
            return
        mode = characteristic.subscription_mode or SubscriptionMode.NOTIFY
        try:
            self.adapter.subscribe(characteristic, mode)
        except BLEError as e:
            logger.warning("Could not subscribe to %s: %s", characteristic.uuid, e)
            return
        self.notifications.subscribe(characteristic, mode)

    def _drain(self) -> None:
        if self.scheduler.is_pending(READ_RETRY_TIMER):
            return
        characteristic = self.reads.pop_next()
        if characteristic is not None:
            self._issue(characteristic)

    def _issue(self, characteristic: GattCharacteristic) -> None:
        in_flight = self.reads.in_flight
        if in_flight is None or in_flight.uuid != characteristic.uuid:
            return
        try:
            self.adapter.read_characteristic(characteristic)
        except BLEOperationIssueError as e:
            self._issue_failures += 1
            if self._issue_failures > self.read_max_retries:
                self.reads.clear()
                self._issue_failures = 0
                self._on_stalled(f"Read of {characteristic.uuid} could not be issued: {e}")
                return
            logger.debug(
                "Read of %s not issued (%s), retry %d/%d",
                characteristic.uuid,
                e,
                self._issue_failures,
                self.read_max_retries,
            )
            self.scheduler.schedule(
                READ_RETRY_TIMER, self.read_retry_delay, lambda: self._issue(characteristic)
            )
            return
        except BLEError as e:
            logger.warning("Read of %s rejected: %s", characteristic.uuid, e)
            self.reads.complete(characteristic.uuid)
            self._issue_failures = 0
            self._drain()
            return
        self._issue_failures = 0
        self.scheduler.schedule(
            READ_TIMEOUT_TIMER, self.read_timeout, lambda: self._on_read_timeout(characteristic)
        )

    def _on_read_timeout(self, characteristic: GattCharacteristic) -> None:
        if self.reads.complete(characteristic.uuid) is None:
            return
        self.reads.clear()
        self._on_stalled(f"Read of {characteristic.uuid} timed out")

    def _route_value(self, uuid: str, data: bytes) -> None:
        if uuid == DEVICE_NAME_UUID:
            name = decode_device_name(data)
            if name is not None:
                self._on_device_info(name=name)
            return

        if uuid == self._vendor_battery_uuid:
            percent = decode_battery_level(data)
            if percent is not None:
                self._emit(BatteryLevel(percent))
            return

        update = decode_characteristic(uuid, data)
        if update is None:
            logger.debug("Ignoring malformed value on %s: %s", uuid, bytes(data).hex())
            return
        if isinstance(update, CustomData) and self._looks_like_vendor_battery(update.raw):
            logger.info("Adopting %s as the battery characteristic", uuid)
            self._vendor_battery_uuid = uuid
            update = BatteryLevel(update.raw[0])
        self._emit(update)

    def _looks_like_vendor_battery(self, raw: bytes) -> bool:
        return (
            self._vendor_battery_uuid is None
            and not self._has_standard_battery
            and len(raw) == 1
            and 1 <= raw[0] <= 100
        )

    def _emit(self, update: CharacteristicUpdate) -> None:
        self.updates.emit(update)
        if isinstance(update, BatteryLevel):
            self._on_device_info(battery_percent=update.percent)
        elif isinstance(update, HeartRate):
            self._on_device_info(heart_rate_bpm=update.bpm)

