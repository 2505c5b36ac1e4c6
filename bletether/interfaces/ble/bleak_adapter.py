"""BLEAdapter implementation on top of Bleak."""

import re
from concurrent.futures import Future
from threading import RLock
from typing import Any, Callable, Dict, Optional, Tuple

from bleak import BleakScanner

from bletether.interfaces.ble.adapter import (
    AdvertisementSeen,
    AuthorizationFailed,
    BLEAdapter,
    CharacteristicValue,
    LinkConnected,
    LinkDisconnected,
    OperationFailed,
    PowerState,
    PowerStateChanged,
    ScanFailed,
    ServiceDiscoveryComplete,
    ServiceDiscoveryFailed,
)
from bletether.interfaces.ble.client import BLEClient
from bletether.interfaces.ble.constants import (
    BLEAK_VERSION,
    BLEConfig,
    CONNECTION_TIMEOUT,
    DISCONNECT_TIMEOUT_SECONDS,
    ERROR_ADAPTER_OFF,
    GATT_IO_TIMEOUT,
    logger,
)
from bletether.interfaces.ble.decoder import normalize_uuid
from bletether.interfaces.ble.errors import (
    BLEAuthorizationError,
    BLEErrorHandler,
    BLEOperationIssueError,
)
from bletether.interfaces.ble.models import GattCharacteristic, GattService, SubscriptionMode

# Fragments of backend error messages meaning the radio is off or missing
_POWER_OFF_MARKERS = (
    "not powered",
    "powered off",
    "turned off",
    "no bluetooth adapters",
    "bluetooth device is turned off",
    "org.bluez.error.notready",
)
# Fragments meaning the process may not use Bluetooth at all
_PERMISSION_MARKERS = (
    "not authorized",
    "permission",
    "access denied",
    "org.bluez.error.notpermitted",
    "denied by",
)
_STATUS_PATTERN = re.compile(r"\bstatus\b\D{0,3}(\d+)", re.IGNORECASE)
_UNKNOWN_SCAN_ERROR = -1


def classify_error(error: BaseException) -> str:
    """
    Sort a backend exception into "power", "permission" or "link".

    Bleak reports radio and authorization problems only through exception
    messages, which differ per backend, so the classification is textual.
    """
    message = str(error).lower()
    if any(marker in message for marker in _POWER_OFF_MARKERS):
        return "power"
    if any(marker in message for marker in _PERMISSION_MARKERS):
        return "permission"
    return "link"


def extract_status(error: BaseException) -> int:
    """GATT status code embedded in a backend error message, 0 if there is none."""
    match = _STATUS_PATTERN.search(str(error))
    return int(match.group(1)) if match else 0


def convert_services(bleak_services) -> Tuple[GattService, ...]:
    """Turn a Bleak service collection into platform-neutral GattService values."""
    services = []
    for service in bleak_services:
        service_uuid = normalize_uuid(service.uuid)
        characteristics = tuple(
            GattCharacteristic(
                uuid=normalize_uuid(characteristic.uuid),
                service_uuid=service_uuid,
                handle=getattr(characteristic, "handle", None),
                properties=frozenset(p.lower() for p in characteristic.properties),
            )
            for characteristic in service.characteristics
        )
        services.append(GattService(uuid=service_uuid, characteristics=characteristics))
    return tuple(services)


class BleakAdapter(BLEAdapter):
    """
    Drive a real radio through Bleak.

    Scanning runs a BleakScanner on a loop-only BLEClient owned by the
    adapter; every connection gets its own BLEClient. All Bleak operations are
    scheduled without blocking the caller and report back through events.
    Each connection is tagged with a generation number so late callbacks
    from a link that was already torn down are dropped.

    Bleak has no power-state notification and no permission query, so the
    radio is assumed usable until an operation fails with a power or
    permission error. `recheck_availability` briefly starts a scanner to find
    out whether that is still true, and any later successful scan or
    connection clears both conditions. Hosts with a platform power signal can
    forward it through `report_power_state`.
    """

    def __init__(
        self,
        *,
        connect_timeout: float = CONNECTION_TIMEOUT,
        io_timeout: float = GATT_IO_TIMEOUT,
        recheck_timeout: float = BLEConfig.ADAPTER_RECHECK_TIMEOUT,
        scanner_kwargs: Optional[Dict[str, Any]] = None,
        client_factory: Callable[..., BLEClient] = BLEClient,
        scanner_factory: Callable[..., Any] = BleakScanner,
    ):
        super().__init__()
        self.connect_timeout = connect_timeout
        self.io_timeout = io_timeout
        self.recheck_timeout = recheck_timeout
        self._scanner_kwargs = dict(scanner_kwargs or {})
        self._client_factory = client_factory
        self._scanner_factory = scanner_factory
        self._lock = RLock()
        self._power_state = PowerState.ON
        self._permission_denied = False
        self._scan_loop: Optional[BLEClient] = None
        self._scanner: Any = None
        self._client: Optional[BLEClient] = None
        self._address: Optional[str] = None
        self._generation = 0
        self._read_future: Optional[Future] = None
        logger.debug("Using bleak %s", BLEAK_VERSION)

    @property
    def power_state(self) -> PowerState:
        with self._lock:
            return self._power_state

    def has_permissions(self) -> bool:
        with self._lock:
            return not self._permission_denied

    def report_power_state(self, state: PowerState) -> None:
        """Record a radio power change and report it if it differs from the known state."""
        with self._lock:
            if state == self._power_state:
                return
            self._power_state = state
            if state == PowerState.ON:
                self._permission_denied = False
        logger.info("Bluetooth radio is now %s", state.value)
        self.emit(PowerStateChanged(state))

    def recheck_availability(self) -> None:
        """
        Start and stop a scanner to find out whether the radio can be used again.

        Blocks for at most `recheck_timeout` seconds. Success clears a recorded
        permission refusal and reports the radio as on; a failure is
        classified like any other backend error.
        """
        with self._lock:
            if self._scan_loop is None:
                self._scan_loop = self._client_factory(log_if_no_address=False)
            scan_loop = self._scan_loop
        try:
            scan_loop.async_await(self._trial_scan(), timeout=self.recheck_timeout)
        except Exception as e:  # pylint: disable=broad-exception-caught
            kind = self._handle_backend_error(e)
            logger.debug("Bluetooth still unavailable (%s): %s", kind, e)
            return
        self._mark_usable()

    async def _trial_scan(self) -> None:
        if self._scanner is not None:
            return
        scanner = self._scanner_factory(**self._scanner_kwargs)
        await scanner.start()
        await scanner.stop()

    def _mark_usable(self) -> None:
        with self._lock:
            was_denied, self._permission_denied = self._permission_denied, False
        if was_denied:
            logger.info("Bluetooth permissions available again")
        self.report_power_state(PowerState.ON)

    def _ensure_powered(self) -> None:
        if self.power_state != PowerState.ON:
            raise BLEAuthorizationError(ERROR_ADAPTER_OFF)

    def _handle_backend_error(self, error: BaseException) -> str:
        kind = classify_error(error)
        if kind == "power":
            self.report_power_state(PowerState.OFF)
        elif kind == "permission":
            with self._lock:
                self._permission_denied = True
        return kind

    @staticmethod
    def _on_done(
        future: Future,
        on_success: Callable[[Any], None],
        on_failure: Callable[[BaseException], None],
    ) -> None:
        def _done(f: Future) -> None:
            if f.cancelled():
                return
            error = f.exception()
            if error is None:
                on_success(f.result())
            else:
                on_failure(error)

        future.add_done_callback(_done)

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation and self._client is not None

    def _emit_if_current(self, generation: int, event) -> None:
        if self._is_current(generation):
            self.emit(event)

    # Scanning

    def start_scan(self) -> None:
        self._ensure_powered()
        with self._lock:
            if self._scan_loop is None:
                self._scan_loop = self._client_factory(log_if_no_address=False)
            scan_loop = self._scan_loop
        self._on_done(
            scan_loop.async_run(self._start_scanner()),
            lambda _r: self._mark_usable(),
            self._on_scan_error,
        )

    def stop_scan(self) -> None:
        with self._lock:
            scan_loop = self._scan_loop
        if scan_loop is None:
            return
        BLEErrorHandler.safe_execute(
            lambda: scan_loop.async_await(self._stop_scanner(), timeout=DISCONNECT_TIMEOUT_SECONDS),
            error_msg="Error stopping scan",
        )

    async def _start_scanner(self) -> None:
        if self._scanner is not None:
            return
        scanner = self._scanner_factory(
            detection_callback=self._on_detection, **self._scanner_kwargs
        )
        self._scanner = scanner
        try:
            await scanner.start()
        except Exception:
            if self._scanner is scanner:
                self._scanner = None
            raise
        logger.debug("Scanner started")

    async def _stop_scanner(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            await scanner.stop()
            logger.debug("Scanner stopped")

    def _on_detection(self, device, advertisement_data) -> None:
        name = getattr(advertisement_data, "local_name", None) or getattr(device, "name", None)
        rssi = getattr(advertisement_data, "rssi", None)
        if rssi is None:
            rssi = getattr(device, "rssi", 0) or 0
        self.emit(AdvertisementSeen(address=device.address, name=name, rssi=int(rssi)))

    def _on_scan_error(self, error: BaseException) -> None:
        kind = self._handle_backend_error(error)
        if kind == "power":
            return
        if kind == "permission":
            self.emit(AuthorizationFailed(reason=str(error)))
            return
        logger.warning("Scan failed: %s", error)
        self.emit(ScanFailed(error_code=extract_status(error) or _UNKNOWN_SCAN_ERROR, reason=str(error)))

    # Connection

    def connect(self, address: str) -> None:
        self._ensure_powered()
        self._teardown_link()
        with self._lock:
            self._generation += 1
            generation = self._generation
            self._address = address
        client = self._client_factory(
            address,
            disconnected_callback=lambda _bleak_client: self._on_link_lost(generation),
        )
        with self._lock:
            self._client = client
        logger.debug("Connecting to %s", address)
        self._on_done(
            client.start_connect(timeout=self.connect_timeout),
            lambda _r: self._on_connected(generation, address),
            lambda error: self._on_connect_error(generation, address, error),
        )

    def _on_connected(self, generation: int, address: str) -> None:
        if self._is_current(generation):
            self._mark_usable()
            self.emit(LinkConnected(address))

    def _on_connect_error(self, generation: int, address: str, error: BaseException) -> None:
        if not self._is_current(generation):
            return
        self._drop_client(generation)
        kind = self._handle_backend_error(error)
        if kind == "power":
            return
        if kind == "permission":
            logger.debug("Connection to %s refused: %s", address, error)
            self.emit(AuthorizationFailed(reason=str(error)))
            return
        logger.debug("Connection to %s failed: %s", address, error)
        self.emit(LinkDisconnected(address, reason=str(error), status=extract_status(error)))

    def _on_link_lost(self, generation: int) -> None:
        with self._lock:
            address = self._address
        if not self._is_current(generation):
            return
        self._drop_client(generation)
        logger.debug("Link to %s lost", address)
        self.emit(LinkDisconnected(address or "", reason="link lost"))

    def _drop_client(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            client, self._client = self._client, None
            self._read_future = None
        if client is not None:
            BLEErrorHandler.safe_cleanup(client.close, "BLE client close")

    def discover_services(self) -> None:
        with self._lock:
            client = self._client
            generation = self._generation
            address = self._address or ""
        if client is None:
            raise BLEOperationIssueError("Not connected")

        async def _collect():
            return convert_services(client.get_services())

        self._on_done(
            client.async_run(_collect()),
            lambda services: self._emit_if_current(
                generation, ServiceDiscoveryComplete(address, services)
            ),
            lambda error: self._emit_if_current(
                generation, ServiceDiscoveryFailed(address, reason=str(error))
            ),
        )

    def disconnect(self) -> None:
        self._teardown_link()

    def _teardown_link(self) -> None:
        with self._lock:
            self._generation += 1
            client, self._client = self._client, None
            self._read_future = None
        if client is None:
            return
        if client.is_connected():
            BLEErrorHandler.safe_execute(
                lambda: client.disconnect(await_timeout=DISCONNECT_TIMEOUT_SECONDS),
                error_msg="Error disconnecting",
            )
        BLEErrorHandler.safe_cleanup(client.close, "BLE client close")

    # GATT operations

    def _current_client(self) -> Tuple[BLEClient, int]:
        with self._lock:
            client = self._client
            generation = self._generation
        if client is None or not client.is_connected():
            raise BLEOperationIssueError("Not connected")
        return client, generation

    @staticmethod
    def _specifier(characteristic: GattCharacteristic):
        return characteristic.handle if characteristic.handle is not None else characteristic.uuid

    def read_characteristic(self, characteristic: GattCharacteristic) -> None:
        client, generation = self._current_client()
        with self._lock:
            if self._read_future is not None and not self._read_future.done():
                raise BLEOperationIssueError("A read is already in progress")
            future = client.start_read(self._specifier(characteristic), timeout=self.io_timeout)
            self._read_future = future
        uuid = characteristic.uuid
        self._on_done(
            future,
            lambda data: self._emit_if_current(
                generation, CharacteristicValue(uuid, bytes(data), from_read=True)
            ),
            lambda error: self._emit_if_current(
                generation, OperationFailed(uuid, "read", str(error))
            ),
        )

    def subscribe(self, characteristic: GattCharacteristic, mode: SubscriptionMode) -> None:
        client, generation = self._current_client()
        uuid = characteristic.uuid

        def _on_value(_sender, data) -> None:
            self._emit_if_current(generation, CharacteristicValue(uuid, bytes(data)))

        # Bleak writes the CCCD itself and picks notify or indicate from the properties
        logger.debug("Subscribing to %s (%s)", uuid, mode.value)
        self._on_done(
            client.start_notify(self._specifier(characteristic), _on_value, timeout=self.io_timeout),
            lambda _r: None,
            lambda error: self._emit_if_current(
                generation, OperationFailed(uuid, "subscribe", str(error))
            ),
        )

    def close(self) -> None:
        self._teardown_link()
        with self._lock:
            scan_loop, self._scan_loop = self._scan_loop, None
        if scan_loop is not None:
            BLEErrorHandler.safe_execute(
                lambda: scan_loop.async_await(self._stop_scanner(), timeout=DISCONNECT_TIMEOUT_SECONDS),
                error_msg="Error stopping scan",
            )
            BLEErrorHandler.safe_cleanup(scan_loop.close, "scan loop close")
        super().close()
