"""BLE connection lifecycle management."""

import atexit
import contextlib
import threading
from concurrent.futures import Future
from dataclasses import replace
from typing import Any, Callable, List, Optional, Union

from bletether.interfaces.ble.adapter import (
    AdapterEvent,
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
from bletether.interfaces.ble.constants import (
    CONNECTION_TIMEOUT,
    ERROR_ADAPTER_OFF,
    ERROR_PERMISSIONS,
    ERROR_SCAN_FAILED,
    ERROR_TIMEOUT,
    SCAN_AUTO_STOP,
    TOPIC_ADAPTER_ENABLED,
    TOPIC_CHARACTERISTIC_UPDATE,
    TOPIC_CONNECTION_STATE,
    TOPIC_DEVICE_INFO,
    TOPIC_DEVICES,
    TOPIC_KEEPALIVE,
    BLEConfig,
    logger,
)
from bletether.interfaces.ble.discovery import ScanAggregator
from bletether.interfaces.ble.errors import (
    BLEAuthorizationError,
    BLEError,
    BLEErrorHandler,
)
from bletether.interfaces.ble.filtering import DeviceFilter
from bletether.interfaces.ble.gatt import GattOrchestrator
from bletether.interfaces.ble.models import CharacteristicUpdate, Device, FilterConfig
from bletether.interfaces.ble.observable import ObservableValue, UpdateStream
from bletether.interfaces.ble.policies import ReconnectPolicy, RetryPolicy
from bletether.interfaces.ble.reconnection import (
    CONNECT_TIMEOUT_TIMER,
    RECONNECT_TIMER,
    SCAN_AUTO_STOP_TIMER,
    ReconnectScheduler,
)
from bletether.interfaces.ble.state import (
    TERMINAL_STATES,
    BLEStateManager,
    ConnectionState,
    ConnectionStatus,
)
from bletether.util import DeferredExecution, sanitize_address


class BLEConnectionManager:
    """
    Keep a resilient connection to one BLE peripheral.

    The manager owns the connection state and is the only component that
    starts or tears down links on its BLEAdapter. Commands (`start_scan`,
    `stop_scan`, `connect`, `disconnect`, `apply_filter`) and adapter events
    are all queued onto one serial executor, so the state machine, the scan
    aggregator and the GATT orchestrator are only ever mutated from that
    thread, in arrival order.

    Observers either read the current value of an observable synchronously
    (`connection_state.value`, `devices.value`, ...) or subscribe to its
    pypubsub topic:

    - connection_state: ConnectionStatus on bletether.connection.state
    - devices: filtered scan results on bletether.devices
    - connected_device: Device snapshot (or None) on bletether.device.info
    - adapter_enabled: radio power as a bool on bletether.adapter.enabled
    - keep_alive: True while connected, on bletether.keepalive
    - updates: every CharacteristicUpdate on bletether.characteristic.update

    Reconnection follows `reconnect_policy` (linear backoff). Once the policy
    is exhausted an interactive policy clears the target, while a supervised
    one resets its counter and keeps the target for a later `connect()`.
    """

    def __init__(
        self,
        adapter: BLEAdapter,
        *,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        vendor_service_uuid: Optional[str] = None,
        scan_timeout: float = SCAN_AUTO_STOP,
        connect_timeout: float = CONNECTION_TIMEOUT,
        permission_checker: Optional[Callable[[], bool]] = None,
        keepalive_listener: Optional[Callable[[bool], None]] = None,
        timer_factory: Optional[Callable[..., Any]] = None,
        executor: Any = None,
        publisher: Any = None,
    ) -> None:
        """
        Parameters:
            adapter: Radio to drive; the manager becomes its event sink.
            reconnect_policy: Backoff and exhaustion policy; defaults to RetryPolicy.INTERACTIVE.
            vendor_service_uuid: Service whose characteristics are read and subscribed when the standard battery service is absent.
            scan_timeout: Seconds after which a scan stops on its own.
            connect_timeout: Seconds allowed from starting a connection to finishing service discovery.
            permission_checker: Callable reporting whether Bluetooth may be used; defaults to the adapter's `has_permissions`.
            keepalive_listener: Called with True on entering CONNECTED and False on reaching an idle state.
            timer_factory: `(delay, function)` factory for cancellable timers, see ReconnectScheduler.
            executor: Serial execution context with `queueWork`; a private DeferredExecution by default.
            publisher: Execution context used to publish observable changes; the module-wide publishing thread by default.
        """
        self.adapter = adapter
        self.policy = reconnect_policy or RetryPolicy.INTERACTIVE
        self.scan_timeout = scan_timeout
        self.connect_timeout = connect_timeout
        self._permission_checker = permission_checker or adapter.has_permissions

        self._state_manager = BLEStateManager()
        self._state_lock = self._state_manager.lock
        self._closed = False
        self._exit_handler = None
        self._target: Optional[Device] = None
        self._connect_future: Optional[Future] = None
        self._last_gatt_status = 0

        self._owns_executor = executor is None
        self._executor = executor or DeferredExecution("BLEEvents")
        self.scheduler = ReconnectScheduler(self._executor, timer_factory)

        self.connection_state: ObservableValue[ConnectionStatus] = ObservableValue(
            TOPIC_CONNECTION_STATE, self._state_manager.status, source=self, publisher=publisher
        )
        self.devices: ObservableValue[List[Device]] = ObservableValue(
            TOPIC_DEVICES, [], source=self, publisher=publisher
        )
        self.connected_device: ObservableValue[Optional[Device]] = ObservableValue(
            TOPIC_DEVICE_INFO, None, source=self, publisher=publisher
        )
        self.adapter_enabled: ObservableValue[bool] = ObservableValue(
            TOPIC_ADAPTER_ENABLED,
            adapter.power_state == PowerState.ON,
            source=self,
            publisher=publisher,
        )
        self.keep_alive: ObservableValue[bool] = ObservableValue(
            TOPIC_KEEPALIVE, False, source=self, publisher=publisher
        )
        self.updates: UpdateStream[CharacteristicUpdate] = UpdateStream(
            TOPIC_CHARACTERISTIC_UPDATE,
            maxlen=BLEConfig.UPDATE_BUFFER_SIZE,
            source=self,
            publisher=publisher,
        )
        if keepalive_listener is not None:
            self.keep_alive.add_listener(keepalive_listener)

        self._aggregator = ScanAggregator()
        self._filter = DeviceFilter(self.devices.set)
        self._aggregator.add_listener(self._filter.update_devices)
        self.gatt = GattOrchestrator(
            adapter,
            self.scheduler,
            updates=self.updates,
            vendor_service_uuid=vendor_service_uuid,
            on_device_info=self._on_device_info,
            on_stalled=self._on_stalled,
        )

        adapter.set_event_sink(self._on_adapter_event)
        # Make sure the radio link is released even if the host forgets to close us
        self._exit_handler = atexit.register(self.close)

    def __repr__(self):
        target = self._target.address if self._target else None
        return (
            f"BLEConnectionManager(state={self._state_manager.status}, "
            f"target={target!r}, policy={self.policy!r})"
        )

    # Synchronous accessors

    @property
    def state(self) -> ConnectionState:
        return self._state_manager.state

    @property
    def status(self) -> ConnectionStatus:
        return self._state_manager.status

    @property
    def target(self) -> Optional[Device]:
        """Copy of the device the manager is trying to stay connected to."""
        with self._state_lock:
            return self._target.copy() if self._target else None

    @property
    def filter_config(self) -> FilterConfig:
        return self._filter.config

    @property
    def is_bluetooth_enabled(self) -> bool:
        return self.adapter_enabled.value

    @property
    def is_reading_characteristic(self) -> bool:
        return self.gatt.is_reading_characteristic

    # Commands

    def start_scan(self) -> None:
        """Start discovering devices; results appear on `devices`. Stops on its own after `scan_timeout`."""
        self._submit(self._do_start_scan)

    def stop_scan(self) -> None:
        self._submit(self._do_stop_scan)

    def connect(self, device: Union[Device, str]) -> Future:
        """
        Make `device` the target and start connecting to it.

        Parameters:
            device: A Device, or an address; addresses seen by the current scan keep their advertised name.

        Returns:
            Future: Resolves with the ConnectionStatus once CONNECTED or a
            terminal state is reached. Reconnect attempts in between do not
            resolve it.
        """
        future: Future = Future()
        if self._closed:
            future.set_result(self._state_manager.status)
            return future
        self._submit(lambda: self._do_connect(device, future))
        return future

    def disconnect(self) -> None:
        """Drop the link and forget the target; pending reconnects are cancelled."""
        self._submit(self._do_disconnect)

    def apply_filter(self, config: FilterConfig) -> None:
        self._submit(lambda: self._filter.update_config(config))

    def clear_filter(self) -> None:
        self.apply_filter(FilterConfig())

    def close(self) -> None:
        """
        Disconnect, release the adapter and stop background activity.

        Idempotent; blocks briefly for queued work unless called from the
        manager's own executor.
        """
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        done = threading.Event()

        def _shutdown():
            BLEErrorHandler.safe_execute(self._do_disconnect, error_msg="Error disconnecting on close")
            self.scheduler.cancel_all()
            done.set()

        self._executor.queueWork(_shutdown)
        if getattr(self._executor, "thread", None) is not threading.current_thread():
            if not done.wait(timeout=BLEConfig.EXECUTOR_JOIN_TIMEOUT):
                logger.warning(
                    "Pending BLE work did not finish within %.1fs",
                    BLEConfig.EXECUTOR_JOIN_TIMEOUT,
                )
        self.adapter.set_event_sink(None)
        BLEErrorHandler.safe_cleanup(self.adapter.close, "adapter close")
        if self._owns_executor:
            self._executor.stop(timeout=BLEConfig.EXECUTOR_JOIN_TIMEOUT)
        if self._exit_handler:
            with contextlib.suppress(ValueError):
                atexit.unregister(self._exit_handler)
            self._exit_handler = None

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.close()

    def _submit(self, work: Callable[[], None]) -> None:
        if self._closed:
            logger.debug("Ignoring command on closed BLEConnectionManager")
            return
        self._executor.queueWork(work)

    # State handling

    def _set_state(self, new_state: ConnectionState, message: Optional[str] = None) -> bool:
        """Apply a validated transition, publish it and derive the keepalive signal."""
        with self._state_lock:
            if not self._state_manager.transition_to(new_state, message):
                return False
            status = self._state_manager.status
        self.connection_state.set(status)
        if new_state == ConnectionState.CONNECTED:
            self.keep_alive.set(True)
        elif new_state in TERMINAL_STATES:
            self.keep_alive.set(False)
        if new_state == ConnectionState.CONNECTED or new_state in TERMINAL_STATES:
            self._resolve_connect(status)
        return True

    def _resolve_connect(self, status: ConnectionStatus) -> None:
        future, self._connect_future = self._connect_future, None
        if future is not None and not future.done():
            future.set_result(status)

    def _fail(self, message: str) -> None:
        """Enter ERROR for a failure that needs user action; nothing is retried."""
        logger.warning("BLE error: %s", message)
        self.scheduler.cancel(RECONNECT_TIMER)
        self.scheduler.cancel(CONNECT_TIMEOUT_TIMER)
        self.gatt.reset()
        if self._state_manager.is_link_active:
            BLEErrorHandler.safe_cleanup(self.adapter.disconnect, "adapter disconnect")
            self.connected_device.set(None)
        self._set_state(ConnectionState.ERROR, message)

    def _adapter_usable(self) -> bool:
        return (
            self._state_manager.state != ConnectionState.ADAPTER_DISABLED
            and self.adapter.power_state == PowerState.ON
            and self._permission_checker()
        )

    def _recheck_adapter(self) -> None:
        """Have the adapter re-test power and permissions before a command is refused."""
        logger.debug("Rechecking Bluetooth availability")
        BLEErrorHandler.safe_execute(
            self.adapter.recheck_availability,
            error_msg="Error rechecking Bluetooth availability",
        )
        # The adapter's PowerStateChanged event is queued behind this command
        if (
            self._state_manager.state == ConnectionState.ADAPTER_DISABLED
            and self.adapter.power_state == PowerState.ON
        ):
            self._on_power_on()

    # Scanning

    def _do_start_scan(self) -> None:
        if not self._adapter_usable():
            self._recheck_adapter()
        state = self._state_manager.state
        if state == ConnectionState.ADAPTER_DISABLED:
            logger.warning("Cannot scan: Bluetooth is disabled")
            return
        if not self._permission_checker():
            self._fail(ERROR_PERMISSIONS)
            return
        if self.adapter.power_state != PowerState.ON:
            self._fail(ERROR_ADAPTER_OFF)
            return
        if not self._state_manager.can_scan:
            logger.warning("Cannot scan while %s", state.value)
            return

        self._aggregator.clear()
        if state != ConnectionState.SCANNING:
            try:
                self.adapter.start_scan()
            except BLEAuthorizationError as e:
                self._fail(str(e))
                return
            except BLEError as e:
                logger.debug("Scan could not be started: %s", e)
                self._fail(ERROR_SCAN_FAILED.format(e))
                return
            self._set_state(ConnectionState.SCANNING)
        self.scheduler.schedule(SCAN_AUTO_STOP_TIMER, self.scan_timeout, self._on_scan_timeout)

    def _do_stop_scan(self) -> None:
        self.scheduler.cancel(SCAN_AUTO_STOP_TIMER)
        if self._state_manager.state != ConnectionState.SCANNING:
            return
        BLEErrorHandler.safe_execute(self.adapter.stop_scan, error_msg="Error stopping scan")
        self._set_state(ConnectionState.DISCONNECTED)

    def _on_scan_timeout(self) -> None:
        logger.debug("Scan stopped after %.1fs", self.scan_timeout)
        self._do_stop_scan()

    # Connecting

    def _do_connect(self, device: Union[Device, str], future: Future) -> None:
        if isinstance(device, str):
            target = self._aggregator.get(device) or Device(name=None, address=device)
        else:
            target = device.copy()

        state = self._state_manager.state
        if state in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
        ):
            logger.debug("Dropping current session before connecting to %s", target.address)
            self.scheduler.cancel(RECONNECT_TIMER)
            self.scheduler.cancel(CONNECT_TIMEOUT_TIMER)
            self.gatt.reset()
            BLEErrorHandler.safe_cleanup(self.adapter.disconnect, "adapter disconnect")
            self.connected_device.set(None)
            self._set_state(ConnectionState.DISCONNECTED)
        # A newer request supersedes any connect still waiting for an outcome
        self._resolve_connect(self._state_manager.status)
        self._connect_future = future

        with self._state_lock:
            self._target = target
        self.policy.reset()

        if not self._adapter_usable():
            # With the radio back on this already starts connecting to the new target
            self._recheck_adapter()
        if self._state_manager.state == ConnectionState.ADAPTER_DISABLED:
            logger.info("Bluetooth is disabled; will connect to %s once it is enabled", target.address)
            self._resolve_connect(self._state_manager.status)
            return
        if state == ConnectionState.ADAPTER_DISABLED:
            return
        if not self._permission_checker():
            self._fail(ERROR_PERMISSIONS)
            return
        if self.adapter.power_state != PowerState.ON:
            self._fail(ERROR_ADAPTER_OFF)
            return
        if state == ConnectionState.SCANNING:
            self.scheduler.cancel(SCAN_AUTO_STOP_TIMER)
            BLEErrorHandler.safe_execute(self.adapter.stop_scan, error_msg="Error stopping scan")
        self._begin_connect()

    def _begin_connect(self) -> None:
        target = self._target
        if target is None:
            return
        self.gatt.reset()
        self._last_gatt_status = 0
        if not self._set_state(ConnectionState.CONNECTING):
            return
        logger.info(
            "Connecting to %s (%s), attempt %d",
            target.display_name,
            target.address,
            self.policy.get_attempt_count(),
        )
        try:
            self.adapter.connect(target.address)
        except BLEAuthorizationError as e:
            self._fail(str(e))
            return
        except BLEError as e:
            self._handle_link_loss(str(e))
            return
        timeout = self.connect_timeout
        self.scheduler.schedule(
            CONNECT_TIMEOUT_TIMER,
            timeout,
            lambda: self._handle_link_loss(ERROR_TIMEOUT.format("Connection", timeout)),
        )

    def _on_reconnect_timer(self) -> None:
        if self._state_manager.state != ConnectionState.RECONNECTING or self._target is None:
            return
        self._begin_connect()

    def _handle_link_loss(self, reason: str) -> None:
        """Common path for every way a link can die while a target is set."""
        if not self._state_manager.is_link_active:
            return
        self.scheduler.cancel(CONNECT_TIMEOUT_TIMER)
        self.gatt.reset()
        BLEErrorHandler.safe_cleanup(self.adapter.disconnect, "adapter disconnect")
        self.connected_device.set(None)

        target = self._target
        if target is None:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        delay, should_retry = self.policy.next_attempt()
        if should_retry:
            logger.info(
                "Link to %s lost (%s); reconnect attempt %d/%d in %.1fs",
                target.address,
                reason,
                self.policy.get_attempt_count(),
                self.policy.max_attempts,
                delay,
            )
            self._set_state(ConnectionState.RECONNECTING)
            self.scheduler.schedule(RECONNECT_TIMER, delay, self._on_reconnect_timer)
            return
        self._on_retries_exhausted(target, reason)

    def _on_retries_exhausted(self, target: Device, reason: str) -> None:
        """End in DISCONNECTED whatever status the last drop carried."""
        self.policy.reset()
        if self.policy.supervised:
            logger.warning(
                "Giving up on %s after %d attempts (%s, status %d); target kept for a later retry",
                target.address,
                self.policy.max_attempts,
                reason,
                self._last_gatt_status,
            )
            self._set_state(ConnectionState.DISCONNECTED)
            return
        logger.warning(
            "Giving up on %s after %d attempts (%s, status %d)",
            target.address,
            self.policy.max_attempts,
            reason,
            self._last_gatt_status,
        )
        with self._state_lock:
            self._target = None
        self._set_state(ConnectionState.DISCONNECTED)

    def _do_disconnect(self) -> None:
        state = self._state_manager.state
        self.scheduler.cancel(RECONNECT_TIMER)
        self.scheduler.cancel(SCAN_AUTO_STOP_TIMER)
        self.scheduler.cancel(CONNECT_TIMEOUT_TIMER)
        self.gatt.reset()
        if state == ConnectionState.SCANNING:
            BLEErrorHandler.safe_execute(self.adapter.stop_scan, error_msg="Error stopping scan")
        BLEErrorHandler.safe_cleanup(self.adapter.disconnect, "adapter disconnect")
        with self._state_lock:
            self._target = None
        self.policy.reset()
        self.connected_device.set(None)
        if state in (ConnectionState.DISCONNECTED, ConnectionState.ADAPTER_DISABLED):
            self._resolve_connect(self._state_manager.status)
            return
        self._set_state(ConnectionState.DISCONNECTED)

    # Adapter power

    def _on_power_off(self) -> None:
        logger.info("Bluetooth radio turned off")
        self.adapter_enabled.set(False)
        state = self._state_manager.state
        self.scheduler.cancel_all()
        if state == ConnectionState.SCANNING:
            BLEErrorHandler.safe_execute(self.adapter.stop_scan, error_msg="Error stopping scan")
        self._aggregator.clear()
        self.gatt.reset()
        BLEErrorHandler.safe_cleanup(self.adapter.disconnect, "adapter disconnect")
        self.connected_device.set(None)
        if state != ConnectionState.ADAPTER_DISABLED:
            self._set_state(ConnectionState.ADAPTER_DISABLED)

    def _on_power_on(self) -> None:
        logger.info("Bluetooth radio turned on")
        self.adapter_enabled.set(True)
        status = self._state_manager.status
        waiting_for_radio = status.state == ConnectionState.ADAPTER_DISABLED or (
            status.state == ConnectionState.ERROR and status.message == ERROR_ADAPTER_OFF
        )
        if not waiting_for_radio:
            return
        if self._target is not None:
            self._begin_connect()
        else:
            self._set_state(ConnectionState.DISCONNECTED)

    def _on_authorization_failed(self, reason: str) -> None:
        state = self._state_manager.state
        if state == ConnectionState.SCANNING:
            self.scheduler.cancel(SCAN_AUTO_STOP_TIMER)
            BLEErrorHandler.safe_execute(self.adapter.stop_scan, error_msg="Error stopping scan")
        elif not self._state_manager.is_link_active:
            logger.debug("Ignoring authorization failure while %s: %s", state.value, reason)
            return
        logger.debug("Bluetooth refused: %s", reason)
        self._fail(ERROR_PERMISSIONS)

    # Adapter events

    def _on_adapter_event(self, event: AdapterEvent) -> None:
        """Event sink; may be called from any thread."""
        if self._closed:
            return
        self._executor.queueWork(lambda: self._dispatch(event))

    def _dispatch(self, event: AdapterEvent) -> None:
        state = self._state_manager.state
        if isinstance(event, AdvertisementSeen):
            if state == ConnectionState.SCANNING:
                self._aggregator.add_sighting(event.address, event.name, event.rssi)
        elif isinstance(event, ScanFailed):
            if state == ConnectionState.SCANNING:
                self.scheduler.cancel(SCAN_AUTO_STOP_TIMER)
                if not self._permission_checker():
                    self._fail(ERROR_PERMISSIONS)
                else:
                    self._fail(ERROR_SCAN_FAILED.format(event.error_code))
        elif isinstance(event, LinkConnected):
            self._on_link_connected(event)
        elif isinstance(event, ServiceDiscoveryComplete):
            self._on_services_discovered(event)
        elif isinstance(event, ServiceDiscoveryFailed):
            if self._is_current_link(event.address):
                self._handle_link_loss(f"Service discovery failed: {event.reason}")
        elif isinstance(event, LinkDisconnected):
            if self._is_current_link(event.address):
                self._last_gatt_status = event.status
                self._handle_link_loss(event.reason or "link lost")
        elif isinstance(event, CharacteristicValue):
            if state == ConnectionState.CONNECTED:
                self.gatt.on_characteristic_value(event.uuid, event.data, event.from_read)
        elif isinstance(event, OperationFailed):
            if state == ConnectionState.CONNECTED:
                self.gatt.on_operation_failed(event.uuid, event.operation, event.reason)
        elif isinstance(event, PowerStateChanged):
            if event.state == PowerState.ON:
                self._on_power_on()
            else:
                self._on_power_off()
        elif isinstance(event, AuthorizationFailed):
            self._on_authorization_failed(event.reason)
        else:
            logger.debug("Ignoring unknown adapter event %r", event)

    def _is_current_link(self, address: str) -> bool:
        target = self._target
        if not self._state_manager.is_link_active or target is None:
            return False
        return not address or sanitize_address(address) == sanitize_address(target.address)

    def _on_link_connected(self, event: LinkConnected) -> None:
        if self._state_manager.state != ConnectionState.CONNECTING or not self._is_current_link(
            event.address
        ):
            logger.debug("Ignoring stale link-up from %s", event.address)
            return
        logger.debug("Link to %s up, discovering services", event.address)
        try:
            self.adapter.discover_services()
        except BLEError as e:
            self._handle_link_loss(f"Service discovery failed: {e}")

    def _on_services_discovered(self, event: ServiceDiscoveryComplete) -> None:
        if self._state_manager.state != ConnectionState.CONNECTING or not self._is_current_link(
            event.address
        ):
            return
        self.scheduler.cancel(CONNECT_TIMEOUT_TIMER)
        self.policy.reset()
        target = self._target
        self._set_state(ConnectionState.CONNECTED)
        if target is not None:
            logger.info("Connected to %s (%s)", target.display_name, target.address)
            self.connected_device.set(target.copy())
        self.gatt.on_services_discovered(event.services)

    # GATT collaborators

    def _on_device_info(self, **changes) -> None:
        with self._state_lock:
            if self._target is None:
                return
            self._target = replace(self._target, **changes)
            snapshot = self._target.copy()
        if self._state_manager.is_connected:
            self.connected_device.set(snapshot)

    def _on_stalled(self, reason: str) -> None:
        logger.warning("GATT operations stalled: %s", reason)
        self._handle_link_loss(reason)
