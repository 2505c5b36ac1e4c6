"""BLE connection lifecycle, GATT orchestration and decoding."""

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
from bletether.interfaces.ble.bleak_adapter import BleakAdapter
from bletether.interfaces.ble.client import BLEClient
from bletether.interfaces.ble.constants import (
    BATTERY_LEVEL_UUID,
    BATTERY_SERVICE_UUID,
    BLEAK_VERSION,
    BLEConfig,
    CONNECTION_TIMEOUT,
    DEVICE_NAME_UUID,
    DISCONNECT_TIMEOUT_SECONDS,
    GATT_IO_TIMEOUT,
    HEART_RATE_MEASUREMENT_UUID,
    HEART_RATE_SERVICE_UUID,
    RECONNECT_BASE_DELAY,
    RECONNECT_MAX_ATTEMPTS,
    SCAN_AUTO_STOP,
    TOPIC_ADAPTER_ENABLED,
    TOPIC_CHARACTERISTIC_UPDATE,
    TOPIC_CONNECTION_STATE,
    TOPIC_DEVICE_INFO,
    TOPIC_DEVICES,
    TOPIC_KEEPALIVE,
    logger,
)
from bletether.interfaces.ble.decoder import (
    decode_battery_level,
    decode_characteristic,
    decode_device_name,
    decode_heart_rate,
    normalize_uuid,
)
from bletether.interfaces.ble.discovery import ScanAggregator
from bletether.interfaces.ble.errors import (
    BLEAuthorizationError,
    BLEError,
    BLEErrorHandler,
    BLELinkError,
    BLEOperationIssueError,
)
from bletether.interfaces.ble.filtering import DeviceFilter, filter_devices
from bletether.interfaces.ble.gatt import GattOrchestrator, PendingReadQueue
from bletether.interfaces.ble.interface import BLEConnectionManager
from bletether.interfaces.ble.models import (
    BatteryLevel,
    CharacteristicUpdate,
    CustomData,
    Device,
    FilterConfig,
    GattCharacteristic,
    GattService,
    HeartRate,
    SubscriptionMode,
)
from bletether.interfaces.ble.notifications import NotificationManager
from bletether.interfaces.ble.observable import ObservableValue, UpdateStream
from bletether.interfaces.ble.policies import ReconnectPolicy, RetryPolicy
from bletether.interfaces.ble.reconnection import ReconnectScheduler
from bletether.interfaces.ble.state import (
    BLEStateManager,
    ConnectionState,
    ConnectionStatus,
)

__all__ = [
    # Core classes
    "BLEConnectionManager",
    "BLEAdapter",
    "BleakAdapter",
    "BLEClient",
    "BLEConfig",
    "BLEStateManager",
    "ConnectionState",
    "ConnectionStatus",
    "ReconnectPolicy",
    "RetryPolicy",
    "ReconnectScheduler",
    "GattOrchestrator",
    "PendingReadQueue",
    "NotificationManager",
    "ScanAggregator",
    "DeviceFilter",
    "ObservableValue",
    "UpdateStream",
    "BLEErrorHandler",
    # Errors
    "BLEError",
    "BLEAuthorizationError",
    "BLELinkError",
    "BLEOperationIssueError",
    # Data model
    "Device",
    "FilterConfig",
    "CharacteristicUpdate",
    "BatteryLevel",
    "HeartRate",
    "CustomData",
    "GattCharacteristic",
    "GattService",
    "SubscriptionMode",
    # Adapter events
    "AdapterEvent",
    "AdvertisementSeen",
    "ScanFailed",
    "LinkConnected",
    "LinkDisconnected",
    "ServiceDiscoveryComplete",
    "ServiceDiscoveryFailed",
    "CharacteristicValue",
    "OperationFailed",
    "PowerState",
    "PowerStateChanged",
    "AuthorizationFailed",
    # Decoders and filtering
    "decode_battery_level",
    "decode_heart_rate",
    "decode_device_name",
    "decode_characteristic",
    "normalize_uuid",
    "filter_devices",
    # Constants
    "BATTERY_SERVICE_UUID",
    "BATTERY_LEVEL_UUID",
    "HEART_RATE_SERVICE_UUID",
    "HEART_RATE_MEASUREMENT_UUID",
    "DEVICE_NAME_UUID",
    "BLEAK_VERSION",
    "CONNECTION_TIMEOUT",
    "DISCONNECT_TIMEOUT_SECONDS",
    "GATT_IO_TIMEOUT",
    "RECONNECT_BASE_DELAY",
    "RECONNECT_MAX_ATTEMPTS",
    "SCAN_AUTO_STOP",
    "TOPIC_ADAPTER_ENABLED",
    "TOPIC_CHARACTERISTIC_UPDATE",
    "TOPIC_CONNECTION_STATE",
    "TOPIC_DEVICE_INFO",
    "TOPIC_DEVICES",
    "TOPIC_KEEPALIVE",
    "logger",
]
