"""UUIDs, timeouts, message templates and pubsub topics shared by the BLE modules."""

import importlib.metadata
import logging

logger = logging.getLogger("bletether.ble")

BLEAK_VERSION = importlib.metadata.version("bleak")

# Bluetooth base UUID, used to expand 16/32-bit short UUIDs
BLUETOOTH_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"

# Standard GATT services and characteristics
BATTERY_SERVICE_UUID = "0000180f-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL_UUID = "00002a19-0000-1000-8000-00805f9b34fb"
HEART_RATE_SERVICE_UUID = "0000180d-0000-1000-8000-00805f9b34fb"
HEART_RATE_MEASUREMENT_UUID = "00002a37-0000-1000-8000-00805f9b34fb"
GENERIC_ACCESS_SERVICE_UUID = "00001800-0000-1000-8000-00805f9b34fb"
DEVICE_NAME_UUID = "00002a00-0000-1000-8000-00805f9b34fb"

UNKNOWN_DEVICE_NAME = "Unknown Device"


class BLEConfig:
    """Tunable timeouts, delays and retry limits."""

    SCAN_AUTO_STOP = 30.0
    RECONNECT_BASE_DELAY = 2.0
    RECONNECT_MAX_ATTEMPTS = 5
    SUPERVISED_RECONNECT_MAX_ATTEMPTS = 20
    READ_ISSUE_RETRY_DELAY = 0.1
    READ_ISSUE_MAX_RETRIES = 10
    GATT_IO_TIMEOUT = 10.0
    CONNECTION_TIMEOUT = 30.0
    DISCONNECT_TIMEOUT_SECONDS = 5.0
    UPDATE_BUFFER_SIZE = 64
    EXECUTOR_JOIN_TIMEOUT = 2.0
    BLECLIENT_EVENT_THREAD_JOIN_TIMEOUT = 2.0
    ADAPTER_RECHECK_TIMEOUT = 5.0
    ADAPTER_RECHECK_INTERVAL = 10.0


# Module-level aliases
SCAN_AUTO_STOP = BLEConfig.SCAN_AUTO_STOP
RECONNECT_BASE_DELAY = BLEConfig.RECONNECT_BASE_DELAY
RECONNECT_MAX_ATTEMPTS = BLEConfig.RECONNECT_MAX_ATTEMPTS
GATT_IO_TIMEOUT = BLEConfig.GATT_IO_TIMEOUT
CONNECTION_TIMEOUT = BLEConfig.CONNECTION_TIMEOUT
DISCONNECT_TIMEOUT_SECONDS = BLEConfig.DISCONNECT_TIMEOUT_SECONDS

# Pubsub topics
TOPIC_CONNECTION_STATE = "bletether.connection.state"
TOPIC_DEVICES = "bletether.devices"
TOPIC_DEVICE_INFO = "bletether.device.info"
TOPIC_ADAPTER_ENABLED = "bletether.adapter.enabled"
TOPIC_CHARACTERISTIC_UPDATE = "bletether.characteristic.update"
TOPIC_KEEPALIVE = "bletether.keepalive"

# Error message constants
ERROR_TIMEOUT = "{0} timed out after {1:.1f} seconds"
ERROR_PERMISSIONS = "Bluetooth permissions not granted"
ERROR_ADAPTER_OFF = "Bluetooth is not enabled"
ERROR_SCAN_FAILED = "Scan failed (error {0})"
BLECLIENT_ERROR_ASYNC_TIMEOUT = "Async operation timed out"
