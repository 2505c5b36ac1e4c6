# ruff: noqa: F401
"""The public API for the bletether BLE connection manager."""

from .interfaces.ble.adapter import BLEAdapter, PowerState
from .interfaces.ble.bleak_adapter import BleakAdapter
from .interfaces.ble.constants import BLEConfig
from .interfaces.ble.errors import (
    BLEAuthorizationError,
    BLEError,
    BLELinkError,
    BLEOperationIssueError,
)
from .interfaces.ble.interface import BLEConnectionManager
from .interfaces.ble.models import (
    BatteryLevel,
    CharacteristicUpdate,
    CustomData,
    Device,
    FilterConfig,
    HeartRate,
)
from .interfaces.ble.policies import ReconnectPolicy, RetryPolicy
from .interfaces.ble.state import ConnectionState, ConnectionStatus

__all__ = [
    "BLEConnectionManager",
    "BLEAdapter",
    "BleakAdapter",
    "PowerState",
    "BLEConfig",
    "BLEError",
    "BLEAuthorizationError",
    "BLELinkError",
    "BLEOperationIssueError",
    "Device",
    "FilterConfig",
    "CharacteristicUpdate",
    "BatteryLevel",
    "HeartRate",
    "CustomData",
    "ReconnectPolicy",
    "RetryPolicy",
    "ConnectionState",
    "ConnectionStatus",
]
