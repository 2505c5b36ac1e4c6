"""Data model shared by the scan aggregator, the GATT orchestrator and observers."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from bletether.interfaces.ble.constants import UNKNOWN_DEVICE_NAME


@dataclass
class Device:
    """
    A discovered or connected BLE peripheral.

    `address` is the identity key: a MAC address on most platforms, a UUID
    string on macOS. `rssi`, `battery_percent` and `heart_rate_bpm` are
    refreshed in place by the component that owns the instance; observers only
    ever receive copies.
    """

    name: Optional[str]
    address: str
    rssi: int = 0
    battery_percent: Optional[int] = None
    heart_rate_bpm: Optional[int] = None

    @property
    def has_name(self) -> bool:
        return bool(self.name and self.name.strip())

    @property
    def display_name(self) -> str:
        return self.name if self.has_name else UNKNOWN_DEVICE_NAME  # type: ignore[return-value]

    def copy(self) -> "Device":
        return replace(self)


@dataclass(frozen=True)
class FilterConfig:
    """Configuration for filtering the scan result list; replaced wholesale on update."""

    name_query: str = ""
    min_rssi: int = -100
    named_only: bool = False


class CharacteristicUpdate:
    """Base class of the decoded values emitted on the update stream."""

    __slots__ = ()


@dataclass(frozen=True)
class BatteryLevel(CharacteristicUpdate):
    """Battery percentage in the range 0-100."""

    percent: int


@dataclass(frozen=True)
class HeartRate(CharacteristicUpdate):
    """Instantaneous heart rate in beats per minute."""

    bpm: int


@dataclass(frozen=True)
class CustomData(CharacteristicUpdate):
    """Raw bytes from a characteristic with no dedicated decoder."""

    uuid: str
    raw: bytes


class SubscriptionMode(Enum):
    """Server-push delivery mode requested through the CCCD."""

    NOTIFY = "notify"
    INDICATE = "indicate"


@dataclass(frozen=True)
class GattCharacteristic:
    """Platform-neutral description of a discovered characteristic."""

    uuid: str
    service_uuid: str
    handle: Optional[int] = None
    properties: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def readable(self) -> bool:
        return "read" in self.properties

    @property
    def notifiable(self) -> bool:
        return "notify" in self.properties

    @property
    def indicatable(self) -> bool:
        return "indicate" in self.properties

    @property
    def subscription_mode(self) -> Optional[SubscriptionMode]:
        """Preferred push mode, or None when the characteristic cannot push values."""
        if self.notifiable:
            return SubscriptionMode.NOTIFY
        if self.indicatable:
            return SubscriptionMode.INDICATE
        return None


@dataclass(frozen=True)
class GattService:
    """A discovered service and its characteristics."""

    uuid: str
    characteristics: Tuple[GattCharacteristic, ...] = ()

    def get_characteristic(self, uuid: str) -> Optional[GattCharacteristic]:
        for characteristic in self.characteristics:
            if characteristic.uuid == uuid:
                return characteristic
        return None
