"""Platform-neutral BLE adapter contract and the events it reports."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

from bletether.interfaces.ble.constants import logger
from bletether.interfaces.ble.models import GattCharacteristic, GattService, SubscriptionMode


class PowerState(Enum):
    """Radio power as reported by the platform."""

    ON = "on"
    OFF = "off"
    TURNING_OFF = "turning_off"


class AdapterEvent:
    """Base class of everything an adapter reports back to the connection manager."""

    __slots__ = ()


@dataclass(frozen=True)
class AdvertisementSeen(AdapterEvent):
    address: str
    name: Optional[str]
    rssi: int


@dataclass(frozen=True)
class ScanFailed(AdapterEvent):
    error_code: int
    reason: str = ""


@dataclass(frozen=True)
class LinkConnected(AdapterEvent):
    address: str


@dataclass(frozen=True)
class LinkDisconnected(AdapterEvent):
    """The link went down; `status` is the platform GATT status, 0 when unknown or clean."""

    address: str
    reason: str = ""
    status: int = 0


@dataclass(frozen=True)
class ServiceDiscoveryComplete(AdapterEvent):
    address: str
    services: Tuple[GattService, ...]


@dataclass(frozen=True)
class ServiceDiscoveryFailed(AdapterEvent):
    address: str
    reason: str = ""


@dataclass(frozen=True)
class CharacteristicValue(AdapterEvent):
    """A characteristic value, either a read completion (`from_read`) or a notification."""

    uuid: str
    data: bytes
    from_read: bool = False


@dataclass(frozen=True)
class OperationFailed(AdapterEvent):
    """A started GATT operation completed with an error; `operation` is "read" or "subscribe"."""

    uuid: str
    operation: str
    reason: str = ""


@dataclass(frozen=True)
class PowerStateChanged(AdapterEvent):
    state: PowerState


@dataclass(frozen=True)
class AuthorizationFailed(AdapterEvent):
    """A scan or connection was refused because the process may not use Bluetooth."""

    reason: str = ""


EventSink = Callable[[AdapterEvent], None]


class BLEAdapter(ABC):
    """
    The radio as seen by the connection manager.

    Every method returns without waiting for the radio: results are reported
    asynchronously, in order, as AdapterEvent objects passed to the sink set
    with `set_event_sink`. Implementations may call the sink from any thread;
    the connection manager serializes the events itself.

    Methods raise BLEAuthorizationError when the radio cannot be used at all
    and BLEOperationIssueError when an operation cannot be started right now.
    A refusal discovered only after an operation started is reported as
    AuthorizationFailed.
    """

    def __init__(self):
        self._event_sink: Optional[EventSink] = None

    def set_event_sink(self, sink: Optional[EventSink]) -> None:
        self._event_sink = sink

    def emit(self, event: AdapterEvent) -> None:
        """Hand an event to the sink; events with no sink attached are dropped."""
        sink = self._event_sink
        if sink is None:
            logger.debug("Dropping %s: no event sink attached", type(event).__name__)
            return
        sink(event)

    def has_permissions(self) -> bool:
        """Whether the process may use Bluetooth at all."""
        return True

    def recheck_availability(self) -> None:
        """
        Re-test radio power and permissions after an earlier failure.

        Called by the connection manager before a command would be refused
        because of the last known power or permission state. Adapters backed
        by a platform notification have nothing to do; others update
        `power_state` and `has_permissions` and report a power change as
        PowerStateChanged.
        """

    @property
    @abstractmethod
    def power_state(self) -> PowerState:
        """Current radio power state."""

    @abstractmethod
    def start_scan(self) -> None:
        """Start reporting AdvertisementSeen events, without any platform-side filter."""

    @abstractmethod
    def stop_scan(self) -> None:
        """Stop scanning; a no-op when no scan is running."""

    @abstractmethod
    def connect(self, address: str) -> None:
        """Open a link to `address`; reports LinkConnected or LinkDisconnected."""

    @abstractmethod
    def discover_services(self) -> None:
        """Enumerate the services of the open link; reports ServiceDiscoveryComplete or ServiceDiscoveryFailed."""

    @abstractmethod
    def disconnect(self) -> None:
        """Tear down the link without reporting LinkDisconnected for it."""

    @abstractmethod
    def read_characteristic(self, characteristic: GattCharacteristic) -> None:
        """Start a read; reports CharacteristicValue(from_read=True) or OperationFailed."""

    @abstractmethod
    def subscribe(self, characteristic: GattCharacteristic, mode: SubscriptionMode) -> None:
        """Enable notify or indicate delivery; values arrive as CharacteristicValue events."""

    def close(self) -> None:
        """Release every platform resource held by the adapter."""
        self.set_event_sink(None)
