"""Scan result aggregation."""

from threading import RLock
from typing import Callable, Dict, List, Optional, Tuple

from bletether.interfaces.ble.constants import logger
from bletether.interfaces.ble.models import Device


class ScanAggregator:
    """
    Merge advertisement sightings into the live device set.

    The aggregator is the only owner of the Device instances it tracks.
    Sightings of a known address refresh its RSSI (and its name, when a name
    is newly advertised) in place; after every change the set is re-sorted by
    descending RSSI (stable for ties) and listeners receive a snapshot of
    copies they are free to keep.
    """

    def __init__(self):
        self._lock = RLock()
        self._devices: Dict[str, Device] = {}
        self._snapshot: Tuple[Device, ...] = ()
        self._listeners: List[Callable[[List[Device]], None]] = []

    def add_listener(self, listener: Callable[[List[Device]], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def add_sighting(self, address: str, name: Optional[str], rssi: int) -> List[Device]:
        """
        Record one advertisement sighting.

        Returns:
            List[Device]: The new sorted snapshot.
        """
        with self._lock:
            device = self._devices.get(address)
            if device is None:
                device = Device(name=name, address=address, rssi=rssi)
                self._devices[address] = device
                logger.debug("Discovered %s (%s) rssi=%d", address, name, rssi)
            else:
                device.rssi = rssi
                if name and name.strip():
                    device.name = name
            return self._publish_locked()

    def get(self, address: str) -> Optional[Device]:
        with self._lock:
            device = self._devices.get(address)
            return device.copy() if device else None

    def clear(self) -> None:
        with self._lock:
            if not self._devices and not self._snapshot:
                return
            self._devices.clear()
            self._publish_locked()

    def snapshot(self) -> List[Device]:
        with self._lock:
            return [device.copy() for device in self._snapshot]

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    def _publish_locked(self) -> List[Device]:
        ordered = sorted(self._devices.values(), key=lambda d: d.rssi, reverse=True)
        self._snapshot = tuple(device.copy() for device in ordered)
        snapshot = list(self._snapshot)
        for listener in list(self._listeners):
            listener([device.copy() for device in snapshot])
        return [device.copy() for device in snapshot]
