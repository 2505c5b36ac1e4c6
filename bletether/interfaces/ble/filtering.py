"""Scan result filtering."""

from threading import RLock
from typing import Callable, List, Optional, Sequence

from bletether.interfaces.ble.models import Device, FilterConfig


def filter_devices(devices: Sequence[Device], config: FilterConfig) -> List[Device]:
    """
    Keep the devices that pass every criterion of `config`, strongest RSSI first.

    A device passes when the name query is blank (empty or whitespace only)
    or, untrimmed, is a case-insensitive substring of its display name or
    address; its RSSI is at least `min_rssi`; and it advertises a non-blank
    name if `named_only` is set.
    The input sequence is never modified.
    """
    query = config.name_query.lower()
    blank_query = not query.strip()

    def _passes(device: Device) -> bool:
        passes_name = (
            blank_query
            or query in device.display_name.lower()
            or query in device.address.lower()
        )
        passes_rssi = device.rssi >= config.min_rssi
        passes_named_only = not config.named_only or device.has_name
        return passes_name and passes_rssi and passes_named_only

    kept = [device for device in devices if _passes(device)]
    return sorted(kept, key=lambda d: d.rssi, reverse=True)


class DeviceFilter:
    """Re-apply the filter whenever the device snapshot or the config changes."""

    def __init__(
        self,
        on_filtered: Callable[[List[Device]], None],
        config: Optional[FilterConfig] = None,
    ):
        self._on_filtered = on_filtered
        self._config = config or FilterConfig()
        self._devices: List[Device] = []
        self._lock = RLock()

    @property
    def config(self) -> FilterConfig:
        with self._lock:
            return self._config

    def update_devices(self, devices: Sequence[Device]) -> None:
        with self._lock:
            self._devices = list(devices)
            self._refresh_locked()

    def update_config(self, config: FilterConfig) -> None:
        with self._lock:
            self._config = config
            self._refresh_locked()

    def _refresh_locked(self) -> None:
        self._on_filtered(filter_devices(self._devices, self._config))
