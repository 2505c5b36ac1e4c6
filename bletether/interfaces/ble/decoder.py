"""
Pure decoders turning raw characteristic values into typed values.

None of these functions raise on malformed input: they return `None` ("no
value") and the caller treats that as nothing to emit.
"""

import re
from typing import Optional, Union

from bletether.interfaces.ble.constants import (
    BATTERY_LEVEL_UUID,
    BLUETOOTH_BASE_UUID_SUFFIX,
    HEART_RATE_MEASUREMENT_UUID,
)
from bletether.interfaces.ble.models import (
    BatteryLevel,
    CharacteristicUpdate,
    CustomData,
    HeartRate,
)

Payload = Union[bytes, bytearray, memoryview]

_SHORT_UUID = re.compile(r"^(0x)?([0-9a-f]{4}|[0-9a-f]{8})$")

# Flags bit 0 of the Heart Rate Measurement: value is a uint16 instead of a uint8
HR_FORMAT_UINT16 = 0x01


def normalize_uuid(uuid: Union[str, int]) -> str:
    """
    Return the canonical lowercase 128-bit form of a UUID.

    16-bit and 32-bit short forms ("180F", "0x2a19", 0x2A19) are expanded with
    the Bluetooth base UUID; anything else is lowercased and stripped.
    """
    if isinstance(uuid, int):
        return f"{uuid:08x}{BLUETOOTH_BASE_UUID_SUFFIX}"
    value = str(uuid).strip().lower()
    match = _SHORT_UUID.match(value)
    if match:
        return f"{match.group(2):0>8}{BLUETOOTH_BASE_UUID_SUFFIX}"
    return value


def decode_battery_level(data: Payload) -> Optional[int]:
    """
    Decode a Battery Level (0x2A19) value: one unsigned byte clamped to [0, 100].

    Returns:
        Battery percentage, or None if `data` is empty.
    """
    if not data:
        return None
    return max(0, min(int(data[0]), 100))


def decode_heart_rate(data: Payload) -> Optional[int]:
    """
    Decode a Heart Rate Measurement (0x2A37) value.

    Bit 0 of the leading flags byte selects the format: clear means the
    following byte is a uint8 bpm, set means the following two bytes are a
    little-endian uint16 bpm.

    Returns:
        Heart rate in bpm, or None if `data` is too short for the declared format.
    """
    if not data:
        return None
    flags = data[0]
    if flags & HR_FORMAT_UINT16 == 0:
        if len(data) < 2:
            return None
        return int(data[1])
    if len(data) < 3:
        return None
    return int.from_bytes(bytes(data[1:3]), "little")


def decode_device_name(data: Payload) -> Optional[str]:
    """Decode a Device Name (0x2A00) value as trimmed UTF-8; invalid or blank gives None."""
    if not data:
        return None
    try:
        name = bytes(data).decode("utf-8").strip()
    except UnicodeDecodeError:
        return None
    return name or None


def decode_characteristic(uuid: str, data: Payload) -> Optional[CharacteristicUpdate]:
    """
    Decode a value by its characteristic UUID.

    Standard battery and heart-rate characteristics become BatteryLevel /
    HeartRate (or None when malformed); every other UUID is passed through as
    CustomData.
    """
    key = normalize_uuid(uuid)
    if key == BATTERY_LEVEL_UUID:
        percent = decode_battery_level(data)
        return BatteryLevel(percent) if percent is not None else None
    if key == HEART_RATE_MEASUREMENT_UUID:
        bpm = decode_heart_rate(data)
        return HeartRate(bpm) if bpm is not None else None
    return CustomData(key, bytes(data))
