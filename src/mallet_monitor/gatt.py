"""Fixed GATT layout of the TechPolo mallet and its payload codec.

The firmware exposes one service with four notify characteristics, one per
channel. Each notification carries a single IEEE-754 single-precision float
in little-endian byte order.
"""

from __future__ import annotations

import struct
from typing import Optional

from .errors import DecodeError
from .telemetry import Channel


DEVICE_NAME = "TechPolo_Mallet"

SERVICE_UUID = "19b10000-0000-0000-0000-000000000001"
ACCEL_X_CHAR = "19b10000-0000-0000-0000-000000000002"
ACCEL_Y_CHAR = "19b10000-0000-0000-0000-000000000003"
ACCEL_Z_CHAR = "19b10000-0000-0000-0000-000000000004"
FORCE_CHAR = "19b10000-0000-0000-0000-000000000005"

CHANNEL_BY_UUID: dict[str, Channel] = {
    ACCEL_X_CHAR: Channel.X,
    ACCEL_Y_CHAR: Channel.Y,
    ACCEL_Z_CHAR: Channel.Z,
    FORCE_CHAR: Channel.FORCE,
}
UUID_BY_CHANNEL: dict[Channel, str] = {v: k for k, v in CHANNEL_BY_UUID.items()}
CHARACTERISTIC_UUIDS: tuple[str, ...] = tuple(CHANNEL_BY_UUID)

_SAMPLE_FORMAT = struct.Struct("<f")
PAYLOAD_SIZE = _SAMPLE_FORMAT.size


def normalize_uuid(uuid: str) -> str:
    return uuid.strip().lower()


def channel_for(uuid: str) -> Optional[Channel]:
    """Map a characteristic UUID to its channel, or None if it is not ours."""
    return CHANNEL_BY_UUID.get(normalize_uuid(uuid))


def decode_sample(payload: bytes) -> float:
    """Decode one notification payload into a float.

    Raises:
        DecodeError: If ``payload`` is not exactly ``PAYLOAD_SIZE`` bytes.
    """
    if len(payload) != PAYLOAD_SIZE:
        raise DecodeError(
            f"Expected {PAYLOAD_SIZE}-byte payload, got {len(payload)} bytes: "
            f"{bytes(payload).hex(' ')}"
        )
    (value,) = _SAMPLE_FORMAT.unpack(bytes(payload))
    return value


def encode_sample(value: float) -> bytes:
    """Encode ``value`` the way the firmware does. Used by the simulator."""
    return _SAMPLE_FORMAT.pack(value)
