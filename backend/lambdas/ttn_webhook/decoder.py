"""Turn a TTN uplink payload into an occupancy reading."""

from __future__ import annotations

import base64
import binascii
import logging
import math
import random
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

TEST_PAYLOAD = bytes.fromhex("DEADBEEF")
OCCUPANCY_FACTOR = 0.4
BLE_WEIGHT = 0.5
DEFAULT_CAPACITY = 20
TEST_BATTERY = 85


@dataclass(frozen=True)
class OccupancyReading:
    occupancy: int
    wifi_devices: int
    ble_devices: int
    battery: Optional[int]

    @classmethod
    def zero(cls) -> "OccupancyReading":
        return cls(occupancy=0, wifi_devices=0, ble_devices=0, battery=None)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _estimate(device_count: float) -> int:
    return int(max(0, device_count * OCCUPANCY_FACTOR))


def _as_count(name: str, value: Any) -> int:
    """Whole, finite, non-negative numbers only; 3.0 is accepted as 3."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise ValueError(f"{name} must be a whole number, got {value!r}")
        value = int(value)
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value!r}")
    return value


def _from_decoded(decoded: Dict[str, Any]) -> OccupancyReading:
    wifi = _as_count("wifi_count", decoded.get("wifi_count") or 0)
    ble = _as_count("ble_count", decoded.get("ble_count") or 0)
    occupancy = decoded.get("occupancy")
    battery = decoded.get("battery")
    return OccupancyReading(
        occupancy=_as_count("occupancy", occupancy) if occupancy is not None else _estimate(wifi + ble),
        wifi_devices=wifi,
        ble_devices=ble,
        battery=_as_count("battery", battery) if battery is not None else None,
    )


def _simulated(rng) -> OccupancyReading:
    occupancy = rng.randint(1, 8)
    return OccupancyReading(
        occupancy=occupancy,
        wifi_devices=occupancy * 2,
        ble_devices=int(occupancy * 0.5),
        battery=TEST_BATTERY,
    )


def _from_bytes(buffer: bytes, max_capacity: int) -> OccupancyReading:
    if len(buffer) >= 4:
        wifi_count, ble_count, battery = buffer[0], buffer[1], buffer[2]
        estimated = _estimate(wifi_count + ble_count * BLE_WEIGHT)
        return OccupancyReading(
            occupancy=min(estimated, max_capacity),
            wifi_devices=wifi_count,
            ble_devices=ble_count,
            battery=battery if battery > 0 else None,
        )

    device_count = buffer[0] if buffer else 0
    return OccupancyReading(
        occupancy=_estimate(device_count),
        wifi_devices=device_count,
        ble_devices=0,
        battery=None,
    )


def decode_payload(
    frm_payload: Optional[str],
    decoded_payload: Any,
    device_id: Optional[str],
    registry=None,
    rng=None,
) -> OccupancyReading:
    """Decode an uplink into an OccupancyReading.

    ``decoded_payload`` from the network server's payload formatter wins over
    the raw ``frm_payload``. The DEADBEEF test payload draws a simulated
    reading from ``rng`` (anything with ``randint``). Never raises: any
    problem produces the zero reading.
    """
    logger.debug("Decoding payload for %s: raw=%s decoded=%s", device_id, frm_payload, decoded_payload)

    if isinstance(decoded_payload, dict):
        try:
            return _from_decoded(decoded_payload)
        except (TypeError, ValueError, OverflowError) as exc:
            logger.error("Invalid decoded_payload from %s: %s", device_id, exc)
            return OccupancyReading.zero()

    if not frm_payload:
        logger.warning("No payload data available for %s", device_id)
        return OccupancyReading.zero()

    try:
        buffer = base64.b64decode(frm_payload, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        logger.error("Error decoding payload from %s: %s", device_id, exc)
        return OccupancyReading.zero()

    logger.info("Decoded buffer for %s: %s", device_id, buffer.hex().upper())

    if buffer == TEST_PAYLOAD:
        logger.info("Test payload detected for %s, simulating occupancy", device_id)
        return _simulated(rng or random)

    venue = registry.get(device_id) if registry is not None else None
    max_capacity = venue.max_capacity if venue else DEFAULT_CAPACITY
    return _from_bytes(buffer, max_capacity)
