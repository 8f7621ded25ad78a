"""Device to venue registry shared by the webhook and the read API."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("venue_name", "venue_type", "max_capacity", "location")

DEFAULT_VENUES: Dict[str, Dict[str, Any]] = {
    "strathmore-sensor1": {
        "venue_name": "Strathmore Study Area",
        "venue_type": "study_area",
        "max_capacity": 20,
        "location": "Building A, Floor 2",
    },
}


class RegistryConfigError(ValueError):
    """Raised when the device registry configuration cannot be used."""


@dataclass(frozen=True)
class VenueInfo:
    id: str
    venue_name: str
    venue_type: str
    max_capacity: int
    location: str

    @classmethod
    def from_dict(cls, device_id: str, data: Mapping[str, Any]) -> "VenueInfo":
        if not isinstance(data, Mapping):
            raise RegistryConfigError(f"Venue for {device_id} must be an object")
        missing = [field for field in REQUIRED_FIELDS if field not in data]
        if missing:
            raise RegistryConfigError(f"Venue for {device_id} is missing: {', '.join(missing)}")

        capacity = data["max_capacity"]
        # bool is an int subclass
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
            raise RegistryConfigError(f"Invalid max_capacity for {device_id}: {capacity!r}")

        return cls(
            id=str(data.get("id", device_id)),
            venue_name=str(data["venue_name"]),
            venue_type=str(data["venue_type"]),
            max_capacity=capacity,
            location=str(data["location"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DeviceRegistry:
    """Read-only lookup from device id to venue metadata."""

    def __init__(self, venues: Mapping[str, VenueInfo]):
        self._venues = MappingProxyType(dict(venues))

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "DeviceRegistry":
        return cls({device_id: VenueInfo.from_dict(device_id, data) for device_id, data in mapping.items()})

    def get(self, device_id: Optional[str]) -> Optional[VenueInfo]:
        if not device_id:
            return None
        return self._venues.get(device_id)

    def device_ids(self) -> List[str]:
        return list(self._venues)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {device_id: venue.to_dict() for device_id, venue in self._venues.items()}

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._venues

    def __len__(self) -> int:
        return len(self._venues)


def _extract_devices(payload: Any) -> Mapping[str, Any]:
    if isinstance(payload, dict):
        devices = payload.get("devices", payload)
        if isinstance(devices, dict) and devices:
            return devices

    raise RegistryConfigError("Device registry must be a non-empty object of devices")


def _load_from_file(path: str) -> Mapping[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return _extract_devices(payload)


def _load_from_s3(bucket: str, key: str, region: Optional[str] = None) -> Mapping[str, Any]:
    client = boto3.client("s3", region_name=region)
    response = client.get_object(Bucket=bucket, Key=key)
    body = response["Body"].read().decode("utf-8")
    return _extract_devices(json.loads(body))


def load_registry(
    path: Optional[str] = None,
    bucket: Optional[str] = None,
    key: Optional[str] = None,
    region: Optional[str] = None,
) -> DeviceRegistry:
    """Build the registry from a JSON file, an S3 object or the built-in defaults."""
    if path:
        try:
            devices = _load_from_file(path)
        except (OSError, json.JSONDecodeError) as exc:
            raise RegistryConfigError(f"Failed to load device registry file {path}: {exc}") from exc
        logger.info("Loaded device registry from %s (%d devices)", path, len(devices))
        return DeviceRegistry.from_mapping(devices)

    if bucket and key:
        try:
            devices = _load_from_s3(bucket, key, region=region)
        except (BotoCoreError, ClientError, json.JSONDecodeError) as exc:
            raise RegistryConfigError(f"Failed to download device registry s3://{bucket}/{key}: {exc}") from exc
        logger.info("Loaded device registry from s3://%s/%s (%d devices)", bucket, key, len(devices))
        return DeviceRegistry.from_mapping(devices)

    logger.info("Using built-in device registry (%d devices)", len(DEFAULT_VENUES))
    return DeviceRegistry.from_mapping(DEFAULT_VENUES)
