"""Envelope parsing and event classification for TTN v3 webhooks."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union


class InvalidEnvelopeError(ValueError):
    """The request body is not a usable TTN envelope."""


@dataclass(frozen=True)
class DeviceIds:
    device_id: str
    application_id: Optional[str] = None
    dev_eui: Optional[str] = None
    join_eui: Optional[str] = None
    dev_addr: Optional[str] = None


@dataclass(frozen=True)
class RxMetadata:
    gateway_id: Optional[str]
    rssi: Optional[float]
    snr: Optional[float]


@dataclass(frozen=True)
class JoinEvent:
    ids: DeviceIds
    received_at: Optional[str]
    session_key_id: Optional[str]
    kind: str = field(default="join", init=False)


@dataclass(frozen=True)
class UplinkEvent:
    ids: DeviceIds
    received_at: Optional[str]
    frm_payload: Optional[str]
    decoded_payload: Optional[Dict[str, Any]]
    rx: Optional[RxMetadata]
    kind: str = field(default="uplink", init=False)


@dataclass(frozen=True)
class NormalizedUplinkEvent:
    ids: DeviceIds
    received_at: Optional[str]
    payload: Any
    kind: str = field(default="normalized_uplink", init=False)


@dataclass(frozen=True)
class UnknownEvent:
    ids: DeviceIds
    received_at: Optional[str]
    keys: Tuple[str, ...]
    kind: str = field(default="unknown", init=False)


WebhookEvent = Union[JoinEvent, UplinkEvent, NormalizedUplinkEvent, UnknownEvent]


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def parse_envelope(raw: Any) -> Dict[str, Any]:
    """Load the request body and check it names a device."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidEnvelopeError(f"Body is not valid JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise InvalidEnvelopeError("Body must be a JSON object")

    device_id = _as_dict(raw.get("end_device_ids")).get("device_id")
    if not device_id or not isinstance(device_id, str):
        raise InvalidEnvelopeError("Invalid TTN payload: missing device_id")

    return raw


def _device_ids(payload: Dict[str, Any]) -> DeviceIds:
    ids = _as_dict(payload.get("end_device_ids"))
    return DeviceIds(
        device_id=ids.get("device_id", ""),
        application_id=_as_dict(ids.get("application_ids")).get("application_id"),
        dev_eui=ids.get("dev_eui"),
        join_eui=ids.get("join_eui"),
        dev_addr=ids.get("dev_addr"),
    )


def _first_rx(uplink: Dict[str, Any]) -> Optional[RxMetadata]:
    rx_metadata = uplink.get("rx_metadata")
    if not isinstance(rx_metadata, list) or not rx_metadata:
        return None
    first = _as_dict(rx_metadata[0])
    return RxMetadata(
        gateway_id=_as_dict(first.get("gateway_ids")).get("gateway_id"),
        rssi=_as_number(first.get("rssi")),
        snr=_as_number(first.get("snr")),
    )


def classify_event(payload: Dict[str, Any]) -> WebhookEvent:
    ids = _device_ids(payload)
    received_at = payload.get("received_at")

    if payload.get("uplink_message") is not None:
        uplink = _as_dict(payload["uplink_message"])
        decoded = uplink.get("decoded_payload")
        return UplinkEvent(
            ids=ids,
            received_at=received_at,
            frm_payload=uplink.get("frm_payload"),
            decoded_payload=decoded if isinstance(decoded, dict) else None,
            rx=_first_rx(uplink),
        )

    if payload.get("join_accept") is not None:
        join = _as_dict(payload["join_accept"])
        return JoinEvent(
            ids=ids,
            received_at=join.get("received_at") or received_at,
            session_key_id=join.get("session_key_id"),
        )

    if payload.get("normalized_uplink") is not None:
        return NormalizedUplinkEvent(ids=ids, received_at=received_at, payload=payload["normalized_uplink"])

    return UnknownEvent(ids=ids, received_at=received_at, keys=tuple(sorted(payload)))
