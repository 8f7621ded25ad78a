"""DynamoDB writers for current status, device registry status and history."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import logging

from shared.dynamo import to_dynamo
from shared.venues import VenueInfo

from .decoder import OccupancyReading
from .events import JoinEvent, RxMetadata

logger = logging.getLogger(__name__)


def parse_received_at(value: Optional[str], now: Optional[datetime] = None) -> datetime:
    """Parse TTN's received_at, falling back to the current time."""
    fallback = now or datetime.now(timezone.utc)
    if not value or not isinstance(value, str):
        return fallback
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Invalid received_at timestamp %r, using current time", value)
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def isoformat(timestamp: datetime) -> str:
    return timestamp.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _update_expression(
    values: Dict[str, Any], increments: Optional[Dict[str, int]] = None
) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
    names: Dict[str, str] = {}
    attr_values: Dict[str, Any] = {}
    set_parts = []
    for index, (name, value) in enumerate(values.items()):
        names[f"#f{index}"] = name
        attr_values[f":v{index}"] = to_dynamo(value)
        set_parts.append(f"#f{index} = :v{index}")

    expression = "SET " + ", ".join(set_parts)

    add_parts = []
    for index, (name, amount) in enumerate((increments or {}).items()):
        names[f"#a{index}"] = name
        attr_values[f":a{index}"] = amount
        add_parts.append(f"#a{index} :a{index}")
    if add_parts:
        expression += " ADD " + ", ".join(add_parts)

    return expression, names, attr_values


def build_status_record(
    device_id: str,
    reading: OccupancyReading,
    venue: VenueInfo,
    timestamp: datetime,
    rx: Optional[RxMetadata],
) -> Dict[str, Any]:
    return {
        "id": device_id,
        "current_occupancy": reading.occupancy,
        "max_capacity": venue.max_capacity,
        "last_updated": isoformat(timestamp),
        "device_id": device_id,
        "wifi_devices": reading.wifi_devices,
        "ble_devices": reading.ble_devices,
        "venue_name": venue.venue_name,
        "venue_type": venue.venue_type,
        "signal_strength": rx.rssi if rx else None,
        "snr": rx.snr if rx else None,
        "gateway_id": rx.gateway_id if rx else None,
        "battery_level": reading.battery,
    }


def build_history_record(status: Dict[str, Any], timestamp: datetime) -> Dict[str, Any]:
    """Status fields plus the calendar breakdown used by analytics queries."""
    timestamp = timestamp.astimezone(timezone.utc)
    # isoweekday: Monday=1 .. Sunday=7
    day_of_week = timestamp.isoweekday() % 7
    epoch_millis = int(timestamp.timestamp() * 1000)

    record = dict(status)
    record.update(
        {
            "record_id": f"{epoch_millis}_{status['device_id']}",
            "timestamp": isoformat(timestamp),
            "occupancy_rate": status["current_occupancy"] / status["max_capacity"],
            "hour": timestamp.hour,
            "day_of_week": day_of_week,
            "date": timestamp.strftime("%Y-%m-%d"),
            "month": timestamp.strftime("%Y-%m"),
            "is_weekend": day_of_week in (0, 6),
        }
    )
    return record


class StatusStore:
    """One current-state record per device, overwritten on every uplink."""

    def __init__(self, table):
        self.table = table

    def save(self, record: Dict[str, Any]) -> None:
        self.table.put_item(Item=to_dynamo(record))
        logger.info("Current state saved: %s = %s", record["id"], record["current_occupancy"])


class DeviceStatusStore:
    """Merges network and health status into the devices table."""

    def __init__(self, table):
        self.table = table

    def _merge(self, device_id: str, values: Dict[str, Any], increments: Optional[Dict[str, int]] = None) -> None:
        expression, names, attr_values = _update_expression(values, increments)
        self.table.update_item(
            Key={"device_id": device_id},
            UpdateExpression=expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=attr_values,
        )

    def record_join(self, event: JoinEvent, timestamp: datetime) -> None:
        values: Dict[str, Any] = {
            "last_join": isoformat(timestamp),
            "session_key_id": event.session_key_id,
            "status": "joined",
        }
        if event.ids.dev_addr:
            values["dev_addr"] = event.ids.dev_addr
        self._merge(event.ids.device_id, values)
        logger.info("Join recorded: %s session=%s", event.ids.device_id, event.session_key_id)

    def record_uplink(self, venue: VenueInfo, status: Dict[str, Any]) -> None:
        values = venue.to_dict()
        values.update(
            {
                "last_seen": status["last_updated"],
                "status": "online",
                "signal_strength": status["signal_strength"],
                "battery_level": status["battery_level"],
            }
        )
        self._merge(status["device_id"], values, increments={"total_messages": 1})


class HistoryRecorder:
    """Append-only log of uplinks."""

    def __init__(self, table):
        self.table = table

    def append(self, record: Dict[str, Any]) -> None:
        self.table.put_item(Item=to_dynamo(record))
        logger.info("History entry saved: %s at %s", record["device_id"], record["timestamp"])
