"""Incrementally maintained per-device daily analytics."""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from shared.dynamo import from_dynamo, to_dynamo
from shared.venues import VenueInfo

from .decoder import OccupancyReading
from .persistence import isoformat

logger = logging.getLogger(__name__)

BUSY_THRESHOLD = 0.5
QUIET_THRESHOLD = 0.2
OPTIMAL_RANGE = (0.2, 0.7)
OVERCROWDED_THRESHOLD = 0.8
DEFAULT_SIGNAL_STRENGTH = -75
DEFAULT_BATTERY = 85
LOW_BATTERY = 20


class AggregationConflictError(RuntimeError):
    """Concurrent writers kept winning the conditional update."""


def aggregate_id(date: str, device_id: str) -> str:
    return f"{date}_{device_id}"


def _running_mean(mean: float, count: int, value: float) -> float:
    return (mean * count + value) / (count + 1)


def _add_hour(hours: List[int], hour: int) -> List[int]:
    if hour in hours:
        return hours
    return sorted([*hours, hour])


def _new_hour_bucket(reading: OccupancyReading) -> Dict[str, Any]:
    return {
        "avg_occupancy": reading.occupancy,
        "max_occupancy": reading.occupancy,
        "readings_count": 1,
        "avg_wifi_devices": reading.wifi_devices,
        "avg_ble_devices": reading.ble_devices,
    }


def new_daily_aggregate(
    date: str,
    device_id: str,
    reading: OccupancyReading,
    venue: VenueInfo,
    timestamp: datetime,
    signal_strength: Optional[float],
) -> Dict[str, Any]:
    """Seed a day's record from its first reading."""
    hour = timestamp.hour
    rate = reading.occupancy / venue.max_capacity
    battery = reading.battery if reading.battery is not None else DEFAULT_BATTERY

    return {
        "aggregate_id": aggregate_id(date, device_id),
        "date": date,
        "device_id": device_id,
        "venue_name": venue.venue_name,
        "occupancy_stats": {
            "avg_occupancy": reading.occupancy,
            "avg_occupancy_rate": rate,
            "max_occupancy": reading.occupancy,
            "min_occupancy": reading.occupancy,
            "peak_hour": hour,
            "total_readings": 1,
        },
        "usage_patterns": {
            "busy_hours": [hour] if rate > BUSY_THRESHOLD else [],
            "quiet_hours": [hour] if rate < QUIET_THRESHOLD else [],
            "rush_periods": [],
        },
        "hourly_data": {str(hour): _new_hour_bucket(reading)},
        "study_efficiency": {
            "utilization_rate": rate,
            "optimal_hours": [hour] if OPTIMAL_RANGE[0] < rate < OPTIMAL_RANGE[1] else [],
            "overcrowded_periods": [hour] if rate > OVERCROWDED_THRESHOLD else [],
        },
        "sensor_health": {
            "uptime_percentage": 100,
            "avg_signal_strength": signal_strength if signal_strength is not None else DEFAULT_SIGNAL_STRENGTH,
            "battery_status": "good" if battery > LOW_BATTERY else "warning",
            "data_quality_score": 100,
        },
        "created_at": isoformat(timestamp),
        "last_updated": isoformat(timestamp),
    }


def apply_reading(
    aggregate: Dict[str, Any],
    reading: OccupancyReading,
    venue: VenueInfo,
    timestamp: datetime,
) -> Dict[str, Any]:
    """Fold one more reading into an existing day's record.

    Returns a new dict. Means are online means, extrema are running, and the
    busy/quiet hour lists only ever grow.
    """
    updated = copy.deepcopy(aggregate)
    hour = timestamp.hour
    value = reading.occupancy
    rate = value / venue.max_capacity

    stats = updated.setdefault("occupancy_stats", {})
    count = stats.get("total_readings", 0)
    previous_max = stats.get("max_occupancy", 0)

    stats["avg_occupancy"] = _running_mean(stats.get("avg_occupancy", 0), count, value)
    stats["avg_occupancy_rate"] = _running_mean(stats.get("avg_occupancy_rate", 0), count, rate)
    stats["max_occupancy"] = max(previous_max, value)
    stats["min_occupancy"] = min(stats.get("min_occupancy", value), value)
    stats["total_readings"] = count + 1
    if value > previous_max:
        stats["peak_hour"] = hour

    hourly = updated.setdefault("hourly_data", {})
    bucket = hourly.get(str(hour))
    if bucket is None:
        hourly[str(hour)] = _new_hour_bucket(reading)
    else:
        seen = bucket.get("readings_count", 0)
        bucket["avg_occupancy"] = _running_mean(bucket.get("avg_occupancy", 0), seen, value)
        bucket["avg_wifi_devices"] = _running_mean(bucket.get("avg_wifi_devices", 0), seen, reading.wifi_devices)
        bucket["avg_ble_devices"] = _running_mean(bucket.get("avg_ble_devices", 0), seen, reading.ble_devices)
        bucket["max_occupancy"] = max(bucket.get("max_occupancy", 0), value)
        bucket["readings_count"] = seen + 1

    patterns = updated.setdefault("usage_patterns", {})
    busy = list(patterns.get("busy_hours", []))
    quiet = list(patterns.get("quiet_hours", []))
    if rate > BUSY_THRESHOLD:
        busy = _add_hour(busy, hour)
    if rate < QUIET_THRESHOLD:
        quiet = _add_hour(quiet, hour)
    patterns["busy_hours"] = busy
    patterns["quiet_hours"] = quiet
    patterns.setdefault("rush_periods", [])

    updated["last_updated"] = isoformat(timestamp)
    return updated


class AggregationEngine:
    """Read-modify-write of daily_analytics guarded by a version attribute.

    Every write is conditional on the version that was read, so two uplinks
    for the same device and day cannot overwrite each other's contribution;
    the loser re-reads and tries again.
    """

    def __init__(self, table, max_attempts: int = 5):
        self.table = table
        self.max_attempts = max_attempts

    def _load(self, key: str) -> Optional[Dict[str, Any]]:
        response = self.table.get_item(Key={"aggregate_id": key}, ConsistentRead=True)
        item = response.get("Item")
        return from_dynamo(item) if item else None

    def update(
        self,
        date: str,
        device_id: str,
        reading: OccupancyReading,
        venue: VenueInfo,
        timestamp: datetime,
        signal_strength: Optional[float],
    ) -> Dict[str, Any]:
        key = aggregate_id(date, device_id)

        for attempt in range(1, self.max_attempts + 1):
            existing = self._load(key)
            if existing is None:
                item = new_daily_aggregate(date, device_id, reading, venue, timestamp, signal_strength)
                item["version"] = 1
                condition = Attr("aggregate_id").not_exists()
            else:
                version = existing.get("version", 0)
                item = apply_reading(existing, reading, venue, timestamp)
                item["version"] = version + 1
                condition = Attr("version").eq(version) if version else Attr("version").not_exists()

            try:
                self.table.put_item(Item=to_dynamo(item), ConditionExpression=condition)
            except ClientError as exc:
                if exc.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
                    raise
                logger.warning("Aggregate %s changed concurrently (attempt %d/%d)", key, attempt, self.max_attempts)
                continue

            stats = item["occupancy_stats"]
            if existing is None:
                logger.info("Created daily analytics %s", key)
            else:
                logger.info("Updated daily analytics %s (%d total readings)", key, stats["total_readings"])
            return item

        raise AggregationConflictError(f"Gave up updating {key} after {self.max_attempts} attempts")
