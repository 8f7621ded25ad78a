import itertools
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from shared.venues import VenueInfo
from ttn_webhook.aggregation import (
    AggregationConflictError,
    AggregationEngine,
    apply_reading,
    new_daily_aggregate,
)
from ttn_webhook.decoder import OccupancyReading

VENUE = VenueInfo(
    id="strathmore-sensor1",
    venue_name="Strathmore Study Area",
    venue_type="study_area",
    max_capacity=20,
    location="Building A, Floor 2",
)
DATE = "2025-07-31"


def at(hour, minute=0):
    return datetime(2025, 7, 31, hour, minute, tzinfo=timezone.utc)


def reading(occupancy, wifi=0, ble=0, battery=None):
    return OccupancyReading(occupancy=occupancy, wifi_devices=wifi, ble_devices=ble, battery=battery)


def fold(values, hour=10):
    aggregate = None
    for index, value in enumerate(values):
        timestamp = at(hour, index % 60)
        if aggregate is None:
            aggregate = new_daily_aggregate(DATE, VENUE.id, reading(value), VENUE, timestamp, None)
        else:
            aggregate = apply_reading(aggregate, reading(value), VENUE, timestamp)
    return aggregate


def test_seed_from_first_reading():
    aggregate = new_daily_aggregate(DATE, VENUE.id, reading(12, 20, 4, 60), VENUE, at(14), -81.0)

    assert aggregate["aggregate_id"] == "2025-07-31_strathmore-sensor1"
    assert aggregate["occupancy_stats"] == {
        "avg_occupancy": 12,
        "avg_occupancy_rate": 0.6,
        "max_occupancy": 12,
        "min_occupancy": 12,
        "peak_hour": 14,
        "total_readings": 1,
    }
    assert aggregate["usage_patterns"] == {"busy_hours": [14], "quiet_hours": [], "rush_periods": []}
    assert aggregate["hourly_data"]["14"] == {
        "avg_occupancy": 12,
        "max_occupancy": 12,
        "readings_count": 1,
        "avg_wifi_devices": 20,
        "avg_ble_devices": 4,
    }
    assert aggregate["study_efficiency"] == {
        "utilization_rate": 0.6,
        "optimal_hours": [14],
        "overcrowded_periods": [],
    }
    assert aggregate["sensor_health"]["avg_signal_strength"] == -81.0
    assert aggregate["sensor_health"]["battery_status"] == "good"


def test_seed_defaults_and_thresholds():
    quiet = new_daily_aggregate(DATE, VENUE.id, reading(1), VENUE, at(7), None)
    assert quiet["usage_patterns"]["quiet_hours"] == [7]
    assert quiet["study_efficiency"]["optimal_hours"] == []
    assert quiet["sensor_health"]["avg_signal_strength"] == -75
    assert quiet["sensor_health"]["battery_status"] == "good"

    crowded = new_daily_aggregate(DATE, VENUE.id, reading(18, battery=15), VENUE, at(12), None)
    assert crowded["usage_patterns"]["busy_hours"] == [12]
    assert crowded["study_efficiency"]["overcrowded_periods"] == [12]
    assert crowded["sensor_health"]["battery_status"] == "warning"


def test_two_readings_average_and_extrema():
    aggregate = fold([2, 8])
    stats = aggregate["occupancy_stats"]
    assert stats["avg_occupancy"] == 5
    assert stats["avg_occupancy_rate"] == pytest.approx(0.25)
    assert stats["max_occupancy"] == 8
    assert stats["min_occupancy"] == 2
    assert stats["total_readings"] == 2


def test_any_arrival_order_converges():
    values = [3, 0, 11, 7, 7, 19]
    results = [fold(list(order)) for order in itertools.permutations(values)]

    for aggregate in results:
        stats = aggregate["occupancy_stats"]
        assert stats["avg_occupancy"] == pytest.approx(sum(values) / len(values))
        assert stats["avg_occupancy_rate"] == pytest.approx(sum(values) / len(values) / 20)
        assert stats["max_occupancy"] == 19
        assert stats["min_occupancy"] == 0
        assert stats["total_readings"] == len(values)


def test_peak_hour_moves_only_on_new_maximum():
    aggregate = new_daily_aggregate(DATE, VENUE.id, reading(5), VENUE, at(9), None)
    aggregate = apply_reading(aggregate, reading(5), VENUE, at(10))
    assert aggregate["occupancy_stats"]["peak_hour"] == 9
    aggregate = apply_reading(aggregate, reading(9), VENUE, at(11))
    assert aggregate["occupancy_stats"]["peak_hour"] == 11


def test_hour_buckets_keep_running_means():
    aggregate = new_daily_aggregate(DATE, VENUE.id, reading(2, 4, 2), VENUE, at(9, 0), None)
    aggregate = apply_reading(aggregate, reading(6, 10, 4), VENUE, at(9, 30))
    aggregate = apply_reading(aggregate, reading(1, 1, 0), VENUE, at(10, 0))

    nine = aggregate["hourly_data"]["9"]
    assert nine["readings_count"] == 2
    assert nine["avg_occupancy"] == 4
    assert nine["max_occupancy"] == 6
    assert nine["avg_wifi_devices"] == 7
    assert nine["avg_ble_devices"] == 3
    assert aggregate["hourly_data"]["10"]["readings_count"] == 1


def test_busy_and_quiet_hours_never_shrink():
    occupancies = [15, 1, 10, 2, 19, 0, 4]
    hours = [8, 8, 9, 10, 10, 11, 8]
    aggregate = new_daily_aggregate(DATE, VENUE.id, reading(occupancies[0]), VENUE, at(hours[0]), None)
    previous_busy = set(aggregate["usage_patterns"]["busy_hours"])
    previous_quiet = set(aggregate["usage_patterns"]["quiet_hours"])

    for value, hour in zip(occupancies[1:], hours[1:]):
        aggregate = apply_reading(aggregate, reading(value), VENUE, at(hour))
        busy = set(aggregate["usage_patterns"]["busy_hours"])
        quiet = set(aggregate["usage_patterns"]["quiet_hours"])
        assert previous_busy <= busy
        assert previous_quiet <= quiet
        previous_busy, previous_quiet = busy, quiet

    assert aggregate["usage_patterns"]["busy_hours"] == [8, 10]
    assert aggregate["usage_patterns"]["quiet_hours"] == [8, 10, 11]


def test_apply_reading_does_not_mutate_input():
    original = fold([4])
    snapshot = repr(original)
    apply_reading(original, reading(9), VENUE, at(13))
    assert repr(original) == snapshot


def test_engine_creates_then_updates(dynamo_tables):
    table = dynamo_tables["daily_analytics"]
    engine = AggregationEngine(table)

    engine.update(DATE, VENUE.id, reading(2), VENUE, at(10), -80.0)
    engine.update(DATE, VENUE.id, reading(8), VENUE, at(11), -82.0)

    item = table.get_item(Key={"aggregate_id": "2025-07-31_strathmore-sensor1"})["Item"]
    stats = item["occupancy_stats"]
    assert stats["avg_occupancy"] == 5
    assert stats["max_occupancy"] == 8
    assert stats["min_occupancy"] == 2
    assert stats["total_readings"] == 2
    assert stats["peak_hour"] == 11
    assert item["version"] == 2
    assert item["usage_patterns"]["quiet_hours"] == [10]


def test_engine_keeps_days_and_devices_apart(dynamo_tables):
    table = dynamo_tables["daily_analytics"]
    engine = AggregationEngine(table)

    engine.update(DATE, VENUE.id, reading(2), VENUE, at(10), None)
    engine.update("2025-08-01", VENUE.id, reading(4), VENUE, datetime(2025, 8, 1, 10, tzinfo=timezone.utc), None)
    engine.update(DATE, "other-sensor", reading(6), VENUE, at(10), None)

    assert table.scan()["Count"] == 3


def _conflict():
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "conflict"}},
        "PutItem",
    )


def test_engine_retries_after_lost_race():
    table = MagicMock()
    table.get_item.side_effect = [{}, {"Item": fold([6])}]
    table.put_item.side_effect = [_conflict(), {}]

    result = AggregationEngine(table).update(DATE, VENUE.id, reading(2), VENUE, at(10), None)

    assert table.put_item.call_count == 2
    assert result["occupancy_stats"]["total_readings"] == 2
    assert result["occupancy_stats"]["avg_occupancy"] == 4


def test_engine_gives_up_after_max_attempts():
    table = MagicMock()
    table.get_item.return_value = {}
    table.put_item.side_effect = _conflict()

    with pytest.raises(AggregationConflictError):
        AggregationEngine(table, max_attempts=3).update(DATE, VENUE.id, reading(2), VENUE, at(10), None)
    assert table.put_item.call_count == 3


def test_engine_propagates_other_storage_errors():
    table = MagicMock()
    table.get_item.return_value = {}
    table.put_item.side_effect = ClientError(
        {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow down"}},
        "PutItem",
    )

    with pytest.raises(ClientError):
        AggregationEngine(table).update(DATE, VENUE.id, reading(2), VENUE, at(10), None)
    assert table.put_item.call_count == 1
