"""DynamoDB helpers shared by the lambdas."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List

import boto3


def get_table(name: str, region: str):
    dynamodb = boto3.resource("dynamodb", region_name=region)
    return dynamodb.Table(name)


def to_dynamo(value: Any) -> Any:
    """Convert a plain structure into something put_item accepts."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {key: to_dynamo(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return [to_dynamo(item) for item in sorted(value)]
    if isinstance(value, (list, tuple)):
        return [to_dynamo(item) for item in value]
    return value


def from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {key: from_dynamo(item) for key, item in value.items()}
    if isinstance(value, list):
        return [from_dynamo(item) for item in value]
    return value


def decimal_to_float(obj):
    """json.dumps hook for Decimal values read back from DynamoDB."""
    if isinstance(obj, Decimal):
        return float(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def scan_all(table, **scan_kwargs) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    exclusive_start_key = None
    while True:
        if exclusive_start_key:
            scan_kwargs["ExclusiveStartKey"] = exclusive_start_key

        response = table.scan(**scan_kwargs)
        items.extend(response.get("Items", []))

        exclusive_start_key = response.get("LastEvaluatedKey")
        if not exclusive_start_key:
            break

    return items
