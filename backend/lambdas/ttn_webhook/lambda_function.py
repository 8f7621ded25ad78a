"""AWS Lambda entry point for The Things Network uplink webhooks."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from shared.dynamo import get_table
from shared.venues import DeviceRegistry, load_registry

from .aggregation import AggregationEngine
from .decoder import decode_payload
from .events import (
    InvalidEnvelopeError,
    JoinEvent,
    UplinkEvent,
    classify_event,
    parse_envelope,
)
from .persistence import (
    DeviceStatusStore,
    HistoryRecorder,
    StatusStore,
    build_history_record,
    build_status_record,
    parse_received_at,
)

logger = logging.getLogger()
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))

REGION = os.getenv("REGION", "us-east-1")
LOUNGE_STATUS_TABLE = os.getenv("LOUNGE_STATUS_TABLE", "lounge_status")
DEVICES_TABLE = os.getenv("DEVICES_TABLE", "devices")
HISTORY_TABLE = os.getenv("HISTORY_TABLE", "occupancy_history")
DAILY_ANALYTICS_TABLE = os.getenv("DAILY_ANALYTICS_TABLE", "daily_analytics")
DEVICE_REGISTRY_PATH = os.getenv("DEVICE_REGISTRY_PATH")
DEVICE_REGISTRY_S3_BUCKET = os.getenv("DEVICE_REGISTRY_S3_BUCKET")
DEVICE_REGISTRY_S3_KEY = os.getenv("DEVICE_REGISTRY_S3_KEY")
AGGREGATION_MAX_ATTEMPTS = int(os.getenv("AGGREGATION_MAX_ATTEMPTS", "5"))
AGGREGATION_MIN_REMAINING_MS = int(os.getenv("AGGREGATION_MIN_REMAINING_MS", "1000"))


def _response(status_code: int, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    if body is None:
        return {"statusCode": status_code, "body": ""}
    return {
        "statusCode": status_code,
        "body": json.dumps(body),
        "headers": {"Content-Type": "application/json"},
    }


def _server_error() -> Dict[str, Any]:
    return _response(
        500,
        {
            "success": False,
            "error": "Internal processing error",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


class WebhookController:
    """Routes a TTN delivery and decides whether the network server should retry.

    Everything that should not be redelivered (joins, unsupported event
    types, unregistered devices, processed uplinks) is acknowledged with 204.
    Only failures on the join write or the known-device uplink path return
    500 so TTN retries the delivery.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        status_store: StatusStore,
        device_store: DeviceStatusStore,
        history: HistoryRecorder,
        aggregation: AggregationEngine,
        rng=None,
        aggregation_budget_ms: int = AGGREGATION_MIN_REMAINING_MS,
    ):
        self.registry = registry
        self.status_store = status_store
        self.device_store = device_store
        self.history = history
        self.aggregation = aggregation
        self.rng = rng
        self.aggregation_budget_ms = aggregation_budget_ms

    def handle(self, method: Optional[str], body: Any, context=None) -> Dict[str, Any]:
        if (method or "").upper() != "POST":
            logger.error("Invalid method: %s", method)
            return _response(405, {"error": "Method Not Allowed"})

        try:
            payload = parse_envelope(body)
        except InvalidEnvelopeError as exc:
            logger.error("Rejected webhook: %s", exc)
            return _response(400, {"error": str(exc)})

        event = classify_event(payload)
        device_id = event.ids.device_id
        logger.info(
            "TTN webhook received: device=%s application=%s event=%s",
            device_id,
            event.ids.application_id,
            event.kind,
        )

        try:
            if isinstance(event, JoinEvent):
                return self._handle_join(event)
            if isinstance(event, UplinkEvent):
                return self._handle_uplink(event, context)
        except Exception as exc:
            logger.error("Error processing webhook: device=%s event=%s: %s", device_id, event.kind, exc, exc_info=True)
            return _server_error()

        if event.kind == "normalized_uplink":
            logger.info("Normalized uplink acknowledged: device=%s outcome=ignored", device_id)
        else:
            logger.warning("Non-uplink event acknowledged: device=%s keys=%s outcome=ignored", device_id, list(event.keys))
        return _response(204)

    def _handle_join(self, event: JoinEvent) -> Dict[str, Any]:
        timestamp = parse_received_at(event.received_at)
        self.device_store.record_join(event, timestamp)
        logger.info("Join accepted: device=%s event=join outcome=acknowledged", event.ids.device_id)
        return _response(204)

    def _handle_uplink(self, event: UplinkEvent, context) -> Dict[str, Any]:
        device_id = event.ids.device_id
        venue = self.registry.get(device_id)
        if venue is None:
            logger.warning("Unknown device: device=%s event=uplink outcome=acknowledged", device_id)
            return _response(204)

        reading = decode_payload(event.frm_payload, event.decoded_payload, device_id, self.registry, self.rng)
        timestamp = parse_received_at(event.received_at)
        status = build_status_record(device_id, reading, venue, timestamp, event.rx)
        history = build_history_record(status, timestamp)

        # Each primary write is attempted even when an earlier one failed.
        failures: List[Exception] = []
        for name, write in (
            ("status", lambda: self.status_store.save(status)),
            ("device", lambda: self.device_store.record_uplink(venue, status)),
            ("history", lambda: self.history.append(history)),
        ):
            try:
                write()
            except Exception as exc:
                logger.error("Failed %s write: device=%s: %s", name, device_id, exc, exc_info=True)
                failures.append(exc)

        if failures:
            raise failures[0]

        self._aggregate(device_id, reading, venue, timestamp, history, event, context)

        logger.info(
            "Processed uplink: device=%s venue=%s occupancy=%d/%d (%d%%) outcome=stored",
            device_id,
            venue.venue_name,
            reading.occupancy,
            venue.max_capacity,
            round(history["occupancy_rate"] * 100),
        )
        return _response(204)

    def _aggregate(self, device_id, reading, venue, timestamp, history, event, context) -> None:
        if context is not None and hasattr(context, "get_remaining_time_in_millis"):
            remaining = context.get_remaining_time_in_millis()
            if remaining < self.aggregation_budget_ms:
                logger.warning("Skipping daily analytics: device=%s remaining_ms=%d", device_id, remaining)
                return

        signal_strength = event.rx.rssi if event.rx else None
        try:
            self.aggregation.update(history["date"], device_id, reading, venue, timestamp, signal_strength)
        except Exception as exc:
            # History is already stored; the day's aggregate can be rebuilt from it.
            logger.error("Error updating daily aggregations: device=%s: %s", device_id, exc, exc_info=True)


def build_controller(registry: Optional[DeviceRegistry] = None) -> WebhookController:
    if registry is None:
        registry = load_registry(
            path=DEVICE_REGISTRY_PATH,
            bucket=DEVICE_REGISTRY_S3_BUCKET,
            key=DEVICE_REGISTRY_S3_KEY,
            region=REGION,
        )
    return WebhookController(
        registry=registry,
        status_store=StatusStore(get_table(LOUNGE_STATUS_TABLE, REGION)),
        device_store=DeviceStatusStore(get_table(DEVICES_TABLE, REGION)),
        history=HistoryRecorder(get_table(HISTORY_TABLE, REGION)),
        aggregation=AggregationEngine(get_table(DAILY_ANALYTICS_TABLE, REGION), max_attempts=AGGREGATION_MAX_ATTEMPTS),
    )


_controller: Optional[WebhookController] = None


def get_controller() -> WebhookController:
    global _controller
    if _controller is None:
        _controller = build_controller()
    return _controller


def _extract_request(event: Any):
    """Return (method, body) for API Gateway REST/HTTP events or a direct invoke."""
    if not isinstance(event, dict):
        return "POST", event

    method = event.get("httpMethod") or (event.get("requestContext") or {}).get("http", {}).get("method")
    if method is None and "body" not in event:
        return "POST", event

    body = event.get("body")
    if body and event.get("isBase64Encoded"):
        try:
            body = base64.b64decode(body)
        except (binascii.Error, ValueError):
            logger.warning("Body flagged as base64 could not be decoded")
    return method, body


def lambda_handler(event, context):
    try:
        method, body = _extract_request(event)
        return get_controller().handle(method, body, context)
    except Exception as exc:  # pragma: no cover
        logger.error("Unhandled error: %s", exc, exc_info=True)
        return _server_error()
