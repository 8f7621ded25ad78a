import json
import logging
import os
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from shared.dynamo import decimal_to_float, get_table, scan_all
from shared.venues import DeviceRegistry, load_registry

logger = logging.getLogger()
logger.setLevel(os.getenv('LOG_LEVEL', 'INFO'))

# Configuración
REGION = os.getenv('REGION', 'us-east-1')
LOUNGE_STATUS_TABLE = os.getenv('LOUNGE_STATUS_TABLE', 'lounge_status')
DEVICES_TABLE = os.getenv('DEVICES_TABLE', 'devices')
HISTORY_TABLE = os.getenv('HISTORY_TABLE', 'occupancy_history')
DAILY_ANALYTICS_TABLE = os.getenv('DAILY_ANALYTICS_TABLE', 'daily_analytics')

SERVICE_NAME = 'Availo TTN-DynamoDB Integration'
SERVICE_VERSION = '1.0.0'

_registry: Optional[DeviceRegistry] = None


def get_registry() -> DeviceRegistry:
    global _registry
    if _registry is None:
        _registry = load_registry(
            path=os.getenv('DEVICE_REGISTRY_PATH'),
            bucket=os.getenv('DEVICE_REGISTRY_S3_BUCKET'),
            key=os.getenv('DEVICE_REGISTRY_S3_KEY'),
            region=REGION,
        )
    return _registry


def get_all_lounges(table=None) -> Dict[str, Any]:
    """
    Lists every current lounge status record (legacy endpoint).
    """
    table = table if table is not None else get_table(LOUNGE_STATUS_TABLE, REGION)
    items = scan_all(table)
    logger.info(f"✅ Retrieved {len(items)} lounges")
    return {'lounges': items}


def get_device_config(registry: DeviceRegistry, device_id: Optional[str]):
    """
    Returns (status_code, body) for a registered device or the whole registry.
    """
    if not device_id:
        return 200, {'success': True, 'registered_devices': registry.to_dict()}

    venue = registry.get(device_id)
    if venue is None:
        logger.warning(f"⚠️ Device {device_id} not found")
        return 404, {'success': False, 'error': f'Device {device_id} not found'}

    return 200, {'success': True, 'device': device_id, 'config': venue.to_dict()}


def get_health(registry: DeviceRegistry) -> Dict[str, Any]:
    health = {
        'status': 'healthy',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'service': SERVICE_NAME,
        'version': SERVICE_VERSION,
        'registered_devices': registry.device_ids(),
        'tables': [LOUNGE_STATUS_TABLE, DEVICES_TABLE, HISTORY_TABLE, DAILY_ANALYTICS_TABLE],
    }
    logger.info(f"Health check requested: {len(health['registered_devices'])} devices")
    return health


def _response(status_code: int, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'body': json.dumps(data, default=decimal_to_float),
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*'
        }
    }


def lambda_handler(event, context):
    """
    API Gateway handler for the read side.

    Supported routes:
    - GET /lounges → all current lounge status records
    - GET /devices?device=strathmore-sensor1 → one device's venue config
    - GET /devices → every registered device
    - GET /health → service health
    """
    try:
        logger.info("📨 lounge_status triggered")

        method = (event.get('httpMethod') or 'GET').upper()
        if method != 'GET':
            return _response(405, {'error': 'Method Not Allowed'})

        path = (event.get('path') or '/lounges').lower().rstrip('/')
        query_params = event.get('queryStringParameters', {}) or {}

        if path.endswith('/health'):
            return _response(200, get_health(get_registry()))

        if path.endswith('/devices'):
            status_code, data = get_device_config(get_registry(), query_params.get('device'))
            return _response(status_code, data)

        return _response(200, get_all_lounges())

    except Exception as e:
        logger.error(f"❌ Error in lounge_status: {str(e)}", exc_info=True)
        return _response(500, {'error': 'Internal Server Error'})
