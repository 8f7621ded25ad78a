import sys
import os

import boto3
import pytest
from moto import mock_aws

# Backend directory
backend_dir = os.path.dirname(os.path.abspath(__file__))

# Lambda packages and the shared package must be importable without installing
for path in (os.path.join(backend_dir, 'lambdas'), backend_dir):
    if path not in sys.path:
        sys.path.insert(0, path)

TABLE_KEYS = {
    'lounge_status': 'id',
    'devices': 'device_id',
    'occupancy_history': 'record_id',
    'daily_analytics': 'aggregate_id',
}


@pytest.fixture(scope='function', autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so no test can reach a real account"""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def dynamo_tables():
    """The four Availo tables inside a moto-mocked account, keyed by name"""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
        tables = {}
        for name, key in TABLE_KEYS.items():
            tables[name] = dynamodb.create_table(
                TableName=name,
                KeySchema=[{'AttributeName': key, 'KeyType': 'HASH'}],
                AttributeDefinitions=[{'AttributeName': key, 'AttributeType': 'S'}],
                BillingMode='PAY_PER_REQUEST',
            )
        yield tables
