"""Shared fixtures for the feed sync tests."""
import os
from datetime import datetime, timezone

import boto3
import pytest
from moto import mock_aws

from storage.dynamodb_manager import DynamoDBManager

EVENTS_TABLE = 'test-calendar-events'
METADATA_TABLE = 'test-external-calendar-sync'
FEED_URL = 'https://calendar.example.com/team.ics'
CALENDAR_ID = 'cal-123'
NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_ics(*vevents: str, extra_headers: str = '') -> str:
    """Wrap VEVENT blocks into a VCALENDAR document."""
    lines = [
        'BEGIN:VCALENDAR',
        'VERSION:2.0',
        'PRODID:-//Example Corp//Schedule//EN',
    ]
    if extra_headers:
        lines.append(extra_headers)
    for vevent in vevents:
        lines.append(vevent.strip())
    lines.append('END:VCALENDAR')
    return '\r\n'.join(lines) + '\r\n'


def make_vevent(uid: str = None, summary: str = None, dtstart: str = '20250315T090000Z',
                dtend: str = '20250315T100000Z', description: str = None,
                extra: str = '') -> str:
    """Build a VEVENT block; omitted properties are left out entirely."""
    lines = ['BEGIN:VEVENT']
    if uid:
        lines.append(f'UID:{uid}')
    lines.append('DTSTAMP:20250301T000000Z')
    if summary:
        lines.append(f'SUMMARY:{summary}')
    if description:
        lines.append(f'DESCRIPTION:{description}')
    if dtstart:
        lines.append(f'DTSTART{dtstart}' if dtstart.startswith((';', ':')) else f'DTSTART:{dtstart}')
    if dtend:
        lines.append(f'DTEND{dtend}' if dtend.startswith((';', ':')) else f'DTEND:{dtend}')
    if extra:
        lines.append(extra)
    lines.append('END:VEVENT')
    return '\r\n'.join(lines)


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def dynamodb_tables():
    """Create mock events and sync metadata tables."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')

        events_table = dynamodb.create_table(
            TableName=EVENTS_TABLE,
            KeySchema=[
                {'AttributeName': 'feed_key', 'KeyType': 'HASH'},
                {'AttributeName': 'event_id', 'KeyType': 'RANGE'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'feed_key', 'AttributeType': 'S'},
                {'AttributeName': 'event_id', 'AttributeType': 'S'},
                {'AttributeName': 'calendar_id', 'AttributeType': 'S'}
            ],
            GlobalSecondaryIndexes=[
                {
                    'IndexName': 'calendar-index',
                    'KeySchema': [
                        {'AttributeName': 'calendar_id', 'KeyType': 'HASH'}
                    ],
                    'Projection': {'ProjectionType': 'ALL'}
                }
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        metadata_table = dynamodb.create_table(
            TableName=METADATA_TABLE,
            KeySchema=[
                {'AttributeName': 'calendar_id', 'KeyType': 'HASH'},
                {'AttributeName': 'feed_url', 'KeyType': 'RANGE'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'calendar_id', 'AttributeType': 'S'},
                {'AttributeName': 'feed_url', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        yield events_table, metadata_table


@pytest.fixture
def dynamodb_manager(dynamodb_tables):
    """Create DynamoDBManager instance backed by the mock tables."""
    return DynamoDBManager(EVENTS_TABLE, METADATA_TABLE, region_name='us-east-1')


@pytest.fixture
def sample_ics():
    """Feed with two real events, a placeholder and an all-day event."""
    return make_ics(
        make_vevent(uid='evt-a', summary='Morning Shift', description='Ward 4'),
        make_vevent(uid='evt-b', summary='Evening Shift',
                    dtstart='20250315T170000Z', dtend='20250315T230000Z'),
        make_vevent(uid='evt-unavailable', summary='Unavailable'),
        make_vevent(uid='evt-holiday', summary='Holiday',
                    dtstart=';VALUE=DATE:20250320', dtend=';VALUE=DATE:20250321'),
    )
