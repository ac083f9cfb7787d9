"""Shared fixtures for the test suite."""
from datetime import datetime, timezone

import pytest


def _build_calendar(*vevents: str) -> str:
    lines = ['BEGIN:VCALENDAR', 'VERSION:2.0', 'PRODID:-//Test//Calendar//EN']
    for body in vevents:
        lines.append('BEGIN:VEVENT')
        lines.extend(line.strip() for line in body.strip().splitlines())
        lines.append('END:VEVENT')
    lines.append('END:VCALENDAR')
    return '\r\n'.join(lines) + '\r\n'


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def now():
    """Fixed reference instant: Wednesday 2025-01-01 00:00 UTC."""
    return datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def build_calendar():
    """Wrap VEVENT bodies in a VCALENDAR document with CRLF line endings."""
    return _build_calendar
