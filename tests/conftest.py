"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("ENVIRONMENT", "testing")

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from terravoyage.collaboration.conflicts import ConflictResolver
from terravoyage.collaboration.events import CollaborationEvent, EventType
from terravoyage.collaboration.hub import CollaborationHub
from terravoyage.main import create_app


# Fixed reference instant for timestamp arithmetic in tests
T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _make_event(
    user_id: str,
    offset_ms: int = 0,
    activity_id: str = "act-1",
    changes=None,
    trip_id: str = "trip-1",
    event_type: EventType = EventType.ACTIVITY_UPDATED,
    base: datetime = T0,
) -> CollaborationEvent:
    """Build an edit event ``offset_ms`` after ``base``."""
    data = {"changes": changes if changes is not None else {"name": f"{user_id} edit"}}
    if activity_id:
        data["activityId"] = activity_id
    return CollaborationEvent(
        type=event_type,
        trip_id=trip_id,
        user_id=user_id,
        user_name=user_id.capitalize(),
        timestamp=base + timedelta(milliseconds=offset_ms),
        data=data,
    )


@pytest.fixture
def make_event():
    """Factory for edit events offset from a fixed instant."""
    return _make_event


@pytest.fixture
def t0():
    """Reference instant used by make_event."""
    return T0


@pytest.fixture
def resolver():
    """Create a fresh ConflictResolver for testing."""
    return ConflictResolver()


@pytest.fixture
def hub():
    """Create a CollaborationHub with open access."""
    return CollaborationHub()


@pytest.fixture
def test_app():
    """Create a fresh FastAPI application."""
    return create_app()


@pytest.fixture
def client(test_app):
    """Create test client for synchronous tests."""
    with TestClient(test_app) as test_client:
        yield test_client
