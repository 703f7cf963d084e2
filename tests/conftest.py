"""
Shared pytest fixtures for the parking tests.

Provides:
- An in-memory MongoDB collection (mongomock) with the production indexes
- A controllable clock
- Store, change feed and booking engine wired together
- A TestClient for the FastAPI app
"""

from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from booking import BookingEngine
from change_feed import ChangeFeed
from config import Settings
from database import Database
from main import create_app
from schemas import ContactDetails
from store import SlotStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        # whole seconds: MongoDB keeps millisecond precision only
        self.now = start or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def mongo_client():
    return mongomock.MongoClient()


@pytest.fixture
def database(settings, mongo_client):
    db = Database(settings, client=mongo_client).connect()
    yield db
    db.close()


@pytest.fixture
def collection(database):
    return database.slots


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def feed():
    change_feed = ChangeFeed()
    yield change_feed
    change_feed.close()


@pytest.fixture
def store(collection, feed, clock):
    return SlotStore(collection, feed=feed, clock=clock)


@pytest.fixture
def engine(store, clock):
    return BookingEngine(store, clock=clock)


@pytest.fixture
def asha():
    return ContactDetails(name="Asha", phone_number="9999999999")


@pytest.fixture
def client(settings, mongo_client, clock):
    app = create_app(settings, client=mongo_client, clock=clock)
    with TestClient(app) as test_client:
        yield test_client
