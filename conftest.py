import threading
from datetime import datetime, timedelta, timezone

import pytest

from booking_service import BookingService
from config import Settings
from database_manager import DatabaseManager
from expiry_worker import ExpiryReclaimer


class FakeClock:
    """Controllable UTC clock shared by the engines under test."""

    def __init__(self, start=None):
        self._now = start or datetime(2026, 1, 1, 19, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self._now

    def advance(self, seconds):
        with self._lock:
            self._now += timedelta(seconds=seconds)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'seats.db'}",
        hold_seconds=120,
        reclaim_interval_seconds=0.05,
        max_reservation_retries=5,
        retry_backoff_seconds=0,
    )


@pytest.fixture
def db(settings):
    manager = DatabaseManager(settings.database_url)
    yield manager
    manager.engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(db, settings, clock):
    return BookingService(db, settings, clock=clock)


@pytest.fixture
def reclaimer(db, settings, clock):
    return ExpiryReclaimer(db, settings.reclaim_interval_seconds, clock=clock)


@pytest.fixture
def show(db):
    """A show with seats "1", "2" and "3"."""
    return db.create_show("Evening Show", datetime(2026, 1, 2, 20, 0, tzinfo=timezone.utc), 3)
