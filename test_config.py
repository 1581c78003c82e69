import pytest

from config import Settings

ENV_VARS = (
    "DATABASE_URL",
    "BOOKING_HOLD_SECONDS",
    "EXPIRY_POLL_INTERVAL_SECONDS",
    "RESERVATION_MAX_RETRIES",
    "RESERVATION_RETRY_BACKOFF_SECONDS",
    "LOG_LEVEL",
    "PORT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///seats.db")

    settings = Settings.from_env()

    assert settings.hold_seconds == 120
    assert settings.reclaim_interval_seconds == 10.0
    assert settings.max_reservation_retries == 5
    assert settings.retry_backoff_seconds == 0.1
    assert settings.log_level == "INFO"
    assert settings.port == 5000


def test_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg2://app@db/tickets")
    monkeypatch.setenv("BOOKING_HOLD_SECONDS", "300")
    monkeypatch.setenv("EXPIRY_POLL_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("RESERVATION_MAX_RETRIES", "3")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.hold_seconds == 300
    assert settings.reclaim_interval_seconds == 2.5
    assert settings.max_reservation_retries == 3
    assert settings.log_level == "DEBUG"


def test_missing_database_url():
    with pytest.raises(ValueError, match="DATABASE_URL"):
        Settings.from_env()


@pytest.mark.parametrize("name, value", [
    ("BOOKING_HOLD_SECONDS", "two minutes"),
    ("BOOKING_HOLD_SECONDS", "0"),
    ("RESERVATION_MAX_RETRIES", "-1"),
])
def test_invalid_numbers(monkeypatch, name, value):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///seats.db")
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=name):
        Settings.from_env()
