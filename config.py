"""Environment-driven settings for the reservation engine and its workers."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _read_number(name: str, default, cast, minimum):
    """Parse a numeric environment variable, rejecting garbage and out-of-range values."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """Tunables for holds, retries and the reclaim loop."""

    database_url: str
    hold_seconds: int = 120
    reclaim_interval_seconds: float = 10.0
    max_reservation_retries: int = 5
    retry_backoff_seconds: float = 0.1
    log_level: str = "INFO"
    port: int = 5000

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Build settings from the process environment (and a .env file if present)."""
        load_dotenv(env_file)

        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError("DATABASE_URL is not set")

        return cls(
            database_url=database_url,
            hold_seconds=_read_number("BOOKING_HOLD_SECONDS", 120, int, 1),
            reclaim_interval_seconds=_read_number("EXPIRY_POLL_INTERVAL_SECONDS", 10.0, float, 0.01),
            max_reservation_retries=_read_number("RESERVATION_MAX_RETRIES", 5, int, 1),
            retry_backoff_seconds=_read_number("RESERVATION_RETRY_BACKOFF_SECONDS", 0.1, float, 0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=_read_number("PORT", 5000, int, 1),
        )
