"""Background reclaimer that fails lapsed PENDING bookings and frees their seats."""

from datetime import datetime
from typing import Callable, Optional
import logging
import threading

from sqlalchemy import select

from config import Settings
from database_manager import DatabaseManager
from models import Seat, Booking, BookingSeat, BookingStatus, as_utc

logger = logging.getLogger(__name__)


class ExpiryReclaimer:
    """Periodically expires lapsed holds; coordinates with request handlers only through the database."""

    def __init__(
        self,
        db: DatabaseManager,
        interval_seconds: float = 10.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        """Expire every lapsed PENDING booking in a single transaction; returns how many were failed.

        Errors propagate and roll back the whole tick, so the same candidates come back next time.
        """
        with self.db.get_session() as session:
            now = self.clock() if self.clock is not None else as_utc(self.db.now(session))

            # Step 1: PENDING bookings with at least one lapsed seat lock
            expired_ids = session.execute(
                select(Booking.id)
                .join(BookingSeat, BookingSeat.booking_id == Booking.id)
                .join(Seat, Seat.id == BookingSeat.seat_id)
                .where(
                    Booking.status == BookingStatus.PENDING,
                    Seat.locked_until.is_not(None),
                    Seat.locked_until <= now,
                )
                .group_by(Booking.id)
            ).scalars().all()

            if not expired_ids:
                return 0

            # Step 2: Fail each booking and release its still-lapsed seats
            released = 0
            for booking_id in expired_ids:
                released += self.db.expire_booking(session, booking_id, now)

        logger.info(f"Expired {len(expired_ids)} bookings, released {released} seats")
        return len(expired_ids)

    def tick(self) -> int:
        """run_once() for the loop: failures are logged and the next tick retries."""
        try:
            return self.run_once()
        except Exception:
            logger.exception("Expiry reclaim tick failed")
            return 0

    def run_forever(self) -> None:
        """Tick on a fixed interval until stop() is called."""
        logger.info(f"Expiry reclaimer started (interval: {self.interval_seconds}s)")
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(self.interval_seconds)
        logger.info("Expiry reclaimer stopped")

    def start(self) -> None:
        """Run the loop in a daemon thread so it never blocks request handling."""
        if self.running:
            logger.warning("Expiry reclaimer already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="expiry-reclaimer", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Signal the loop to exit and wait for the current tick to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    reclaimer = ExpiryReclaimer(DatabaseManager(settings.database_url), settings.reclaim_interval_seconds)
    try:
        reclaimer.run_forever()
    except KeyboardInterrupt:
        logger.info("Expiry reclaimer interrupted")
    finally:
        reclaimer.db.engine.dispose()


if __name__ == "__main__":
    main()
