"""Seat reservation and confirmation: the hold/confirm protocol on top of DatabaseManager."""

from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional
import logging
import random
import time
import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError

from config import Settings
from database_manager import DatabaseManager, SERIALIZABLE, parse_uuid, show_lock_key
from models import Seat, Booking, BookingSeat, SeatStatus, BookingStatus, as_utc

logger = logging.getLogger(__name__)

# SQLSTATE codes for serialization_failure and deadlock_detected
TRANSIENT_SQLSTATES = {"40001", "40P01"}
TRANSIENT_MESSAGES = (
    "could not serialize access",
    "deadlock detected",
    "database is locked",
)


class BookingError(Exception):
    """Base exception for booking service errors"""
    pass


class ValidationError(BookingError):
    """Raised when a request is malformed; never retried"""
    pass


class SeatsUnavailableError(BookingError):
    """Raised inside a reservation attempt when the seats are taken; becomes a FAILED result"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class VersionConflictError(BookingError):
    """Raised when a guarded seat update matched no row"""
    pass


class ReservationUnavailableError(BookingError):
    """Raised when retries ran out before availability could be determined"""
    pass


class BookingNotFoundError(BookingError):
    """Raised when booking doesn't exist"""
    pass


class InvalidBookingStateError(BookingError):
    """Raised when a booking or its seats are not in a confirmable state"""
    pass


class BookingExpiredError(InvalidBookingStateError):
    """Raised when trying to confirm a booking whose hold has lapsed"""
    pass


def is_transient_conflict(exc: BaseException) -> bool:
    """True for failures that a fresh attempt may resolve: version conflicts, serialization
    failures and deadlocks."""
    if isinstance(exc, VersionConflictError):
        return True
    if not isinstance(exc, DBAPIError):
        return False

    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in TRANSIENT_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGES)


def normalize_seat_numbers(seat_numbers: Iterable) -> List[str]:
    """Turn the requested labels into a de-duplicated list, keeping first-seen order."""
    if seat_numbers is None or isinstance(seat_numbers, (str, bytes)):
        raise ValidationError("seat_numbers must be a non-empty list of seat labels")

    labels: List[str] = []
    for seat in seat_numbers:
        if isinstance(seat, bool) or not isinstance(seat, (str, int)):
            raise ValidationError(f"invalid seat label: {seat!r}")
        label = str(seat).strip()
        if not label:
            raise ValidationError("seat labels must not be empty")
        if label not in labels:
            labels.append(label)

    if not labels:
        raise ValidationError("seat_numbers must contain at least one seat")
    return labels


class BookingService:
    """Reserves seats for a show and confirms pending bookings."""

    def __init__(
        self,
        db: DatabaseManager,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.sleep = sleep

    def _now(self, session) -> datetime:
        if self.clock is not None:
            return self.clock()
        return as_utc(self.db.now(session))

    def reserve(self, show_id, seat_numbers: Iterable, user_id: Optional[str] = None) -> Dict:
        """
        Hold the requested seats and create a PENDING booking.

        Returns {"status": "PENDING", "booking_id", "expires_at", "seats"} on success or
        {"status": "FAILED", "reason"} when a seat is booked or held by someone else.
        Raises ValidationError for malformed input and ReservationUnavailableError when
        every attempt hit a concurrency conflict.
        """
        show_uuid = parse_uuid(show_id)
        if show_uuid is None:
            raise ValidationError(f"invalid show id: {show_id!r}")
        labels = normalize_seat_numbers(seat_numbers)

        max_attempts = self.settings.max_reservation_retries
        for attempt in range(1, max_attempts + 1):
            try:
                return self._attempt_reserve(show_uuid, labels, user_id)
            except SeatsUnavailableError as e:
                return {"status": BookingStatus.FAILED.value, "reason": e.reason}
            except Exception as e:
                if not is_transient_conflict(e):
                    raise
                logger.warning(
                    f"Reservation attempt {attempt}/{max_attempts} for show {show_uuid} "
                    f"hit a concurrency conflict, retrying: {e}"
                )
                # The transaction is already rolled back and its locks released here
                if attempt < max_attempts:
                    self._backoff(attempt)

        raise ReservationUnavailableError(
            f"Could not acquire seats for show {show_uuid} after {max_attempts} attempts"
        )

    def _backoff(self, attempt: int) -> None:
        base = self.settings.retry_backoff_seconds
        if base > 0:
            self.sleep(base * attempt + random.uniform(0, base))

    def _attempt_reserve(self, show_id: uuid.UUID, labels: List[str], user_id: Optional[str]) -> Dict:
        """One serializable attempt; any exception rolls the whole attempt back."""
        with self.db.get_session(isolation_level=SERIALIZABLE) as session:
            # Step 1: Serialize reservations for this show
            self.db.advisory_lock(session, show_lock_key(show_id))

            # Step 2: Lock the target seats, skipping rows another transaction holds
            rows = session.execute(
                select(Seat.id, Seat.seat_number, Seat.status, Seat.version, Seat.locked_until)
                .where(Seat.show_id == show_id, Seat.seat_number.in_(labels))
                .with_for_update(skip_locked=True)
            ).all()

            if len(rows) != len(labels):
                raise SeatsUnavailableError("Some seats are not available (already locked or booked).")

            # Step 3: Check each seat against the snapshot time
            now = self._now(session)
            lapsed_ids = []
            for row in rows:
                if row.status == SeatStatus.BOOKED:
                    raise SeatsUnavailableError("Seat already booked")
                if row.status == SeatStatus.HELD:
                    if row.locked_until is not None and as_utc(row.locked_until) > now:
                        raise SeatsUnavailableError("Seat is held by another pending booking")
                    lapsed_ids.append(row.id)

            seat_ids = [row.id for row in rows]
            if lapsed_ids:
                self._take_over_lapsed_holds(session, lapsed_ids, seat_ids, now)

            # Step 4: Create the booking
            booking = Booking(
                id=uuid.uuid4(),
                show_id=show_id,
                user_id=user_id,
                status=BookingStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            session.add(booking)

            # Step 5 & 6: Hold every seat, guarded by the version read above
            expires_at = now + timedelta(seconds=self.settings.hold_seconds)
            for row in rows:
                result = session.execute(
                    update(Seat)
                    .where(Seat.id == row.id, Seat.version == row.version)
                    .values(
                        status=SeatStatus.HELD,
                        locked_until=expires_at,
                        version=Seat.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise VersionConflictError(
                        f"Seat {row.seat_number} changed since version {row.version}"
                    )

            # Step 7: Record which seats this booking claims
            session.add_all([BookingSeat(booking_id=booking.id, seat_id=seat_id) for seat_id in seat_ids])

            logger.info(f"Booking {booking.id} holds seats {labels} of show {show_id} until {expires_at.isoformat()}")

            return {
                "status": BookingStatus.PENDING.value,
                "booking_id": str(booking.id),
                "expires_at": expires_at.isoformat(),
                "seats": labels,
            }

    def _take_over_lapsed_holds(self, session, lapsed_ids: List[int], seat_ids: List[int], now: datetime) -> None:
        """Fail the PENDING bookings still claiming seats whose hold lapsed before the reclaimer ran."""
        previous_holders = session.execute(
            select(BookingSeat.booking_id)
            .join(Booking, Booking.id == BookingSeat.booking_id)
            .where(BookingSeat.seat_id.in_(lapsed_ids), Booking.status == BookingStatus.PENDING)
            .distinct()
        ).scalars().all()

        for booking_id in previous_holders:
            self.db.expire_booking(session, booking_id, now, keep_seat_ids=seat_ids)
            logger.info(f"Booking {booking_id} failed: its lapsed hold was taken over")

    def confirm(self, booking_id) -> Dict:
        """
        Turn a PENDING booking into a CONFIRMED one and its seats into BOOKED.

        Raises BookingNotFoundError, InvalidBookingStateError or BookingExpiredError.
        Not retried: a serialization failure here propagates to the caller.
        """
        booking_uuid = parse_uuid(booking_id)
        if booking_uuid is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")

        with self.db.get_session(isolation_level=SERIALIZABLE) as session:
            # Step 1: Lock the booking row
            booking = session.execute(
                select(Booking).where(Booking.id == booking_uuid).with_for_update()
            ).scalar_one_or_none()

            if booking is None:
                raise BookingNotFoundError(f"Booking {booking_id} not found")
            if booking.status == BookingStatus.FAILED:
                raise BookingExpiredError(f"Booking {booking_id} has expired")
            if booking.status != BookingStatus.PENDING:
                raise InvalidBookingStateError(f"Booking is already {booking.status.value}")

            # Step 2: Verify every seat is still held and the hold has not lapsed
            seats = session.execute(
                select(Seat.id, Seat.status, Seat.locked_until)
                .join(BookingSeat, BookingSeat.seat_id == Seat.id)
                .where(BookingSeat.booking_id == booking_uuid)
            ).all()

            now = self._now(session)
            for seat in seats:
                if seat.status != SeatStatus.HELD:
                    raise InvalidBookingStateError("Seat is no longer held")
                if seat.locked_until is None or as_utc(seat.locked_until) <= now:
                    raise BookingExpiredError(f"Booking {booking_id} has expired")

            # Step 3: Make it permanent
            booking.status = BookingStatus.CONFIRMED
            booking.updated_at = now
            session.execute(
                update(Seat)
                .where(Seat.id.in_([seat.id for seat in seats]))
                .values(status=SeatStatus.BOOKED, locked_until=None, version=Seat.version + 1)
                .execution_options(synchronize_session=False)
            )

        logger.info(f"Booking {booking_uuid} confirmed ({len(seats)} seats)")
        return {"booking_id": str(booking_uuid), "status": BookingStatus.CONFIRMED.value}

    def get_booking(self, booking_id) -> Optional[Dict]:
        """Booking with its seats, or None."""
        return self.db.get_booking(booking_id)
