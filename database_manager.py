"""Database coordination layer: transactional scopes, locking primitives and seat state transitions."""

from sqlalchemy import create_engine, func, select, update, text, case, cast, Integer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional
import logging
import threading
import uuid

from models import Base, Show, Seat, Booking, BookingSeat, SeatStatus, BookingStatus, as_utc

logger = logging.getLogger(__name__)

SERIALIZABLE = "SERIALIZABLE"


def show_lock_key(show_id) -> str:
    """Name of the advisory lock that serializes reservations for one show."""
    return f"show:{show_id}"


class DatabaseManager:
    """Thread-safe façade over SQLAlchemy sessions and transactional flows."""

    def __init__(self, database_url: str):
        engine_kwargs = {"pool_pre_ping": True, "echo": False}
        if not database_url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=20,
                max_overflow=40,
                pool_recycle=3600,   # Recycle connections after 1 hour
            )
        self.engine = create_engine(database_url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        # Process-local stand-ins for advisory locks on stores that lack them:
        # key -> [lock, holders and waiters]; entries go away when the count drops to zero
        self._named_locks: Dict[str, list] = {}
        self._named_locks_guard = threading.Lock()

        # Create tables
        Base.metadata.create_all(self.engine)

    @property
    def is_postgres(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    @contextmanager
    def get_session(self, isolation_level: Optional[str] = None):
        """Provide a transactional scope, committing on success and rolling back otherwise.

        Locks taken through advisory_lock() are released once the transaction has ended,
        so nothing is held across a caller's backoff sleep.
        """
        session = self.session_factory()
        held_locks: List[str] = []
        session.info["named_locks"] = held_locks
        try:
            if isolation_level:
                session.connection(execution_options={"isolation_level": isolation_level})
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning(f"Database error: {e}")
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
            while held_locks:
                self._release_named_lock(held_locks.pop())

    def advisory_lock(self, session, key: str) -> None:
        """Take a transaction-scoped named lock; blocks until it is granted."""
        if self.is_postgres:
            session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": key},
            )
            return

        # Only valid for single-instance deployments (SQLite, local development)
        with self._named_locks_guard:
            entry = self._named_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        session.info["named_locks"].append(key)

    def _release_named_lock(self, key: str) -> None:
        with self._named_locks_guard:
            entry = self._named_locks[key]
            entry[0].release()
            entry[1] -= 1
            if entry[1] == 0:
                del self._named_locks[key]

    def now(self, session) -> datetime:
        """Wall-clock time on the store, read now rather than at transaction start.

        PostgreSQL now() is frozen at BEGIN, which precedes any advisory-lock wait.
        """
        if self.is_postgres:
            return session.execute(select(func.clock_timestamp())).scalar_one()
        return datetime.now(timezone.utc)

    def expire_booking(
        self,
        session,
        booking_id,
        now: datetime,
        keep_seat_ids: Iterable[int] = (),
    ) -> int:
        """Fail a PENDING booking and return its lapsed HELD seats to the pool.

        Seats are re-checked at write time (still HELD, lock at or before now), so a seat
        confirmed or re-held since the caller looked is left alone. Seats listed in
        keep_seat_ids are skipped because the caller is about to re-hold them.
        Returns the number of seats released.
        """
        session.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == BookingStatus.PENDING)
            .values(status=BookingStatus.FAILED, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        owned_seats = select(BookingSeat.seat_id).where(BookingSeat.booking_id == booking_id)
        conditions = [
            Seat.id.in_(owned_seats),
            Seat.status == SeatStatus.HELD,
            Seat.locked_until <= now,
        ]
        keep = list(keep_seat_ids)
        if keep:
            conditions.append(Seat.id.not_in(keep))

        released = session.execute(
            update(Seat)
            .where(*conditions)
            .values(
                status=SeatStatus.AVAILABLE,
                locked_until=None,
                version=Seat.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return released.rowcount

    def create_show(self, name: str, start_time: datetime, total_seats: int) -> Dict:
        """Insert a show along with seats labelled 1..total_seats, all available."""
        with self.get_session() as session:
            show = Show(name=name, start_time=start_time, total_seats=total_seats)
            session.add(show)
            session.flush()

            session.add_all([
                Seat(show_id=show.id, seat_number=str(number),
                     status=SeatStatus.AVAILABLE, version=0)
                for number in range(1, total_seats + 1)
            ])

            logger.info(f"Created show {show.id} with {total_seats} seats")
            return self._show_summary(show)

    def _seat_counts(self):
        return (
            func.count(case((Seat.status == SeatStatus.AVAILABLE, 1))).label("available_seats"),
            func.count(case((Seat.status == SeatStatus.HELD, 1))).label("held_seats"),
            func.count(case((Seat.status == SeatStatus.BOOKED, 1))).label("booked_seats"),
        )

    @staticmethod
    def _show_summary(show, counts=None) -> Dict:
        summary = {
            "id": str(show.id),
            "name": show.name,
            "start_time": as_utc(show.start_time).isoformat(),
            "total_seats": show.total_seats,
        }
        if counts is not None:
            summary.update(
                available_seats=counts.available_seats,
                held_seats=counts.held_seats,
                booked_seats=counts.booked_seats,
            )
        return summary

    def list_shows(self) -> List[Dict]:
        """Shows with seat counts. Read outside any reservation transaction, so possibly stale."""
        with self.get_session() as session:
            rows = session.execute(
                select(Show, *self._seat_counts())
                .outerjoin(Seat, Seat.show_id == Show.id)
                .group_by(Show.id)
                .order_by(Show.start_time)
            ).all()
            return [self._show_summary(row.Show, row) for row in rows]

    def get_show(self, show_id) -> Optional[Dict]:
        """Return one show with its counts and per-seat status, or None."""
        show_uuid = parse_uuid(show_id)
        if show_uuid is None:
            return None

        with self.get_session() as session:
            row = session.execute(
                select(Show, *self._seat_counts())
                .outerjoin(Seat, Seat.show_id == Show.id)
                .where(Show.id == show_uuid)
                .group_by(Show.id)
            ).first()
            if row is None:
                return None

            seats = session.execute(
                select(Seat.seat_number, Seat.status, Seat.locked_until)
                .where(Seat.show_id == show_uuid)
                .order_by(cast(Seat.seat_number, Integer))
            ).all()

            detail = self._show_summary(row.Show, row)
            detail["seats"] = []
            for seat in seats:
                entry = {"seat_number": seat.seat_number, "status": seat.status.value}
                if seat.status == SeatStatus.HELD and seat.locked_until:
                    entry["locked_until"] = as_utc(seat.locked_until).isoformat()
                detail["seats"].append(entry)
            return detail

    def get_booking(self, booking_id) -> Optional[Dict]:
        """Return a booking with the seats it claims, or None."""
        booking_uuid = parse_uuid(booking_id)
        if booking_uuid is None:
            return None

        with self.get_session() as session:
            booking = session.get(Booking, booking_uuid)
            if booking is None:
                return None

            seats = session.execute(
                select(Seat.id, Seat.seat_number)
                .join(BookingSeat, BookingSeat.seat_id == Seat.id)
                .where(BookingSeat.booking_id == booking_uuid)
                .order_by(cast(Seat.seat_number, Integer))
            ).all()

            return {
                "id": str(booking.id),
                "user_id": booking.user_id,
                "show_id": str(booking.show_id),
                "status": booking.status.value,
                "created_at": as_utc(booking.created_at).isoformat(),
                "updated_at": as_utc(booking.updated_at).isoformat(),
                "seats": [{"seat_id": s.id, "seat_number": s.seat_number} for s in seats],
            }

    def health_check(self) -> Dict:
        """Report database connectivity and show count; used by the /health endpoint."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
                show_count = session.execute(select(func.count(Show.id))).scalar_one()

                return {
                    "status": "healthy",
                    "database": "connected",
                    "shows": show_count
                }
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }


def parse_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None
