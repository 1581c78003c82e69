"""ORM model definitions describing the show, seat and booking schema."""

from sqlalchemy import Column, String, Integer, DateTime, Enum, ForeignKey, Index, UniqueConstraint, Uuid
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import enum
import uuid

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SeatStatus(str, enum.Enum):
    """Enumerated seat lifecycle states persisted in the database."""
    AVAILABLE = 'AVAILABLE'
    HELD = 'HELD'
    BOOKED = 'BOOKED'


class BookingStatus(str, enum.Enum):
    """PENDING is the only non-terminal state."""
    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    FAILED = 'FAILED'


class Show(Base):
    __tablename__ = 'shows'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    total_seats = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    seats = relationship('Seat', back_populates='show', cascade='all, delete-orphan')
    bookings = relationship('Booking', back_populates='show')


class Seat(Base):
    __tablename__ = 'seats'

    id = Column(Integer, primary_key=True, autoincrement=True)
    show_id = Column(Uuid, ForeignKey('shows.id', ondelete='CASCADE'), nullable=False)
    seat_number = Column(String, nullable=False)

    status = Column(Enum(SeatStatus, name='seat_status_enum'),
                    default=SeatStatus.AVAILABLE, nullable=False)
    # Only meaningful while HELD
    locked_until = Column(DateTime(timezone=True))
    version = Column(Integer, default=0, nullable=False)

    show = relationship('Show', back_populates='seats')

    __table_args__ = (
        UniqueConstraint('show_id', 'seat_number', name='uq_seats_show_seat_number'),
        Index('idx_seats_status', 'status'),
        Index('idx_seats_locked_until', 'locked_until', postgresql_where=status == SeatStatus.HELD),
    )


class Booking(Base):
    __tablename__ = 'bookings'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    show_id = Column(Uuid, ForeignKey('shows.id', ondelete='CASCADE'), nullable=False)
    user_id = Column(String)
    status = Column(Enum(BookingStatus, name='booking_status_enum'),
                    default=BookingStatus.PENDING, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    show = relationship('Show', back_populates='bookings')
    booking_seats = relationship('BookingSeat', back_populates='booking', cascade='all, delete-orphan')

    __table_args__ = (
        Index('idx_bookings_show', 'show_id'),
        Index('idx_bookings_status', 'status'),
    )


class BookingSeat(Base):
    """Join row; the seat set of a booking is fixed when the booking is created."""
    __tablename__ = 'booking_seats'

    booking_id = Column(Uuid, ForeignKey('bookings.id', ondelete='CASCADE'), primary_key=True)
    seat_id = Column(Integer, ForeignKey('seats.id', ondelete='CASCADE'), primary_key=True)

    booking = relationship('Booking', back_populates='booking_seats')
    seat = relationship('Seat')

    __table_args__ = (
        Index('idx_booking_seats_seat', 'seat_id'),
    )
