"""Booking model definitions."""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    Time,
    func,
    text,
)

from therapy_backend.database import Base
from therapy_backend.models.enums import BookingStatus, SessionType, enum_values

ACTIVE_BOOKING_PREDICATE = "status IN ('pending', 'confirmed')"


class Booking(Base):
    """A reservation of one availability slot on one calendar date."""
    __tablename__ = 'bookings'
    __table_args__ = (
        # The store decides which of two concurrent reservations wins.
        Index(
            'uq_bookings_active_slot',
            'availability_id',
            'booking_date',
            'start_time',
            unique=True,
            postgresql_where=text(ACTIVE_BOOKING_PREDICATE),
            sqlite_where=text(ACTIVE_BOOKING_PREDICATE),
        ),
        Index('idx_bookings_therapist_date', 'therapist_id', 'booking_date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    therapist_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    availability_id = Column(Integer, ForeignKey('availabilities.id'), nullable=False)
    booking_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(
        Enum(BookingStatus, native_enum=False, values_callable=enum_values, length=20),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    session_type = Column(
        Enum(SessionType, native_enum=False, values_callable=enum_values, length=20),
        nullable=False,
        default=SessionType.VIDEO,
    )
    notes = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    is_paid = Column(Boolean, nullable=False, default=False)
    payment_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
