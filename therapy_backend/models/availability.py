"""Availability model definitions."""

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Integer, Time, UniqueConstraint, func

from therapy_backend.database import Base
from therapy_backend.models.enums import DayOfWeek, enum_values


class AvailabilitySlot(Base):
    """A recurring weekly window a therapist offers for bookings.

    Rows are deactivated rather than deleted while bookings reference them.
    """
    __tablename__ = 'availabilities'
    __table_args__ = (
        UniqueConstraint('therapist_id', 'day_of_week', 'start_time', name='uq_availabilities_therapist_day_start'),
    )

    id = Column(Integer, primary_key=True, index=True)
    therapist_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    day_of_week = Column(
        Enum(DayOfWeek, native_enum=False, values_callable=enum_values, length=10),
        nullable=False,
    )
    is_weekday = Column(Boolean, nullable=False, default=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def slot_key(self) -> tuple[DayOfWeek, object]:
        return self.day_of_week, self.start_time

    @property
    def sort_key(self) -> tuple[int, object]:
        return self.day_of_week.position, self.start_time
