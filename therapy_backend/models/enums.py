"""Closed enumerations shared by models, services and request schemas."""

import enum


def enum_values(enum_class: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_class]


class UserRole(str, enum.Enum):
    CUSTOMER = 'customer'
    THERAPIST = 'therapist'
    ADMIN = 'admin'


class UserStatus(str, enum.Enum):
    PENDING = 'pending'
    ACTIVE = 'active'
    INACTIVE = 'inactive'
    SUSPENDED = 'suspended'


class DayOfWeek(str, enum.Enum):
    MONDAY = 'monday'
    TUESDAY = 'tuesday'
    WEDNESDAY = 'wednesday'
    THURSDAY = 'thursday'
    FRIDAY = 'friday'
    SATURDAY = 'saturday'
    SUNDAY = 'sunday'

    @property
    def position(self) -> int:
        return list(DayOfWeek).index(self)


class SessionType(str, enum.Enum):
    VIDEO = 'video'
    AUDIO = 'audio'
    IN_PERSON = 'in-person'


class BookingStatus(str, enum.Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    CANCELLED = 'cancelled'
    COMPLETED = 'completed'

    @property
    def is_terminal(self) -> bool:
        return self not in NON_TERMINAL_STATUSES

    def can_transition_to(self, target: 'BookingStatus') -> bool:
        return target in BOOKING_TRANSITIONS[self]


NON_TERMINAL_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)

BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.CANCELLED: set(),
    BookingStatus.COMPLETED: set(),
}
