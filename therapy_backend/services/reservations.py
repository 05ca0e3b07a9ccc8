import logging
from datetime import date, time
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from therapy_backend.core import config
from therapy_backend.core.errors import Conflict, InvalidInput, NotFound, Unauthorized
from therapy_backend.database import transaction_guard
from therapy_backend.models.availability import AvailabilitySlot
from therapy_backend.models.booking import Booking
from therapy_backend.models.enums import BookingStatus, DayOfWeek, SessionType
from therapy_backend.models.user import User
from therapy_backend.services.bookings import find_conflicting_booking
from therapy_backend.services.validation import parse_calendar_date, parse_time_range

logger = logging.getLogger(__name__)

SLOT_TAKEN_MESSAGE = 'This time is no longer available.'


def resolve_session_price(therapist: User) -> Decimal:
    if therapist.session_fee is not None:
        return Decimal(therapist.session_fee)
    return config.DEFAULT_SESSION_FEE


def _check_within_slot(slot: AvailabilitySlot, booking_date: date, start_time: time, end_time: time) -> None:
    if list(DayOfWeek)[booking_date.weekday()] != slot.day_of_week:
        raise InvalidInput(f'{booking_date.isoformat()} is not a {slot.day_of_week.value}.')
    if start_time < slot.start_time or end_time > slot.end_time:
        raise InvalidInput('Requested time is outside the availability window.')


def reserve_slot(
    db: Session,
    customer_id: int,
    therapist_id: int,
    availability_id: int,
    booking_date: str | date,
    start_time: str | time,
    end_time: str | time,
    session_type: SessionType = SessionType.VIDEO,
    notes: str | None = None,
) -> Booking:
    """Create a pending booking, or fail with NotFound, Unauthorized, Conflict or InvalidInput.

    The partial unique index on active bookings is the final arbiter: when two
    requests pass the pre-checks together, the loser's insert is rejected by the
    store and reported as Conflict.
    """
    day = parse_calendar_date(booking_date, 'booking date')
    start, end = parse_time_range(start_time, end_time)

    with transaction_guard(db):
        therapist = db.get(User, therapist_id)
        if therapist is None or not therapist.is_therapist:
            raise NotFound('Therapist not found.')

        # Shared lock: waits for a reconciliation holding the slot row.
        slot = db.execute(
            select(AvailabilitySlot).where(AvailabilitySlot.id == availability_id).with_for_update(read=True)
        ).scalar_one_or_none()
        if slot is None:
            raise NotFound('Availability slot not found.')
        if slot.therapist_id != therapist.id:
            raise Unauthorized('This availability does not belong to the therapist.')
        if not slot.is_available:
            raise Conflict('This time slot is no longer offered.')

        _check_within_slot(slot, day, start, end)

        if find_conflicting_booking(db, slot.id, day, start, end) is not None:
            raise Conflict(SLOT_TAKEN_MESSAGE)

        booking = Booking(
            customer_id=customer_id,
            therapist_id=therapist.id,
            availability_id=slot.id,
            booking_date=day,
            start_time=start,
            end_time=end,
            status=BookingStatus.PENDING,
            session_type=session_type,
            notes=notes or '',
            price=resolve_session_price(therapist),
        )
        db.add(booking)
        try:
            db.flush()
            # On SQLite the insert now holds the database write lock: a deactivation
            # committed since the check above is visible here and none can follow it.
            still_offered = db.execute(
                select(AvailabilitySlot.is_available).where(AvailabilitySlot.id == slot.id)
            ).scalar_one()
            if not still_offered:
                db.rollback()
                raise Conflict('This time slot is no longer offered.')
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            logger.info(
                'Reservation race lost for slot %s on %s at %s',
                slot.id,
                day.isoformat(),
                start.isoformat(),
            )
            raise Conflict(SLOT_TAKEN_MESSAGE) from exc

        logger.info('Booking %s created for slot %s by customer %s', booking.id, slot.id, customer_id)
        return booking
