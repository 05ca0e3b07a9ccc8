"""Booking store: lookups and status lifecycle for reservations.

New bookings are only created by ``services.reservations``.
"""

import logging
from datetime import date, time

from sqlalchemy import select
from sqlalchemy.orm import Session

from therapy_backend.core.errors import Conflict, NotFound, Unauthorized
from therapy_backend.database import transaction_guard
from therapy_backend.models.booking import Booking
from therapy_backend.models.enums import NON_TERMINAL_STATUSES, BookingStatus
from therapy_backend.models.user import User
from therapy_backend.services.validation import parse_calendar_date

logger = logging.getLogger(__name__)


def has_active_booking(db: Session, slot_id: int) -> bool:
    return db.execute(
        select(Booking.id)
        .where(Booking.availability_id == slot_id, Booking.status.in_(NON_TERMINAL_STATUSES))
        .limit(1)
    ).first() is not None


def find_conflicting_booking(
    db: Session,
    slot_id: int,
    booking_date: date,
    start_time: time,
    end_time: time,
) -> Booking | None:
    return db.execute(
        select(Booking).where(
            Booking.availability_id == slot_id,
            Booking.booking_date == booking_date,
            Booking.start_time == start_time,
            Booking.end_time == end_time,
            Booking.status.in_(NON_TERMINAL_STATUSES),
        )
    ).scalars().first()


def _ordered(query):
    return query.order_by(Booking.booking_date.desc(), Booking.start_time.asc())


def _is_participant(booking: Booking, actor: User) -> bool:
    return actor.is_admin or actor.id in (booking.customer_id, booking.therapist_id)


def _load_visible_booking(db: Session, booking_id: int, actor: User) -> Booking:
    booking = db.get(Booking, booking_id)
    # Outsiders get the same answer as for a missing booking.
    if booking is None or not _is_participant(booking, actor):
        raise NotFound('Booking not found.')
    return booking


def list_customer_bookings(db: Session, customer_id: int, actor: User) -> list[Booking]:
    if actor.id != customer_id and not actor.is_admin:
        raise Unauthorized('You are not allowed to view these bookings.')
    with transaction_guard(db):
        return list(db.execute(_ordered(select(Booking).where(Booking.customer_id == customer_id))).scalars())


def list_therapist_bookings(db: Session, therapist_id: int, actor: User) -> list[Booking]:
    if actor.id != therapist_id and not actor.is_admin:
        raise Unauthorized('You are not allowed to view these bookings.')
    with transaction_guard(db):
        return list(db.execute(_ordered(select(Booking).where(Booking.therapist_id == therapist_id))).scalars())


def get_booking(db: Session, booking_id: int, actor: User) -> Booking:
    with transaction_guard(db):
        return _load_visible_booking(db, booking_id, actor)


def _transition(booking: Booking, target: BookingStatus) -> None:
    if booking.status == target:
        return
    if not booking.status.can_transition_to(target):
        raise Conflict(f'Booking cannot move from {booking.status.value} to {target.value}.')
    booking.status = target


def update_booking(
    db: Session,
    booking_id: int,
    actor: User,
    status: BookingStatus | None = None,
    notes: str | None = None,
) -> Booking:
    with transaction_guard(db):
        booking = _load_visible_booking(db, booking_id, actor)
        if actor.id != booking.therapist_id and not actor.is_admin:
            raise Unauthorized('Only the therapist or an admin can update this booking.')

        if status is not None:
            _transition(booking, status)
        if notes:
            booking.notes = notes

        db.commit()
        logger.info('Booking %s updated by user %s (status=%s)', booking.id, actor.id, booking.status.value)
        return booking


def cancel_booking(db: Session, booking_id: int, actor: User) -> Booking:
    """Mark a booking cancelled; the row is kept for ratings and audit."""
    with transaction_guard(db):
        booking = _load_visible_booking(db, booking_id, actor)
        _transition(booking, BookingStatus.CANCELLED)
        db.commit()
        logger.info('Booking %s cancelled by user %s', booking.id, actor.id)
        return booking


def list_booked_start_times(db: Session, therapist_id: int, booking_date: str | date) -> list[time]:
    day = parse_calendar_date(booking_date)
    with transaction_guard(db):
        therapist = db.get(User, therapist_id)
        if therapist is None or not therapist.is_therapist:
            raise NotFound('Therapist not found.')

        rows = db.execute(
            select(Booking.start_time)
            .where(
                Booking.therapist_id == therapist_id,
                Booking.booking_date == day,
                Booking.status.in_(NON_TERMINAL_STATUSES),
            )
            .order_by(Booking.start_time.asc())
        ).all()
        return [row.start_time for row in rows]
