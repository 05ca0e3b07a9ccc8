"""Queries and owner operations on therapists' weekly availability slots."""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from therapy_backend.core.errors import InvalidInput, NotFound, Unauthorized
from therapy_backend.database import transaction_guard
from therapy_backend.models.availability import AvailabilitySlot
from therapy_backend.models.booking import Booking
from therapy_backend.models.enums import UserRole, UserStatus
from therapy_backend.models.user import User

logger = logging.getLogger(__name__)


def list_therapist_slots(db: Session, therapist_id: int, only_available: bool = False) -> list[AvailabilitySlot]:
    query = select(AvailabilitySlot).where(AvailabilitySlot.therapist_id == therapist_id)
    if only_available:
        query = query.where(AvailabilitySlot.is_available.is_(True))
    slots = db.execute(query).scalars().all()
    return sorted(slots, key=lambda slot: slot.sort_key)


def get_grouped_availability(db: Session, therapist_id: int) -> dict[str, list[AvailabilitySlot]]:
    with transaction_guard(db):
        user = db.get(User, therapist_id)
        if user is None:
            raise NotFound('User not found.')
        if not user.is_therapist:
            raise InvalidInput('This user is not a therapist.')

        slots = list_therapist_slots(db, therapist_id)

    return {
        'weekday': [slot for slot in slots if slot.is_weekday],
        'weekend': [slot for slot in slots if not slot.is_weekday],
    }


def remove_slot(db: Session, slot_id: int, actor: User) -> bool:
    """Delete a slot, or deactivate it when bookings still reference it.

    Returns True when the row was deleted, False when it was only deactivated.
    """
    with transaction_guard(db):
        slot = db.execute(
            select(AvailabilitySlot).where(AvailabilitySlot.id == slot_id).with_for_update()
        ).scalar_one_or_none()
        if slot is None:
            raise NotFound('Availability slot not found.')
        if slot.therapist_id != actor.id and actor.role != UserRole.ADMIN:
            raise Unauthorized('You can only delete your own availability slots.')

        referenced = db.execute(
            select(Booking.id).where(Booking.availability_id == slot.id).limit(1)
        ).first() is not None

        if referenced:
            slot.is_available = False
            db.commit()
            logger.info('Slot %s is referenced by bookings; deactivated instead of deleted', slot.id)
            return False

        db.delete(slot)
        db.commit()
        return True


def list_available_therapists(db: Session) -> list[tuple[User, list[AvailabilitySlot]]]:
    with transaction_guard(db):
        therapists = db.execute(
            select(User)
            .where(User.role == UserRole.THERAPIST, User.status == UserStatus.ACTIVE)
            .order_by(User.name.asc())
        ).scalars().all()

        result = []
        for therapist in therapists:
            slots = list_therapist_slots(db, therapist.id, only_available=True)
            if slots:
                result.append((therapist, slots))
        return result
