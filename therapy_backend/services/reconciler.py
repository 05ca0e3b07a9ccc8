"""Reconcile a therapist's submitted weekly schedule with the stored slots.

Slots are matched on (day of week, start time). Matching slots are updated when
their end time, weekday flag or availability differ, unmatched entries are
inserted, and stored slots missing from the submission are deactivated unless
a pending or confirmed booking still holds them. Those are left active and
reported back as warnings.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import time
from threading import Lock
from weakref import WeakValueDictionary

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from therapy_backend.core.errors import Conflict, InvalidInput, Unauthorized
from therapy_backend.database import transaction_guard
from therapy_backend.models.availability import AvailabilitySlot
from therapy_backend.models.booking import Booking
from therapy_backend.models.enums import NON_TERMINAL_STATUSES, DayOfWeek
from therapy_backend.models.user import User
from therapy_backend.services.bookings import has_active_booking
from therapy_backend.services.slots import list_therapist_slots
from therapy_backend.services.validation import parse_time_range

logger = logging.getLogger(__name__)

_locks_guard = Lock()
# Entries disappear once no reconciliation holds or waits on the lock.
_therapist_locks: WeakValueDictionary = WeakValueDictionary()


def _therapist_lock(therapist_id: int) -> Lock:
    with _locks_guard:
        lock = _therapist_locks.get(therapist_id)
        if lock is None:
            lock = Lock()
            _therapist_locks[therapist_id] = lock
        return lock


@dataclass(frozen=True)
class DesiredSlot:
    day_of_week: DayOfWeek
    is_weekday: bool
    start_time: time
    end_time: time
    is_available: bool = True

    @property
    def slot_key(self) -> tuple[DayOfWeek, time]:
        return self.day_of_week, self.start_time


@dataclass
class ReconcileResult:
    slots: list[AvailabilitySlot]
    warnings: list[str] = field(default_factory=list)
    inserted: int = 0
    updated: int = 0
    deactivated: int = 0


def _read(entry, name: str, default=None):
    if isinstance(entry, Mapping):
        return entry.get(name, default)
    return getattr(entry, name, default)


def parse_desired_schedule(entries: Iterable) -> list[DesiredSlot]:
    """Validate every entry up front so a bad one rejects the whole submission."""
    desired: list[DesiredSlot] = []
    seen: set[tuple[DayOfWeek, time]] = set()

    for entry in entries:
        try:
            day = DayOfWeek(_read(entry, 'day_of_week'))
        except ValueError as exc:
            raise InvalidInput(f'Invalid day of week: {_read(entry, "day_of_week")!r}.') from exc

        start_time, end_time = parse_time_range(_read(entry, 'start_time'), _read(entry, 'end_time'))
        is_available = _read(entry, 'is_available')
        is_weekday = _read(entry, 'is_weekday')

        slot = DesiredSlot(
            day_of_week=day,
            is_weekday=True if is_weekday is None else bool(is_weekday),
            start_time=start_time,
            end_time=end_time,
            is_available=True if is_available is None else bool(is_available),
        )
        if slot.slot_key in seen:
            raise Conflict(f'Duplicate slot definition for {day.value} at {start_time.isoformat()}.')
        seen.add(slot.slot_key)
        desired.append(slot)

    return desired


def _differs(slot: AvailabilitySlot, entry: DesiredSlot) -> bool:
    return (
        slot.end_time != entry.end_time
        or slot.is_available != entry.is_available
        or slot.is_weekday != entry.is_weekday
    )


def _describe(slot: AvailabilitySlot) -> str:
    return f'{slot.day_of_week.value} {slot.start_time.isoformat()}'


def _deactivate_unless_booked(db: Session, slot: AvailabilitySlot) -> bool:
    """Deactivate the slot only if no pending or confirmed booking holds it at write time."""
    outcome = db.execute(
        update(AvailabilitySlot)
        .where(
            AvailabilitySlot.id == slot.id,
            ~exists().where(
                Booking.availability_id == slot.id,
                Booking.status.in_(NON_TERMINAL_STATUSES),
            ),
        )
        .values(is_available=False)
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount == 0:
        return False
    set_committed_value(slot, 'is_available', False)
    return True


def reconcile_availability(db: Session, therapist_id: int, entries: Iterable) -> ReconcileResult:
    desired = parse_desired_schedule(entries)

    # Serialises reconciliations in this process; the row locks below cover other processes.
    with _therapist_lock(therapist_id), transaction_guard(db):
        therapist = db.execute(
            select(User).where(User.id == therapist_id).with_for_update()
        ).scalar_one_or_none()
        if therapist is None or not therapist.is_therapist:
            raise Unauthorized('Unauthorized action or therapist not found.')

        stored = db.execute(
            select(AvailabilitySlot).where(AvailabilitySlot.therapist_id == therapist_id).with_for_update()
        ).scalars().all()
        stored_by_key = {slot.slot_key: slot for slot in stored}

        result = ReconcileResult(slots=[])
        to_update: list[tuple[AvailabilitySlot, DesiredSlot]] = []
        to_insert: list[DesiredSlot] = []
        to_deactivate: list[AvailabilitySlot] = []

        def keep_for_booking(slot: AvailabilitySlot) -> None:
            message = f'Slot {_describe(slot)} has an active booking and was left available.'
            result.warnings.append(message)
            logger.warning('Therapist %s: %s', therapist_id, message)

        for entry in desired:
            existing = stored_by_key.get(entry.slot_key)
            if existing is None:
                to_insert.append(entry)
            elif _differs(existing, entry):
                to_update.append((existing, entry))

        desired_keys = {entry.slot_key for entry in desired}
        for slot in stored:
            if slot.slot_key in desired_keys or not slot.is_available:
                continue
            if has_active_booking(db, slot.id):
                keep_for_booking(slot)
            else:
                to_deactivate.append(slot)

        for slot, entry in to_update:
            slot.end_time = entry.end_time
            slot.is_weekday = entry.is_weekday
            if slot.is_available and not entry.is_available:
                if has_active_booking(db, slot.id) or not _deactivate_unless_booked(db, slot):
                    keep_for_booking(slot)
            else:
                slot.is_available = entry.is_available

        # A booking committed after the check above makes the conditional update a no-op.
        for slot in to_deactivate:
            if _deactivate_unless_booked(db, slot):
                result.deactivated += 1
            else:
                keep_for_booking(slot)

        for entry in to_insert:
            db.add(
                AvailabilitySlot(
                    therapist_id=therapist_id,
                    day_of_week=entry.day_of_week,
                    is_weekday=entry.is_weekday,
                    start_time=entry.start_time,
                    end_time=entry.end_time,
                    is_available=entry.is_available,
                )
            )

        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise Conflict('A slot with the same day and start time was added concurrently.') from exc

        result.inserted = len(to_insert)
        result.updated = len(to_update)
        logger.info(
            'Therapist %s availability reconciled: %s updated, %s inserted, %s deactivated, %s kept for bookings',
            therapist_id,
            result.updated,
            result.inserted,
            result.deactivated,
            len(result.warnings),
        )

        result.slots = list_therapist_slots(db, therapist_id)
        return result
