"""Therapist records as seen by this service.

Writes here are the source of search-index change events: the outbox listener
records them in the same transaction.
"""

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from therapy_backend.core.errors import Conflict, InvalidInput, NotFound
from therapy_backend.database import transaction_guard
from therapy_backend.models.enums import UserRole, UserStatus
from therapy_backend.models.user import User
from therapy_backend.search import outbox  # noqa: F401 - registers the change listener

logger = logging.getLogger(__name__)


def get_therapist(db: Session, therapist_id: int) -> User:
    therapist = db.get(User, therapist_id)
    if therapist is None or not therapist.is_therapist:
        raise NotFound('Therapist not found.')
    return therapist


def register_therapist(
    db: Session,
    email: str,
    name: str,
    session_fee: Decimal | None = None,
    status: UserStatus = UserStatus.PENDING,
    hashed_password: str = '',
) -> User:
    normalized_email = email.strip().lower()
    if not normalized_email or not name.strip():
        raise InvalidInput('Email and name are required.')

    with transaction_guard(db):
        if db.execute(select(User.id).where(User.email == normalized_email)).first() is not None:
            raise Conflict('A user with this email already exists.')

        therapist = User(
            email=normalized_email,
            name=name.strip(),
            hashed_password=hashed_password,
            role=UserRole.THERAPIST,
            status=status,
            session_fee=session_fee,
        )
        db.add(therapist)
        db.commit()
        logger.info('Therapist %s registered with status %s', therapist.id, therapist.status.value)
        return therapist


def update_therapist_profile(
    db: Session,
    therapist_id: int,
    name: str | None = None,
    session_fee: Decimal | None = None,
) -> User:
    with transaction_guard(db):
        therapist = get_therapist(db, therapist_id)
        if name is not None:
            if not name.strip():
                raise InvalidInput('Name cannot be empty.')
            therapist.name = name.strip()
        if session_fee is not None:
            if session_fee < 0:
                raise InvalidInput('Session fee cannot be negative.')
            therapist.session_fee = session_fee
        db.commit()
        return therapist


def set_therapist_status(db: Session, therapist_id: int, status: UserStatus) -> User:
    """Admin approval flow: pending -> active, active -> inactive/suspended, and back."""
    with transaction_guard(db):
        therapist = get_therapist(db, therapist_id)
        previous = therapist.status
        therapist.status = status
        db.commit()
        logger.info('Therapist %s status %s -> %s', therapist.id, previous.value, status.value)
        return therapist


def list_pending_therapists(db: Session) -> list[User]:
    with transaction_guard(db):
        return list(
            db.execute(
                select(User)
                .where(User.role == UserRole.THERAPIST, User.status == UserStatus.PENDING)
                .order_by(User.created_at.asc(), User.id.asc())
            ).scalars()
        )


def list_active_therapists(db: Session) -> list[User]:
    with transaction_guard(db):
        return list(
            db.execute(
                select(User)
                .where(User.role == UserRole.THERAPIST, User.status == UserStatus.ACTIVE)
                .order_by(User.id.asc())
            ).scalars()
        )


def get_session_fee(db: Session, therapist_id: int) -> Decimal | None:
    with transaction_guard(db):
        therapist = db.get(User, therapist_id)
        if therapist is None or not therapist.is_therapist or therapist.status != UserStatus.ACTIVE:
            raise NotFound('No active therapist with this id.')
        return therapist.session_fee
