from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from therapy_backend.auth.dependencies import require_roles
from therapy_backend.database import get_db
from therapy_backend.models.enums import UserRole, UserStatus
from therapy_backend.models.user import User
from therapy_backend.routes.http_errors import domain_errors
from therapy_backend.search.outbox import OutboxWorker
from therapy_backend.search.projector import SearchIndexProjector
from therapy_backend.services import therapists as therapist_service

router = APIRouter(tags=['therapists'])


def get_projector(request: Request) -> SearchIndexProjector:
    return request.app.state.projector


def get_outbox_worker(request: Request) -> OutboxWorker | None:
    return getattr(request.app.state, 'outbox_worker', None)


class TherapistSearchResult(BaseModel):
    id: int
    name: str


class TherapistResponse(BaseModel):
    id: int
    email: str
    name: str
    status: UserStatus
    session_fee: Decimal | None = None

    class Config:
        from_attributes = True


class SessionFeeResponse(BaseModel):
    session_fee: Decimal | None = None


class UpdateProfileRequest(BaseModel):
    name: str | None = None
    session_fee: Decimal | None = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            raise ValueError('Name cannot be empty.')
        return normalized


class UpdateStatusRequest(BaseModel):
    status: UserStatus


def _notify_index(worker: OutboxWorker | None) -> None:
    if worker is not None:
        worker.wake()


@router.get('/search-name', response_model=list[TherapistSearchResult])
def search_therapists_by_name(
    name: str | None = Query(default=None),
    projector: SearchIndexProjector = Depends(get_projector),
):
    with domain_errors():
        return projector.search(name)


@router.get('/pending', response_model=list[TherapistResponse])
def list_pending_therapists(
    _admin: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
):
    with domain_errors():
        return therapist_service.list_pending_therapists(db)


@router.put('/me', response_model=TherapistResponse)
def update_my_profile(
    data: UpdateProfileRequest,
    current_user: User = Depends(require_roles(UserRole.THERAPIST)),
    db: Session = Depends(get_db),
    worker: OutboxWorker | None = Depends(get_outbox_worker),
):
    with domain_errors():
        therapist = therapist_service.update_therapist_profile(
            db,
            current_user.id,
            name=data.name,
            session_fee=data.session_fee,
        )
    _notify_index(worker)
    return therapist


@router.get('/{therapist_id}/session-fee', response_model=SessionFeeResponse)
def get_session_fee(therapist_id: int, db: Session = Depends(get_db)):
    with domain_errors():
        return SessionFeeResponse(session_fee=therapist_service.get_session_fee(db, therapist_id))


@router.put('/{therapist_id}/status', response_model=TherapistResponse)
def update_therapist_status(
    therapist_id: int,
    data: UpdateStatusRequest,
    _admin: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
    worker: OutboxWorker | None = Depends(get_outbox_worker),
):
    with domain_errors():
        therapist = therapist_service.set_therapist_status(db, therapist_id, data.status)
    _notify_index(worker)
    return therapist
