from datetime import time
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from therapy_backend.auth.dependencies import get_current_user, require_roles
from therapy_backend.database import get_db
from therapy_backend.models.enums import DayOfWeek, UserRole
from therapy_backend.models.user import User
from therapy_backend.routes.http_errors import domain_errors
from therapy_backend.services import slots as slot_service
from therapy_backend.services.reconciler import reconcile_availability

router = APIRouter(tags=['availability'])


class AvailabilityEntry(BaseModel):
    # Kept as strings so malformed values fail the whole submission with a 400.
    day_of_week: str
    is_weekday: bool = True
    start_time: str
    end_time: str
    is_available: bool | None = None


class UpdateAvailabilityRequest(BaseModel):
    availabilities: list[AvailabilityEntry]


class AvailabilitySlotResponse(BaseModel):
    id: int
    therapist_id: int
    day_of_week: DayOfWeek
    is_weekday: bool
    start_time: time
    end_time: time
    is_available: bool

    class Config:
        from_attributes = True


class ReconcileResponse(BaseModel):
    message: str
    availabilities: list[AvailabilitySlotResponse]
    warnings: list[str]


class GroupedAvailabilityResponse(BaseModel):
    weekday: list[AvailabilitySlotResponse]
    weekend: list[AvailabilitySlotResponse]


class AvailableTherapistResponse(BaseModel):
    id: int
    name: str
    session_fee: Decimal | None = None
    availabilities: list[AvailabilitySlotResponse]


class DeleteSlotResponse(BaseModel):
    message: str
    deleted: bool


@router.get('/available-therapists', response_model=list[AvailableTherapistResponse])
def list_available_therapists(db: Session = Depends(get_db)):
    with domain_errors():
        therapists = slot_service.list_available_therapists(db)

    return [
        AvailableTherapistResponse(
            id=therapist.id,
            name=therapist.name,
            session_fee=therapist.session_fee,
            availabilities=[AvailabilitySlotResponse.model_validate(slot) for slot in slots],
        )
        for therapist, slots in therapists
    ]


@router.get('/{therapist_id}', response_model=GroupedAvailabilityResponse)
def get_therapist_availability(therapist_id: int, db: Session = Depends(get_db)):
    with domain_errors():
        grouped = slot_service.get_grouped_availability(db, therapist_id)

    return GroupedAvailabilityResponse(
        weekday=[AvailabilitySlotResponse.model_validate(slot) for slot in grouped['weekday']],
        weekend=[AvailabilitySlotResponse.model_validate(slot) for slot in grouped['weekend']],
    )


@router.post('', response_model=ReconcileResponse)
def update_availability(
    data: UpdateAvailabilityRequest,
    current_user: User = Depends(require_roles(UserRole.THERAPIST)),
    db: Session = Depends(get_db),
):
    with domain_errors():
        result = reconcile_availability(db, current_user.id, data.availabilities)

    return ReconcileResponse(
        message='Availability updated.' if not result.warnings else 'Availability updated with warnings.',
        availabilities=[AvailabilitySlotResponse.model_validate(slot) for slot in result.slots],
        warnings=result.warnings,
    )


@router.delete('/{slot_id}', response_model=DeleteSlotResponse)
def delete_availability(
    slot_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with domain_errors():
        deleted = slot_service.remove_slot(db, slot_id, current_user)

    if deleted:
        return DeleteSlotResponse(message='Availability slot deleted.', deleted=True)
    return DeleteSlotResponse(message='Availability slot has bookings and was deactivated.', deleted=False)
