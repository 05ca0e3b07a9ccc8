from datetime import date, datetime, time
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from therapy_backend.auth.dependencies import get_current_user, require_roles
from therapy_backend.database import get_db
from therapy_backend.models.enums import BookingStatus, SessionType, UserRole
from therapy_backend.models.user import User
from therapy_backend.routes.http_errors import domain_errors
from therapy_backend.services import bookings as booking_service
from therapy_backend.services.reservations import reserve_slot

router = APIRouter(tags=['bookings'])

MAX_BOOKING_NOTES_LENGTH = 1000


class CreateBookingRequest(BaseModel):
    therapist_id: int
    availability_id: int
    # Strings so malformed dates and times surface as 400 InvalidInput.
    booking_date: str
    start_time: str
    end_time: str
    session_type: SessionType = SessionType.VIDEO
    notes: str | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_BOOKING_NOTES_LENGTH:
            raise ValueError(f'Notes must be {MAX_BOOKING_NOTES_LENGTH} characters or fewer.')

        return normalized


class UpdateBookingRequest(BaseModel):
    status: BookingStatus | None = None
    notes: str | None = None


class BookingResponse(BaseModel):
    id: int
    customer_id: int
    therapist_id: int
    availability_id: int
    booking_date: date
    start_time: time
    end_time: time
    status: BookingStatus
    session_type: SessionType
    notes: str | None = None
    price: Decimal
    is_paid: bool
    payment_date: datetime | None = None

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    message: str


@router.post('', response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: CreateBookingRequest,
    current_user: User = Depends(require_roles(UserRole.CUSTOMER)),
    db: Session = Depends(get_db),
):
    with domain_errors():
        return reserve_slot(
            db,
            customer_id=current_user.id,
            therapist_id=data.therapist_id,
            availability_id=data.availability_id,
            booking_date=data.booking_date,
            start_time=data.start_time,
            end_time=data.end_time,
            session_type=data.session_type,
            notes=data.notes,
        )


@router.get('/user/{user_id}', response_model=list[BookingResponse])
def list_user_bookings(
    user_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with domain_errors():
        return booking_service.list_customer_bookings(db, user_id, current_user)


@router.get('/therapist/{therapist_id}/booked-slots', response_model=list[time])
def list_booked_slots(
    therapist_id: int,
    booking_date: str | None = Query(default=None, alias='date'),
    db: Session = Depends(get_db),
):
    with domain_errors():
        return booking_service.list_booked_start_times(db, therapist_id, booking_date)


@router.get('/therapist/{therapist_id}', response_model=list[BookingResponse])
def list_therapist_bookings(
    therapist_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with domain_errors():
        return booking_service.list_therapist_bookings(db, therapist_id, current_user)


@router.get('/{booking_id}', response_model=BookingResponse)
def get_booking(
    booking_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with domain_errors():
        return booking_service.get_booking(db, booking_id, current_user)


@router.put('/{booking_id}', response_model=BookingResponse)
def update_booking(
    booking_id: int,
    data: UpdateBookingRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with domain_errors():
        return booking_service.update_booking(
            db,
            booking_id,
            current_user,
            status=data.status,
            notes=data.notes,
        )


@router.delete('/{booking_id}', response_model=MessageResponse)
def cancel_booking(
    booking_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with domain_errors():
        booking_service.cancel_booking(db, booking_id, current_user)
    return MessageResponse(message='Booking cancelled.')
