import threading
from datetime import date, time
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import make_slot, make_therapist, make_user
from therapy_backend.core.errors import Conflict, InvalidInput, NotFound, Unauthorized
from therapy_backend.database import Base, build_engine, build_session_factory
from therapy_backend.models.booking import Booking
from therapy_backend.models.enums import BookingStatus, DayOfWeek, SessionType
from therapy_backend.services import reservations
from therapy_backend.services.bookings import cancel_booking
from therapy_backend.services.reservations import reserve_slot

MONDAY = '2025-03-03'


@pytest.fixture
def scenario(db):
    therapist = make_therapist(db, 'Dr. Ada', session_fee='650.00')
    customer_a = make_user(db, 'Customer A')
    customer_b = make_user(db, 'Customer B')
    slot = make_slot(db, therapist, DayOfWeek.MONDAY, time(9, 0), time(10, 0))
    return therapist, customer_a, customer_b, slot


def reserve(db, customer, therapist, slot, booking_date=MONDAY, start='09:00:00', end='10:00:00'):
    return reserve_slot(
        db,
        customer_id=customer.id,
        therapist_id=therapist.id,
        availability_id=slot.id,
        booking_date=booking_date,
        start_time=start,
        end_time=end,
    )


def test_reservation_is_pending_with_frozen_session_fee(db, scenario) -> None:
    therapist, customer_a, _, slot = scenario

    booking = reserve(db, customer_a, therapist, slot)

    assert booking.status == BookingStatus.PENDING
    assert booking.price == Decimal('650.00')
    assert booking.session_type == SessionType.VIDEO
    assert booking.booking_date == date(2025, 3, 3)

    therapist.session_fee = Decimal('900.00')
    db.commit()
    db.refresh(booking)
    assert booking.price == Decimal('650.00')


def test_reservation_falls_back_to_default_price(db) -> None:
    therapist = make_therapist(db, 'Dr. Fallback')
    customer = make_user(db, 'Customer Fallback')
    slot = make_slot(db, therapist)

    booking = reserve(db, customer, therapist, slot)

    assert booking.price == Decimal('500.00')


def test_second_customer_gets_conflict_for_same_time(db, scenario) -> None:
    therapist, customer_a, customer_b, slot = scenario
    reserve(db, customer_a, therapist, slot)

    with pytest.raises(Conflict) as exception_info:
        reserve(db, customer_b, therapist, slot)

    assert exception_info.value.message == 'This time is no longer available.'


def test_unique_index_decides_when_precheck_is_bypassed(db, scenario, monkeypatch: pytest.MonkeyPatch) -> None:
    therapist, customer_a, customer_b, slot = scenario
    reserve(db, customer_a, therapist, slot)
    monkeypatch.setattr(reservations, 'find_conflicting_booking', lambda *args: None)

    with pytest.raises(Conflict):
        reserve(db, customer_b, therapist, slot)

    active = db.execute(select(Booking).where(Booking.availability_id == slot.id)).scalars().all()
    assert len(active) == 1


def test_cancelled_booking_is_kept_and_time_can_be_rebooked(db, scenario) -> None:
    therapist, customer_a, customer_b, slot = scenario
    first = reserve(db, customer_a, therapist, slot)

    cancel_booking(db, first.id, customer_a)
    second = reserve(db, customer_b, therapist, slot)

    statuses = {
        booking.id: booking.status
        for booking in db.execute(select(Booking).where(Booking.availability_id == slot.id)).scalars()
    }
    assert statuses == {first.id: BookingStatus.CANCELLED, second.id: BookingStatus.PENDING}


def test_other_dates_and_times_do_not_conflict(db, scenario) -> None:
    therapist, customer_a, customer_b, slot = scenario
    reserve(db, customer_a, therapist, slot)

    reserve(db, customer_b, therapist, slot, booking_date='2025-03-10')
    reserve(db, customer_b, therapist, slot, start='09:30:00', end='10:00:00')


def test_unknown_therapist_is_not_found(db, scenario) -> None:
    _, customer_a, _, slot = scenario

    with pytest.raises(NotFound):
        reserve_slot(db, customer_a.id, 9999, slot.id, MONDAY, '09:00:00', '10:00:00')


def test_customer_is_not_a_therapist(db, scenario) -> None:
    _, customer_a, customer_b, slot = scenario

    with pytest.raises(NotFound):
        reserve(db, customer_a, customer_b, slot)


def test_unknown_slot_is_not_found(db, scenario) -> None:
    therapist, customer_a, _, _ = scenario

    with pytest.raises(NotFound):
        reserve_slot(db, customer_a.id, therapist.id, 9999, MONDAY, '09:00:00', '10:00:00')


def test_slot_of_another_therapist_is_unauthorized(db, scenario) -> None:
    _, customer_a, _, slot = scenario
    other = make_therapist(db, 'Dr. Other')

    with pytest.raises(Unauthorized):
        reserve(db, customer_a, other, slot)


def test_inactive_slot_is_conflict(db, scenario) -> None:
    therapist, customer_a, _, slot = scenario
    slot.is_available = False
    db.commit()

    with pytest.raises(Conflict):
        reserve(db, customer_a, therapist, slot)


@pytest.mark.parametrize(
    ('booking_date', 'start', 'end'),
    [
        ('03/03/2025', '09:00:00', '10:00:00'),
        ('2025-02-30', '09:00:00', '10:00:00'),
        (MONDAY, '9am', '10:00:00'),
        (MONDAY, '10:00:00', '09:00:00'),
        ('2025-03-04', '09:00:00', '10:00:00'),
        (MONDAY, '08:30:00', '09:30:00'),
    ],
)
def test_invalid_input_is_rejected(db, scenario, booking_date: str, start: str, end: str) -> None:
    therapist, customer_a, _, slot = scenario

    with pytest.raises(InvalidInput):
        reserve(db, customer_a, therapist, slot, booking_date=booking_date, start=start, end=end)

    assert db.execute(select(Booking)).first() is None


def test_concurrent_reservations_have_exactly_one_winner(tmp_path) -> None:
    engine = build_engine(f'sqlite:///{tmp_path / "race.db"}')
    Base.metadata.create_all(bind=engine)
    factory = build_session_factory(engine)

    setup = factory()
    therapist = make_therapist(setup, 'Dr. Race')
    customers = [make_user(setup, 'Racer One'), make_user(setup, 'Racer Two')]
    slot = make_slot(setup, therapist)
    setup.close()

    barrier = threading.Barrier(len(customers))
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def attempt(customer_id: int) -> None:
        session = factory()
        try:
            barrier.wait()
            reserve_slot(session, customer_id, therapist.id, slot.id, MONDAY, '09:00:00', '10:00:00')
            outcome = 'booked'
        except Conflict:
            outcome = 'conflict'
        finally:
            session.close()
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=attempt, args=(customer.id,)) for customer in customers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ['booked', 'conflict']

    check = factory()
    try:
        bookings = check.execute(select(Booking)).scalars().all()
        assert len(bookings) == 1
        assert bookings[0].status == BookingStatus.PENDING
    finally:
        check.close()
        engine.dispose()
