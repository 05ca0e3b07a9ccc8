from datetime import time

from conftest import auth_headers, make_slot, make_therapist, make_user
from therapy_backend.models.enums import DayOfWeek, UserRole, UserStatus
from therapy_backend.services.reservations import reserve_slot


def schedule(*entries: tuple[str, str, str]) -> dict:
    return {
        'availabilities': [
            {
                'day_of_week': day,
                'is_weekday': day not in ('saturday', 'sunday'),
                'start_time': start,
                'end_time': end,
            }
            for day, start, end in entries
        ]
    }


def test_therapist_submits_weekly_schedule(client, app_db) -> None:
    therapist = make_therapist(app_db, 'Dr. Ada')

    response = client.post(
        '/availability',
        json=schedule(('saturday', '10:00:00', '12:00:00'), ('monday', '09:00:00', '10:00:00')),
        headers=auth_headers(therapist),
    )

    assert response.status_code == 200
    body = response.json()
    assert body['message'] == 'Availability updated.'
    assert body['warnings'] == []
    assert [(slot['day_of_week'], slot['start_time']) for slot in body['availabilities']] == [
        ('monday', '09:00:00'),
        ('saturday', '10:00:00'),
    ]


def test_malformed_entry_rejects_whole_schedule(client, app_db) -> None:
    therapist = make_therapist(app_db, 'Dr. Ada')

    bad_time = client.post(
        '/availability',
        json=schedule(('monday', '09:00:00', '10:00:00'), ('tuesday', '9am', '10:00:00')),
        headers=auth_headers(therapist),
    )
    bad_day = client.post(
        '/availability',
        json=schedule(('someday', '09:00:00', '10:00:00')),
        headers=auth_headers(therapist),
    )

    assert bad_time.status_code == 400
    assert bad_time.json()['detail']['error'] == 'InvalidInput'
    assert bad_day.status_code == 400
    grouped = client.get(f'/availability/{therapist.id}').json()
    assert grouped == {'weekday': [], 'weekend': []}


def test_booked_slot_survives_removal_with_warning(client, app_db) -> None:
    therapist = make_therapist(app_db, 'Dr. Ada')
    customer = make_user(app_db, 'Customer A')
    slot = make_slot(app_db, therapist, DayOfWeek.MONDAY, time(9, 0), time(10, 0))
    reserve_slot(app_db, customer.id, therapist.id, slot.id, '2025-03-03', '09:00:00', '10:00:00')

    response = client.post(
        '/availability',
        json=schedule(('tuesday', '09:00:00', '10:00:00')),
        headers=auth_headers(therapist),
    )

    assert response.status_code == 200
    body = response.json()
    assert body['message'] == 'Availability updated with warnings.'
    assert len(body['warnings']) == 1
    monday = [slot for slot in body['availabilities'] if slot['day_of_week'] == 'monday']
    assert monday[0]['is_available'] is True


def test_only_therapists_submit_schedules(client, app_db) -> None:
    customer = make_user(app_db, 'Customer A')

    forbidden = client.post('/availability', json=schedule(), headers=auth_headers(customer))
    anonymous = client.post('/availability', json=schedule())

    assert forbidden.status_code == 403
    assert anonymous.status_code in (401, 403)


def test_grouped_availability_splits_weekend(client, app_db) -> None:
    therapist = make_therapist(app_db, 'Dr. Ada')
    make_slot(app_db, therapist, DayOfWeek.SUNDAY, time(10, 0), time(11, 0))
    make_slot(app_db, therapist, DayOfWeek.WEDNESDAY, time(9, 0), time(10, 0))

    response = client.get(f'/availability/{therapist.id}')

    assert response.status_code == 200
    body = response.json()
    assert [slot['day_of_week'] for slot in body['weekday']] == ['wednesday']
    assert [slot['day_of_week'] for slot in body['weekend']] == ['sunday']


def test_grouped_availability_errors(client, app_db) -> None:
    customer = make_user(app_db, 'Customer A')

    assert client.get('/availability/9999').status_code == 404
    assert client.get(f'/availability/{customer.id}').status_code == 400


def test_delete_slot_owner_rules(client, app_db) -> None:
    owner = make_therapist(app_db, 'Dr. Owner')
    other = make_therapist(app_db, 'Dr. Other')
    customer = make_user(app_db, 'Customer A')
    free_slot = make_slot(app_db, owner, DayOfWeek.TUESDAY)
    booked_slot = make_slot(app_db, owner, DayOfWeek.MONDAY)
    reserve_slot(app_db, customer.id, owner.id, booked_slot.id, '2025-03-03', '09:00:00', '10:00:00')

    assert client.delete(f'/availability/{free_slot.id}', headers=auth_headers(other)).status_code == 401
    assert client.delete('/availability/9999', headers=auth_headers(owner)).status_code == 404

    deleted = client.delete(f'/availability/{free_slot.id}', headers=auth_headers(owner))
    deactivated = client.delete(f'/availability/{booked_slot.id}', headers=auth_headers(owner))

    assert deleted.json()['deleted'] is True
    assert deactivated.json()['deleted'] is False
    grouped = client.get(f'/availability/{owner.id}').json()
    assert [(slot['day_of_week'], slot['is_available']) for slot in grouped['weekday']] == [('monday', False)]


def test_available_therapists_lists_active_therapists_with_open_slots(client, app_db) -> None:
    active = make_therapist(app_db, 'Dr. Active', session_fee='650.00')
    pending = make_therapist(app_db, 'Dr. Pending', status=UserStatus.PENDING)
    make_therapist(app_db, 'Dr. Empty')
    make_slot(app_db, active)
    make_slot(app_db, active, DayOfWeek.FRIDAY, is_available=False)
    make_slot(app_db, pending)
    make_user(app_db, 'Admin Root', role=UserRole.ADMIN)

    response = client.get('/availability/available-therapists')

    assert response.status_code == 200
    body = response.json()
    assert [therapist['name'] for therapist in body] == ['Dr. Active']
    assert len(body[0]['availabilities']) == 1
    assert body[0]['session_fee'] == '650.00'
