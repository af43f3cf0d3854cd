import asyncio

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from therapy_backend.integrations.google_workspace import CalendarError
from therapy_backend.ledgers import booking_ledger, patient_directory, pending_bookings, token_ledger
from therapy_backend.models.booking import Booking
from therapy_backend.models.booking_token import SessionPackage
from therapy_backend.routes.admin_booking_routes import (
    CancelAppointmentRequest,
    ManualBookingRequest,
    ModifyBookingRequest,
    RecurringBookingRequest,
    UpdateMeetLinkRequest,
    UpdateSessionsRequest,
    cancel_appointment,
    cancel_recurring_bookings,
    create_manual_booking,
    create_recurring_bookings,
    get_admin_data,
    modify_booking,
    recurring_dates,
    update_meet_link,
    update_sessions,
)
from therapy_backend.services import bookings

ADMIN = 'doctor@example.com'
TUESDAY = '2030-03-05'


@pytest.fixture
def calendar(monkeypatch: pytest.MonkeyPatch) -> dict:
    state = {'listed': [], 'deleted': [], 'patched': [], 'meet_links': [], 'missing': set()}

    async def fake_insert(**kwargs):
        return {'eventId': 'evt-manual', 'meetLink': 'https://meet.google.com/manual', 'htmlLink': 'https://cal/manual'}

    async def fake_list(time_min, time_max):
        return state['listed']

    async def fake_delete(event_id):
        if event_id in state['missing']:
            raise CalendarError('Not Found', 404)
        state['deleted'].append(event_id)

    async def fake_patch(event_id, start, end):
        if event_id in state['missing']:
            raise CalendarError('Not Found', 404)
        state['patched'].append((event_id, start, end))
        return {'id': event_id, 'hangoutLink': 'https://meet.google.com/moved'}

    async def fake_set_meet_link(event_id, meet_link):
        if event_id in state['missing']:
            raise CalendarError('Not Found', 404)
        state['meet_links'].append((event_id, meet_link))
        return {'id': event_id, 'hangoutLink': meet_link}

    monkeypatch.setattr('therapy_backend.integrations.google_workspace.insert_therapy_event', fake_insert)
    monkeypatch.setattr('therapy_backend.integrations.google_workspace.list_therapy_sessions', fake_list)
    monkeypatch.setattr('therapy_backend.integrations.google_workspace.delete_event', fake_delete)
    monkeypatch.setattr('therapy_backend.integrations.google_workspace.patch_event', fake_patch)
    monkeypatch.setattr('therapy_backend.integrations.google_workspace.set_meet_link', fake_set_meet_link)
    return state


def _manual_request(**overrides) -> ManualBookingRequest:
    fields = {
        'patientName': 'Ana Silva',
        'patientEmail': 'ana@example.com',
        'date': TUESDAY,
        'time': '19:00',
        'sessionPackage': {'id': 'single-session', 'name': 'Single Session', 'price': 60},
        'notes': 'Booked by phone',
    }
    fields.update(overrides)
    return ManualBookingRequest(**fields)


def _recurring_request(**overrides) -> RecurringBookingRequest:
    fields = {
        'patientName': 'Rui Costa',
        'patientEmail': 'rui@example.com',
        'startDate': TUESDAY,
        'time': '21:00',
        'frequency': 'weekly',
        'duration': 3,
    }
    fields.update(overrides)
    return RecurringBookingRequest(**fields)


@pytest.mark.parametrize(
    ('frequency', 'expected'),
    [
        ('weekly', ['2030-03-05', '2030-03-12', '2030-03-19']),
        ('biweekly', ['2030-03-05', '2030-03-19', '2030-04-02']),
        ('monthly', ['2030-03-05', '2030-04-02', '2030-04-30']),
    ],
)
def test_recurring_dates(frequency: str, expected: list[str]) -> None:
    assert recurring_dates(TUESDAY, frequency, 3) == expected


def test_recurring_request_rejects_bad_frequency_and_duration() -> None:
    with pytest.raises(ValidationError):
        _recurring_request(frequency='daily')
    with pytest.raises(ValidationError):
        _recurring_request(duration=0)


def test_manual_booking_is_buffered_for_dashboard(ledger_dir, calendar: dict) -> None:
    response = asyncio.run(create_manual_booking(_manual_request(), admin_email=ADMIN))

    assert response['booking']['eventId'] == 'evt-manual'
    assert response['booking']['notes'] == 'Booked by phone'
    record = token_ledger.find_token(response['booking']['bookingToken'])
    assert record.user_id == f'MANUAL-{ADMIN}'
    assert record.sessions_used == 1

    dashboard = asyncio.run(get_admin_data(admin_email=ADMIN))

    assert dashboard['calendarError'] is None
    assert [session['eventId'] for session in dashboard['upcomingSessions']] == ['evt-manual']
    assert dashboard['upcomingSessions'][0]['isFromCache'] is True
    assert dashboard['patients'][0]['patientEmail'] == 'ana@example.com'
    assert dashboard['bookings'][0]['patientName'] == 'Ana Silva'


def test_dashboard_prefers_calendar_listing_over_buffer(ledger_dir, calendar: dict) -> None:
    asyncio.run(create_manual_booking(_manual_request(), admin_email=ADMIN))
    calendar['listed'] = [{'eventId': 'evt-manual', 'isFromCache': False}]

    dashboard = asyncio.run(get_admin_data(admin_email=ADMIN))

    assert dashboard['upcomingSessions'] == [{'eventId': 'evt-manual', 'isFromCache': False}]
    assert pending_bookings.load_cache() == []


def test_dashboard_degrades_when_calendar_fails(ledger_dir, calendar: dict, monkeypatch: pytest.MonkeyPatch) -> None:
    asyncio.run(create_manual_booking(_manual_request(), admin_email=ADMIN))

    async def failing_list(time_min, time_max):
        raise CalendarError('Backend Error', 503)

    monkeypatch.setattr('therapy_backend.integrations.google_workspace.list_therapy_sessions', failing_list)

    dashboard = asyncio.run(get_admin_data(admin_email=ADMIN))

    assert dashboard['calendarError'] == 'Backend Error'
    assert [session['eventId'] for session in dashboard['upcomingSessions']] == ['evt-manual']


def test_failed_manual_booking_leaves_no_registration(ledger_dir, calendar: dict) -> None:
    booking_ledger.create_booking(Booking(booking_id='existing', booking_token='other', date=TUESDAY, time='19:00'))

    with pytest.raises(HTTPException) as exception_info:
        asyncio.run(create_manual_booking(_manual_request(), admin_email=ADMIN))

    assert exception_info.value.status_code == 409
    assert token_ledger.list_tokens() == []
    assert patient_directory.list_patients() == []


def test_recurring_series_is_booked_in_full(ledger_dir) -> None:
    response = create_recurring_bookings(_recurring_request(), admin_email=ADMIN)

    assert response['dates'] == ['2030-03-05', '2030-03-12', '2030-03-19']
    record = token_ledger.find_token(response['sharedBookingToken'])
    assert (record.sessions_total, record.sessions_used) == (3, 3)
    assert record.session_package.name == 'Recurring Single Session (3 sessions)'
    series = booking_ledger.bookings_for_token(record.token)
    assert [booking.session_number for booking in series] == [1, 2, 3]


def test_recurring_conflict_books_nothing(ledger_dir) -> None:
    create_recurring_bookings(_recurring_request(startDate='2030-03-12', duration=1), admin_email=ADMIN)

    with pytest.raises(HTTPException) as exception_info:
        create_recurring_bookings(_recurring_request(patientEmail='eva@example.com'), admin_email=ADMIN)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == {
        'error': 'Some time slots are already booked.',
        'conflicts': [{'date': '2030-03-12', 'time': '21:00'}],
    }
    assert len(token_ledger.list_tokens()) == 1
    assert len(booking_ledger.list_bookings()) == 1


def test_cancel_recurring_from_date(ledger_dir, calendar: dict) -> None:
    token = create_recurring_bookings(_recurring_request(), admin_email=ADMIN)['sharedBookingToken']

    response = asyncio.run(cancel_recurring_bookings(bookingToken=token, fromDate='2030-03-12', admin_email=ADMIN))

    assert response['cancelledCount'] == 2
    assert response['message'] == 'Cancelled 2 recurring appointments from 2030-03-12 onwards'
    assert [booking.date for booking in booking_ledger.bookings_for_token(token)] == ['2030-03-05']
    assert token_ledger.find_token(token).sessions_used == 1


def test_cancel_recurring_on_blank_used_counter(ledger_dir, calendar: dict) -> None:
    token = create_recurring_bookings(_recurring_request(), admin_email=ADMIN)['sharedBookingToken']
    token_ledger.save_token(token_ledger.find_token(token).model_copy(update={'sessions_used': None}))

    response = asyncio.run(cancel_recurring_bookings(bookingToken=token, fromDate='2030-03-12', admin_email=ADMIN))

    assert response['cancelledCount'] == 2
    assert token_ledger.find_token(token).sessions_used == 1


def test_cancel_appointment_by_event_credits_local_booking(ledger_dir, calendar: dict) -> None:
    booking_token = asyncio.run(create_manual_booking(_manual_request(), admin_email=ADMIN))['booking']['bookingToken']

    response = asyncio.run(cancel_appointment(CancelAppointmentRequest(eventId='evt-manual'), admin_email=ADMIN))

    assert response['sessionsCredited'] == 1
    assert calendar['deleted'] == ['evt-manual']
    assert booking_ledger.list_bookings() == []
    assert token_ledger.find_token(booking_token).sessions_used == 0
    assert pending_bookings.load_cache() == []


def test_cancel_remote_only_event(ledger_dir, calendar: dict) -> None:
    calendar['missing'].add('evt-gone')

    response = asyncio.run(cancel_appointment(CancelAppointmentRequest(eventId='evt-remote'), admin_email=ADMIN))
    assert response['calendarEventsDeleted'] == 1

    with pytest.raises(HTTPException) as exception_info:
        asyncio.run(cancel_appointment(CancelAppointmentRequest(eventId='evt-gone'), admin_email=ADMIN))
    assert exception_info.value.status_code == 404


def test_cancel_unknown_booking_id_returns_404(ledger_dir) -> None:
    with pytest.raises(HTTPException) as exception_info:
        asyncio.run(cancel_appointment(CancelAppointmentRequest(bookingId='booking-missing'), admin_email=ADMIN))

    assert exception_info.value.status_code == 404


def test_reschedule_moves_event_and_ledger_row(ledger_dir, calendar: dict) -> None:
    asyncio.run(create_manual_booking(_manual_request(), admin_email=ADMIN))

    response = asyncio.run(
        modify_booking(
            ModifyBookingRequest(eventId='evt-manual', action='reschedule', newDate='2030-03-07', newTime='21:00'),
            admin_email=ADMIN,
        )
    )

    assert response['event']['ledgerUpdated'] is True
    assert response['event']['meetLink'] == 'https://meet.google.com/moved'
    moved = booking_ledger.find_booking_by_event('evt-manual')
    assert (moved.date, moved.time) == ('2030-03-07', '21:00')
    event_id, start, end = calendar['patched'][0]
    assert (end - start).total_seconds() == 3600


def test_reschedule_onto_taken_slot_returns_409(ledger_dir, calendar: dict) -> None:
    asyncio.run(create_manual_booking(_manual_request(), admin_email=ADMIN))
    create_recurring_bookings(_recurring_request(startDate='2030-03-07', duration=1), admin_email=ADMIN)

    with pytest.raises(HTTPException) as exception_info:
        asyncio.run(
            modify_booking(
                ModifyBookingRequest(eventId='evt-manual', action='reschedule', newDate='2030-03-07', newTime='21:00'),
                admin_email=ADMIN,
            )
        )

    assert exception_info.value.status_code == 409
    assert calendar['patched'] == []


@pytest.mark.parametrize(
    ('new_date', 'new_time', 'error_detail'),
    [
        (None, '19:00', 'New date and time required for rescheduling.'),
        ('2030-13-40', '19:00', 'Invalid date or time format.'),
        ('2020-03-05', '19:00', 'Cannot move a session into the past.'),
    ],
)
def test_reschedule_validation(ledger_dir, new_date: str | None, new_time: str, error_detail: str) -> None:
    request = ModifyBookingRequest(eventId='evt-1', action='reschedule', newDate=new_date, newTime=new_time)

    with pytest.raises(HTTPException) as exception_info:
        asyncio.run(modify_booking(request, admin_email=ADMIN))

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == error_detail


def test_modify_booking_rejects_unknown_action() -> None:
    with pytest.raises(ValidationError):
        ModifyBookingRequest(eventId='evt-1', action='archive')


def test_update_meet_link_updates_event_and_ledger(ledger_dir, calendar: dict) -> None:
    asyncio.run(create_manual_booking(_manual_request(), admin_email=ADMIN))

    response = asyncio.run(
        update_meet_link(
            UpdateMeetLinkRequest(eventId='evt-manual', meetLink=' https://meet.google.com/fixed-room '),
            admin_email=ADMIN,
        )
    )

    assert response['ledgerUpdated'] is True
    assert calendar['meet_links'] == [('evt-manual', 'https://meet.google.com/fixed-room')]
    assert booking_ledger.find_booking_by_event('evt-manual').meet_link == 'https://meet.google.com/fixed-room'


def test_update_meet_link_unknown_event_returns_404(ledger_dir, calendar: dict) -> None:
    calendar['missing'].add('evt-gone')

    with pytest.raises(HTTPException) as exception_info:
        asyncio.run(
            update_meet_link(
                UpdateMeetLinkRequest(eventId='evt-gone', meetLink='https://meet.google.com/room'),
                admin_email=ADMIN,
            )
        )

    assert exception_info.value.status_code == 404


def test_update_meet_link_requires_https_url() -> None:
    with pytest.raises(ValidationError):
        UpdateMeetLinkRequest(eventId='evt-1', meetLink='meet.google.com/room')


def test_update_sessions_overrides_counters(ledger_dir) -> None:
    record = bookings.register_patient(
        email='ana@example.com',
        full_name='Ana Silva',
        session_package=SessionPackage(id='four-sessions', name='Therapy (4 Sessions)', price=240),
    )

    response = update_sessions(
        UpdateSessionsRequest(bookingToken=record.token, sessionsTotal=6, sessionsUsed=2),
        admin_email=ADMIN,
    )

    assert response['patient']['sessionsRemaining'] == 4
    assert response['patient']['packageName'] == 'Therapy (6 Sessions)'
    assert response['patient']['lastUpdated'] is not None
    assert patient_directory.find_by_token(record.token).updated_by == ADMIN


@pytest.mark.parametrize(
    ('total', 'used', 'error_detail'),
    [
        (-1, None, 'Total sessions cannot be negative.'),
        (None, -1, 'Used sessions cannot be negative.'),
        (2, 3, 'Used sessions cannot exceed total sessions.'),
    ],
)
def test_update_sessions_validation(total: int | None, used: int | None, error_detail: str) -> None:
    with pytest.raises(HTTPException) as exception_info:
        update_sessions(UpdateSessionsRequest(bookingToken='tok', sessionsTotal=total, sessionsUsed=used), admin_email=ADMIN)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == error_detail


def test_update_sessions_unknown_token_returns_404(ledger_dir) -> None:
    with pytest.raises(HTTPException) as exception_info:
        update_sessions(UpdateSessionsRequest(bookingToken='missing', sessionsTotal=2), admin_email=ADMIN)

    assert exception_info.value.status_code == 404
