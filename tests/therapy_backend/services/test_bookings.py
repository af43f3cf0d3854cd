import asyncio
from datetime import datetime, timezone

import pytest

from therapy_backend.integrations.google_workspace import CalendarError, MailError
from therapy_backend.ledgers import booking_ledger, patient_directory, pending_bookings, token_ledger
from therapy_backend.models.booking_token import SessionPackage
from therapy_backend.services import bookings

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _register(email: str = 'ana@example.com'):
    return bookings.register_patient(
        email=email,
        full_name='Ana Silva',
        session_package=SessionPackage(id='four-sessions', name='4 Sessions', price=240),
        now=NOW,
    )


def test_register_patient_creates_token_and_profile(ledger_dir) -> None:
    record = _register(email=' Ana@Example.com ')

    assert record.patient_email == 'ana@example.com'
    assert record.sessions_total == 4
    assert record.sessions_used == 0
    assert token_ledger.find_token(record.token) is not None
    assert patient_directory.find_by_token(record.token).email == 'ana@example.com'
    assert bookings.email_registered('ANA@example.com') is True
    assert bookings.email_registered('other@example.com') is False


def test_reserve_booking_rejects_past_slots_and_bad_input(ledger_dir) -> None:
    record = _register()

    with pytest.raises(bookings.BookingRejectedError) as exception_info:
        bookings.reserve_booking(record, '2026-03-01', '19:00', now=NOW)
    assert str(exception_info.value) == 'Cannot book a session in the past.'

    with pytest.raises(bookings.BookingRejectedError):
        bookings.reserve_booking(record, '03/03/2026', '7pm', now=NOW)


def test_reserve_booking_conflict_leaves_counter_untouched(ledger_dir) -> None:
    first = _register()
    second = _register(email='rui@example.com')
    bookings.reserve_booking(first, '2026-03-03', '19:00', now=NOW)

    with pytest.raises(booking_ledger.SlotTakenError):
        bookings.reserve_booking(second, '2026-03-03', '19:00', now=NOW)

    assert token_ledger.find_token(second.token).sessions_used == 0


def test_book_session_stores_event_and_notifies(ledger_dir, monkeypatch: pytest.MonkeyPatch) -> None:
    record = _register()
    sent = []

    async def fake_insert(**kwargs):
        return {'eventId': 'evt-1', 'meetLink': 'https://meet.google.com/abc', 'htmlLink': 'https://calendar/evt-1'}

    async def fake_confirmation(*args):
        sent.append(('confirmation', args))

    async def fake_admin(subject, lines):
        sent.append(('admin', subject))

    monkeypatch.setattr('therapy_backend.integrations.google_workspace.insert_therapy_event', fake_insert)
    monkeypatch.setattr('therapy_backend.integrations.google_workspace.send_booking_confirmation', fake_confirmation)
    monkeypatch.setattr('therapy_backend.integrations.google_workspace.send_admin_notification', fake_admin)

    booking, event = asyncio.run(bookings.book_session(record, '2026-03-03', '19:00', now=NOW))

    assert booking.calendar_event_id == 'evt-1'
    assert booking.meet_link == 'https://meet.google.com/abc'
    assert event['startDateTime'] == '2026-03-03T19:00:00+00:00'
    assert event['endDateTime'] == '2026-03-03T20:00:00+00:00'
    assert event['totalSessions'] == 4
    assert [kind for kind, _ in sent] == ['confirmation', 'admin']


def test_book_session_rolls_back_when_calendar_fails(ledger_dir, monkeypatch: pytest.MonkeyPatch) -> None:
    record = _register()

    async def failing_insert(**kwargs):
        raise CalendarError('calendar down', 503)

    monkeypatch.setattr('therapy_backend.integrations.google_workspace.insert_therapy_event', failing_insert)

    with pytest.raises(CalendarError):
        asyncio.run(bookings.book_session(record, '2026-03-03', '19:00', now=NOW))

    assert booking_ledger.list_bookings() == []
    assert token_ledger.find_token(record.token).sessions_used == 0


def test_mail_failure_does_not_fail_the_booking(ledger_dir, monkeypatch: pytest.MonkeyPatch) -> None:
    record = _register()

    async def fake_insert(**kwargs):
        return {'eventId': 'evt-1', 'meetLink': '', 'htmlLink': ''}

    async def failing_mail(*args, **kwargs):
        raise MailError('smtp down', 500)

    monkeypatch.setattr('therapy_backend.integrations.google_workspace.insert_therapy_event', fake_insert)
    monkeypatch.setattr('therapy_backend.integrations.google_workspace.send_booking_confirmation', failing_mail)
    monkeypatch.setattr('therapy_backend.integrations.google_workspace.send_admin_notification', failing_mail)

    booking, _ = asyncio.run(bookings.book_session(record, '2026-03-03', '19:00', now=NOW))

    assert [row.booking_id for row in booking_ledger.bookings_for_token(record.token)] == [booking.booking_id]


def test_cancel_bookings_credits_and_deletes_events(ledger_dir, monkeypatch: pytest.MonkeyPatch) -> None:
    record = _register()
    booking = bookings.reserve_booking(record, '2026-03-03', '19:00', now=NOW)
    booking = booking_ledger.update_booking(booking.booking_id, calendar_event_id='evt-1')
    pending_bookings.add_booking({'eventId': 'evt-1', 'bookingToken': record.token})
    deleted_events = []

    async def fake_delete(event_id):
        deleted_events.append(event_id)

    monkeypatch.setattr('therapy_backend.integrations.google_workspace.delete_event', fake_delete)

    removed = booking_ledger.delete_booking(booking_id=booking.booking_id)
    result = asyncio.run(bookings.cancel_bookings(removed, notify=False))

    assert result['sessionsCredited'] == 1
    assert result['calendarEventsDeleted'] == 1
    assert deleted_events == ['evt-1']
    assert token_ledger.find_token(record.token).sessions_used == 0
    assert pending_bookings.load_cache() == []


def test_cancel_bookings_survives_calendar_failure(ledger_dir, monkeypatch: pytest.MonkeyPatch) -> None:
    record = _register()
    booking = bookings.reserve_booking(record, '2026-03-03', '19:00', now=NOW)
    booking = booking_ledger.update_booking(booking.booking_id, calendar_event_id='evt-1')

    async def failing_delete(event_id):
        raise CalendarError('gone', 410)

    monkeypatch.setattr('therapy_backend.integrations.google_workspace.delete_event', failing_delete)

    removed = booking_ledger.delete_booking(booking_id=booking.booking_id)
    result = asyncio.run(bookings.cancel_bookings(removed, notify=False))

    assert result['sessionsCredited'] == 1
    assert result['calendarEventsDeleted'] == 0
