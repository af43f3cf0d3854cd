from datetime import datetime, timezone

import pytest

from therapy_backend.ledgers import booking_ledger, token_ledger
from therapy_backend.models.booking import Booking
from therapy_backend.models.booking_token import BookingToken, SessionPackage
from therapy_backend.services import bookings, sessions

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _register(sessions_total: int | None = 4, package: SessionPackage | None = None) -> BookingToken:
    return bookings.register_patient(
        email='Ana@Example.com',
        full_name='Ana Silva',
        session_package=package or SessionPackage(id='four-sessions', name='4 Sessions', price=240),
        sessions_total=sessions_total,
        now=NOW,
    )


@pytest.mark.parametrize(
    'package, expected',
    [
        (SessionPackage(id='single-session', name='Single Session'), 1),
        (SessionPackage(id='custom', name='Bundle', totalSessions=8), 8),
        (SessionPackage(id='custom', name='Therapy 6 Sessions'), 6),
        (SessionPackage(id='six-sessions', name='Six'), 6),
        (SessionPackage(id='mystery', name='Unknown'), sessions.DEFAULT_SESSION_COUNT),
        (None, sessions.DEFAULT_SESSION_COUNT),
    ],
)
def test_session_count_from_package(package, expected) -> None:
    assert sessions.session_count_from_package(package) == expected


def test_unrecognised_package_logs_warning(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level('WARNING'):
        sessions.session_count_from_package(SessionPackage(id='mystery', name='Unknown'))

    assert 'Unrecognised package' in caplog.text


def test_consultation_package_uses_short_sessions() -> None:
    assert sessions.session_type_for_package(SessionPackage(id='consultation')) == 'consultation'
    assert sessions.session_type_for_package(SessionPackage(sessionType='Consultation')) == 'consultation'
    assert sessions.session_type_for_package(SessionPackage(id='four-sessions')) == 'therapy'


def test_token_expires_three_months_after_creation(ledger_dir) -> None:
    record = _register()

    assert record.expires_at == datetime(2026, 6, 2, 12, 0, tzinfo=timezone.utc)
    assert sessions.get_session_info(record, now=datetime(2026, 6, 3, tzinfo=timezone.utc)).block_reason == (
        'Booking token has expired.'
    )


def test_booking_and_cancelling_keeps_counters_in_step(ledger_dir) -> None:
    record = _register()

    first = bookings.reserve_booking(record, '2026-03-03', '19:00', now=NOW)
    bookings.reserve_booking(record, '2026-03-05', '19:00', now=NOW)
    info = sessions.get_session_info(token_ledger.find_token(record.token), NOW)
    assert (info.sessions_used, info.sessions_remaining) == (2, 2)

    bookings.release_booking(first)

    info = sessions.get_session_info(token_ledger.find_token(record.token), NOW)
    assert (info.sessions_used, info.sessions_remaining) == (1, 3)
    assert [booking.date for booking in booking_ledger.bookings_for_token(record.token)] == ['2026-03-05']


def test_blank_used_counter_falls_back_to_ledger_rows(ledger_dir) -> None:
    record = _register()
    token_ledger.save_token(record.model_copy(update={'sessions_used': None}))
    booking_ledger.create_booking(
        Booking(booking_id='legacy', booking_token=record.token, date='2026-03-03', time='19:00')
    )

    info = sessions.get_session_info(token_ledger.find_token(record.token), NOW)

    assert info.sessions_used == 1

    sessions.debit_session(record.token, NOW)
    assert token_ledger.find_token(record.token).sessions_used == 2


def test_credit_after_cancel_settles_blank_used_counter(ledger_dir) -> None:
    record = _register()
    token_ledger.save_token(record.model_copy(update={'sessions_used': None}))
    for booking_id, slot_date in (('legacy-1', '2026-03-03'), ('legacy-2', '2026-03-05')):
        booking_ledger.create_booking(
            Booking(booking_id=booking_id, booking_token=record.token, date=slot_date, time='19:00')
        )

    booking_ledger.delete_booking(booking_id='legacy-1')
    sessions.credit_session(record.token)

    stored = token_ledger.find_token(record.token)
    info = sessions.get_session_info(stored, NOW)
    assert stored.sessions_used == 1
    assert (info.sessions_used, info.sessions_remaining) == (1, 3)


def test_debit_refuses_when_no_sessions_remain(ledger_dir) -> None:
    record = _register(sessions_total=1)
    sessions.debit_session(record.token, NOW)

    with pytest.raises(sessions.NoSessionsAvailableError) as exception_info:
        sessions.debit_session(record.token, NOW)

    assert str(exception_info.value) == 'No remaining sessions available.'


def test_debit_unknown_token_raises_key_error(ledger_dir) -> None:
    with pytest.raises(KeyError):
        sessions.debit_session('missing', NOW)


def test_credit_never_drops_below_zero(ledger_dir) -> None:
    record = _register()

    updated = sessions.credit_session(record.token, count=3)

    assert updated.sessions_used == 0
    assert sessions.credit_session('missing') is None


@pytest.mark.parametrize(
    'name, total, expected',
    [
        ('Therapy (4 Sessions)', 6, 'Therapy (6 Sessions)'),
        ('Therapy (4 Sessions)', 1, 'Therapy (1 Session)'),
        ('Plain', 2, 'Plain (2 Sessions)'),
    ],
)
def test_rename_package_for_total(name: str, total: int, expected: str) -> None:
    assert sessions.rename_package_for_total(name, total) == expected


def test_override_sessions_renames_package_and_clamps_used(ledger_dir) -> None:
    record = _register(package=SessionPackage(id='four-sessions', name='Therapy (4 Sessions)', price=240))

    updated = sessions.override_sessions(record.token, sessions_total=2, sessions_used=5)

    assert (updated.sessions_total, updated.sessions_used) == (2, 2)
    assert updated.session_package.name == 'Therapy (2 Sessions)'
    assert updated.session_package.total_sessions == 2
    assert sessions.override_sessions('missing', sessions_total=1) is None
