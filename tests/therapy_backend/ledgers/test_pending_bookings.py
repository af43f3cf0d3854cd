from datetime import datetime, timedelta, timezone

import pytest

from therapy_backend import storage
from therapy_backend.ledgers import pending_bookings

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _entry(event_id: str, token: str = 'token-a') -> dict:
    return {
        'eventId': event_id,
        'bookingToken': token,
        'patientName': 'Ana Silva',
        'patientEmail': 'ana@example.com',
        'startDateTime': '2026-03-03T19:00:00+00:00',
        'endDateTime': '2026-03-03T20:00:00+00:00',
        'sessionNumber': 1,
        'totalSessions': 4,
    }


def test_cached_booking_is_listed_for_the_dashboard(ledger_dir) -> None:
    pending_bookings.add_booking(_entry('evt-1'), now=NOW)

    cached = pending_bookings.get_cached_bookings(now=NOW + timedelta(minutes=10))

    assert len(cached) == 1
    assert cached[0]['eventId'] == 'evt-1'
    assert cached[0]['summary'] == 'Therapy Session - Ana Silva'
    assert cached[0]['isFromCache'] is True


def test_entries_expire_after_ttl(ledger_dir, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('therapy_backend.core.config.PENDING_BOOKING_TTL_HOURS', 24)
    pending_bookings.add_booking(_entry('evt-old'), now=NOW - timedelta(hours=25))
    pending_bookings.add_booking(_entry('evt-new'), now=NOW - timedelta(hours=1))

    remaining = pending_bookings.clear_expired_bookings(now=NOW)

    assert remaining == 1
    stored = storage.load_json(storage.PENDING_BOOKINGS_FILE, [])
    assert [entry['eventId'] for entry in stored] == ['evt-new']


def test_reconcile_drops_entries_seen_in_calendar(ledger_dir) -> None:
    pending_bookings.add_booking(_entry('evt-1'), now=NOW)
    pending_bookings.add_booking(_entry('evt-2'), now=NOW)

    confirmed = pending_bookings.reconcile({'evt-1', 'evt-unrelated'}, now=NOW)

    assert confirmed == 1
    assert [entry['eventId'] for entry in pending_bookings.load_cache(NOW)] == ['evt-2']


def test_remove_by_event_and_by_token(ledger_dir) -> None:
    pending_bookings.add_booking(_entry('evt-1', token='token-a'))
    pending_bookings.add_booking(_entry('evt-2', token='token-b'))

    assert pending_bookings.remove_booking('evt-1') is True
    assert pending_bookings.remove_booking('evt-1') is False
    assert pending_bookings.remove_for_tokens({'token-b'}) == 1
    assert pending_bookings.load_cache() == []


def test_unreadable_cache_file_is_treated_as_empty(ledger_dir) -> None:
    cache_file = ledger_dir / storage.PENDING_BOOKINGS_FILE
    cache_file.parent.mkdir(parents=True, exist_ok=True)
    cache_file.write_text('{broken', encoding='utf-8')

    assert pending_bookings.load_cache(NOW) == []
