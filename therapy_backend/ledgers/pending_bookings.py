"""Local buffer for admin bookings not yet visible through the calendar API.

Calendar listings can lag a fresh insert by 5 to 30 minutes. Manual bookings
are kept here so the admin dashboard shows them immediately. An entry leaves
the buffer when a sync pass sees its event in the calendar listing, when its
event is cancelled, or after the TTL at the latest.
"""

import logging
from datetime import datetime, timedelta

from therapy_backend import storage
from therapy_backend.core import config
from therapy_backend.models.fields import format_datetime, parse_datetime, utcnow

logger = logging.getLogger(__name__)


def _max_age() -> timedelta:
    return timedelta(hours=config.PENDING_BOOKING_TTL_HOURS)


def _is_fresh(entry: dict, now: datetime) -> bool:
    cached_at = parse_datetime(entry.get('cachedAt'))
    return cached_at is not None and now - cached_at < _max_age()


def load_cache(now: datetime | None = None) -> list[dict]:
    """Load the buffer, dropping expired entries from the file as a side effect."""
    now = now or utcnow()
    with storage.ledger_lock:
        cache = storage.load_json(storage.PENDING_BOOKINGS_FILE, [])
        if not isinstance(cache, list):
            cache = []
        valid = [entry for entry in cache if isinstance(entry, dict) and _is_fresh(entry, now)]
        if len(valid) != len(cache):
            storage.save_json(storage.PENDING_BOOKINGS_FILE, valid)
    return valid


def add_booking(booking: dict, now: datetime | None = None) -> dict:
    now = now or utcnow()
    entry = {**booking, 'cachedAt': format_datetime(now), 'isFromCache': True}
    with storage.ledger_lock:
        cache = load_cache(now)
        cache.append(entry)
        storage.save_json(storage.PENDING_BOOKINGS_FILE, cache)
    logger.info('Booking %s added to pending buffer', booking.get('bookingToken'))
    return entry


def remove_booking(event_id: str) -> bool:
    with storage.ledger_lock:
        cache = load_cache()
        kept = [entry for entry in cache if entry.get('eventId') != event_id]
        if len(kept) == len(cache):
            return False
        storage.save_json(storage.PENDING_BOOKINGS_FILE, kept)
    logger.info('Booking for event %s removed from pending buffer', event_id)
    return True


def remove_for_tokens(booking_tokens: set[str]) -> int:
    with storage.ledger_lock:
        cache = load_cache()
        kept = [entry for entry in cache if entry.get('bookingToken') not in booking_tokens]
        if len(kept) != len(cache):
            storage.save_json(storage.PENDING_BOOKINGS_FILE, kept)
    return len(cache) - len(kept)


def reconcile(event_ids: set[str], now: datetime | None = None) -> int:
    """Drop every buffered entry whose event the calendar listing now returns."""
    with storage.ledger_lock:
        cache = load_cache(now)
        kept = [entry for entry in cache if entry.get('eventId') not in event_ids]
        confirmed = len(cache) - len(kept)
        if confirmed:
            storage.save_json(storage.PENDING_BOOKINGS_FILE, kept)

    if confirmed:
        logger.info('Confirmed %s pending booking(s) against the calendar', confirmed)
    return confirmed


def get_cached_bookings(now: datetime | None = None) -> list[dict]:
    return [
        {
            'eventId': entry.get('eventId'),
            'summary': f"Therapy Session - {entry.get('patientName', '')}",
            'start': entry.get('startDateTime'),
            'end': entry.get('endDateTime'),
            'patientEmail': entry.get('patientEmail'),
            'patientName': entry.get('patientName'),
            'sessionNumber': entry.get('sessionNumber', 1),
            'totalSessions': entry.get('totalSessions') or 1,
            'bookingToken': entry.get('bookingToken'),
            'meetLink': entry.get('meetLink'),
            'htmlLink': entry.get('calendarLink'),
            'sessionPackage': entry.get('sessionPackage'),
            'isFromCache': True,
            'cachedAt': entry.get('cachedAt'),
        }
        for entry in load_cache(now)
    ]


def clear_expired_bookings(now: datetime | None = None) -> int:
    """Sweep expired entries and return how many remain."""
    return len(load_cache(now))
