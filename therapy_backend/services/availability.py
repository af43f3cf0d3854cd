"""Bookable slot computation.

Candidates come from the weekly template inside the booking horizon, with the
admin overrides from ``availability.csv`` layered on top in file order. A
candidate is offered for a session type when the session's whole duration
fits without touching a busy interval from the remote calendar or the local
booking ledger.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import NamedTuple
from zoneinfo import ZoneInfo

from therapy_backend.core import config
from therapy_backend.integrations import google_workspace
from therapy_backend.ledgers import availability_ledger, booking_ledger
from therapy_backend.models.availability import AvailabilityOverride
from therapy_backend.models.booking import Booking
from therapy_backend.models.fields import utcnow
from therapy_backend.services.sessions import (
    DEFAULT_SESSION_TYPE,
    SESSION_TYPE_DURATIONS,
    session_type_for_package,
)

logger = logging.getLogger(__name__)

DATE_FORMAT = '%Y-%m-%d'
TIME_FORMAT = '%H:%M'
SOURCE_TEMPLATE = 'template'
SOURCE_OVERRIDE = 'override'


class BusyInterval(NamedTuple):
    start: datetime
    end: datetime


def practice_timezone() -> ZoneInfo:
    return ZoneInfo(config.PRACTICE_TIMEZONE)


def parse_slot_date(value: str) -> date:
    return datetime.strptime(value.strip(), DATE_FORMAT).date()


def parse_slot_time(value: str) -> time:
    return datetime.strptime(value.strip(), TIME_FORMAT).time()


def slot_start(slot_date: str, slot_time: str) -> datetime:
    """Return the aware start of a ledger slot in the practice timezone."""
    return datetime.combine(parse_slot_date(slot_date), parse_slot_time(slot_time), tzinfo=practice_timezone())


def session_duration(session_type: str | None) -> timedelta:
    minutes = SESSION_TYPE_DURATIONS.get(session_type or DEFAULT_SESSION_TYPE, SESSION_TYPE_DURATIONS[DEFAULT_SESSION_TYPE])
    return timedelta(minutes=minutes)


def iterate_dates(start_date: date, end_date: date):
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def template_slots(start_date: date, end_date: date, today: date) -> set[tuple[str, str]]:
    horizon_end = today + timedelta(weeks=config.AVAILABILITY_HORIZON_WEEKS)
    slots: set[tuple[str, str]] = set()

    for current in iterate_dates(max(start_date, today), min(end_date, horizon_end)):
        if current.weekday() not in config.WORKING_WEEKDAYS:
            continue
        for slot_time in config.TEMPLATE_SLOT_TIMES:
            slots.add((current.strftime(DATE_FORMAT), slot_time))

    return slots


def apply_overrides(
    slots: set[tuple[str, str]],
    overrides: list[AvailabilityOverride],
    start_date: date,
    end_date: date,
) -> dict[tuple[str, str], str]:
    """Layer overrides over template slots; the last row for a slot wins."""
    candidates = {slot: SOURCE_TEMPLATE for slot in slots}
    first_day = start_date.strftime(DATE_FORMAT)
    last_day = end_date.strftime(DATE_FORMAT)

    for override in overrides:
        if not (first_day <= override.date <= last_day):
            continue
        slot = (override.date, override.time)
        if override.available:
            candidates[slot] = SOURCE_OVERRIDE
        else:
            candidates.pop(slot, None)

    return candidates


def booking_interval(booking: Booking) -> BusyInterval | None:
    try:
        start = slot_start(booking.date, booking.time)
    except ValueError:
        logger.warning('Skipping booking %s with unreadable slot %s %s', booking.booking_id, booking.date, booking.time)
        return None
    session_type = session_type_for_package(booking.session_package)
    return BusyInterval(start, start + session_duration(session_type))


def overlaps_busy(start: datetime, end: datetime, busy: list[BusyInterval]) -> bool:
    return any(start < interval.end and interval.start < end for interval in busy)


def build_availability(
    start_date: date,
    end_date: date,
    busy: list[BusyInterval],
    overrides: list[AvailabilityOverride],
    bookings: list[Booking],
    admin_mode: bool = False,
    session_type: str | None = None,
    now: datetime | None = None,
) -> list[dict]:
    now = now or utcnow()
    zone = practice_timezone()
    today = now.astimezone(zone).date()

    candidates = apply_overrides(template_slots(start_date, end_date, today), overrides, start_date, end_date)
    booked_slots = {(booking.date, booking.time) for booking in bookings}
    all_busy = list(busy)
    for booking in bookings:
        interval = booking_interval(booking)
        if interval is not None:
            all_busy.append(interval)

    consultation = session_duration('consultation')
    therapy = session_duration('therapy')
    grouped: dict[str, list[dict]] = {}

    for (slot_date, slot_time), source in candidates.items():
        try:
            start = slot_start(slot_date, slot_time)
        except ValueError:
            logger.warning('Skipping unreadable availability slot %s %s', slot_date, slot_time)
            continue
        if start <= now:
            continue

        fits_consultation = not overlaps_busy(start, start + consultation, all_busy)
        fits_therapy = not overlaps_busy(start, start + therapy, all_busy)

        if not admin_mode:
            if session_type == 'consultation' and not fits_consultation:
                continue
            if session_type == 'therapy' and not fits_therapy:
                continue
            if not (fits_consultation or fits_therapy):
                continue

        slot = {
            'time': slot_time,
            'dateTime': start.isoformat(),
            'canAccommodateConsultation': fits_consultation,
            'canAccommodateTherapy': fits_therapy,
            'source': source,
        }
        if admin_mode:
            slot['isBooked'] = (slot_date, slot_time) in booked_slots
        grouped.setdefault(slot_date, []).append(slot)

    return [
        {
            'date': slot_date,
            'dayOfWeek': parse_slot_date(slot_date).strftime('%A'),
            'slots': sorted(grouped[slot_date], key=lambda slot: slot['time']),
        }
        for slot_date in sorted(grouped)
    ]


def default_range(now: datetime | None = None) -> tuple[date, date]:
    today = (now or utcnow()).astimezone(practice_timezone()).date()
    return today, today + timedelta(days=config.DEFAULT_BOOKING_RANGE_DAYS)


async def get_available_times(
    start_date: date,
    end_date: date,
    admin_mode: bool = False,
    session_type: str | None = None,
    now: datetime | None = None,
) -> list[dict]:
    """Compute availability against the remote calendar; CalendarError propagates unchanged."""
    zone = practice_timezone()
    range_start = datetime.combine(start_date, time.min, tzinfo=zone)
    range_end = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=zone)

    remote_busy = await google_workspace.freebusy(range_start, range_end)
    busy = [BusyInterval(start, end) for start, end in remote_busy]

    return build_availability(
        start_date,
        end_date,
        busy,
        availability_ledger.list_overrides(),
        booking_ledger.list_bookings(),
        admin_mode=admin_mode,
        session_type=session_type,
        now=now,
    )
