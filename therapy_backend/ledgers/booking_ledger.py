import logging

from therapy_backend import storage
from therapy_backend.models.booking import Booking

logger = logging.getLogger(__name__)


class SlotTakenError(Exception):
    """Raised when a (date, time) pair is already present in the ledger."""

    def __init__(self, conflicts: list[tuple[str, str]]):
        self.conflicts = conflicts
        dates = ', '.join(f'{date} {time}' for date, time in conflicts)
        super().__init__(f'Slot already booked: {dates}')


def list_bookings() -> list[Booking]:
    return [Booking.from_row(row) for row in storage.read_rows(storage.BOOKINGS_FILE)]


def bookings_for_token(booking_token: str) -> list[Booking]:
    bookings = [booking for booking in list_bookings() if booking.booking_token == booking_token]
    return sorted(bookings, key=lambda booking: (booking.date, booking.time))


def find_booking_by_event(event_id: str) -> Booking | None:
    for booking in list_bookings():
        if booking.calendar_event_id and booking.calendar_event_id == event_id:
            return booking
    return None


def _taken_slots(bookings: list[Booking]) -> set[tuple[str, str]]:
    return {(booking.date, booking.time) for booking in bookings}


def is_slot_taken(date: str, time: str) -> bool:
    return (date, time) in _taken_slots(list_bookings())


def create_bookings(new_bookings: list[Booking]) -> list[Booking]:
    """Append every booking, or none of them if any slot is already taken.

    Slots are compared on the raw date and time strings.
    """
    with storage.ledger_lock:
        existing = list_bookings()
        taken = _taken_slots(existing)

        conflicts = []
        for booking in new_bookings:
            slot = (booking.date, booking.time)
            if slot in taken:
                conflicts.append(slot)
            taken.add(slot)

        if conflicts:
            raise SlotTakenError(conflicts)

        storage.write_rows(
            storage.BOOKINGS_FILE,
            [booking.to_row() for booking in existing + new_bookings],
        )

    logger.info('Added %s booking(s) to ledger', len(new_bookings))
    return new_bookings


def create_booking(booking: Booking) -> Booking:
    return create_bookings([booking])[0]


def update_booking(booking_id: str, **changes) -> Booking | None:
    with storage.ledger_lock:
        bookings = list_bookings()
        updated = None

        for index, booking in enumerate(bookings):
            if booking.booking_id != booking_id:
                continue
            new_date = changes.get('date', booking.date)
            new_time = changes.get('time', booking.time)
            if (new_date, new_time) != (booking.date, booking.time):
                others = _taken_slots(bookings[:index] + bookings[index + 1:])
                if (new_date, new_time) in others:
                    raise SlotTakenError([(new_date, new_time)])
            updated = booking.model_copy(update=changes)
            bookings[index] = updated
            break

        if updated is None:
            return None

        storage.write_rows(storage.BOOKINGS_FILE, [booking.to_row() for booking in bookings])

    return updated


def _remove_where(predicate) -> list[Booking]:
    with storage.ledger_lock:
        bookings = list_bookings()
        removed = [booking for booking in bookings if predicate(booking)]
        if not removed:
            return []
        kept = [booking for booking in bookings if not predicate(booking)]
        storage.write_rows(storage.BOOKINGS_FILE, [booking.to_row() for booking in kept])

    logger.info('Removed %s booking(s) from ledger', len(removed))
    return removed


def delete_booking(
    booking_id: str | None = None,
    booking_token: str | None = None,
    date: str | None = None,
) -> list[Booking]:
    if booking_id:
        return _remove_where(lambda booking: booking.booking_id == booking_id)
    if booking_token and date:
        return _remove_where(lambda booking: booking.booking_token == booking_token and booking.date == date)
    raise ValueError('Either booking_id or booking_token and date are required.')


def delete_series(booking_token: str, from_date: str | None = None) -> list[Booking]:
    def matches(booking: Booking) -> bool:
        if booking.booking_token != booking_token:
            return False
        return from_date is None or booking.date >= from_date

    return _remove_where(matches)


def delete_for_tokens(booking_tokens: set[str]) -> list[Booking]:
    return _remove_where(lambda booking: booking.booking_token in booking_tokens)
