import pytest

from therapy_backend import storage
from therapy_backend.ledgers import booking_ledger
from therapy_backend.models.booking import Booking


def _booking(booking_id: str, date: str, time: str = '19:00', token: str = 'token-a') -> Booking:
    return Booking(booking_id=booking_id, booking_token=token, date=date, time=time)


def test_ensure_ledger_files_creates_headers(ledger_dir) -> None:
    storage.ensure_ledger_files()

    content = (ledger_dir / storage.BOOKINGS_FILE).read_text(encoding='utf-8')
    assert content == ','.join(Booking.COLUMNS) + '\n'
    assert (ledger_dir / 'data').is_dir()
    assert (ledger_dir / 'cache').is_dir()


def test_older_ledger_gains_missing_columns_and_keeps_backup(ledger_dir) -> None:
    old_content = 'bookingId,bookingToken,date,time\nb1,token-a,2026-03-03,19:00\n'
    (ledger_dir / storage.BOOKINGS_FILE).write_text(old_content, encoding='utf-8')

    bookings = booking_ledger.list_bookings()

    assert [booking.booking_id for booking in bookings] == ['b1']
    assert bookings[0].status == 'upcoming'
    header = (ledger_dir / storage.BOOKINGS_FILE).read_text(encoding='utf-8').splitlines()[0]
    assert header.split(',') == Booking.COLUMNS
    assert (ledger_dir / (storage.BOOKINGS_FILE + '.backup')).read_text(encoding='utf-8') == old_content


def test_second_booking_for_same_slot_is_rejected(ledger_dir) -> None:
    booking_ledger.create_booking(_booking('b1', '2026-03-03'))

    with pytest.raises(booking_ledger.SlotTakenError) as exception_info:
        booking_ledger.create_booking(_booking('b2', '2026-03-03', token='token-b'))

    assert exception_info.value.conflicts == [('2026-03-03', '19:00')]
    assert [booking.booking_id for booking in booking_ledger.list_bookings()] == ['b1']


def test_series_is_written_all_or_nothing(ledger_dir) -> None:
    booking_ledger.create_booking(_booking('existing', '2026-03-17', token='token-b'))
    series = [_booking(f's{week}', date) for week, date in enumerate(['2026-03-03', '2026-03-10', '2026-03-17'])]

    with pytest.raises(booking_ledger.SlotTakenError) as exception_info:
        booking_ledger.create_bookings(series)

    assert exception_info.value.conflicts == [('2026-03-17', '19:00')]
    assert [booking.booking_id for booking in booking_ledger.list_bookings()] == ['existing']


def test_series_with_internal_duplicate_is_rejected(ledger_dir) -> None:
    with pytest.raises(booking_ledger.SlotTakenError):
        booking_ledger.create_bookings([_booking('s1', '2026-03-03'), _booking('s2', '2026-03-03')])

    assert booking_ledger.list_bookings() == []


def test_delete_series_from_date_keeps_earlier_sessions(ledger_dir) -> None:
    booking_ledger.create_bookings(
        [
            _booking('s1', '2026-03-03'),
            _booking('s2', '2026-03-10'),
            _booking('s3', '2026-03-17'),
            _booking('other', '2026-03-24', token='token-b'),
        ]
    )

    removed = booking_ledger.delete_series('token-a', from_date='2026-03-10')

    assert [booking.booking_id for booking in removed] == ['s2', 's3']
    assert [booking.booking_id for booking in booking_ledger.list_bookings()] == ['s1', 'other']


def test_delete_booking_by_token_and_date(ledger_dir) -> None:
    booking_ledger.create_bookings([_booking('s1', '2026-03-03'), _booking('s2', '2026-03-10')])

    removed = booking_ledger.delete_booking(booking_token='token-a', date='2026-03-10')

    assert [booking.booking_id for booking in removed] == ['s2']
    assert booking_ledger.delete_booking(booking_id='missing') == []


def test_delete_booking_requires_a_selector(ledger_dir) -> None:
    with pytest.raises(ValueError):
        booking_ledger.delete_booking(booking_token='token-a')


def test_update_booking_refuses_to_move_onto_taken_slot(ledger_dir) -> None:
    booking_ledger.create_bookings([_booking('s1', '2026-03-03'), _booking('s2', '2026-03-10', token='token-b')])

    with pytest.raises(booking_ledger.SlotTakenError):
        booking_ledger.update_booking('s1', date='2026-03-10')

    moved = booking_ledger.update_booking('s1', date='2026-03-05', time='21:00')
    assert (moved.date, moved.time) == ('2026-03-05', '21:00')
    assert booking_ledger.update_booking('missing', date='2026-03-06') is None


def test_find_booking_by_event(ledger_dir) -> None:
    booking_ledger.create_booking(_booking('s1', '2026-03-03'))
    booking_ledger.update_booking('s1', calendar_event_id='evt-1', meet_link='https://meet.google.com/abc')

    found = booking_ledger.find_booking_by_event('evt-1')

    assert found.booking_id == 's1'
    assert found.meet_link == 'https://meet.google.com/abc'
    assert booking_ledger.find_booking_by_event('') is None
