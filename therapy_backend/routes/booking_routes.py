import logging

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator

from therapy_backend import storage
from therapy_backend.integrations.google_workspace import CalendarError
from therapy_backend.ledgers import booking_ledger, token_ledger
from therapy_backend.ledgers.booking_ledger import SlotTakenError
from therapy_backend.routes.common import (
    bad_request,
    ensure_ledgers_ready,
    get_token_or_404,
    ledger_unavailable,
    parse_date_param,
    slot_conflict,
    upstream_failure,
    validate_date_string,
    validate_time_string,
)
from therapy_backend.services import availability, bookings, sessions

logger = logging.getLogger(__name__)

router = APIRouter(tags=['bookings'])


class ValidateTokenRequest(BaseModel):
    bookingToken: str

    @field_validator('bookingToken')
    @classmethod
    def validate_booking_token(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Booking token is required.')
        return normalized


class AvailableTimesRequest(BaseModel):
    bookingToken: str | None = None
    startDate: str | None = None
    endDate: str | None = None
    sessionType: str | None = None

    @field_validator('sessionType')
    @classmethod
    def validate_session_type(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in sessions.SESSION_TYPE_DURATIONS:
            raise ValueError('Invalid session type.')
        return normalized


class CreateBookingRequest(BaseModel):
    bookingToken: str
    date: str
    time: str

    @field_validator('date')
    @classmethod
    def validate_date(cls, value: str) -> str:
        return validate_date_string(value)

    @field_validator('time')
    @classmethod
    def validate_time(cls, value: str) -> str:
        return validate_time_string(value)


class CancelBookingRequest(BaseModel):
    bookingId: str | None = None
    bookingToken: str | None = None
    date: str | None = None

    @model_validator(mode='after')
    def require_identifier(self) -> 'CancelBookingRequest':
        if not self.bookingId and not (self.bookingToken and self.date):
            raise ValueError('Provide bookingId, or bookingToken and date.')
        return self


def resolve_range(start_date: str | None, end_date: str | None):
    default_start, default_end = availability.default_range()
    start = parse_date_param(start_date, 'startDate') if start_date else default_start
    end = parse_date_param(end_date, 'endDate') if end_date else default_end
    if end < start:
        raise bad_request('endDate must not be before startDate.')
    return start, end


@router.post('/booking-token/validate')
def validate_booking_token(data: ValidateTokenRequest):
    ensure_ledgers_ready()

    try:
        record = get_token_or_404(data.bookingToken)
        info = sessions.get_session_info(record)
        history = booking_ledger.bookings_for_token(record.token)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    return {
        'valid': info.can_book,
        'sessionInfo': info.to_response(),
        'bookings': [booking.to_response() for booking in history],
    }


async def _available_times(start_date, end_date, admin_mode: bool, session_type: str | None) -> dict:
    start, end = resolve_range(start_date, end_date)
    ensure_ledgers_ready()

    try:
        days = await availability.get_available_times(start, end, admin_mode=admin_mode, session_type=session_type)
    except CalendarError as exc:
        raise upstream_failure('Failed to fetch calendar availability.', exc) from exc
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    return {
        'startDate': start.isoformat(),
        'endDate': end.isoformat(),
        'adminMode': admin_mode,
        'sessionType': session_type,
        'availableDays': days,
    }


@router.get('/bookings/available-times')
async def list_available_times(
    startDate: str | None = Query(default=None),
    endDate: str | None = Query(default=None),
    adminMode: bool = Query(default=False),
):
    return await _available_times(startDate, endDate, adminMode, None)


@router.post('/bookings/available-times')
async def list_available_times_for_token(data: AvailableTimesRequest):
    session_type = data.sessionType
    if data.bookingToken and session_type is None:
        ensure_ledgers_ready()
        try:
            record = get_token_or_404(data.bookingToken)
        except storage.LedgerError as exc:
            raise ledger_unavailable(exc) from exc
        session_type = sessions.session_type_for_package(record.session_package)

    return await _available_times(data.startDate, data.endDate, False, session_type)


@router.get('/bookings/check')
def check_slot(date: str = Query(...), time: str = Query(...)):
    try:
        slot_date = validate_date_string(date)
        slot_time = validate_time_string(time)
    except ValueError as exc:
        raise bad_request('date must be YYYY-MM-DD and time HH:MM.') from exc

    ensure_ledgers_ready()
    try:
        taken = booking_ledger.is_slot_taken(slot_date, slot_time)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    return {'date': slot_date, 'time': slot_time, 'available': not taken}


@router.get('/bookings/list')
def list_bookings(bookingToken: str = Query(...)):
    ensure_ledgers_ready()
    try:
        record = get_token_or_404(bookingToken)
        history = booking_ledger.bookings_for_token(record.token)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    return {'bookingToken': record.token, 'bookings': [booking.to_response() for booking in history]}


@router.post('/bookings/create', status_code=status.HTTP_201_CREATED)
async def create_booking(data: CreateBookingRequest):
    ensure_ledgers_ready()

    try:
        record = get_token_or_404(data.bookingToken)
        booking, event = await bookings.book_session(record, data.date, data.time)
        info = sessions.get_session_info(token_ledger.find_token(record.token) or record)
    except bookings.BookingRejectedError as exc:
        raise bad_request(str(exc)) from exc
    except SlotTakenError as exc:
        raise slot_conflict(exc) from exc
    except CalendarError as exc:
        raise upstream_failure('Failed to create calendar event.', exc) from exc
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    return {
        'success': True,
        'booking': booking.to_response(),
        'meetLink': event['meetLink'] or None,
        'calendarLink': event['htmlLink'] or None,
        'sessionInfo': info.to_response(),
    }


@router.post('/bookings/cancel')
async def cancel_booking(data: CancelBookingRequest):
    ensure_ledgers_ready()

    try:
        removed = booking_ledger.delete_booking(
            booking_id=data.bookingId,
            booking_token=data.bookingToken,
            date=data.date,
        )
        if not removed:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Booking not found.')
        result = await bookings.cancel_bookings(removed)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    return {'success': True, **result}
