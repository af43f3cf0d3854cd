from datetime import date

from fastapi import HTTPException, status

from therapy_backend import storage
from therapy_backend.integrations.google_workspace import WorkspaceError
from therapy_backend.integrations.paypal import PaymentError
from therapy_backend.ledgers import token_ledger
from therapy_backend.ledgers.booking_ledger import SlotTakenError
from therapy_backend.models.booking_token import BookingToken
from therapy_backend.services.availability import parse_slot_date, parse_slot_time

STORAGE_UNAVAILABLE_DETAIL = 'Data storage unavailable. Verify DATA_DIR is readable and writable.'


def ledger_unavailable(exc: storage.LedgerError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=STORAGE_UNAVAILABLE_DETAIL)


def ensure_ledgers_ready() -> None:
    try:
        storage.ensure_ledger_files()
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc


def upstream_failure(message: str, exc: WorkspaceError | PaymentError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={'error': message, 'details': exc.details},
    )


def slot_conflict(exc: SlotTakenError, message: str = 'This time slot is already booked.') -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            'error': message,
            'conflicts': [{'date': slot_date, 'time': slot_time} for slot_date, slot_time in exc.conflicts],
        },
    )


def bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def parse_date_param(value: str, field_name: str) -> date:
    try:
        return parse_slot_date(value)
    except ValueError as exc:
        raise bad_request(f'{field_name} must be a date in YYYY-MM-DD format.') from exc


def validate_date_string(value: str) -> str:
    """Pydantic validator body for YYYY-MM-DD string fields."""
    normalized = value.strip()
    parse_slot_date(normalized)
    return normalized


def validate_time_string(value: str) -> str:
    """Pydantic validator body for HH:MM string fields."""
    normalized = value.strip()
    parsed = parse_slot_time(normalized)
    return parsed.strftime('%H:%M')


def get_token_or_404(booking_token: str) -> BookingToken:
    record = token_ledger.find_token(booking_token.strip())
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Booking token not found.')
    return record
