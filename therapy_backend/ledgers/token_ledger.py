import logging

from therapy_backend import storage
from therapy_backend.models.booking_token import BookingToken

logger = logging.getLogger(__name__)


def list_tokens() -> list[BookingToken]:
    return [BookingToken.from_row(row) for row in storage.read_rows(storage.BOOKING_TOKENS_FILE)]


def find_token(booking_token: str) -> BookingToken | None:
    if not booking_token:
        return None
    for record in list_tokens():
        if record.token == booking_token:
            return record
    return None


def create_token(record: BookingToken) -> BookingToken:
    storage.append_row(storage.BOOKING_TOKENS_FILE, record.to_row())
    logger.info('Created booking token for %s', record.patient_name or record.user_id)
    return record


def save_token(record: BookingToken) -> BookingToken:
    with storage.ledger_lock:
        records = list_tokens()
        for index, existing in enumerate(records):
            if existing.token == record.token:
                records[index] = record
                break
        else:
            raise KeyError(record.token)
        storage.write_rows(storage.BOOKING_TOKENS_FILE, [item.to_row() for item in records])
    return record


def delete_tokens(booking_tokens: set[str]) -> int:
    with storage.ledger_lock:
        records = list_tokens()
        kept = [record for record in records if record.token not in booking_tokens]
        if len(kept) == len(records):
            return 0
        storage.write_rows(storage.BOOKING_TOKENS_FILE, [record.to_row() for record in kept])
    return len(records) - len(kept)
