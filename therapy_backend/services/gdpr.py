"""Data-protection export and erasure over the token and booking ledgers.

Medical records carry a statutory retention period counted from the earliest
matching record. Until it has passed an erasure request deletes nothing and
reports the date from which deletion becomes possible.
"""

import logging
import re
from datetime import datetime

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, Field

from therapy_backend import storage
from therapy_backend.core import config
from therapy_backend.core.encryption import MedicalDataError, decrypt_medical_data
from therapy_backend.ledgers import booking_ledger, gdpr_log, patient_directory, pending_bookings, token_ledger
from therapy_backend.models.booking_token import BookingToken
from therapy_backend.models.fields import format_datetime, utcnow

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

ACTION_DELETION = 'deletion'
ACTION_EXPORT = 'data_export'

MEDICAL_STATUS_NONE = 'none'
MEDICAL_STATUS_DELETED = 'deleted'
MEDICAL_STATUS_RETENTION = 'retention_period'


class InvalidEmailError(ValueError):
    """Raised for a request whose email address is malformed."""


class DeletionResult(BaseModel):
    request_id: str = ''
    found_data: bool = False
    deleted_tokens: int = 0
    deleted_bookings: int = 0
    medical_data_status: str = MEDICAL_STATUS_NONE
    retention_info: str = ''
    deletable_from: datetime | None = None

    def to_response(self) -> dict:
        return {
            'requestId': self.request_id,
            'foundData': self.found_data,
            'deletedTokens': self.deleted_tokens,
            'deletedBookings': self.deleted_bookings,
            'medicalDataStatus': self.medical_data_status,
            'retentionInfo': self.retention_info,
            'deletableFrom': format_datetime(self.deletable_from) or None,
        }


class DataExport(BaseModel):
    request_date: datetime = Field(default_factory=utcnow)
    email: str
    personal_data: dict | None = None
    medical_data: dict | None = None
    bookings: list[dict] = Field(default_factory=list)

    def to_response(self) -> dict:
        return {
            'requestDate': format_datetime(self.request_date),
            'email': self.email,
            'personalData': self.personal_data,
            'medicalData': self.medical_data,
            'bookings': self.bookings,
        }


def validate_email(email: str) -> str:
    normalized = (email or '').strip()
    if not EMAIL_PATTERN.match(normalized):
        raise InvalidEmailError('Invalid email address.')
    return normalized


def _read_medical_form(record: BookingToken) -> dict:
    try:
        return decrypt_medical_data(record.encrypted_medical_form)
    except MedicalDataError:
        logger.warning('Skipping unreadable medical data for token %s', record.token)
        return {}


def find_records_for_email(email: str) -> list[tuple[BookingToken, dict]]:
    normalized = email.strip().lower()
    matches = []
    for record in token_ledger.list_tokens():
        medical_form = _read_medical_form(record)
        form_email = str(medical_form.get('email', '')).strip().lower()
        if normalized in (form_email, record.patient_email.strip().lower()):
            matches.append((record, medical_form))
    return matches


def retention_deadline(created_at: datetime) -> datetime:
    return created_at + relativedelta(years=config.MEDICAL_RETENTION_YEARS)


def _reject(email: str, action: str) -> None:
    gdpr_log.log_action(email or 'unknown', action, gdpr_log.STATUS_REJECTED, 'Invalid email format')


def request_deletion(email: str, action: str = ACTION_DELETION, now: datetime | None = None) -> DeletionResult:
    try:
        email = validate_email(email)
    except InvalidEmailError:
        _reject(email, action)
        raise

    now = now or utcnow()
    result = DeletionResult()

    try:
        with storage.ledger_lock:
            matches = find_records_for_email(email)
            if matches:
                result.found_data = True
                earliest = min(record.created_at for record, _ in matches)
                deadline = retention_deadline(earliest)

                if now >= deadline:
                    tokens = {record.token for record, _ in matches}
                    result.deleted_tokens = token_ledger.delete_tokens(tokens)
                    result.deleted_bookings = len(booking_ledger.delete_for_tokens(tokens))
                    patient_directory.delete_for_tokens(tokens)
                    pending_bookings.remove_for_tokens(tokens)
                    result.medical_data_status = MEDICAL_STATUS_DELETED
                else:
                    result.medical_data_status = MEDICAL_STATUS_RETENTION
                    result.deletable_from = deadline
                    result.retention_info = (
                        f'Medical records must be kept for {config.MEDICAL_RETENTION_YEARS} years. '
                        f'Deletion possible from {deadline.date().isoformat()}.'
                    )
    except storage.LedgerError as exc:
        gdpr_log.log_action(email, action, gdpr_log.STATUS_ERROR, str(exc))
        raise

    if not result.found_data:
        status = gdpr_log.STATUS_NO_DATA_FOUND
    elif result.medical_data_status == MEDICAL_STATUS_DELETED:
        status = gdpr_log.STATUS_COMPLETED
    else:
        status = gdpr_log.STATUS_PARTIAL

    result.request_id = gdpr_log.log_action(email, action, status, result.retention_info)
    return result


def export_data(email: str) -> DataExport:
    try:
        email = validate_email(email)
    except InvalidEmailError:
        _reject(email, ACTION_EXPORT)
        raise

    export = DataExport(email=email)
    matches = find_records_for_email(email)

    if matches:
        record, medical_form = matches[0]
        export.personal_data = {
            'fullName': medical_form.get('fullName') or record.patient_name,
            'email': medical_form.get('email') or record.patient_email,
            'phone': medical_form.get('phone', ''),
            'createdAt': format_datetime(record.created_at),
        }
        export.medical_data = medical_form or None
        for matched_record, _ in matches:
            export.bookings.extend(
                booking.to_response() for booking in booking_ledger.bookings_for_token(matched_record.token)
            )

    status = gdpr_log.STATUS_COMPLETED if matches else gdpr_log.STATUS_NO_DATA_FOUND
    gdpr_log.log_action(email, ACTION_EXPORT, status)
    return export
