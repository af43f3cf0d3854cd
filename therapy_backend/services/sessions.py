"""Session counting for booking tokens."""

import logging
import re
from datetime import datetime

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel

from therapy_backend import storage
from therapy_backend.core import config
from therapy_backend.ledgers import booking_ledger, token_ledger
from therapy_backend.models.booking_token import BookingToken, SessionPackage
from therapy_backend.models.fields import format_datetime, utcnow

logger = logging.getLogger(__name__)

SESSION_TYPE_DURATIONS = {
    'consultation': 30,
    'therapy': 60,
}
DEFAULT_SESSION_TYPE = 'therapy'

PACKAGE_ID_SESSION_COUNTS = {
    'consultation': 1,
    'single-session': 1,
    'couples-session': 1,
    'four-sessions': 4,
    'six-sessions': 6,
}
PACKAGE_NAME_SESSION_COUNTS = (
    ('1 session', 1),
    ('4 session', 4),
    ('6 session', 6),
    ('8 session', 8),
)
DEFAULT_SESSION_COUNT = 4


class NoSessionsAvailableError(Exception):
    """Raised when a token cannot be debited for another booking."""


class SessionInfo(BaseModel):
    booking_token: str
    patient_email: str
    patient_name: str
    session_package: SessionPackage
    session_type: str
    sessions_total: int
    sessions_used: int
    sessions_remaining: int
    expires_at: datetime
    is_expired: bool
    can_book: bool

    def to_response(self) -> dict:
        return {
            'bookingToken': self.booking_token,
            'patientEmail': self.patient_email,
            'patientName': self.patient_name,
            'sessionPackage': self.session_package.to_payload(),
            'sessionType': self.session_type,
            'sessionsTotal': self.sessions_total,
            'sessionsUsed': self.sessions_used,
            'sessionsRemaining': self.sessions_remaining,
            'expiresAt': format_datetime(self.expires_at),
            'isExpired': self.is_expired,
            'isValid': self.can_book,
        }

    @property
    def block_reason(self) -> str | None:
        if self.is_expired:
            return 'Booking token has expired.'
        if self.sessions_remaining <= 0:
            return 'No remaining sessions available.'
        return None


def session_count_from_package(package: SessionPackage | None) -> int:
    if package is None:
        return DEFAULT_SESSION_COUNT

    if package.total_sessions:
        return package.total_sessions

    if package.id in PACKAGE_ID_SESSION_COUNTS:
        return PACKAGE_ID_SESSION_COUNTS[package.id]

    name = (package.name or '').lower()
    for needle, count in PACKAGE_NAME_SESSION_COUNTS:
        if needle in name:
            return count

    logger.warning('Unrecognised package %r, defaulting to %s sessions', package.name, DEFAULT_SESSION_COUNT)
    return DEFAULT_SESSION_COUNT


def session_type_for_package(package: SessionPackage | None) -> str:
    if package is None:
        return DEFAULT_SESSION_TYPE
    session_type = (package.session_type or '').strip().lower()
    if session_type in SESSION_TYPE_DURATIONS:
        return session_type
    if package.id == 'consultation':
        return 'consultation'
    return DEFAULT_SESSION_TYPE


def compute_expiry(created_at: datetime) -> datetime:
    return created_at + relativedelta(months=config.TOKEN_VALIDITY_MONTHS)


def get_session_info(record: BookingToken, now: datetime | None = None) -> SessionInfo:
    now = now or utcnow()
    sessions_total = record.sessions_total
    if sessions_total is None:
        sessions_total = session_count_from_package(record.session_package)

    sessions_used = record.sessions_used
    if sessions_used is None:
        sessions_used = len(booking_ledger.bookings_for_token(record.token))

    sessions_remaining = sessions_total - sessions_used
    expires_at = record.expires_at or compute_expiry(record.created_at)
    is_expired = now > expires_at

    return SessionInfo(
        booking_token=record.token,
        patient_email=record.patient_email,
        patient_name=record.patient_name,
        session_package=record.session_package,
        session_type=session_type_for_package(record.session_package),
        sessions_total=sessions_total,
        sessions_used=sessions_used,
        sessions_remaining=sessions_remaining,
        expires_at=expires_at,
        is_expired=is_expired,
        can_book=sessions_remaining > 0 and not is_expired,
    )


def debit_session(booking_token: str, now: datetime | None = None) -> BookingToken:
    with storage.ledger_lock:
        record = token_ledger.find_token(booking_token)
        if record is None:
            raise KeyError(booking_token)

        info = get_session_info(record, now)
        if not info.can_book:
            raise NoSessionsAvailableError(info.block_reason)

        updated = record.model_copy(
            update={'sessions_total': info.sessions_total, 'sessions_used': info.sessions_used + 1}
        )
        return token_ledger.save_token(updated)


def credit_session(booking_token: str, count: int = 1) -> BookingToken | None:
    """Give sessions back to a token once its cancelled rows have left the booking ledger.

    A blank used counter is settled from the rows that remain, which already
    excludes the cancelled ones. The used counter never drops below zero.
    """
    with storage.ledger_lock:
        record = token_ledger.find_token(booking_token)
        if record is None:
            logger.warning('Cannot credit session back to unknown token %s', booking_token)
            return None

        info = get_session_info(record)
        if record.sessions_used is None:
            sessions_used = info.sessions_used
        else:
            sessions_used = max(record.sessions_used - count, 0)
        updated = record.model_copy(
            update={'sessions_total': info.sessions_total, 'sessions_used': sessions_used}
        )
        token_ledger.save_token(updated)

    logger.info('Credited %s session(s) back to %s', count, booking_token)
    return updated


def rename_package_for_total(package_name: str, sessions_total: int) -> str:
    base_name = re.sub(r'\(\d+ Sessions?\)', '', package_name or '').strip()
    suffix = 'Session' if sessions_total == 1 else 'Sessions'
    return f'{base_name} ({sessions_total} {suffix})'.strip()


def override_sessions(
    booking_token: str,
    sessions_total: int | None = None,
    sessions_used: int | None = None,
) -> BookingToken | None:
    with storage.ledger_lock:
        record = token_ledger.find_token(booking_token)
        if record is None:
            return None

        info = get_session_info(record)
        new_total = info.sessions_total if sessions_total is None else sessions_total
        new_used = info.sessions_used if sessions_used is None else sessions_used
        new_used = min(new_used, new_total)

        package = record.session_package
        if new_total != info.sessions_total:
            package = package.model_copy(
                update={'name': rename_package_for_total(package.name, new_total), 'total_sessions': new_total}
            )

        updated = record.model_copy(
            update={'sessions_total': new_total, 'sessions_used': new_used, 'session_package': package}
        )
        token_ledger.save_token(updated)

    logger.info(
        'Sessions for %s set to %s used of %s (was %s of %s)',
        booking_token,
        new_used,
        new_total,
        info.sessions_used,
        info.sessions_total,
    )
    return updated
