"""Patient registration, booking and cancellation flows.

A booking is reserved in the ledger and debited from the token before the
calendar event is created, so two requests for the same slot cannot both
reach the calendar. When the calendar call fails the reservation is rolled
back.
"""

import logging
import secrets
import uuid
from collections import Counter
from datetime import datetime

from therapy_backend import storage
from therapy_backend.core.encryption import encrypt_medical_data
from therapy_backend.integrations import google_workspace
from therapy_backend.integrations.google_workspace import CalendarError, MailError
from therapy_backend.ledgers import booking_ledger, patient_directory, pending_bookings, token_ledger
from therapy_backend.models.booking import Booking
from therapy_backend.models.booking_token import BookingToken, SessionPackage
from therapy_backend.models.fields import utcnow
from therapy_backend.models.patient import PatientProfile
from therapy_backend.services import sessions
from therapy_backend.services.availability import session_duration, slot_start

logger = logging.getLogger(__name__)


class BookingRejectedError(Exception):
    """Raised when a booking request fails a business rule."""


def generate_booking_token() -> str:
    return secrets.token_urlsafe(24)


def generate_booking_id() -> str:
    return f'booking-{uuid.uuid4().hex}'


def email_registered(email: str) -> bool:
    normalized = email.strip().lower()
    if any(patient.status == 'active' for patient in patient_directory.find_by_email(normalized)):
        return True
    return any(record.patient_email.strip().lower() == normalized for record in token_ledger.list_tokens())


def register_patient(
    email: str,
    full_name: str,
    session_package: SessionPackage,
    medical_form: dict | None = None,
    phone: str = '',
    user_id: str = '',
    sessions_total: int | None = None,
    sessions_used: int = 0,
    now: datetime | None = None,
) -> BookingToken:
    """Create a booking token and the matching patient profile."""
    now = now or utcnow()
    if sessions_total is None:
        sessions_total = sessions.session_count_from_package(session_package)

    record = BookingToken(
        token=generate_booking_token(),
        user_id=user_id,
        encrypted_medical_form=encrypt_medical_data(medical_form or {'email': email, 'fullName': full_name}),
        session_package=session_package,
        sessions_total=sessions_total,
        sessions_used=sessions_used,
        patient_email=email.strip().lower(),
        patient_name=full_name.strip(),
        expires_at=sessions.compute_expiry(now),
        created_at=now,
    )

    with storage.ledger_lock:
        token_ledger.create_token(record)
        patient_directory.add_patient(
            PatientProfile(
                id=str(uuid.uuid4()),
                booking_token=record.token,
                full_name=record.patient_name,
                email=record.patient_email,
                phone=phone,
                created_at=now,
                last_activity=now,
            )
        )
    return record


def discard_patient(booking_token: str) -> None:
    """Remove a just-registered patient whose first booking could not be made."""
    with storage.ledger_lock:
        token_ledger.delete_tokens({booking_token})
        patient_directory.delete_for_tokens({booking_token})
    logger.info('Discarded registration for token %s', booking_token)


def reserve_booking(record: BookingToken, slot_date: str, slot_time: str, now: datetime | None = None) -> Booking:
    """Add a ledger row for the slot and debit one session, atomically."""
    now = now or utcnow()
    try:
        start = slot_start(slot_date, slot_time)
    except ValueError as exc:
        raise BookingRejectedError('Date must be YYYY-MM-DD and time HH:MM.') from exc
    if start <= now:
        raise BookingRejectedError('Cannot book a session in the past.')

    with storage.ledger_lock:
        info = sessions.get_session_info(token_ledger.find_token(record.token) or record, now)
        if not info.can_book:
            raise BookingRejectedError(info.block_reason)
        if booking_ledger.is_slot_taken(slot_date, slot_time):
            raise booking_ledger.SlotTakenError([(slot_date, slot_time)])

        try:
            sessions.debit_session(record.token, now)
        except sessions.NoSessionsAvailableError as exc:
            raise BookingRejectedError(str(exc)) from exc

        try:
            booking = booking_ledger.create_booking(
                Booking(
                    booking_id=generate_booking_id(),
                    booking_token=record.token,
                    date=slot_date,
                    time=slot_time,
                    session_package=record.session_package,
                    created_at=now,
                    session_number=info.sessions_used + 1,
                )
            )
        except booking_ledger.SlotTakenError:
            sessions.credit_session(record.token)
            raise
    return booking


def release_booking(booking: Booking) -> None:
    with storage.ledger_lock:
        booking_ledger.delete_booking(booking_id=booking.booking_id)
        sessions.credit_session(booking.booking_token)
    logger.info('Released reservation %s', booking.booking_id)


async def _notify(description: str, coroutine) -> None:
    try:
        await coroutine
    except MailError as exc:
        logger.warning('Could not send %s: %s', description, exc.details)


async def book_session(
    record: BookingToken,
    slot_date: str,
    slot_time: str,
    notify: bool = True,
    now: datetime | None = None,
) -> tuple[Booking, dict]:
    """Book a slot end to end and return the ledger row with the calendar event summary."""
    booking = reserve_booking(record, slot_date, slot_time, now)
    info = sessions.get_session_info(token_ledger.find_token(record.token) or record, now)
    start = slot_start(slot_date, slot_time)
    end = start + session_duration(info.session_type)

    try:
        event = await google_workspace.insert_therapy_event(
            booking_token=record.token,
            booking_id=booking.booking_id,
            patient_email=record.patient_email,
            patient_name=record.patient_name,
            start=start,
            end=end,
            session_number=booking.session_number,
            total_sessions=info.sessions_total,
            session_package=record.session_package.to_payload(),
        )
    except CalendarError:
        release_booking(booking)
        raise

    booking = booking_ledger.update_booking(
        booking.booking_id,
        calendar_event_id=event['eventId'],
        meet_link=event['meetLink'],
    ) or booking
    event = {**event, 'startDateTime': start.isoformat(), 'endDateTime': end.isoformat(), 'totalSessions': info.sessions_total}

    if notify:
        await _notify(
            'booking confirmation',
            google_workspace.send_booking_confirmation(
                record.patient_email,
                record.patient_name,
                start,
                event['meetLink'],
                booking.session_number,
                info.sessions_total,
            ),
        )
        await _notify(
            'admin booking notification',
            google_workspace.send_admin_notification(
                f'New booking: {record.patient_name}',
                [
                    f'Patient: {record.patient_name} ({record.patient_email})',
                    f'Session {booking.session_number} of {info.sessions_total}',
                    f'When: {slot_date} {slot_time}',
                ],
            ),
        )

    logger.info('Booked %s %s for token %s', slot_date, slot_time, record.token)
    return booking, event


async def cancel_bookings(removed: list[Booking], notify: bool = True) -> dict:
    """Finish a cancellation after rows left the ledger.

    Credits each session back and deletes each remote event. Either side may
    fail on its own; failures are logged and the other side still runs.
    """
    credited = 0
    events_deleted = 0

    # One credit per token so a blank used counter is settled once.
    for booking_token, count in Counter(booking.booking_token for booking in removed).items():
        try:
            if sessions.credit_session(booking_token, count) is not None:
                credited += count
        except storage.LedgerError as exc:
            logger.warning('Could not credit %s session(s) for %s: %s', count, booking_token, exc)

    for booking in removed:
        if not booking.calendar_event_id:
            continue
        try:
            await google_workspace.delete_event(booking.calendar_event_id)
            events_deleted += 1
        except CalendarError as exc:
            logger.warning('Could not delete calendar event %s: %s', booking.calendar_event_id, exc.details)
        pending_bookings.remove_booking(booking.calendar_event_id)

    if notify:
        for booking in removed:
            record = token_ledger.find_token(booking.booking_token)
            if record is None or not record.patient_email:
                continue
            await _notify(
                'cancellation email',
                google_workspace.send_cancellation(record.patient_email, record.patient_name, booking.date, booking.time),
            )

    return {
        'cancelledBookings': [booking.to_response() for booking in removed],
        'sessionsCredited': credited,
        'calendarEventsDeleted': events_deleted,
    }
