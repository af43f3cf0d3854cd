import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator

from therapy_backend import storage
from therapy_backend.auth.dependencies import get_current_admin
from therapy_backend.core import config
from therapy_backend.core.encryption import MedicalDataError, decrypt_medical_data
from therapy_backend.integrations import google_workspace
from therapy_backend.integrations.google_workspace import CalendarError
from therapy_backend.ledgers import booking_ledger, patient_directory, pending_bookings, token_ledger
from therapy_backend.ledgers.booking_ledger import SlotTakenError
from therapy_backend.models.booking import Booking
from therapy_backend.models.booking_token import SessionPackage
from therapy_backend.models.fields import utcnow
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
from therapy_backend.services import bookings, sessions
from therapy_backend.services.availability import parse_slot_date, session_duration, slot_start

logger = logging.getLogger(__name__)

router = APIRouter(tags=['admin'])

RECURRING_FREQUENCY_WEEKS = {
    'weekly': 1,
    'biweekly': 2,
    'monthly': 4,
}
MAX_RECURRING_SESSIONS = 52


class ManualBookingRequest(BaseModel):
    patientName: str
    patientEmail: str
    date: str
    time: str
    sessionPackage: SessionPackage
    medicalData: dict = Field(default_factory=dict)
    notes: str = ''

    @field_validator('patientName', 'patientEmail')
    @classmethod
    def require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Patient name and email are required.')
        return normalized

    @field_validator('date')
    @classmethod
    def validate_date(cls, value: str) -> str:
        return validate_date_string(value)

    @field_validator('time')
    @classmethod
    def validate_time(cls, value: str) -> str:
        return validate_time_string(value)


class RecurringBookingRequest(BaseModel):
    patientName: str
    patientEmail: str
    patientPhone: str = ''
    startDate: str
    time: str
    sessionType: str = 'Single Session'
    frequency: str = 'weekly'
    duration: int = 6
    notes: str = ''

    @field_validator('patientName', 'patientEmail')
    @classmethod
    def require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Patient name and email are required.')
        return normalized

    @field_validator('startDate')
    @classmethod
    def validate_start_date(cls, value: str) -> str:
        return validate_date_string(value)

    @field_validator('time')
    @classmethod
    def validate_time(cls, value: str) -> str:
        return validate_time_string(value)

    @field_validator('frequency')
    @classmethod
    def validate_frequency(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in RECURRING_FREQUENCY_WEEKS:
            raise ValueError('Frequency must be weekly, biweekly or monthly.')
        return normalized

    @field_validator('duration')
    @classmethod
    def validate_duration(cls, value: int) -> int:
        if value < 1 or value > MAX_RECURRING_SESSIONS:
            raise ValueError(f'Duration must be between 1 and {MAX_RECURRING_SESSIONS} sessions.')
        return value


class CancelAppointmentRequest(BaseModel):
    bookingId: str | None = None
    eventId: str | None = None

    @model_validator(mode='after')
    def require_identifier(self) -> 'CancelAppointmentRequest':
        if not self.bookingId and not self.eventId:
            raise ValueError('Provide bookingId or eventId.')
        return self


class ModifyBookingRequest(BaseModel):
    eventId: str
    action: str
    newDate: str | None = None
    newTime: str | None = None
    reason: str = ''

    @field_validator('action')
    @classmethod
    def validate_action(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {'reschedule', 'cancel'}:
            raise ValueError('Action must be "reschedule" or "cancel".')
        return normalized


class UpdateMeetLinkRequest(BaseModel):
    eventId: str
    meetLink: str

    @field_validator('eventId')
    @classmethod
    def validate_event_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError('Event id is required.')
        return value.strip()

    @field_validator('meetLink')
    @classmethod
    def validate_meet_link(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized.startswith('https://'):
            raise ValueError('Meet link must be an https URL.')
        return normalized


class UpdateSessionsRequest(BaseModel):
    bookingToken: str
    sessionsTotal: int | None = None
    sessionsUsed: int | None = None


def recurring_dates(start_date: str, frequency: str, duration: int) -> list[str]:
    step = timedelta(weeks=RECURRING_FREQUENCY_WEEKS[frequency])
    first = parse_slot_date(start_date)
    return [(first + step * index).isoformat() for index in range(duration)]


def _patient_summary(record) -> dict:
    try:
        medical_form = decrypt_medical_data(record.encrypted_medical_form)
    except MedicalDataError:
        logger.warning('Unreadable medical data for token %s', record.token)
        medical_form = {'error': True}

    profile = patient_directory.find_by_token(record.token)
    return {
        'bookingToken': record.token,
        'userId': record.user_id,
        'patientName': record.patient_name,
        'patientEmail': record.patient_email,
        'medicalFormData': medical_form,
        'profile': profile.to_payload() if profile else None,
        'sessionInfo': sessions.get_session_info(record).to_response(),
    }


@router.get('/data')
async def get_admin_data(admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()

    try:
        records = token_ledger.list_tokens()
        patients = [_patient_summary(record) for record in records]
        by_token = {patient['bookingToken']: patient for patient in patients}
        ledger_bookings = []
        for booking in booking_ledger.list_bookings():
            patient = by_token.get(booking.booking_token)
            ledger_bookings.append(
                {
                    **booking.to_response(),
                    'patientName': patient['patientName'] if patient else None,
                    'patientEmail': patient['patientEmail'] if patient else None,
                }
            )
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    now = utcnow()
    calendar_error = None
    try:
        upcoming = await google_workspace.list_therapy_sessions(
            now, now + timedelta(weeks=config.AVAILABILITY_HORIZON_WEEKS)
        )
        pending_bookings.reconcile({session['eventId'] for session in upcoming if session.get('eventId')}, now)
    except CalendarError as exc:
        logger.warning('Calendar listing failed for admin dashboard: %s', exc.details)
        upcoming = []
        calendar_error = exc.details

    listed_ids = {session['eventId'] for session in upcoming}
    cached = [entry for entry in pending_bookings.get_cached_bookings(now) if entry['eventId'] not in listed_ids]

    return {
        'success': True,
        'bookings': ledger_bookings,
        'patients': patients,
        'upcomingSessions': upcoming + cached,
        'calendarError': calendar_error,
    }


@router.post('/manual-booking', status_code=status.HTTP_201_CREATED)
async def create_manual_booking(data: ManualBookingRequest, admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()

    try:
        record = bookings.register_patient(
            email=data.patientEmail,
            full_name=data.patientName,
            session_package=data.sessionPackage,
            medical_form=data.medicalData or None,
            user_id=f'MANUAL-{admin_email}',
        )
        try:
            booking, event = await bookings.book_session(record, data.date, data.time, notify=False)
        except (bookings.BookingRejectedError, SlotTakenError, CalendarError):
            bookings.discard_patient(record.token)
            raise
        pending_bookings.add_booking(
            {
                'bookingToken': record.token,
                'bookingId': booking.booking_id,
                'eventId': event['eventId'],
                'patientName': record.patient_name,
                'patientEmail': record.patient_email,
                'startDateTime': event['startDateTime'],
                'endDateTime': event['endDateTime'],
                'meetLink': event['meetLink'],
                'calendarLink': event['htmlLink'],
                'sessionPackage': record.session_package.to_payload(),
                'sessionNumber': booking.session_number,
                'totalSessions': event['totalSessions'],
                'notes': data.notes,
            }
        )
    except bookings.BookingRejectedError as exc:
        raise bad_request(str(exc)) from exc
    except SlotTakenError as exc:
        raise slot_conflict(exc) from exc
    except CalendarError as exc:
        raise upstream_failure('Failed to create calendar event.', exc) from exc
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    logger.info('Admin %s booked %s %s for %s', admin_email, data.date, data.time, record.patient_email)
    return {
        'success': True,
        'booking': {
            **booking.to_response(),
            'eventId': event['eventId'],
            'patientName': record.patient_name,
            'patientEmail': record.patient_email,
            'calendarLink': event['htmlLink'] or None,
            'notes': data.notes,
        },
    }


@router.post('/recurring', status_code=status.HTTP_201_CREATED)
def create_recurring_bookings(data: RecurringBookingRequest, admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()
    dates = recurring_dates(data.startDate, data.frequency, data.duration)
    package = SessionPackage(
        id='recurring-sessions',
        name=f'Recurring {data.sessionType} ({data.duration} sessions)',
        price=data.duration * (120 if 'couples' in data.sessionType.lower() else 100),
        total_sessions=data.duration,
        recurring=True,
    )

    try:
        with storage.ledger_lock:
            conflicts = [(slot_date, data.time) for slot_date in dates if booking_ledger.is_slot_taken(slot_date, data.time)]
            if conflicts:
                raise SlotTakenError(conflicts)

            record = bookings.register_patient(
                email=data.patientEmail,
                full_name=data.patientName,
                session_package=package,
                medical_form={
                    'fullName': data.patientName,
                    'email': data.patientEmail,
                    'phone': data.patientPhone,
                    'currentProblems': data.notes,
                },
                phone=data.patientPhone,
                user_id=f'RECURRING-{admin_email}',
                sessions_total=data.duration,
                sessions_used=data.duration,
            )
            created = booking_ledger.create_bookings(
                [
                    Booking(
                        booking_id=bookings.generate_booking_id(),
                        booking_token=record.token,
                        date=slot_date,
                        time=data.time,
                        session_package=package,
                        session_number=index + 1,
                    )
                    for index, slot_date in enumerate(dates)
                ]
            )
    except SlotTakenError as exc:
        raise slot_conflict(exc, 'Some time slots are already booked.') from exc
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    return {
        'success': True,
        'sharedBookingToken': record.token,
        'bookingIds': [booking.booking_id for booking in created],
        'totalSessions': data.duration,
        'dates': dates,
        'message': f'Created {data.duration} recurring appointments',
    }


@router.delete('/recurring')
async def cancel_recurring_bookings(
    bookingToken: str = Query(...),
    fromDate: str | None = Query(default=None),
    admin_email: str = Depends(get_current_admin),
):
    if fromDate:
        fromDate = parse_date_param(fromDate, 'fromDate').isoformat()
    ensure_ledgers_ready()

    try:
        removed = booking_ledger.delete_series(bookingToken.strip(), fromDate)
        result = await bookings.cancel_bookings(removed, notify=False)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    scope = f'from {fromDate} onwards' if fromDate else 'in the series'
    return {
        'success': True,
        'cancelledCount': len(removed),
        'message': f'Cancelled {len(removed)} recurring appointments {scope}',
        **result,
    }


async def _cancel_by_event(event_id: str) -> dict:
    booking = booking_ledger.find_booking_by_event(event_id)
    if booking is not None:
        removed = booking_ledger.delete_booking(booking_id=booking.booking_id)
        return await bookings.cancel_bookings(removed)

    # Event known only to the calendar, e.g. created before the ledger existed.
    try:
        await google_workspace.delete_event(event_id)
    except CalendarError as exc:
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Event not found.') from exc
        raise upstream_failure('Failed to cancel calendar event.', exc) from exc
    pending_bookings.remove_booking(event_id)
    return {'cancelledBookings': [], 'sessionsCredited': 0, 'calendarEventsDeleted': 1}


@router.post('/cancel-appointment')
async def cancel_appointment(data: CancelAppointmentRequest, admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()

    try:
        if data.bookingId:
            removed = booking_ledger.delete_booking(booking_id=data.bookingId)
            if not removed:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Booking not found.')
            result = await bookings.cancel_bookings(removed)
        else:
            result = await _cancel_by_event(data.eventId)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    logger.info('Admin %s cancelled appointment %s', admin_email, data.bookingId or data.eventId)
    return {'success': True, 'message': 'Appointment cancelled.', **result}


async def _reschedule(data: ModifyBookingRequest) -> dict:
    if not data.newDate or not data.newTime:
        raise bad_request('New date and time required for rescheduling.')
    try:
        new_date = validate_date_string(data.newDate)
        new_time = validate_time_string(data.newTime)
    except ValueError as exc:
        raise bad_request('Invalid date or time format.') from exc

    start = slot_start(new_date, new_time)
    if start <= utcnow():
        raise bad_request('Cannot move a session into the past.')

    booking = booking_ledger.find_booking_by_event(data.eventId)
    session_type = sessions.session_type_for_package(booking.session_package if booking else None)
    end = start + session_duration(session_type)

    with storage.ledger_lock:
        if booking is not None and (new_date, new_time) != (booking.date, booking.time):
            if booking_ledger.is_slot_taken(new_date, new_time):
                raise slot_conflict(SlotTakenError([(new_date, new_time)]))

    try:
        updated_event = await google_workspace.patch_event(data.eventId, start, end)
    except CalendarError as exc:
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Event not found.') from exc
        raise upstream_failure('Failed to reschedule calendar event.', exc) from exc

    if booking is not None:
        try:
            booking_ledger.update_booking(booking.booking_id, date=new_date, time=new_time)
        except SlotTakenError as exc:
            # Someone took the slot between the check and the remote update.
            logger.warning('Event %s moved remotely but ledger slot %s %s was taken', data.eventId, new_date, new_time)
            raise slot_conflict(exc) from exc

    return {
        'success': True,
        'message': 'Booking rescheduled successfully',
        'event': {
            'eventId': data.eventId,
            'newDate': new_date,
            'newTime': new_time,
            'meetLink': google_workspace.extract_meet_link(updated_event) or None,
            'ledgerUpdated': booking is not None,
        },
    }


@router.post('/modify-booking')
async def modify_booking(data: ModifyBookingRequest, admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()

    try:
        if data.action == 'reschedule':
            result = await _reschedule(data)
        else:
            result = {'success': True, 'message': 'Booking cancelled successfully', **await _cancel_by_event(data.eventId)}
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    logger.info('Admin %s applied %s to event %s. %s', admin_email, data.action, data.eventId, data.reason)
    return result


@router.post('/update-meet-link')
async def update_meet_link(data: UpdateMeetLinkRequest, admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()

    try:
        await google_workspace.set_meet_link(data.eventId, data.meetLink)
    except CalendarError as exc:
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Event not found.') from exc
        raise upstream_failure('Failed to update meet link.', exc) from exc

    try:
        booking = booking_ledger.find_booking_by_event(data.eventId)
        if booking is not None:
            booking_ledger.update_booking(booking.booking_id, meet_link=data.meetLink)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    logger.info('Admin %s set the Meet link of event %s', admin_email, data.eventId)
    return {
        'success': True,
        'eventId': data.eventId,
        'meetLink': data.meetLink,
        'ledgerUpdated': booking is not None,
        'message': 'Calendar event updated with specified meet link',
    }


@router.post('/update-sessions')
def update_sessions(data: UpdateSessionsRequest, admin_email: str = Depends(get_current_admin)):
    if data.sessionsTotal is not None and data.sessionsTotal < 0:
        raise bad_request('Total sessions cannot be negative.')
    if data.sessionsUsed is not None and data.sessionsUsed < 0:
        raise bad_request('Used sessions cannot be negative.')
    if data.sessionsTotal is not None and data.sessionsUsed is not None and data.sessionsUsed > data.sessionsTotal:
        raise bad_request('Used sessions cannot exceed total sessions.')

    ensure_ledgers_ready()

    try:
        get_token_or_404(data.bookingToken)
        record = sessions.override_sessions(data.bookingToken.strip(), data.sessionsTotal, data.sessionsUsed)
        patient = patient_directory.update_patient(record.token, updated_by=admin_email)
        info = sessions.get_session_info(record)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    return {
        'success': True,
        'patient': {
            'bookingToken': record.token,
            'fullName': record.patient_name,
            'sessionsTotal': info.sessions_total,
            'sessionsUsed': info.sessions_used,
            'sessionsRemaining': info.sessions_remaining,
            'packageName': record.session_package.name,
            'lastUpdated': patient.to_payload()['lastUpdated'] if patient else None,
            'updatedBy': admin_email,
        },
    }
