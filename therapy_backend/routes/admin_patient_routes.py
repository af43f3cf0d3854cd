import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, field_validator

from therapy_backend import storage
from therapy_backend.auth.dependencies import get_current_admin
from therapy_backend.core.encryption import MedicalDataError, decrypt_medical_data, encrypt_medical_data
from therapy_backend.integrations import google_workspace
from therapy_backend.integrations.google_workspace import MailError
from therapy_backend.ledgers import patient_directory, token_ledger
from therapy_backend.models.booking_token import SessionPackage
from therapy_backend.models.fields import format_datetime, utcnow
from therapy_backend.routes.common import (
    bad_request,
    ensure_ledgers_ready,
    get_token_or_404,
    ledger_unavailable,
    upstream_failure,
)
from therapy_backend.routes.intake_routes import MedicalForm, normalize_email
from therapy_backend.services import bookings, sessions

logger = logging.getLogger(__name__)

router = APIRouter(tags=['admin'])

MEDICAL_FIELDS = (
    'emergencyContactName',
    'emergencyContactPhone',
    'emergencyContactRelation',
    'doctorName',
    'doctorPhone',
    'currentMedications',
    'allergies',
    'medicalConditions',
    'currentProblems',
    'therapyGoals',
    'therapyHistory',
    'substanceUse',
    'suicidalThoughts',
)


class CreatePatientRequest(BaseModel):
    medicalFormData: MedicalForm
    sessionPackage: SessionPackage | None = None


class PatientUpdates(BaseModel):
    model_config = ConfigDict(extra='allow')

    fullName: str | None = None
    email: str | None = None
    phone: str | None = None
    archived: bool | None = None

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str | None) -> str | None:
        return normalize_email(value) if value is not None else None


class UpdatePatientRequest(BaseModel):
    bookingToken: str
    updates: PatientUpdates


class ResendLinkRequest(BaseModel):
    bookingToken: str


class TherapistNotesRequest(BaseModel):
    bookingToken: str
    notes: str = ''


class SendEmailRequest(BaseModel):
    subject: str
    message: str
    recipients: list[str]

    @field_validator('subject', 'message')
    @classmethod
    def require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError('Subject and message are required.')
        return value.strip()

    @field_validator('recipients')
    @classmethod
    def validate_recipients(cls, value: list[str]) -> list[str]:
        recipients = list(dict.fromkeys(normalize_email(email) for email in value))
        if not recipients:
            raise ValueError('At least one recipient is required.')
        return recipients


@router.post('/create-patient', status_code=status.HTTP_201_CREATED)
def create_patient(data: CreatePatientRequest, admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()
    form = data.medicalFormData

    try:
        if bookings.email_registered(form.email):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='This email address is already registered.')
        record = bookings.register_patient(
            email=form.email,
            full_name=form.fullName,
            session_package=data.sessionPackage or SessionPackage(),
            medical_form=form.model_dump(),
            phone=form.phone,
            user_id=f'ADMIN-{admin_email}',
        )
        profile = patient_directory.find_by_token(record.token)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    return {
        'success': True,
        'patient': {
            'patientId': profile.id if profile else None,
            'bookingToken': record.token,
            'name': record.patient_name,
            'email': record.patient_email,
            'sessionInfo': sessions.get_session_info(record).to_response(),
        },
    }


@router.post('/update-patient')
def update_patient(data: UpdatePatientRequest, admin_email: str = Depends(get_current_admin)):
    updates = data.updates
    medical_updates = {
        field: value for field, value in (updates.model_extra or {}).items() if field in MEDICAL_FIELDS
    }
    if updates.phone is not None:
        medical_updates['phone'] = updates.phone
    if updates.fullName is not None:
        medical_updates['fullName'] = updates.fullName.strip()
    if updates.email is not None:
        medical_updates['email'] = updates.email

    basic_updates = {}
    if updates.fullName is not None:
        basic_updates['full_name'] = updates.fullName.strip()
    if updates.email is not None:
        basic_updates['email'] = updates.email
    if updates.phone is not None:
        basic_updates['phone'] = updates.phone
    if updates.archived is not None:
        basic_updates['status'] = 'inactive' if updates.archived else 'active'

    if not basic_updates and not medical_updates:
        raise bad_request('No supported fields to update.')

    ensure_ledgers_ready()

    try:
        with storage.ledger_lock:
            record = get_token_or_404(data.bookingToken)
            try:
                medical_form = decrypt_medical_data(record.encrypted_medical_form)
            except MedicalDataError as exc:
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail='Stored medical data could not be read.',
                ) from exc

            token_changes = {}
            if medical_updates:
                token_changes['encrypted_medical_form'] = encrypt_medical_data({**medical_form, **medical_updates})
            if 'full_name' in basic_updates:
                token_changes['patient_name'] = basic_updates['full_name']
            if 'email' in basic_updates:
                token_changes['patient_email'] = basic_updates['email']
            if token_changes:
                token_ledger.save_token(record.model_copy(update=token_changes))

            profile = patient_directory.update_patient(record.token, updated_by=admin_email, **basic_updates)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    logger.info('Admin %s updated patient %s', admin_email, record.token)
    return {
        'success': True,
        'message': 'Patient updated successfully',
        'patient': profile.to_payload() if profile else None,
    }


@router.post('/resend-booking-link')
async def resend_booking_link(data: ResendLinkRequest, admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()

    try:
        record = get_token_or_404(data.bookingToken)
        info = sessions.get_session_info(record)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    if not record.patient_email:
        raise bad_request('Patient email not found.')

    try:
        await google_workspace.send_booking_link(
            record.patient_email,
            record.patient_name,
            record.token,
            info.sessions_total,
        )
    except MailError as exc:
        raise upstream_failure('Failed to send email.', exc) from exc

    return {'success': True, 'message': 'Booking link sent successfully'}


@router.post('/therapist-notes')
def save_therapist_notes(data: TherapistNotesRequest, admin_email: str = Depends(get_current_admin)):
    """Store the therapist's private notes for a patient, encrypted like the medical form."""
    ensure_ledgers_ready()
    notes = data.notes.strip()

    try:
        with storage.ledger_lock:
            record = get_token_or_404(data.bookingToken)
            encrypted = ''
            if notes:
                encrypted = encrypt_medical_data(
                    {'notes': notes, 'updatedAt': format_datetime(utcnow()), 'updatedBy': admin_email}
                )
            token_ledger.save_token(record.model_copy(update={'encrypted_therapist_notes': encrypted}))
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    logger.info('Admin %s saved therapist notes for %s', admin_email, record.token)
    return {'success': True, 'message': 'Notes saved successfully'}


@router.get('/therapist-notes')
def read_therapist_notes(bookingToken: str = Query(...), admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()

    try:
        record = get_token_or_404(bookingToken)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    try:
        stored = decrypt_medical_data(record.encrypted_therapist_notes)
    except MedicalDataError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail='Stored notes could not be read.',
        ) from exc

    return {
        'success': True,
        'notes': stored.get('notes', ''),
        'updatedAt': stored.get('updatedAt'),
        'updatedBy': stored.get('updatedBy'),
    }


@router.post('/send-email')
async def send_email(data: SendEmailRequest, admin_email: str = Depends(get_current_admin)):
    sent = []
    failed = []
    last_error = None

    for recipient in data.recipients:
        try:
            await google_workspace.send_practice_message(recipient, data.subject, data.message)
        except MailError as exc:
            logger.warning('Could not send %r to %s: %s', data.subject, recipient, exc.details)
            failed.append({'email': recipient, 'details': exc.details})
            last_error = exc
            continue
        sent.append(recipient)

    if not sent:
        raise upstream_failure('Failed to send email.', last_error) from last_error

    logger.info('Admin %s sent %r to %s of %s recipient(s)', admin_email, data.subject, len(sent), len(data.recipients))
    return {'success': not failed, 'sent': sent, 'failed': failed}
