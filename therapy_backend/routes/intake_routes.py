import logging

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, field_validator

from therapy_backend import storage
from therapy_backend.integrations import google_workspace
from therapy_backend.integrations.google_workspace import MailError
from therapy_backend.models.booking_token import SessionPackage
from therapy_backend.routes.common import ensure_ledgers_ready, ledger_unavailable
from therapy_backend.services import bookings, sessions
from therapy_backend.services.gdpr import EMAIL_PATTERN

logger = logging.getLogger(__name__)

router = APIRouter(tags=['intake'])

DEFAULT_INTAKE_PACKAGE = {'name': '4 Therapy Sessions', 'price': 350, 'sessionType': 'therapy'}


def normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    if not EMAIL_PATTERN.match(normalized):
        raise ValueError('A valid email address is required.')
    return normalized


class MedicalForm(BaseModel):
    model_config = ConfigDict(extra='allow')

    fullName: str
    email: str
    phone: str = ''

    @field_validator('fullName')
    @classmethod
    def validate_full_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Full name is required.')
        return normalized

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)


class MedicalFormSubmission(BaseModel):
    userId: str
    formData: MedicalForm
    sessionPackage: SessionPackage | None = None


class EmailCheckRequest(BaseModel):
    email: str

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)


@router.post('/medical-form/submit', status_code=status.HTTP_201_CREATED)
async def submit_medical_form(data: MedicalFormSubmission):
    ensure_ledgers_ready()
    package = data.sessionPackage or SessionPackage.model_validate(DEFAULT_INTAKE_PACKAGE)

    try:
        if bookings.email_registered(data.formData.email):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='This email address is already registered. Use your existing booking link or contact support.',
            )
        record = bookings.register_patient(
            email=data.formData.email,
            full_name=data.formData.fullName,
            session_package=package,
            medical_form=data.formData.model_dump(),
            phone=data.formData.phone,
            user_id=data.userId,
        )
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    message = 'Medical form submitted successfully. Check your email for the booking link.'
    try:
        await google_workspace.send_booking_link(
            record.patient_email,
            record.patient_name,
            record.token,
            sessions.get_session_info(record).sessions_total,
        )
    except MailError as exc:
        logger.warning('Booking link email to %s failed: %s', record.patient_email, exc.details)
        message = 'Medical form submitted successfully. The booking link will be sent shortly.'

    return {'success': True, 'message': message, 'bookingToken': record.token}


@router.post('/check-email-exists')
def check_email_exists(data: EmailCheckRequest):
    ensure_ledgers_ready()
    try:
        exists = bookings.email_registered(data.email)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc
    return {'email': data.email, 'exists': exists}
