"""Booking token model definitions."""

from datetime import datetime
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field

from therapy_backend.ledgers.csv_codec import decode_json_field, encode_json_field
from therapy_backend.models.fields import format_datetime, parse_datetime, parse_int, utcnow


class SessionPackage(BaseModel):
    """A purchased bundle of sessions."""
    model_config = ConfigDict(populate_by_name=True, extra='allow')

    id: str | None = None
    name: str = 'Therapy Session'
    price: float = 0
    total_sessions: int | None = Field(default=None, alias='totalSessions')
    session_type: str | None = Field(default=None, alias='sessionType')

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_payload(cls, payload) -> 'SessionPackage | None':
        if isinstance(payload, SessionPackage):
            return payload
        if not isinstance(payload, dict):
            return None
        return cls.model_validate(payload)


class BookingToken(BaseModel):
    """Ties a patient's intake record to a package of sessions."""
    COLUMNS: ClassVar[list[str]] = [
        'bookingToken',
        'userId',
        'medicalFormData',
        'sessionPackage',
        'sessionsTotal',
        'sessionsUsed',
        'patientEmail',
        'patientName',
        'expiresAt',
        'createdAt',
        'therapistNotes',
    ]

    token: str
    user_id: str = ''
    encrypted_medical_form: str = ''
    session_package: SessionPackage = Field(default_factory=SessionPackage)
    sessions_total: int | None = None
    sessions_used: int | None = None
    patient_email: str = ''
    patient_name: str = ''
    expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    encrypted_therapist_notes: str = ''

    @classmethod
    def from_row(cls, row: dict[str, str]) -> 'BookingToken':
        package = SessionPackage.from_payload(decode_json_field(row.get('sessionPackage', ''), {}))
        return cls(
            token=row.get('bookingToken', ''),
            user_id=row.get('userId', ''),
            encrypted_medical_form=row.get('medicalFormData', ''),
            session_package=package or SessionPackage(),
            sessions_total=parse_int(row.get('sessionsTotal')),
            sessions_used=parse_int(row.get('sessionsUsed')),
            patient_email=row.get('patientEmail', ''),
            patient_name=row.get('patientName', ''),
            expires_at=parse_datetime(row.get('expiresAt')),
            created_at=parse_datetime(row.get('createdAt')) or utcnow(),
            encrypted_therapist_notes=row.get('therapistNotes', ''),
        )

    def to_row(self) -> dict[str, str]:
        return {
            'bookingToken': self.token,
            'userId': self.user_id,
            'medicalFormData': self.encrypted_medical_form,
            'sessionPackage': encode_json_field(self.session_package.to_payload()),
            'sessionsTotal': '' if self.sessions_total is None else str(self.sessions_total),
            'sessionsUsed': '' if self.sessions_used is None else str(self.sessions_used),
            'patientEmail': self.patient_email,
            'patientName': self.patient_name,
            'expiresAt': format_datetime(self.expires_at),
            'createdAt': format_datetime(self.created_at),
            'therapistNotes': self.encrypted_therapist_notes,
        }
