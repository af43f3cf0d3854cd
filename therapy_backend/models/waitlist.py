"""Waitlist model definitions."""

from datetime import datetime
from typing import ClassVar

from pydantic import BaseModel, Field

from therapy_backend.ledgers.csv_codec import decode_json_field, encode_json_field
from therapy_backend.models.fields import format_datetime, parse_datetime, utcnow


class WaitlistEntry(BaseModel):
    """A patient waiting for a free slot."""
    COLUMNS: ClassVar[list[str]] = [
        'waitlistId',
        'patientName',
        'patientEmail',
        'patientPhone',
        'preferredDates',
        'preferredTimes',
        'sessionType',
        'priority',
        'status',
        'createdAt',
        'notes',
    ]

    waitlist_id: str
    patient_name: str
    patient_email: str
    patient_phone: str = ''
    preferred_dates: list[str] = Field(default_factory=list)
    preferred_times: list[str] = Field(default_factory=list)
    session_type: str = 'Single Session'
    priority: str = 'normal'
    status: str = 'active'
    created_at: datetime = Field(default_factory=utcnow)
    notes: str = ''

    @classmethod
    def from_row(cls, row: dict[str, str]) -> 'WaitlistEntry':
        return cls(
            waitlist_id=row.get('waitlistId', ''),
            patient_name=row.get('patientName', ''),
            patient_email=row.get('patientEmail', ''),
            patient_phone=row.get('patientPhone', ''),
            preferred_dates=decode_json_field(row.get('preferredDates', ''), []),
            preferred_times=decode_json_field(row.get('preferredTimes', ''), []),
            session_type=row.get('sessionType') or 'Single Session',
            priority=row.get('priority') or 'normal',
            status=row.get('status') or 'active',
            created_at=parse_datetime(row.get('createdAt')) or utcnow(),
            notes=row.get('notes', ''),
        )

    def to_row(self) -> dict[str, str]:
        return {
            'waitlistId': self.waitlist_id,
            'patientName': self.patient_name,
            'patientEmail': self.patient_email,
            'patientPhone': self.patient_phone,
            'preferredDates': encode_json_field(self.preferred_dates),
            'preferredTimes': encode_json_field(self.preferred_times),
            'sessionType': self.session_type,
            'priority': self.priority,
            'status': self.status,
            'createdAt': format_datetime(self.created_at),
            'notes': self.notes,
        }

    def to_response(self) -> dict:
        row = self.to_row()
        row['preferredDates'] = self.preferred_dates
        row['preferredTimes'] = self.preferred_times
        return row
