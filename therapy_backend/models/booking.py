"""Booking model definitions."""

from datetime import datetime
from typing import ClassVar

from pydantic import BaseModel, Field

from therapy_backend.ledgers.csv_codec import decode_json_field, encode_json_field
from therapy_backend.models.booking_token import SessionPackage
from therapy_backend.models.fields import format_datetime, parse_datetime, parse_int, utcnow


class Booking(BaseModel):
    """One scheduled session occurrence."""
    COLUMNS: ClassVar[list[str]] = [
        'bookingId',
        'bookingToken',
        'date',
        'time',
        'sessionPackage',
        'createdAt',
        'meetLink',
        'calendarEventId',
        'sessionNumber',
        'status',
    ]

    booking_id: str
    booking_token: str
    date: str
    time: str
    session_package: SessionPackage | None = None
    created_at: datetime = Field(default_factory=utcnow)
    meet_link: str = ''
    calendar_event_id: str = ''
    session_number: int = 1
    status: str = 'upcoming'

    @classmethod
    def from_row(cls, row: dict[str, str]) -> 'Booking':
        return cls(
            booking_id=row.get('bookingId', ''),
            booking_token=row.get('bookingToken', ''),
            date=row.get('date', ''),
            time=row.get('time', ''),
            session_package=SessionPackage.from_payload(decode_json_field(row.get('sessionPackage', ''))),
            created_at=parse_datetime(row.get('createdAt')) or utcnow(),
            meet_link=row.get('meetLink', ''),
            calendar_event_id=row.get('calendarEventId', ''),
            session_number=parse_int(row.get('sessionNumber')) or 1,
            status=row.get('status') or 'upcoming',
        )

    def to_row(self) -> dict[str, str]:
        package = self.session_package.to_payload() if self.session_package else None
        return {
            'bookingId': self.booking_id,
            'bookingToken': self.booking_token,
            'date': self.date,
            'time': self.time,
            'sessionPackage': encode_json_field(package),
            'createdAt': format_datetime(self.created_at),
            'meetLink': self.meet_link,
            'calendarEventId': self.calendar_event_id,
            'sessionNumber': str(self.session_number),
            'status': self.status,
        }

    def to_response(self) -> dict:
        return {
            'bookingId': self.booking_id,
            'bookingToken': self.booking_token,
            'date': self.date,
            'time': self.time,
            'sessionPackage': self.session_package.to_payload() if self.session_package else None,
            'createdAt': format_datetime(self.created_at),
            'meetLink': self.meet_link or None,
            'calendarEventId': self.calendar_event_id or None,
            'sessionNumber': self.session_number,
            'status': self.status,
        }
