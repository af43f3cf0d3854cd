"""Availability override model definitions."""

from typing import ClassVar

from pydantic import BaseModel

from therapy_backend.models.fields import parse_bool


class AvailabilityOverride(BaseModel):
    """A manual exception layered over the weekly slot template."""
    COLUMNS: ClassVar[list[str]] = ['date', 'time', 'available', 'reason', 'dayOfWeek']

    date: str
    time: str
    available: bool
    reason: str = ''
    day_of_week: str = ''

    @classmethod
    def from_row(cls, row: dict[str, str]) -> 'AvailabilityOverride':
        return cls(
            date=row.get('date', ''),
            time=row.get('time', ''),
            available=parse_bool(row.get('available')),
            reason=row.get('reason', ''),
            day_of_week=row.get('dayOfWeek', ''),
        )

    def to_row(self) -> dict[str, str]:
        return {
            'date': self.date,
            'time': self.time,
            'available': 'true' if self.available else 'false',
            'reason': self.reason,
            'dayOfWeek': self.day_of_week,
        }
