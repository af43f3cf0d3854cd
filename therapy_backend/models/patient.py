"""Patient profile model definitions."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from therapy_backend.models.fields import utcnow


class PatientProfile(BaseModel):
    """Admin-facing patient record stored in the patient directory."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    booking_token: str = Field(alias='bookingToken')
    full_name: str = Field(alias='fullName')
    email: str
    phone: str = ''
    status: str = 'active'
    created_at: datetime = Field(default_factory=utcnow, alias='createdAt')
    last_activity: datetime = Field(default_factory=utcnow, alias='lastActivity')
    last_updated: datetime | None = Field(default=None, alias='lastUpdated')
    updated_by: str | None = Field(default=None, alias='updatedBy')

    def to_payload(self) -> dict:
        return self.model_dump(mode='json', by_alias=True)
