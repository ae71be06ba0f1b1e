"""Patient schemas for request/response validation."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.schemas.appointments import Visibility
from app.schemas.deliveries import DeliveryChannel


class PatientCreate(BaseModel):
    """Schema for registering a patient."""

    name: str = Field(..., min_length=1, max_length=200)
    phone: str | None = Field(None, min_length=7, max_length=32)
    email: str | None = Field(None, max_length=320)
    messaging_id: str | None = Field(None, max_length=500)
    preferred_channel: DeliveryChannel | None = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        """Validate phone number format."""
        if v is None:
            return v
        # Remove common separators
        cleaned = (
            v.replace("-", "").replace(" ", "").replace("(", "").replace(")", "").replace("+", "")
        )
        if not cleaned.isdigit():
            raise ValueError("Phone number must contain only digits and separators")
        if len(cleaned) < 7:
            raise ValueError("Phone number must have at least 7 digits")
        return v


class PatientResponse(BaseModel):
    """Schema for patient response."""

    id: UUID
    name: str
    phone: str | None = None
    email: str | None = None
    messaging_id: str | None = None
    preferred_channel: DeliveryChannel | None = None
    visibility: Visibility
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
