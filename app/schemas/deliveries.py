"""Reminder delivery schemas."""

from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class DeliveryChannel(str, Enum):
    """Delivery channel enumeration."""

    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class DeliveryStatus(str, Enum):
    """Delivery status enumeration."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LeadTimeBucket(str, Enum):
    """Named reminder offsets before the appointment."""

    SEVEN_DAY = "seven_day"
    THREE_DAY = "three_day"
    ONE_DAY = "one_day"

    @property
    def offset(self) -> timedelta:
        """Distance between the reminder and the appointment."""
        return BUCKET_OFFSETS[self]


BUCKET_OFFSETS: dict[LeadTimeBucket, timedelta] = {
    LeadTimeBucket.SEVEN_DAY: timedelta(days=7),
    LeadTimeBucket.THREE_DAY: timedelta(days=3),
    LeadTimeBucket.ONE_DAY: timedelta(days=1),
}


class DeliveryResponse(BaseModel):
    """Schema for delivery response."""

    id: UUID
    appointment_id: UUID
    patient_id: UUID
    channel: DeliveryChannel
    lead_time_bucket: LeadTimeBucket
    scheduled_at: datetime
    next_attempt_at: datetime
    status: DeliveryStatus
    retry_count: int
    last_error: str | None = None
    sent_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class DeliveryStats(BaseModel):
    """Delivery outcome statistics over a look-back window."""

    total: int
    by_status: dict[str, int]
    by_channel: dict[str, int]
    delivery_rate: float
    days: int


class ReminderMessage(BaseModel):
    """Rendered reminder content handed to a channel adapter."""

    subject: str
    body: str
