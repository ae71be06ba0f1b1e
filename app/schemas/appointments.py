"""Appointment schemas for request/response validation."""

from datetime import date, datetime, timedelta
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, computed_field, field_validator

from app.config import settings
from app.core.clock import to_clinic_time


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    BOOKED = "booked"
    VISITED = "visited"
    DONE = "done"
    PAID = "paid"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class Visibility(str, Enum):
    """Soft-delete state shared by patients and appointments."""

    VISIBLE = "visible"
    ARCHIVED = "archived"


# Statuses that hold the chair
ACTIVE_STATUSES = frozenset(
    {
        AppointmentStatus.BOOKED,
        AppointmentStatus.VISITED,
        AppointmentStatus.DONE,
        AppointmentStatus.PAID,
    }
)

# Statuses for which reminders may still go out
REMINDABLE_STATUSES = frozenset({AppointmentStatus.BOOKED, AppointmentStatus.VISITED})

TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.PAID, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
)

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.BOOKED: frozenset(
        {AppointmentStatus.VISITED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
    ),
    AppointmentStatus.VISITED: frozenset({AppointmentStatus.DONE, AppointmentStatus.CANCELLED}),
    AppointmentStatus.DONE: frozenset({AppointmentStatus.PAID}),
    AppointmentStatus.PAID: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}


def can_transition(current: AppointmentStatus, requested: AppointmentStatus) -> bool:
    """Check whether ``current -> requested`` is an edge of the state graph."""
    return requested in ALLOWED_TRANSITIONS[current]


def _validate_duration(v: int | None) -> int | None:
    if v is not None and not 0 < v <= settings.max_duration_minutes:
        raise ValueError(f"Duration must be between 1 and {settings.max_duration_minutes} minutes")
    return v


class AppointmentCreate(BaseModel):
    """Schema for booking a new appointment."""

    patient_id: UUID
    scheduled_at: datetime
    duration_minutes: int = Field(default=settings.default_duration_minutes)
    treatment_type: str | None = Field(None, max_length=200)
    notes: str | None = Field(None, max_length=1000)

    @field_validator("scheduled_at")
    @classmethod
    def validate_naive(cls, v: datetime) -> datetime:
        """Store clinic-local wall-clock time, converting aware values."""
        return to_clinic_time(v)

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, v: int) -> int:
        """Reject zero, negative and oversized durations."""
        return _validate_duration(v)


class AppointmentUpdate(BaseModel):
    """Schema for editing appointment fields.

    Changing ``scheduled_at`` or ``duration_minutes`` re-runs conflict checks.
    """

    scheduled_at: datetime | None = None
    duration_minutes: int | None = None
    treatment_type: str | None = Field(None, max_length=200)
    notes: str | None = Field(None, max_length=1000)

    @field_validator("scheduled_at")
    @classmethod
    def validate_naive(cls, v: datetime | None) -> datetime | None:
        """Store clinic-local wall-clock time, converting aware values."""
        return to_clinic_time(v) if v else v

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, v: int | None) -> int | None:
        """Reject zero, negative and oversized durations."""
        return _validate_duration(v)


class AppointmentReschedule(BaseModel):
    """Schema for moving an appointment to a new time."""

    scheduled_at: datetime
    duration_minutes: int | None = None

    @field_validator("scheduled_at")
    @classmethod
    def validate_naive(cls, v: datetime) -> datetime:
        """Store clinic-local wall-clock time, converting aware values."""
        return to_clinic_time(v)

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, v: int | None) -> int | None:
        """Reject zero, negative and oversized durations."""
        return _validate_duration(v)


class AppointmentTransition(BaseModel):
    """Schema for a status transition request."""

    status: AppointmentStatus


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: UUID
    patient_id: UUID
    scheduled_at: datetime
    duration_minutes: int
    treatment_type: str | None = None
    notes: str | None = None
    status: AppointmentStatus
    visibility: Visibility
    created_at: datetime
    updated_at: datetime
    visited_at: datetime | None = None
    completed_at: datetime | None = None
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None
    no_show_at: datetime | None = None
    # Advisory notes for the caller; never stored
    warnings: list[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ends_at(self) -> datetime:
        """End of the half-open booking window."""
        return self.scheduled_at + timedelta(minutes=self.duration_minutes)

    @property
    def is_active(self) -> bool:
        """Whether the appointment still occupies its slot."""
        return self.status in ACTIVE_STATUSES


class AppointmentListResponse(BaseModel):
    """Schema for paginated appointment list response."""

    total: int
    page: int
    page_size: int
    items: list[AppointmentResponse]


class AppointmentFilters(BaseModel):
    """Schema for appointment filtering."""

    patient_id: UUID | None = None
    status: AppointmentStatus | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    include_archived: bool = False
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class AppointmentHistoryEntry(BaseModel):
    """One recorded lifecycle event."""

    id: UUID
    appointment_id: UUID
    sequence: int
    event_type: str
    from_status: AppointmentStatus | None = None
    to_status: AppointmentStatus
    previous_scheduled_at: datetime | None = None
    scheduled_at: datetime
    created_at: datetime

    model_config = {"from_attributes": True}


class AppointmentStats(BaseModel):
    """Aggregate counts for one day."""

    day: date
    total: int
    by_status: dict[str, int]
    upcoming: int
