"""Slot availability schemas."""

from datetime import date

from pydantic import BaseModel


class SlotResponse(BaseModel):
    """One grid position on a day."""

    time: str
    available: bool


class AvailabilityResponse(BaseModel):
    """Availability grid for a day and duration."""

    day: date
    duration_minutes: int
    slots: list[SlotResponse]
