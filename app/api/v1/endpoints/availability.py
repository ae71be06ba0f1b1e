"""Slot availability endpoints."""

from datetime import date

from fastapi import APIRouter, Query, status

from app.config import settings
from app.dependencies import AvailabilityServiceDep
from app.schemas.availability import AvailabilityResponse

router = APIRouter()


@router.get(
    "",
    response_model=AvailabilityResponse,
    status_code=status.HTTP_200_OK,
    tags=["Availability"],
    summary="Free slots for a day",
)
async def get_availability(
    service: AvailabilityServiceDep,
    day: date = Query(..., alias="date"),
    duration: int = Query(settings.default_duration_minutes),
) -> AvailabilityResponse:
    """
    Slot grid for one day and appointment length.

    Args:
        service: Availability service
        day: Calendar day in clinic time
        duration: Appointment length in minutes

    Returns:
        Every grid slot with its availability; empty on closed days
    """
    slots = await service.available_slots(day, duration)
    return AvailabilityResponse(day=day, duration_minutes=duration, slots=slots)
