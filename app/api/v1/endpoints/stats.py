"""Aggregate statistics endpoints."""

from datetime import date

from fastapi import APIRouter, Query, status

from app.dependencies import AppointmentServiceDep, DeliveryDispatcherDep
from app.schemas.appointments import AppointmentStats
from app.schemas.deliveries import DeliveryStats

router = APIRouter()


@router.get(
    "/appointments",
    response_model=AppointmentStats,
    status_code=status.HTTP_200_OK,
    tags=["Stats"],
    summary="Appointment counts for a day",
)
async def appointment_stats(
    service: AppointmentServiceDep,
    day: date = Query(..., alias="date"),
) -> AppointmentStats:
    """Appointment counts by status for one day."""
    return await service.get_stats(day)


@router.get(
    "/deliveries",
    response_model=DeliveryStats,
    status_code=status.HTTP_200_OK,
    tags=["Stats"],
    summary="Reminder delivery outcomes",
)
async def delivery_stats(
    dispatcher: DeliveryDispatcherDep,
    days: int = Query(30, ge=1, le=365),
) -> DeliveryStats:
    """Delivery counts by status and channel over the last ``days`` days."""
    return await dispatcher.delivery_stats(days)
