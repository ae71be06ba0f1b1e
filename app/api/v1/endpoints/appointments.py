"""Appointment endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Query, status

from app.dependencies import AppointmentServiceDep, ReminderServiceDep
from app.schemas.appointments import (
    AppointmentCreate,
    AppointmentFilters,
    AppointmentHistoryEntry,
    AppointmentListResponse,
    AppointmentReschedule,
    AppointmentResponse,
    AppointmentStatus,
    AppointmentTransition,
    AppointmentUpdate,
)
from app.schemas.deliveries import DeliveryResponse

router = APIRouter()


@router.post(
    "",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Appointments"],
    summary="Book appointment",
)
async def create_appointment(
    data: AppointmentCreate,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """
    Book a new appointment.

    Responds 409 with the competing window and alternative start times when
    the requested window is taken.

    Args:
        data: Appointment creation data
        service: Appointment service

    Returns:
        Created appointment
    """
    return await service.book(data)


@router.get(
    "",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List appointments",
)
async def list_appointments(
    service: AppointmentServiceDep,
    patient_id: UUID | None = Query(None),
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    from_date: datetime | None = Query(None),
    to_date: datetime | None = Query(None),
    include_archived: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> AppointmentListResponse:
    """
    List appointments with filtering, earliest first.

    Args:
        service: Appointment service
        patient_id: Filter by patient
        status_filter: Filter by status
        from_date: Filter by start date
        to_date: Filter by end date
        include_archived: Include soft-deleted appointments
        page: Page number
        page_size: Items per page

    Returns:
        Paginated list of appointments
    """
    filters = AppointmentFilters(
        patient_id=patient_id,
        status=status_filter,
        from_date=from_date,
        to_date=to_date,
        include_archived=include_archived,
        page=page,
        page_size=page_size,
    )
    return await service.list_appointments(filters)


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: UUID,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """Get a specific appointment by ID."""
    return await service.get_appointment(appointment_id)


@router.patch(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Update appointment",
)
async def update_appointment(
    appointment_id: UUID,
    data: AppointmentUpdate,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """
    Update an existing appointment.

    Moving the appointment re-runs conflict detection.

    Args:
        appointment_id: Appointment ID
        data: Update data
        service: Appointment service

    Returns:
        Updated appointment
    """
    return await service.update_appointment(appointment_id, data)


@router.delete(
    "/{appointment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Appointments"],
    summary="Archive appointment",
)
async def delete_appointment(
    appointment_id: UUID,
    service: AppointmentServiceDep,
) -> None:
    """Archive an appointment, cancelling it first if still active."""
    await service.archive_appointment(appointment_id)


@router.post(
    "/{appointment_id}/transition",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Change appointment status",
)
async def transition_appointment(
    appointment_id: UUID,
    data: AppointmentTransition,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """
    Move an appointment along booked → visited → done → paid.

    Edges off the status graph respond 422 and leave the appointment unchanged.
    """
    return await service.transition(appointment_id, data.status)


@router.post(
    "/{appointment_id}/cancel",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """Cancel an appointment; repeating the call is a no-op."""
    return await service.cancel(appointment_id)


@router.post(
    "/{appointment_id}/reschedule",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Reschedule appointment",
)
async def reschedule_appointment(
    appointment_id: UUID,
    data: AppointmentReschedule,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """Move a booked appointment to a new time."""
    return await service.reschedule(appointment_id, data.scheduled_at, data.duration_minutes)


@router.get(
    "/{appointment_id}/history",
    response_model=list[AppointmentHistoryEntry],
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Appointment history",
)
async def get_appointment_history(
    appointment_id: UUID,
    service: AppointmentServiceDep,
) -> list[AppointmentHistoryEntry]:
    """Lifecycle events of an appointment, oldest first."""
    return await service.get_history(appointment_id)


@router.get(
    "/{appointment_id}/deliveries",
    response_model=list[DeliveryResponse],
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Appointment reminders",
)
async def list_appointment_deliveries(
    appointment_id: UUID,
    service: AppointmentServiceDep,
    reminders: ReminderServiceDep,
) -> list[DeliveryResponse]:
    """Reminder deliveries created for an appointment."""
    await service.get_appointment(appointment_id)
    return await reminders.list_deliveries(appointment_id)
