"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, clinic_now
from app.core.redis_client import CacheManager, get_cache_manager
from app.database import get_db
from app.services.appointment_service import AppointmentService, build_appointment_service
from app.services.availability_service import AvailabilityService
from app.services.cache_service import SchedulingCache
from app.services.channels import build_channel_adapters
from app.services.delivery_service import DeliveryDispatcher
from app.services.patient_service import PatientService
from app.services.reminder_service import ReminderService


def get_clock() -> Clock:
    """Clinic clock; overridden in tests."""
    return clinic_now


# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
Cache = Annotated[CacheManager, Depends(get_cache_manager)]
ClinicClock = Annotated[Clock, Depends(get_clock)]


def get_scheduling_cache(cache_manager: Cache) -> SchedulingCache:
    """Scheduling cache over the shared cache manager."""
    return SchedulingCache(cache_manager)


def get_appointment_service(
    db: DatabaseSession,
    cache_manager: Cache,
    clock: ClinicClock,
) -> AppointmentService:
    """Appointment service wired with availability, reminders and caching."""
    return build_appointment_service(db, cache_manager=cache_manager, clock=clock)


def get_availability_service(
    db: DatabaseSession,
    cache: Annotated[SchedulingCache, Depends(get_scheduling_cache)],
    clock: ClinicClock,
) -> AvailabilityService:
    """Availability service backed by the slot cache."""
    return AvailabilityService(db, cache=cache, clock=clock)


def get_reminder_service(db: DatabaseSession, clock: ClinicClock) -> ReminderService:
    """Reminder service."""
    return ReminderService(db, clock=clock)


def get_delivery_dispatcher(
    db: DatabaseSession,
    cache: Annotated[SchedulingCache, Depends(get_scheduling_cache)],
    clock: ClinicClock,
) -> DeliveryDispatcher:
    """Delivery dispatcher with every configured channel."""
    return DeliveryDispatcher(db, build_channel_adapters(), cache=cache, clock=clock)


def get_patient_service(db: DatabaseSession) -> PatientService:
    """Patient service."""
    return PatientService(db)


AppointmentServiceDep = Annotated[AppointmentService, Depends(get_appointment_service)]
AvailabilityServiceDep = Annotated[AvailabilityService, Depends(get_availability_service)]
ReminderServiceDep = Annotated[ReminderService, Depends(get_reminder_service)]
DeliveryDispatcherDep = Annotated[DeliveryDispatcher, Depends(get_delivery_dispatcher)]
PatientServiceDep = Annotated[PatientService, Depends(get_patient_service)]
