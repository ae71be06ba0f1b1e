"""Appointment service for business logic."""

from datetime import date, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, clinic_now, to_clinic_time
from app.core.events import AppointmentEvent, AppointmentEventType, EventBus
from app.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundException,
    ValidationException,
)
from app.core.redis_client import CacheManager
from app.models.appointments import appointment_events, appointments
from app.schemas.appointments import (
    ACTIVE_STATUSES,
    AppointmentCreate,
    AppointmentFilters,
    AppointmentHistoryEntry,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStats,
    AppointmentStatus,
    AppointmentUpdate,
    Visibility,
    can_transition,
)
from app.services.availability_service import AvailabilityService
from app.services.cache_service import SchedulingCache
from app.services.patient_service import PatientService
from app.services.reminder_service import ReminderService

logger = structlog.get_logger(__name__)

# Timestamp column stamped when an appointment enters a status
STATUS_TIMESTAMPS = {
    AppointmentStatus.VISITED: "visited_at",
    AppointmentStatus.DONE: "completed_at",
    AppointmentStatus.PAID: "paid_at",
    AppointmentStatus.CANCELLED: "cancelled_at",
    AppointmentStatus.NO_SHOW: "no_show_at",
}


class AppointmentService:
    """Service for managing the appointment lifecycle."""

    def __init__(
        self,
        db: AsyncSession,
        availability: AvailabilityService | None = None,
        events: EventBus | None = None,
        cache: SchedulingCache | None = None,
        clock: Clock = clinic_now,
    ):
        """Initialize service with database session and collaborators."""
        self.db = db
        self.cache = cache
        self.clock = clock
        self.availability = availability or AvailabilityService(db, cache=cache, clock=clock)
        self.events = events or EventBus()

    async def _fetch(
        self,
        appointment_id: UUID,
        include_archived: bool = False,
    ) -> AppointmentResponse | None:
        conditions = [appointments.c.id == appointment_id]
        if not include_archived:
            conditions.append(appointments.c.visibility == Visibility.VISIBLE.value)

        result = await self.db.execute(select(appointments).where(and_(*conditions)))
        row = result.fetchone()
        return AppointmentResponse.model_validate(dict(row._mapping)) if row else None

    async def get_appointment(self, appointment_id: UUID) -> AppointmentResponse:
        """
        Get appointment by ID.

        Args:
            appointment_id: Appointment ID

        Returns:
            Appointment details

        Raises:
            NotFoundException: If appointment not found or archived
        """
        appointment = await self._fetch(appointment_id)
        if appointment is None:
            raise NotFoundException("Appointment not found")
        return appointment

    def _ensure_future(self, start: datetime) -> None:
        if start <= self.clock():
            raise ValidationException("Appointments must start in the future")

    async def _conflict_error(
        self,
        start: datetime,
        duration_minutes: int,
        excluding_appointment_id: UUID | None = None,
        competing: AppointmentResponse | None = None,
    ) -> ConflictError:
        """Build a conflict rejection with the competing window and alternatives."""
        if competing is None:
            competing = await self.availability.find_conflict(
                start, duration_minutes, excluding_appointment_id
            )

        alternatives = await self.availability.suggest_alternatives(start, duration_minutes)
        conflicting = None
        if competing is not None:
            conflicting = {
                "id": str(competing.id),
                "scheduled_at": competing.scheduled_at.isoformat(),
                "ends_at": competing.ends_at.isoformat(),
            }

        logger.info(
            "appointment_conflict",
            requested=start.isoformat(),
            duration_minutes=duration_minutes,
            conflicting_id=conflicting["id"] if conflicting else None,
        )
        return ConflictError(
            conflicting=conflicting,
            alternatives=[candidate.isoformat() for candidate in alternatives],
        )

    async def _record_history(
        self,
        appointment: AppointmentResponse,
        event_type: str,
        from_status: AppointmentStatus | None,
        previous_scheduled_at: datetime | None = None,
    ) -> None:
        """Append a history row inside the current transaction."""
        count_stmt = (
            select(func.count())
            .select_from(appointment_events)
            .where(appointment_events.c.appointment_id == appointment.id)
        )
        sequence = (await self.db.execute(count_stmt)).scalar() or 0

        await self.db.execute(
            appointment_events.insert().values(
                appointment_id=appointment.id,
                sequence=sequence,
                event_type=event_type,
                from_status=from_status.value if from_status else None,
                to_status=appointment.status.value,
                previous_scheduled_at=previous_scheduled_at,
                scheduled_at=appointment.scheduled_at,
                created_at=self.clock(),
            )
        )

    async def _after_commit(
        self,
        event_type: AppointmentEventType,
        appointment: AppointmentResponse,
        previous: AppointmentResponse | None = None,
    ) -> None:
        """Invalidate affected cache entries, then fan the event out."""
        if self.cache:
            days = {appointment.scheduled_at.date()}
            if previous is not None:
                days.add(previous.scheduled_at.date())
            for day in days:
                self.cache.invalidate_slots(day)
            self.cache.invalidate_aggregates()

        await self.events.publish(
            AppointmentEvent(event_type=event_type, appointment=appointment, previous=previous)
        )

    async def _same_day_bookings(self, patient_id: UUID, start: datetime) -> list[datetime]:
        """Start times of the patient's other live appointments on the day of ``start``."""
        day_start = datetime.combine(start.date(), datetime.min.time())
        stmt = (
            select(appointments.c.scheduled_at)
            .where(
                and_(
                    appointments.c.patient_id == patient_id,
                    appointments.c.scheduled_at >= day_start,
                    appointments.c.scheduled_at < day_start + timedelta(days=1),
                    appointments.c.status.in_([status.value for status in ACTIVE_STATUSES]),
                    appointments.c.visibility == Visibility.VISIBLE.value,
                )
            )
            .order_by(appointments.c.scheduled_at)
        )
        result = await self.db.execute(stmt)
        return [row.scheduled_at for row in result.fetchall()]

    async def book(self, data: AppointmentCreate) -> AppointmentResponse:
        """
        Book a new appointment on the shared chair.

        A patient who already holds another appointment that day still gets
        booked; the response carries a warning naming the existing times.

        Args:
            data: Appointment creation data

        Returns:
            Created appointment

        Raises:
            NotFoundException: If the patient does not exist
            ValidationException: If the window is malformed or in the past
            OutsideBusinessHoursError: If the clinic is closed for the window
            ConflictError: If the window overlaps an active appointment
        """
        await PatientService(self.db).get_patient(data.patient_id)

        start, duration = data.scheduled_at, data.duration_minutes
        self.availability.validate_window(start, duration)
        self._ensure_future(start)

        competing = await self.availability.find_conflict(start, duration)
        if competing is not None:
            raise await self._conflict_error(start, duration, competing=competing)

        same_day = await self._same_day_bookings(data.patient_id, start)

        now = self.clock()
        stmt = (
            appointments.insert()
            .values(
                patient_id=data.patient_id,
                scheduled_at=start,
                duration_minutes=duration,
                treatment_type=data.treatment_type,
                notes=data.notes,
                status=AppointmentStatus.BOOKED.value,
                visibility=Visibility.VISIBLE.value,
                created_at=now,
                updated_at=now,
            )
            .returning(appointments)
        )

        try:
            result = await self.db.execute(stmt)
            appointment = AppointmentResponse.model_validate(dict(result.fetchone()._mapping))
            await self._record_history(appointment, AppointmentEventType.BOOKED.value, None)
            await self.db.commit()
        except IntegrityError:
            # A concurrent booking won the same slot
            await self.db.rollback()
            raise await self._conflict_error(start, duration) from None

        logger.info(
            "appointment_booked",
            appointment_id=str(appointment.id),
            patient_id=str(appointment.patient_id),
            scheduled_at=appointment.scheduled_at.isoformat(),
            duration_minutes=appointment.duration_minutes,
        )
        await self._after_commit(AppointmentEventType.BOOKED, appointment)

        if same_day:
            times = ", ".join(existing.strftime("%H:%M") for existing in same_day)
            appointment.warnings.append(
                f"Patient already has appointment(s) on {start.date().isoformat()} at {times}"
            )
            logger.info(
                "appointment_same_day_duplicate",
                appointment_id=str(appointment.id),
                patient_id=str(appointment.patient_id),
                existing=[existing.isoformat() for existing in same_day],
            )
        return appointment

    async def _set_status(
        self,
        current: AppointmentResponse,
        new_status: AppointmentStatus,
    ) -> AppointmentResponse:
        """Move to ``new_status`` if the row still holds ``current.status``."""
        now = self.clock()
        values: dict[str, Any] = {"status": new_status.value, "updated_at": now}
        if new_status in STATUS_TIMESTAMPS:
            values[STATUS_TIMESTAMPS[new_status]] = now

        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == current.id,
                    appointments.c.status == current.status.value,
                )
            )
            .values(**values)
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()
        if not row:
            await self.db.rollback()
            latest = await self.get_appointment(current.id)
            raise InvalidTransitionError(latest.status.value, new_status.value)

        appointment = AppointmentResponse.model_validate(dict(row._mapping))
        event_type = (
            AppointmentEventType.CANCELLED
            if new_status == AppointmentStatus.CANCELLED
            else AppointmentEventType.STATUS_CHANGED
        )
        await self._record_history(appointment, event_type.value, current.status)
        await self.db.commit()
        return appointment

    async def transition(
        self,
        appointment_id: UUID,
        new_status: AppointmentStatus,
    ) -> AppointmentResponse:
        """
        Move an appointment along the status graph.

        Args:
            appointment_id: Appointment ID
            new_status: Requested status

        Returns:
            Updated appointment

        Raises:
            NotFoundException: If appointment not found
            InvalidTransitionError: If the edge is not allowed
        """
        if new_status == AppointmentStatus.CANCELLED:
            return await self.cancel(appointment_id)

        current = await self.get_appointment(appointment_id)
        if not can_transition(current.status, new_status):
            raise InvalidTransitionError(current.status.value, new_status.value)

        appointment = await self._set_status(current, new_status)

        logger.info(
            "appointment_status_changed",
            appointment_id=str(appointment_id),
            from_status=current.status.value,
            to_status=new_status.value,
        )
        await self._after_commit(AppointmentEventType.STATUS_CHANGED, appointment)
        return appointment

    async def cancel(self, appointment_id: UUID) -> AppointmentResponse:
        """
        Cancel an appointment and free its slot.

        Cancelling an already cancelled appointment returns it unchanged and
        emits nothing.

        Raises:
            NotFoundException: If appointment not found
            InvalidTransitionError: If the appointment is past the point of cancelling
        """
        current = await self.get_appointment(appointment_id)
        if current.status == AppointmentStatus.CANCELLED:
            return current
        if not can_transition(current.status, AppointmentStatus.CANCELLED):
            raise InvalidTransitionError(current.status.value, AppointmentStatus.CANCELLED.value)

        appointment = await self._set_status(current, AppointmentStatus.CANCELLED)

        logger.info(
            "appointment_cancelled",
            appointment_id=str(appointment_id),
            from_status=current.status.value,
        )
        await self._after_commit(AppointmentEventType.CANCELLED, appointment)
        return appointment

    async def reschedule(
        self,
        appointment_id: UUID,
        new_start: datetime,
        new_duration: int | None = None,
    ) -> AppointmentResponse:
        """
        Move a booked appointment to a new window, keeping its identity.

        Args:
            appointment_id: Appointment ID
            new_start: New start in clinic time
            new_duration: New length, or None to keep the current one

        Returns:
            Rescheduled appointment

        Raises:
            NotFoundException: If appointment not found
            ValidationException: If the appointment is not booked or the window is invalid
            OutsideBusinessHoursError: If the clinic is closed for the window
            ConflictError: If the window overlaps another active appointment
        """
        current = await self.get_appointment(appointment_id)
        if current.status != AppointmentStatus.BOOKED:
            raise ValidationException(
                f"Only booked appointments can be rescheduled (current status: "
                f"{current.status.value})"
            )

        new_start = to_clinic_time(new_start)
        duration = new_duration or current.duration_minutes
        self.availability.validate_window(new_start, duration)
        self._ensure_future(new_start)

        if new_start == current.scheduled_at and duration == current.duration_minutes:
            return current

        competing = await self.availability.find_conflict(
            new_start, duration, excluding_appointment_id=appointment_id
        )
        if competing is not None:
            raise await self._conflict_error(new_start, duration, competing=competing)

        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.status == AppointmentStatus.BOOKED.value,
                )
            )
            .values(scheduled_at=new_start, duration_minutes=duration, updated_at=self.clock())
            .returning(appointments)
        )

        try:
            result = await self.db.execute(stmt)
            row = result.fetchone()
            if not row:
                await self.db.rollback()
                raise ValidationException("Appointment changed while rescheduling")
            appointment = AppointmentResponse.model_validate(dict(row._mapping))
            await self._record_history(
                appointment,
                AppointmentEventType.RESCHEDULED.value,
                current.status,
                previous_scheduled_at=current.scheduled_at,
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise await self._conflict_error(new_start, duration, appointment_id) from None

        logger.info(
            "appointment_rescheduled",
            appointment_id=str(appointment_id),
            previous_scheduled_at=current.scheduled_at.isoformat(),
            scheduled_at=appointment.scheduled_at.isoformat(),
            duration_minutes=appointment.duration_minutes,
        )
        await self._after_commit(AppointmentEventType.RESCHEDULED, appointment, previous=current)
        return appointment

    async def update_appointment(
        self,
        appointment_id: UUID,
        data: AppointmentUpdate,
    ) -> AppointmentResponse:
        """
        Update an existing appointment.

        A new ``scheduled_at`` or ``duration_minutes`` goes through
        ``reschedule`` so conflict checks run again; descriptive fields are
        written directly.

        Args:
            appointment_id: Appointment ID
            data: Update data

        Returns:
            Updated appointment
        """
        current = await self.get_appointment(appointment_id)
        changes = data.model_dump(exclude_unset=True)

        new_start = changes.pop("scheduled_at", None)
        new_duration = changes.pop("duration_minutes", None)
        if (new_start and new_start != current.scheduled_at) or (
            new_duration and new_duration != current.duration_minutes
        ):
            current = await self.reschedule(
                appointment_id,
                new_start or current.scheduled_at,
                new_duration or current.duration_minutes,
            )

        if not changes:
            return current

        stmt = (
            update(appointments)
            .where(appointments.c.id == appointment_id)
            .values(updated_at=self.clock(), **changes)
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        row = result.fetchone()
        return AppointmentResponse.model_validate(dict(row._mapping))

    async def archive_appointment(self, appointment_id: UUID) -> None:
        """
        Soft delete an appointment, cancelling it first if it is still remindable.

        Raises:
            NotFoundException: If appointment not found
        """
        current = await self.get_appointment(appointment_id)
        if can_transition(current.status, AppointmentStatus.CANCELLED):
            current = await self.cancel(appointment_id)

        stmt = (
            update(appointments)
            .where(appointments.c.id == appointment_id)
            .values(visibility=Visibility.ARCHIVED.value, updated_at=self.clock())
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        appointment = AppointmentResponse.model_validate(dict(result.fetchone()._mapping))
        await self._record_history(appointment, "archived", current.status)
        await self.db.commit()

        if self.cache:
            self.cache.invalidate_slots(appointment.scheduled_at.date())
            self.cache.invalidate_aggregates()

        logger.info("appointment_archived", appointment_id=str(appointment_id))

    async def list_appointments(self, filters: AppointmentFilters) -> AppointmentListResponse:
        """
        List appointments with filtering and pagination.

        Args:
            filters: Filter and pagination parameters

        Returns:
            Paginated list of appointments, earliest first
        """
        conditions = []

        if not filters.include_archived:
            conditions.append(appointments.c.visibility == Visibility.VISIBLE.value)

        if filters.patient_id:
            conditions.append(appointments.c.patient_id == filters.patient_id)

        if filters.status:
            conditions.append(appointments.c.status == filters.status.value)

        if filters.from_date:
            conditions.append(appointments.c.scheduled_at >= filters.from_date)

        if filters.to_date:
            conditions.append(appointments.c.scheduled_at <= filters.to_date)

        # Count total
        count_stmt = select(func.count()).select_from(appointments).where(*conditions)
        total_result = await self.db.execute(count_stmt)
        total = total_result.scalar() or 0

        # Get paginated results
        offset = (filters.page - 1) * filters.page_size

        stmt = (
            select(appointments)
            .where(*conditions)
            .order_by(appointments.c.scheduled_at)
            .limit(filters.page_size)
            .offset(offset)
        )

        result = await self.db.execute(stmt)
        rows = result.fetchall()

        items = [AppointmentResponse.model_validate(dict(row._mapping)) for row in rows]

        return AppointmentListResponse(
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            items=items,
        )

    async def get_history(self, appointment_id: UUID) -> list[AppointmentHistoryEntry]:
        """Lifecycle history of an appointment, oldest first; archived ones included."""
        if await self._fetch(appointment_id, include_archived=True) is None:
            raise NotFoundException("Appointment not found")

        stmt = (
            select(appointment_events)
            .where(appointment_events.c.appointment_id == appointment_id)
            .order_by(appointment_events.c.sequence)
        )
        result = await self.db.execute(stmt)
        return [
            AppointmentHistoryEntry.model_validate(dict(row._mapping)) for row in result.fetchall()
        ]

    async def _compute_stats(self, day: date) -> dict:
        day_start = datetime.combine(day, datetime.min.time())
        in_day = and_(
            appointments.c.scheduled_at >= day_start,
            appointments.c.scheduled_at < day_start + timedelta(days=1),
            appointments.c.visibility == Visibility.VISIBLE.value,
        )

        stmt = (
            select(appointments.c.status, func.count().label("amount"))
            .where(in_day)
            .group_by(appointments.c.status)
        )
        result = await self.db.execute(stmt)

        by_status = {status.value: 0 for status in AppointmentStatus}
        for row in result.fetchall():
            by_status[row.status] = row.amount

        upcoming_stmt = (
            select(func.count())
            .select_from(appointments)
            .where(
                and_(
                    in_day,
                    appointments.c.scheduled_at >= self.clock(),
                    appointments.c.status.in_([status.value for status in ACTIVE_STATUSES]),
                )
            )
        )
        upcoming = (await self.db.execute(upcoming_stmt)).scalar() or 0

        return AppointmentStats(
            day=day,
            total=sum(by_status.values()),
            by_status=by_status,
            upcoming=upcoming,
        ).model_dump(mode="json")

    async def get_stats(self, day: date) -> AppointmentStats:
        """Appointment counts for one day, served from the aggregate cache."""
        if self.cache:
            data = await self.cache.get_or_compute(
                SchedulingCache.aggregate_key("appointments", day.isoformat()),
                lambda: self._compute_stats(day),
                ttl=SchedulingCache.AGGREGATES_TTL,
            )
        else:
            data = await self._compute_stats(day)
        return AppointmentStats.model_validate(data)


def build_appointment_service(
    db: AsyncSession,
    cache_manager: CacheManager | None = None,
    clock: Clock = clinic_now,
) -> AppointmentService:
    """
    Wire an appointment service with availability, reminders and caching.

    Args:
        db: Database session shared by every collaborator
        cache_manager: Redis cache manager, or None to run uncached
        clock: Clinic clock

    Returns:
        Ready-to-use appointment service
    """
    cache = SchedulingCache(cache_manager) if cache_manager is not None else None
    events = EventBus()
    ReminderService(db, clock=clock).register(events)
    return AppointmentService(
        db,
        availability=AvailabilityService(db, cache=cache, clock=clock),
        events=events,
        cache=cache,
        clock=clock,
    )
