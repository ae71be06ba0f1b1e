"""Reminder scheduling driven by appointment lifecycle events."""

from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, clinic_now
from app.core.events import AppointmentEvent, AppointmentEventType, EventBus
from app.models.deliveries import deliveries
from app.schemas.appointments import REMINDABLE_STATUSES, AppointmentResponse
from app.schemas.deliveries import (
    DeliveryChannel,
    DeliveryResponse,
    DeliveryStatus,
    LeadTimeBucket,
)
from app.schemas.patients import PatientResponse
from app.services.patient_service import PatientService

logger = structlog.get_logger(__name__)

# Fallback order when the patient has no usable preference
CHANNEL_PRIORITY = (DeliveryChannel.PUSH, DeliveryChannel.EMAIL, DeliveryChannel.SMS)


def plan_buckets(scheduled_at: datetime, now: datetime) -> list[tuple[LeadTimeBucket, datetime]]:
    """
    Reminder fire times still ahead of ``now``.

    Args:
        scheduled_at: Appointment start
        now: Current clinic time

    Returns:
        (bucket, fire_at) pairs, furthest lead time first
    """
    planned = []
    for bucket in LeadTimeBucket:
        fire_at = scheduled_at - bucket.offset
        if fire_at >= now:
            planned.append((bucket, fire_at))
    return planned


def recipient_for(patient: PatientResponse, channel: DeliveryChannel) -> str | None:
    """Contact address of ``patient`` on ``channel``."""
    if channel == DeliveryChannel.PUSH:
        return patient.messaging_id
    if channel == DeliveryChannel.EMAIL:
        return patient.email
    return patient.phone


def select_channel(patient: PatientResponse) -> DeliveryChannel | None:
    """Preferred channel if reachable, else the first reachable one in priority order."""
    if patient.preferred_channel and recipient_for(patient, patient.preferred_channel):
        return patient.preferred_channel
    for channel in CHANNEL_PRIORITY:
        if recipient_for(patient, channel):
            return channel
    return None


class ReminderService:
    """Creates and cancels reminder deliveries for appointments."""

    def __init__(self, db: AsyncSession, clock: Clock = clinic_now):
        """Initialize service with database session and clock."""
        self.db = db
        self.clock = clock

    def register(self, bus: EventBus) -> None:
        """Subscribe to the lifecycle events this service reacts to."""
        # The bus only logs handler failures, so a missed cascade can leave
        # deliveries pending; DeliveryDispatcher re-reads the appointment and
        # cancels them when they come due.
        bus.subscribe(AppointmentEventType.BOOKED, self._handle_booked)
        bus.subscribe(AppointmentEventType.CANCELLED, self._handle_cancelled)
        bus.subscribe(AppointmentEventType.RESCHEDULED, self._handle_rescheduled)
        bus.subscribe(AppointmentEventType.STATUS_CHANGED, self._handle_status_changed)

    async def _handle_booked(self, event: AppointmentEvent) -> None:
        await self.on_booked(event.appointment)

    async def _handle_cancelled(self, event: AppointmentEvent) -> None:
        await self.on_cancelled(event.appointment)

    async def _handle_rescheduled(self, event: AppointmentEvent) -> None:
        await self.on_rescheduled(event.previous, event.appointment)

    async def _handle_status_changed(self, event: AppointmentEvent) -> None:
        await self.on_status_changed(event.appointment)

    async def _pending_buckets(self, appointment_id: UUID) -> set[str]:
        stmt = select(deliveries.c.lead_time_bucket).where(
            and_(
                deliveries.c.appointment_id == appointment_id,
                deliveries.c.status == DeliveryStatus.PENDING.value,
            )
        )
        result = await self.db.execute(stmt)
        return {row.lead_time_bucket for row in result.fetchall()}

    async def on_booked(self, appointment: AppointmentResponse) -> list[DeliveryResponse]:
        """
        Create one pending delivery per lead-time bucket still in the future.

        Buckets that already hold a pending delivery are skipped, so replaying
        the event does not duplicate reminders.

        Args:
            appointment: Freshly committed appointment

        Returns:
            Created deliveries
        """
        if appointment.status not in REMINDABLE_STATUSES:
            return []

        patient = await PatientService(self.db).find_patient(appointment.patient_id)
        if patient is None:
            logger.warning("reminder_patient_missing", appointment_id=str(appointment.id))
            return []

        channel = select_channel(patient)
        if channel is None:
            logger.warning(
                "reminder_no_contact_channel",
                appointment_id=str(appointment.id),
                patient_id=str(patient.id),
            )
            return []

        now = self.clock()
        existing = await self._pending_buckets(appointment.id)

        created = []
        for bucket, fire_at in plan_buckets(appointment.scheduled_at, now):
            if bucket.value in existing:
                continue
            stmt = (
                deliveries.insert()
                .values(
                    appointment_id=appointment.id,
                    patient_id=appointment.patient_id,
                    channel=channel.value,
                    lead_time_bucket=bucket.value,
                    scheduled_at=fire_at,
                    next_attempt_at=fire_at,
                    status=DeliveryStatus.PENDING.value,
                    retry_count=0,
                    created_at=now,
                    updated_at=now,
                )
                .returning(deliveries)
            )
            result = await self.db.execute(stmt)
            created.append(DeliveryResponse.model_validate(dict(result.fetchone()._mapping)))

        await self.db.commit()

        logger.info(
            "reminders_scheduled",
            appointment_id=str(appointment.id),
            channel=channel.value,
            buckets=[delivery.lead_time_bucket.value for delivery in created],
        )
        return created

    async def cancel_pending(self, appointment_id: UUID) -> int:
        """
        Move every pending delivery of an appointment to cancelled.

        Returns:
            Number of deliveries cancelled
        """
        stmt = (
            update(deliveries)
            .where(
                and_(
                    deliveries.c.appointment_id == appointment_id,
                    deliveries.c.status == DeliveryStatus.PENDING.value,
                )
            )
            .values(status=DeliveryStatus.CANCELLED.value, updated_at=self.clock())
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        if result.rowcount:
            logger.info(
                "reminders_cancelled",
                appointment_id=str(appointment_id),
                count=result.rowcount,
            )
        return result.rowcount

    async def on_cancelled(self, appointment: AppointmentResponse) -> int:
        """Cascade a cancellation to the appointment's pending reminders."""
        return await self.cancel_pending(appointment.id)

    async def on_rescheduled(
        self,
        old_appointment: AppointmentResponse | None,
        new_appointment: AppointmentResponse,
    ) -> list[DeliveryResponse]:
        """Replace pending reminders with a fresh set for the new time."""
        await self.cancel_pending(new_appointment.id)
        if old_appointment is not None:
            logger.info(
                "reminders_regenerating",
                appointment_id=str(new_appointment.id),
                previous_scheduled_at=old_appointment.scheduled_at.isoformat(),
                scheduled_at=new_appointment.scheduled_at.isoformat(),
            )
        return await self.on_booked(new_appointment)

    async def on_status_changed(self, appointment: AppointmentResponse) -> int:
        """Cancel reminders once the appointment can no longer be reminded about."""
        if appointment.status in REMINDABLE_STATUSES:
            return 0
        return await self.cancel_pending(appointment.id)

    async def list_deliveries(self, appointment_id: UUID) -> list[DeliveryResponse]:
        """All deliveries ever created for an appointment, by fire time."""
        stmt = (
            select(deliveries)
            .where(deliveries.c.appointment_id == appointment_id)
            .order_by(deliveries.c.scheduled_at, deliveries.c.created_at)
        )
        result = await self.db.execute(stmt)
        return [DeliveryResponse.model_validate(dict(row._mapping)) for row in result.fetchall()]
