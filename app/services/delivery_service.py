"""Reminder delivery dispatch and retry bookkeeping."""

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.clock import Clock, clinic_now
from app.core.exceptions import (
    NotFoundException,
    RetryableDeliveryError,
    StaleAppointmentError,
    TerminalDeliveryError,
)
from app.models.appointments import appointments
from app.models.deliveries import deliveries
from app.schemas.appointments import REMINDABLE_STATUSES, AppointmentResponse, Visibility
from app.schemas.deliveries import (
    DeliveryChannel,
    DeliveryResponse,
    DeliveryStats,
    DeliveryStatus,
)
from app.services.cache_service import SchedulingCache
from app.services.channels import ChannelAdapter, build_reminder_message
from app.services.patient_service import PatientService
from app.services.reminder_service import recipient_for

logger = structlog.get_logger(__name__)

# Wait before the n-th retry; the last entry repeats
RETRY_BACKOFF = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(minutes=30),
)


def backoff(retry_count: int) -> timedelta:
    """Delay before the next attempt after ``retry_count`` failures."""
    index = min(max(retry_count, 1), len(RETRY_BACKOFF)) - 1
    return RETRY_BACKOFF[index]


class DeliveryDispatcher:
    """Sends due reminders through their channel and records the outcome."""

    def __init__(
        self,
        db: AsyncSession,
        adapters: dict[DeliveryChannel, ChannelAdapter],
        cache: SchedulingCache | None = None,
        clock: Clock = clinic_now,
        max_retries: int | None = None,
    ):
        """Initialize dispatcher with database session, channel adapters and clock."""
        self.db = db
        self.adapters = adapters
        self.cache = cache
        self.clock = clock
        self.max_retries = max_retries if max_retries is not None else settings.reminder_max_retries

    async def _load(self, delivery_id: UUID, lock: bool = False) -> DeliveryResponse | None:
        stmt = select(deliveries).where(deliveries.c.id == delivery_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        row = result.fetchone()
        return DeliveryResponse.model_validate(dict(row._mapping)) if row else None

    async def count_due(self) -> int:
        """Number of pending deliveries whose next attempt has come."""
        stmt = (
            select(func.count())
            .select_from(deliveries)
            .where(
                and_(
                    deliveries.c.status == DeliveryStatus.PENDING.value,
                    deliveries.c.next_attempt_at <= self.clock(),
                )
            )
        )
        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def get_delivery(self, delivery_id: UUID) -> DeliveryResponse:
        """
        Get delivery by ID.

        Raises:
            NotFoundException: If delivery not found
        """
        delivery = await self._load(delivery_id)
        if delivery is None:
            raise NotFoundException("Delivery not found")
        return delivery

    async def _eligible_appointment(
        self, delivery: DeliveryResponse, now: datetime
    ) -> AppointmentResponse:
        """Re-read the appointment and make sure a reminder still makes sense."""
        result = await self.db.execute(
            select(appointments).where(appointments.c.id == delivery.appointment_id)
        )
        row = result.fetchone()
        if not row:
            raise StaleAppointmentError("Appointment no longer exists")

        appointment = AppointmentResponse.model_validate(dict(row._mapping))
        if appointment.visibility == Visibility.ARCHIVED:
            raise StaleAppointmentError("Appointment is archived")
        if appointment.status not in REMINDABLE_STATUSES:
            raise StaleAppointmentError(f"Appointment is {appointment.status.value}")
        if appointment.scheduled_at <= now:
            raise StaleAppointmentError("Appointment has already started")
        return appointment

    async def _finish(self, delivery_id: UUID, **values: Any) -> DeliveryResponse | None:
        """Apply the outcome only if nobody else finalized the delivery first."""
        stmt = (
            update(deliveries)
            .where(
                and_(
                    deliveries.c.id == delivery_id,
                    deliveries.c.status == DeliveryStatus.PENDING.value,
                )
            )
            .values(updated_at=self.clock(), **values)
            .returning(deliveries)
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()
        await self.db.commit()
        return DeliveryResponse.model_validate(dict(row._mapping)) if row else None

    async def _send(self, delivery: DeliveryResponse, appointment: AppointmentResponse) -> None:
        """Resolve the recipient, render the message and hand it to the channel."""
        patient = await PatientService(self.db).find_patient(delivery.patient_id)
        if patient is None:
            raise TerminalDeliveryError("Patient no longer exists")

        recipient = recipient_for(patient, delivery.channel)
        if not recipient:
            raise TerminalDeliveryError(f"Patient has no {delivery.channel.value} contact")

        adapter = self.adapters.get(delivery.channel)
        if adapter is None:
            raise TerminalDeliveryError(f"No adapter for channel {delivery.channel.value}")

        message = build_reminder_message(delivery.lead_time_bucket, appointment, patient.name)
        await adapter.send(recipient, message)

    async def dispatch(self, delivery_id: UUID) -> DeliveryResponse:
        """
        Attempt one delivery.

        Delivery failures are recorded on the row and never raised: a stale
        appointment cancels the delivery, a terminal failure marks it failed,
        and a retryable (or unexpected) failure schedules another attempt
        until the retry budget runs out. A delivery whose ``next_attempt_at``
        has not come yet is returned unchanged.

        Args:
            delivery_id: Delivery to send

        Returns:
            The delivery in its new state

        Raises:
            NotFoundException: If delivery not found
        """
        delivery = await self._load(delivery_id, lock=True)
        if delivery is None:
            raise NotFoundException("Delivery not found")

        if delivery.status != DeliveryStatus.PENDING:
            logger.debug(
                "delivery_already_final",
                delivery_id=str(delivery_id),
                status=delivery.status.value,
            )
            await self.db.rollback()
            return delivery

        now = self.clock()
        if delivery.next_attempt_at > now:
            logger.info(
                "delivery_not_due",
                delivery_id=str(delivery_id),
                next_attempt_at=delivery.next_attempt_at.isoformat(),
            )
            await self.db.rollback()
            return delivery

        log = logger.bind(
            delivery_id=str(delivery_id),
            appointment_id=str(delivery.appointment_id),
            channel=delivery.channel.value,
            bucket=delivery.lead_time_bucket.value,
        )

        try:
            appointment = await self._eligible_appointment(delivery, now)
            await self._send(delivery, appointment)
        except StaleAppointmentError as e:
            updated = await self._finish(
                delivery_id, status=DeliveryStatus.CANCELLED.value, last_error=str(e)
            )
            log.info("delivery_cancelled_stale", reason=str(e))
        except TerminalDeliveryError as e:
            updated = await self._finish(
                delivery_id,
                status=DeliveryStatus.FAILED.value,
                retry_count=delivery.retry_count + 1,
                last_error=str(e),
            )
            log.warning("delivery_failed", error=str(e), terminal=True)
        except Exception as e:
            # Anything other than a terminal error may succeed on a later attempt
            if not isinstance(e, RetryableDeliveryError):
                log.error("delivery_unexpected_error", error=str(e), error_type=type(e).__name__)
            updated = await self._record_retry(delivery, now, str(e), log)
        else:
            updated = await self._finish(
                delivery_id, status=DeliveryStatus.SENT.value, sent_at=now, last_error=None
            )
            log.info("delivery_sent")

        if updated is None:
            # Finalized concurrently; report the state that won
            return await self.get_delivery(delivery_id)
        return updated

    async def _record_retry(
        self,
        delivery: DeliveryResponse,
        now: datetime,
        error: str,
        log: Any,
    ) -> DeliveryResponse | None:
        retry_count = delivery.retry_count + 1
        if retry_count >= self.max_retries:
            log.warning("delivery_failed", error=error, retry_count=retry_count, terminal=False)
            return await self._finish(
                delivery.id,
                status=DeliveryStatus.FAILED.value,
                retry_count=retry_count,
                last_error=error,
            )

        next_attempt_at = now + backoff(retry_count)
        log.info(
            "delivery_retry_scheduled",
            error=error,
            retry_count=retry_count,
            next_attempt_at=next_attempt_at.isoformat(),
        )
        return await self._finish(
            delivery.id,
            retry_count=retry_count,
            last_error=error,
            next_attempt_at=next_attempt_at,
        )

    async def find_due_ids(self, limit: int | None = None) -> list[tuple[UUID, int]]:
        """
        Pending deliveries whose next attempt is due, oldest first.

        The read takes no lock. Overlapping triggers collapse on the arq job
        id built from ``(delivery_id, retry_count)``, and ``dispatch`` itself
        re-checks the status under a row lock and finishes with an update
        conditional on ``status = 'pending'``.

        Returns:
            (delivery_id, retry_count) pairs
        """
        limit = limit or settings.dispatch_batch_size
        stmt = (
            select(deliveries.c.id, deliveries.c.retry_count)
            .where(
                and_(
                    deliveries.c.status == DeliveryStatus.PENDING.value,
                    deliveries.c.next_attempt_at <= self.clock(),
                )
            )
            .order_by(deliveries.c.next_attempt_at, deliveries.c.created_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        due = [(row.id, row.retry_count) for row in result.fetchall()]
        await self.db.commit()
        return due

    async def _compute_stats(self, days: int) -> dict:
        since = self.clock() - timedelta(days=days)
        stmt = (
            select(deliveries.c.status, deliveries.c.channel, func.count().label("amount"))
            .where(deliveries.c.scheduled_at >= since)
            .group_by(deliveries.c.status, deliveries.c.channel)
        )
        result = await self.db.execute(stmt)

        by_status = {status.value: 0 for status in DeliveryStatus}
        by_channel = {channel.value: 0 for channel in DeliveryChannel}
        for row in result.fetchall():
            by_status[row.status] += row.amount
            by_channel[row.channel] += row.amount

        total = sum(by_status.values())
        finished = by_status[DeliveryStatus.SENT.value] + by_status[DeliveryStatus.FAILED.value]
        rate = by_status[DeliveryStatus.SENT.value] / finished if finished else 0.0

        return DeliveryStats(
            total=total,
            by_status=by_status,
            by_channel=by_channel,
            delivery_rate=round(rate, 4),
            days=days,
        ).model_dump()

    async def delivery_stats(self, days: int = 30) -> DeliveryStats:
        """
        Delivery outcome counts over the last ``days`` days.

        ``delivery_rate`` is sent / (sent + failed); pending and cancelled
        deliveries do not count against it.
        """
        if self.cache:
            data = await self.cache.get_or_compute(
                SchedulingCache.aggregate_key("deliveries", days),
                lambda: self._compute_stats(days),
                ttl=SchedulingCache.AGGREGATES_TTL,
            )
        else:
            data = await self._compute_stats(days)
        return DeliveryStats.model_validate(data)
