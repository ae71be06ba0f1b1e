"""Slot availability over the single shared chair."""

from datetime import date, datetime, time, timedelta
from uuid import UUID

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.clock import Clock, clinic_now
from app.core.exceptions import OutsideBusinessHoursError, ValidationException
from app.models.appointments import appointments
from app.schemas.appointments import AppointmentResponse, AppointmentStatus
from app.schemas.availability import SlotResponse
from app.services.cache_service import SchedulingCache

logger = structlog.get_logger(__name__)

INACTIVE_STATUSES = (AppointmentStatus.CANCELLED.value, AppointmentStatus.NO_SHOW.value)

# Days searched for alternatives when the requested day is full
ALTERNATIVES_LOOKAHEAD_DAYS = 14

Interval = tuple[datetime, datetime]


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open interval intersection; touching endpoints do not overlap."""
    return a_start < b_end and b_start < a_end


class AvailabilityService:
    """Computes free slots and detects booking conflicts."""

    def __init__(
        self,
        db: AsyncSession,
        cache: SchedulingCache | None = None,
        clock: Clock = clinic_now,
    ):
        """Initialize service with database session, optional cache and clock."""
        self.db = db
        self.cache = cache
        self.clock = clock

    @staticmethod
    def opening_hours(day: date) -> Interval | None:
        """Opening and closing moments for ``day``, or None when closed."""
        weekday = day.weekday()
        if weekday in settings.closed_weekdays:
            return None
        closing = settings.saturday_hours_end if weekday == 5 else settings.business_hours_end
        return (
            datetime.combine(day, settings.business_hours_start),
            datetime.combine(day, closing),
        )

    @staticmethod
    def blocked_intervals(day: date) -> list[Interval]:
        """Non-bookable windows inside opening hours."""
        lunch = settings.lunch_break
        if lunch is None:
            return []
        return [(datetime.combine(day, lunch[0]), datetime.combine(day, lunch[1]))]

    @staticmethod
    def validate_duration(duration_minutes: int) -> None:
        """Reject zero, negative, non-integer and oversized durations."""
        if (
            not isinstance(duration_minutes, int)
            or isinstance(duration_minutes, bool)
            or not 0 < duration_minutes <= settings.max_duration_minutes
        ):
            raise ValidationException(
                f"Duration must be between 1 and {settings.max_duration_minutes} minutes"
            )

    def validate_window(self, start: datetime, duration_minutes: int) -> None:
        """
        Ensure a booking window fits inside business hours.

        Raises:
            ValidationException: If the duration is malformed
            OutsideBusinessHoursError: If the clinic is closed for any part of it
        """
        self.validate_duration(duration_minutes)

        hours = self.opening_hours(start.date())
        if hours is None:
            raise OutsideBusinessHoursError(f"The clinic is closed on {start.strftime('%A')}")

        end = start + timedelta(minutes=duration_minutes)
        opening, closing = hours
        if start < opening or end > closing:
            raise OutsideBusinessHoursError(
                f"Appointments must fall between {opening.strftime('%H:%M')} "
                f"and {closing.strftime('%H:%M')}"
            )

        for blocked_start, blocked_end in self.blocked_intervals(start.date()):
            if overlaps(start, end, blocked_start, blocked_end):
                raise OutsideBusinessHoursError(
                    f"Appointments cannot overlap the break between "
                    f"{blocked_start.strftime('%H:%M')} and {blocked_end.strftime('%H:%M')}"
                )

    async def _active_appointments_between(
        self,
        window_start: datetime,
        window_end: datetime,
        excluding_appointment_id: UUID | None = None,
    ) -> list[AppointmentResponse]:
        """Active appointments whose interval intersects the window, sorted by start."""
        # Anything starting more than max duration before the window cannot reach into it
        conditions = [
            appointments.c.scheduled_at < window_end,
            appointments.c.scheduled_at
            >= window_start - timedelta(minutes=settings.max_duration_minutes),
            appointments.c.status.not_in(INACTIVE_STATUSES),
        ]
        if excluding_appointment_id is not None:
            conditions.append(appointments.c.id != excluding_appointment_id)

        stmt = select(appointments).where(and_(*conditions)).order_by(appointments.c.scheduled_at)
        result = await self.db.execute(stmt)

        found = [
            AppointmentResponse.model_validate(dict(row._mapping)) for row in result.fetchall()
        ]
        return [apt for apt in found if apt.ends_at > window_start]

    async def find_conflict(
        self,
        start: datetime,
        duration_minutes: int,
        excluding_appointment_id: UUID | None = None,
    ) -> AppointmentResponse | None:
        """
        Find the earliest active appointment overlapping a candidate window.

        Args:
            start: Candidate start
            duration_minutes: Candidate length
            excluding_appointment_id: Appointment to ignore (the one being moved)

        Returns:
            The competing appointment, or None if the window is free
        """
        self.validate_duration(duration_minutes)
        end = start + timedelta(minutes=duration_minutes)

        competing = await self._active_appointments_between(start, end, excluding_appointment_id)
        return competing[0] if competing else None

    async def has_conflict(
        self,
        start: datetime,
        duration_minutes: int,
        excluding_appointment_id: UUID | None = None,
    ) -> bool:
        """Check whether a candidate window collides with an active appointment."""
        competing = await self.find_conflict(start, duration_minutes, excluding_appointment_id)
        return competing is not None

    async def _compute_grid(self, day: date, duration_minutes: int) -> list[dict]:
        """Occupancy grid for a day, independent of the current time."""
        hours = self.opening_hours(day)
        if hours is None:
            return []
        opening, closing = hours

        booked = await self._active_appointments_between(opening, closing)
        busy = [(apt.scheduled_at, apt.ends_at) for apt in booked]
        busy.extend(self.blocked_intervals(day))
        busy.sort()

        step = timedelta(minutes=settings.slot_granularity_minutes)
        length = timedelta(minutes=duration_minutes)

        grid = []
        slot = opening
        while slot < closing:
            slot_end = slot + length
            available = slot_end <= closing
            if available:
                for busy_start, busy_end in busy:
                    if busy_start >= slot_end:
                        break
                    if overlaps(slot, slot_end, busy_start, busy_end):
                        available = False
                        break
            grid.append({"time": slot.strftime("%H:%M"), "available": available})
            slot += step

        return grid

    async def available_slots(self, day: date, duration_minutes: int) -> list[SlotResponse]:
        """
        Availability grid for a day and appointment length.

        The occupancy grid is cached per (day, duration); slots that start
        before "now" are masked on every read so a cached grid never offers
        the past.

        Args:
            day: Calendar day in clinic time
            duration_minutes: Requested appointment length

        Returns:
            Ordered slots with their availability

        Raises:
            ValidationException: If the duration is malformed
        """
        self.validate_duration(duration_minutes)

        if self.cache:
            grid = await self.cache.get_or_compute(
                SchedulingCache.slots_key(day, duration_minutes),
                lambda: self._compute_grid(day, duration_minutes),
                ttl=SchedulingCache.SLOTS_TTL,
            )
        else:
            grid = await self._compute_grid(day, duration_minutes)

        now = self.clock()
        slots = []
        for entry in grid:
            starts_at = datetime.combine(day, time.fromisoformat(entry["time"]))
            slots.append(
                SlotResponse(time=entry["time"], available=entry["available"] and starts_at >= now)
            )
        return slots

    async def suggest_alternatives(
        self,
        start: datetime,
        duration_minutes: int,
        limit: int | None = None,
    ) -> list[datetime]:
        """
        Concrete free start times to offer instead of a rejected one.

        Slots on the requested day come first, closest to the requested time;
        if the day cannot fill the list, following days are searched in order.
        """
        limit = limit or settings.alternative_suggestions
        suggestions: list[datetime] = []

        for offset in range(ALTERNATIVES_LOOKAHEAD_DAYS + 1):
            day = start.date() + timedelta(days=offset)
            free = [
                datetime.combine(day, time.fromisoformat(slot.time))
                for slot in await self.available_slots(day, duration_minutes)
                if slot.available
            ]
            if offset == 0:
                free.sort(key=lambda candidate: (abs(candidate - start), candidate))
            suggestions.extend(candidate for candidate in free if candidate != start)
            if len(suggestions) >= limit:
                break

        logger.debug(
            "alternatives_suggested",
            requested=start.isoformat(),
            count=len(suggestions[:limit]),
        )
        return suggestions[:limit]
