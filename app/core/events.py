"""In-process lifecycle event bus."""

from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from app.schemas.appointments import AppointmentResponse

logger = structlog.get_logger(__name__)


class AppointmentEventType(str, Enum):
    """Lifecycle event names."""

    BOOKED = "booked"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"
    STATUS_CHANGED = "status_changed"


@dataclass(frozen=True)
class AppointmentEvent:
    """A committed change to an appointment."""

    event_type: AppointmentEventType
    appointment: "AppointmentResponse"
    previous: "AppointmentResponse | None" = None


EventHandler = Callable[[AppointmentEvent], Awaitable[None]]


class EventBus:
    """Synchronous fan-out of lifecycle events to subscribed handlers."""

    def __init__(self) -> None:
        """Initialize with no subscribers."""
        self._handlers: dict[AppointmentEventType, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: AppointmentEventType, handler: EventHandler) -> None:
        """Register a handler for one event type."""
        self._handlers[event_type].append(handler)

    async def publish(self, event: AppointmentEvent) -> None:
        """
        Deliver an event to every handler in subscription order.

        A failing handler is logged and skipped; the write that produced the
        event has already been committed and must not be reported as failed.
        """
        for handler in self._handlers.get(event.event_type, []):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "event_handler_failed",
                    event_type=event.event_type.value,
                    appointment_id=str(event.appointment.id),
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                )
