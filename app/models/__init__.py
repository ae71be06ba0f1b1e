"""Database models."""

from app.models.appointments import appointment_events, appointments
from app.models.deliveries import deliveries
from app.models.patients import patients

__all__ = [
    "appointment_events",
    "appointments",
    "deliveries",
    "patients",
]
