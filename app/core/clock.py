"""Clinic wall clock."""

from collections.abc import Callable
from datetime import datetime
from zoneinfo import ZoneInfo

from app.config import settings

Clock = Callable[[], datetime]


def clinic_now() -> datetime:
    """
    Current time in the clinic's timezone, as a naive wall-clock datetime.

    Appointments and reminders are stored in clinic-local time, so every
    comparison against "now" goes through this function (or an injected
    replacement in tests).
    """
    return datetime.now(ZoneInfo(settings.clinic_timezone)).replace(tzinfo=None, microsecond=0)


def to_clinic_time(value: datetime) -> datetime:
    """
    Normalize a datetime to naive clinic-local wall-clock time.

    Aware values are converted to the clinic timezone first; naive values
    are taken as already clinic-local.
    """
    if value.tzinfo is not None:
        value = value.astimezone(ZoneInfo(settings.clinic_timezone))
    return value.replace(tzinfo=None, microsecond=0)
