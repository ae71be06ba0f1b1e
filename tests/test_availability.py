"""Tests for slot availability and conflict detection."""

import json
from datetime import date, datetime

import pytest
from httpx import AsyncClient

from app.core.exceptions import OutsideBusinessHoursError, ValidationException
from app.schemas.appointments import AppointmentCreate
from app.services.availability_service import AvailabilityService, overlaps
from app.services.cache_service import SchedulingCache

THURSDAY = date(2025, 7, 10)


def _availability(slots) -> dict[str, bool]:
    return {slot.time: slot.available for slot in slots}


async def _book(service, patient, when: datetime, minutes: int):
    return await service.book(
        AppointmentCreate(patient_id=patient.id, scheduled_at=when, duration_minutes=minutes)
    )


def test_overlaps_is_half_open():
    """Touching endpoints do not overlap."""
    nine = datetime(2025, 7, 10, 9, 0)
    ten = datetime(2025, 7, 10, 10, 0)
    eleven = datetime(2025, 7, 10, 11, 0)

    assert overlaps(nine, ten, ten, eleven) is False
    assert overlaps(nine, eleven, ten, eleven) is True
    assert overlaps(ten, eleven, nine, ten) is False


@pytest.mark.asyncio
async def test_empty_day_grid(db_session, clock):
    """Open weekday: lunch and closing time block slots."""
    service = AvailabilityService(db_session, clock=clock)

    slots = _availability(await service.available_slots(THURSDAY, 60))

    assert list(slots)[0] == "09:00"
    assert list(slots)[-1] == "17:30"
    assert slots["11:00"] is True
    assert slots["11:30"] is False  # runs into lunch
    assert slots["12:30"] is False
    assert slots["13:00"] is True
    assert slots["17:00"] is True
    assert slots["17:30"] is False  # runs past closing


@pytest.mark.asyncio
async def test_closed_day_has_no_slots(db_session, clock):
    """Sunday is closed by default."""
    service = AvailabilityService(db_session, clock=clock)

    assert await service.available_slots(date(2025, 7, 6), 30) == []


@pytest.mark.asyncio
async def test_saturday_closes_early(db_session, clock):
    """Saturday closes at 17:00."""
    service = AvailabilityService(db_session, clock=clock)

    slots = _availability(await service.available_slots(date(2025, 7, 5), 60))

    assert slots["16:00"] is True
    assert slots["16:30"] is False
    assert "17:00" not in slots


@pytest.mark.asyncio
async def test_slot_abutting_appointment_is_available(
    db_session, clock, appointment_service, patient
):
    """A slot starting exactly when an appointment ends stays free."""
    await _book(appointment_service, patient, datetime(2025, 7, 10, 10, 0), 60)
    service = AvailabilityService(db_session, clock=clock)

    slots = _availability(await service.available_slots(THURSDAY, 60))

    assert slots["09:00"] is True
    assert slots["09:30"] is False
    assert slots["10:00"] is False
    assert slots["10:30"] is False
    assert slots["11:00"] is True


@pytest.mark.asyncio
async def test_cancelled_appointment_frees_slot(db_session, clock, appointment_service, patient):
    """Cancelled appointments do not occupy the chair."""
    appointment = await _book(appointment_service, patient, datetime(2025, 7, 10, 10, 0), 60)
    await appointment_service.cancel(appointment.id)
    service = AvailabilityService(db_session, clock=clock)

    slots = _availability(await service.available_slots(THURSDAY, 60))

    assert slots["10:00"] is True
    assert await service.has_conflict(datetime(2025, 7, 10, 10, 0), 60) is False


@pytest.mark.asyncio
async def test_past_slots_are_masked(db_session, clock):
    """Slots starting before now are never offered."""
    clock.now = datetime(2025, 7, 10, 10, 15)
    service = AvailabilityService(db_session, clock=clock)

    slots = _availability(await service.available_slots(THURSDAY, 30))

    assert slots["09:00"] is False
    assert slots["10:00"] is False
    assert slots["10:30"] is True


@pytest.mark.asyncio
async def test_cached_grid_is_served_and_still_masked(db_session, clock, cache_manager, mock_redis):
    """A cached grid is returned without querying, past slots masked on read."""
    cached = [
        {"time": "09:00", "available": True},
        {"time": "09:30", "available": False},
        {"time": "10:00", "available": True},
        {"time": "10:30", "available": True},
    ]
    mock_redis.get.return_value = json.dumps(cached)
    clock.now = datetime(2025, 7, 10, 9, 45)
    service = AvailabilityService(db_session, cache=SchedulingCache(cache_manager), clock=clock)

    slots = _availability(await service.available_slots(THURSDAY, 30))

    mock_redis.get.assert_called_once_with("slots:2025-07-10:30")
    assert slots == {"09:00": False, "09:30": False, "10:00": True, "10:30": True}


@pytest.mark.asyncio
async def test_grid_is_cached_on_miss(db_session, clock, cache_manager, mock_redis):
    """A computed grid is stored with the slots TTL."""
    service = AvailabilityService(db_session, cache=SchedulingCache(cache_manager), clock=clock)

    await service.available_slots(THURSDAY, 60)

    mock_redis.setex.assert_called_once()
    key, ttl, _ = mock_redis.setex.call_args.args
    assert key == "slots:2025-07-10:60"
    assert ttl == SchedulingCache.SLOTS_TTL


@pytest.mark.asyncio
async def test_validate_window(db_session, clock):
    """Closed days, out-of-hours windows and lunch overlaps are rejected."""
    service = AvailabilityService(db_session, clock=clock)

    service.validate_window(datetime(2025, 7, 10, 9, 0), 60)
    service.validate_window(datetime(2025, 7, 10, 13, 0), 300)

    with pytest.raises(OutsideBusinessHoursError):
        service.validate_window(datetime(2025, 7, 6, 10, 0), 60)
    with pytest.raises(OutsideBusinessHoursError):
        service.validate_window(datetime(2025, 7, 10, 8, 30), 60)
    with pytest.raises(OutsideBusinessHoursError):
        service.validate_window(datetime(2025, 7, 10, 17, 30), 60)
    with pytest.raises(OutsideBusinessHoursError):
        service.validate_window(datetime(2025, 7, 10, 11, 30), 60)
    with pytest.raises(ValidationException):
        service.validate_window(datetime(2025, 7, 10, 10, 0), 0)
    with pytest.raises(ValidationException):
        service.validate_window(datetime(2025, 7, 10, 10, 0), -30)


@pytest.mark.asyncio
async def test_find_conflict_excludes_given_appointment(
    db_session, clock, appointment_service, patient
):
    """The appointment being moved never conflicts with itself."""
    appointment = await _book(appointment_service, patient, datetime(2025, 7, 10, 10, 0), 60)
    service = AvailabilityService(db_session, clock=clock)

    competing = await service.find_conflict(datetime(2025, 7, 10, 10, 30), 60)
    assert competing is not None
    assert competing.id == appointment.id

    assert (
        await service.find_conflict(
            datetime(2025, 7, 10, 10, 30), 60, excluding_appointment_id=appointment.id
        )
        is None
    )


@pytest.mark.asyncio
async def test_long_appointment_conflicts_from_earlier_start(
    db_session, clock, appointment_service, patient
):
    """An appointment that started hours earlier still blocks its tail."""
    await _book(appointment_service, patient, datetime(2025, 7, 10, 13, 0), 240)
    service = AvailabilityService(db_session, clock=clock)

    assert await service.has_conflict(datetime(2025, 7, 10, 16, 30), 30) is True
    assert await service.has_conflict(datetime(2025, 7, 10, 17, 0), 30) is False


@pytest.mark.asyncio
async def test_suggest_alternatives_skips_busy_window(
    db_session, clock, appointment_service, other_patient
):
    """Suggestions are free, closest first, and never the requested start."""
    await _book(appointment_service, other_patient, datetime(2025, 7, 10, 10, 30), 30)
    service = AvailabilityService(db_session, clock=clock)
    requested = datetime(2025, 7, 10, 10, 0)

    suggestions = await service.suggest_alternatives(requested, 60, limit=5)

    assert suggestions == [
        datetime(2025, 7, 10, 9, 30),
        datetime(2025, 7, 10, 9, 0),
        datetime(2025, 7, 10, 11, 0),
        datetime(2025, 7, 10, 13, 0),
        datetime(2025, 7, 10, 13, 30),
    ]


@pytest.mark.asyncio
async def test_suggest_alternatives_moves_to_next_open_day(db_session, clock):
    """A closed day yields suggestions from the following day."""
    service = AvailabilityService(db_session, clock=clock)

    suggestions = await service.suggest_alternatives(datetime(2025, 7, 6, 10, 0), 60, limit=2)

    assert suggestions == [datetime(2025, 7, 7, 9, 0), datetime(2025, 7, 7, 9, 30)]


@pytest.mark.asyncio
async def test_availability_endpoint(client: AsyncClient, sample_appointment_data: dict) -> None:
    """Test the availability endpoint reflects bookings."""
    await client.post("/api/v1/appointments", json=sample_appointment_data)

    response = await client.get("/api/v1/availability", params={"date": "2025-07-10", "duration": 60})

    assert response.status_code == 200
    data = response.json()
    assert data["day"] == "2025-07-10"
    assert data["duration_minutes"] == 60
    slots = {slot["time"]: slot["available"] for slot in data["slots"]}
    assert slots["10:00"] is False
    assert slots["11:00"] is True


@pytest.mark.asyncio
async def test_availability_endpoint_rejects_bad_duration(client: AsyncClient) -> None:
    """Test zero-length slot requests are rejected."""
    response = await client.get("/api/v1/availability", params={"date": "2025-07-10", "duration": 0})

    assert response.status_code == 422
