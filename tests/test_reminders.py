"""Tests for reminder scheduling."""

from datetime import datetime

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from app.models.deliveries import deliveries
from app.schemas.appointments import AppointmentCreate, AppointmentStatus
from app.schemas.deliveries import DeliveryChannel, DeliveryStatus, LeadTimeBucket
from app.schemas.patients import PatientCreate
from app.services.patient_service import PatientService
from app.services.reminder_service import ReminderService, plan_buckets, select_channel


async def _deliveries_by_status(db_session, appointment_id) -> dict[str, int]:
    result = await db_session.execute(
        select(deliveries.c.status).where(deliveries.c.appointment_id == appointment_id)
    )
    counts: dict[str, int] = {}
    for row in result.fetchall():
        counts[row.status] = counts.get(row.status, 0) + 1
    return counts


def test_plan_buckets_ten_days_out():
    """All three reminders fit before an appointment ten days away."""
    now = datetime(2025, 7, 1, 8, 0)
    planned = plan_buckets(datetime(2025, 7, 11, 10, 0), now)

    assert planned == [
        (LeadTimeBucket.SEVEN_DAY, datetime(2025, 7, 4, 10, 0)),
        (LeadTimeBucket.THREE_DAY, datetime(2025, 7, 8, 10, 0)),
        (LeadTimeBucket.ONE_DAY, datetime(2025, 7, 10, 10, 0)),
    ]


def test_plan_buckets_skips_past_fire_times():
    """Only reminders that would fire from now on are planned."""
    now = datetime(2025, 7, 1, 8, 0)

    assert plan_buckets(datetime(2025, 7, 2, 10, 0), now) == [
        (LeadTimeBucket.ONE_DAY, datetime(2025, 7, 1, 10, 0))
    ]
    # Fire time exactly now still counts
    assert plan_buckets(datetime(2025, 7, 2, 8, 0), now) == [
        (LeadTimeBucket.ONE_DAY, datetime(2025, 7, 1, 8, 0))
    ]
    assert plan_buckets(datetime(2025, 7, 1, 15, 0), now) == []


@pytest.mark.asyncio
async def test_select_channel_prefers_reachable_preference(db_session):
    """Preference wins when reachable, else push, email, sms."""
    service = PatientService(db_session)

    prefers_sms = await service.create_patient(
        PatientCreate(
            name="A", phone="+819011112222", email="a@example.com", preferred_channel="sms"
        )
    )
    unreachable_preference = await service.create_patient(
        PatientCreate(name="B", email="b@example.com", preferred_channel="push")
    )
    no_preference = await service.create_patient(
        PatientCreate(name="C", phone="+819033334444", email="c@example.com", messaging_id="tok")
    )
    unreachable = await service.create_patient(PatientCreate(name="D"))

    assert select_channel(prefers_sms) == DeliveryChannel.SMS
    assert select_channel(unreachable_preference) == DeliveryChannel.EMAIL
    assert select_channel(no_preference) == DeliveryChannel.PUSH
    assert select_channel(unreachable) is None


@pytest.mark.asyncio
async def test_booking_ten_days_out_creates_three_reminders(appointment_service, patient):
    """Booking schedules seven, three and one day reminders."""
    appointment = await appointment_service.book(
        AppointmentCreate(patient_id=patient.id, scheduled_at=datetime(2025, 7, 11, 10, 0))
    )

    reminders = await ReminderService(appointment_service.db).list_deliveries(appointment.id)

    assert [(r.lead_time_bucket, r.scheduled_at) for r in reminders] == [
        (LeadTimeBucket.SEVEN_DAY, datetime(2025, 7, 4, 10, 0)),
        (LeadTimeBucket.THREE_DAY, datetime(2025, 7, 8, 10, 0)),
        (LeadTimeBucket.ONE_DAY, datetime(2025, 7, 10, 10, 0)),
    ]
    for reminder in reminders:
        assert reminder.status == DeliveryStatus.PENDING
        assert reminder.channel == DeliveryChannel.EMAIL
        assert reminder.next_attempt_at == reminder.scheduled_at
        assert reminder.retry_count == 0


@pytest.mark.asyncio
async def test_booking_one_day_out_creates_one_reminder(appointment_service, patient):
    """Reminders that would fire in the past are never created."""
    appointment = await appointment_service.book(
        AppointmentCreate(patient_id=patient.id, scheduled_at=datetime(2025, 7, 2, 10, 0))
    )

    reminders = await ReminderService(appointment_service.db).list_deliveries(appointment.id)

    assert [r.lead_time_bucket for r in reminders] == [LeadTimeBucket.ONE_DAY]


@pytest.mark.asyncio
async def test_patient_without_contact_gets_no_reminders(db_session, appointment_service):
    """No contact channel, no deliveries."""
    patient = await PatientService(db_session).create_patient(PatientCreate(name="Offline"))

    appointment = await appointment_service.book(
        AppointmentCreate(patient_id=patient.id, scheduled_at=datetime(2025, 7, 11, 10, 0))
    )

    assert await ReminderService(db_session).list_deliveries(appointment.id) == []


@pytest.mark.asyncio
async def test_on_booked_is_idempotent(db_session, clock, appointment_service, patient):
    """Replaying the booking event does not duplicate reminders."""
    appointment = await appointment_service.book(
        AppointmentCreate(patient_id=patient.id, scheduled_at=datetime(2025, 7, 11, 10, 0))
    )
    reminders = ReminderService(db_session, clock=clock)

    assert await reminders.on_booked(appointment) == []
    assert await _deliveries_by_status(db_session, appointment.id) == {"pending": 3}


@pytest.mark.asyncio
async def test_cancel_cascades_to_pending_reminders(db_session, appointment_service, patient):
    """Cancelling leaves zero pending and three cancelled deliveries."""
    appointment = await appointment_service.book(
        AppointmentCreate(patient_id=patient.id, scheduled_at=datetime(2025, 7, 11, 10, 0))
    )
    assert await _deliveries_by_status(db_session, appointment.id) == {"pending": 3}

    await appointment_service.cancel(appointment.id)

    assert await _deliveries_by_status(db_session, appointment.id) == {"cancelled": 3}


@pytest.mark.asyncio
async def test_cancel_leaves_finished_deliveries_alone(
    db_session, clock, appointment_service, patient
):
    """Only pending deliveries are cancelled."""
    appointment = await appointment_service.book(
        AppointmentCreate(patient_id=patient.id, scheduled_at=datetime(2025, 7, 11, 10, 0))
    )
    await db_session.execute(
        deliveries.update()
        .where(deliveries.c.lead_time_bucket == LeadTimeBucket.SEVEN_DAY.value)
        .values(status=DeliveryStatus.SENT.value, sent_at=datetime(2025, 7, 4, 10, 0))
    )
    await db_session.commit()

    await appointment_service.cancel(appointment.id)

    assert await _deliveries_by_status(db_session, appointment.id) == {
        "sent": 1,
        "cancelled": 2,
    }


@pytest.mark.asyncio
async def test_reschedule_regenerates_reminders(db_session, appointment_service, patient):
    """Moving an appointment replaces its pending reminders."""
    appointment = await appointment_service.book(
        AppointmentCreate(patient_id=patient.id, scheduled_at=datetime(2025, 7, 11, 10, 0))
    )

    await appointment_service.reschedule(appointment.id, datetime(2025, 7, 3, 14, 0))

    reminders = await ReminderService(db_session).list_deliveries(appointment.id)
    pending = [r for r in reminders if r.status == DeliveryStatus.PENDING]
    cancelled = [r for r in reminders if r.status == DeliveryStatus.CANCELLED]
    assert len(cancelled) == 3
    assert [(r.lead_time_bucket, r.scheduled_at) for r in pending] == [
        (LeadTimeBucket.ONE_DAY, datetime(2025, 7, 2, 14, 0))
    ]


@pytest.mark.asyncio
async def test_no_show_cancels_reminders(db_session, appointment_service, patient):
    """Leaving the remindable states cancels pending reminders."""
    appointment = await appointment_service.book(
        AppointmentCreate(patient_id=patient.id, scheduled_at=datetime(2025, 7, 11, 10, 0))
    )

    await appointment_service.transition(appointment.id, AppointmentStatus.NO_SHOW)

    assert await _deliveries_by_status(db_session, appointment.id) == {"cancelled": 3}


@pytest.mark.asyncio
async def test_visited_keeps_reminders(db_session, appointment_service, patient):
    """Visited is still remindable."""
    appointment = await appointment_service.book(
        AppointmentCreate(patient_id=patient.id, scheduled_at=datetime(2025, 7, 11, 10, 0))
    )

    await appointment_service.transition(appointment.id, AppointmentStatus.VISITED)

    assert await _deliveries_by_status(db_session, appointment.id) == {"pending": 3}


@pytest.mark.asyncio
async def test_appointment_deliveries_endpoint(
    client: AsyncClient, sample_appointment_data: dict
) -> None:
    """Test listing an appointment's reminders."""
    created = await client.post("/api/v1/appointments", json=sample_appointment_data)
    appointment_id = created.json()["id"]

    response = await client.get(f"/api/v1/appointments/{appointment_id}/deliveries")

    assert response.status_code == 200
    data = response.json()
    assert [item["lead_time_bucket"] for item in data] == ["seven_day", "three_day", "one_day"]
    assert all(item["status"] == "pending" for item in data)


@pytest.mark.asyncio
async def test_failed_cascade_is_caught_at_dispatch(
    db_session, clock, appointment_service, dispatcher, adapters, patient, monkeypatch
):
    """A cancellation whose cascade fails still never reaches the patient."""
    appointment = await appointment_service.book(
        AppointmentCreate(patient_id=patient.id, scheduled_at=datetime(2025, 7, 11, 10, 0))
    )

    async def broken(self, cancelled):
        raise RuntimeError("database went away")

    monkeypatch.setattr(ReminderService, "on_cancelled", broken)

    cancelled = await appointment_service.cancel(appointment.id)

    assert cancelled.status == AppointmentStatus.CANCELLED
    assert await _deliveries_by_status(db_session, appointment.id) == {"pending": 3}

    clock.now = datetime(2025, 7, 10, 10, 0)
    reminders = await ReminderService(db_session).list_deliveries(appointment.id)
    one_day = next(r for r in reminders if r.lead_time_bucket == LeadTimeBucket.ONE_DAY)

    delivery = await dispatcher.dispatch(one_day.id)

    assert delivery.status == DeliveryStatus.CANCELLED
    adapters[DeliveryChannel.EMAIL].send.assert_not_awaited()
