"""Tests for reminder channel adapters."""

from datetime import datetime
from uuid import uuid4

import httpx
import pytest
from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging

from app.core.exceptions import RetryableDeliveryError, TerminalDeliveryError
from app.schemas.appointments import AppointmentResponse
from app.schemas.deliveries import DeliveryChannel, LeadTimeBucket, ReminderMessage
from app.services import channels
from app.services.channels import (
    EmailChannel,
    PushChannel,
    SmsChannel,
    build_channel_adapters,
    build_reminder_message,
)

MESSAGE = ReminderMessage(subject="Appointment reminder", body="See you tomorrow")


def _client(status_code: int, captured: list | None = None) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(request)
        return httpx.Response(status_code, json={"id": "msg_1"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_build_reminder_message():
    """The message names the patient, the lead time and the appointment time."""
    appointment = AppointmentResponse(
        id=uuid4(),
        patient_id=uuid4(),
        scheduled_at=datetime(2025, 7, 11, 10, 0),
        duration_minutes=60,
        status="booked",
        visibility="visible",
        created_at=datetime(2025, 7, 1, 8, 0),
        updated_at=datetime(2025, 7, 1, 8, 0),
    )

    message = build_reminder_message(LeadTimeBucket.THREE_DAY, appointment, "Hanako")

    assert message.body.startswith("Hanako,")
    assert "in three days" in message.body
    assert "Jul 11 at 10:00" in message.body
    assert "reminder" in message.subject.lower()


def test_build_channel_adapters_covers_every_channel():
    """Every delivery channel has an adapter."""
    adapters = build_channel_adapters()

    assert set(adapters) == set(DeliveryChannel)
    assert isinstance(adapters[DeliveryChannel.EMAIL], EmailChannel)
    assert isinstance(adapters[DeliveryChannel.SMS], SmsChannel)
    assert isinstance(adapters[DeliveryChannel.PUSH], PushChannel)


@pytest.mark.asyncio
async def test_email_sent_through_resend():
    """Successful sends post the message to Resend."""
    captured: list[httpx.Request] = []
    channel = EmailChannel("re_key", "clinic@example.com", client=_client(200, captured))

    await channel.send("hanako@example.com", MESSAGE)

    assert len(captured) == 1
    request = captured[0]
    assert str(request.url) == channels.RESEND_API_URL
    assert request.headers["Authorization"] == "Bearer re_key"
    assert b"hanako@example.com" in request.content


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (500, RetryableDeliveryError),
        (503, RetryableDeliveryError),
        (429, RetryableDeliveryError),
        (400, TerminalDeliveryError),
        (422, TerminalDeliveryError),
    ],
)
async def test_email_status_classification(status_code, expected):
    """Server errors and throttling retry, client errors do not."""
    channel = EmailChannel("re_key", "clinic@example.com", client=_client(status_code))

    with pytest.raises(expected):
        await channel.send("hanako@example.com", MESSAGE)


@pytest.mark.asyncio
async def test_email_network_error_is_retryable():
    """Transport failures are retryable."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    channel = EmailChannel("re_key", "clinic@example.com", client=client)

    with pytest.raises(RetryableDeliveryError):
        await channel.send("hanako@example.com", MESSAGE)


@pytest.mark.asyncio
async def test_email_invalid_address_is_terminal():
    """A malformed address never reaches the provider."""
    captured: list[httpx.Request] = []
    channel = EmailChannel("re_key", "clinic@example.com", client=_client(200, captured))

    with pytest.raises(TerminalDeliveryError):
        await channel.send("not-an-address", MESSAGE)
    assert captured == []


@pytest.mark.asyncio
async def test_email_unconfigured_is_retryable():
    """Missing credentials may be fixed before the next attempt."""
    channel = EmailChannel("", "clinic@example.com", client=_client(200))

    with pytest.raises(RetryableDeliveryError):
        await channel.send("hanako@example.com", MESSAGE)


@pytest.mark.asyncio
async def test_sms_sent_through_twilio():
    """Successful sends post the body to the account's Messages resource."""
    captured: list[httpx.Request] = []
    channel = SmsChannel("AC123", "token", "+15550001111", client=_client(201, captured))

    await channel.send("+819012345678", MESSAGE)

    request = captured[0]
    assert str(request.url).endswith("/Accounts/AC123/Messages.json")
    assert request.headers["Authorization"].startswith("Basic ")
    assert b"To=%2B819012345678" in request.content


@pytest.mark.asyncio
async def test_sms_requires_e164():
    """Local-format numbers are undeliverable."""
    channel = SmsChannel("AC123", "token", "+15550001111", client=_client(201))

    with pytest.raises(TerminalDeliveryError):
        await channel.send("090-1234-5678", MESSAGE)


@pytest.mark.asyncio
async def test_sms_server_error_is_retryable():
    """Twilio outages are retried."""
    channel = SmsChannel("AC123", "token", "+15550001111", client=_client(503))

    with pytest.raises(RetryableDeliveryError):
        await channel.send("+819012345678", MESSAGE)


@pytest.mark.asyncio
async def test_push_sent_through_fcm(monkeypatch):
    """Push reminders go to the patient's device token."""
    sent = []
    monkeypatch.setattr(channels, "get_firebase_app", lambda: "app")
    monkeypatch.setattr(
        channels.messaging, "send", lambda message, app=None: sent.append(message) or "id-1"
    )

    await PushChannel().send("device-token", MESSAGE)

    assert sent[0].token == "device-token"
    assert sent[0].notification.body == MESSAGE.body


@pytest.mark.asyncio
async def test_push_unregistered_token_is_terminal(monkeypatch):
    """A dead token is never retried."""

    def reject(message, app=None):
        raise messaging.UnregisteredError("token is not registered")

    monkeypatch.setattr(channels, "get_firebase_app", lambda: "app")
    monkeypatch.setattr(channels.messaging, "send", reject)

    with pytest.raises(TerminalDeliveryError):
        await PushChannel().send("device-token", MESSAGE)


@pytest.mark.asyncio
async def test_push_unavailable_is_retryable(monkeypatch):
    """FCM outages are retried."""

    def unavailable(message, app=None):
        raise firebase_exceptions.UnavailableError("service unavailable")

    monkeypatch.setattr(channels, "get_firebase_app", lambda: "app")
    monkeypatch.setattr(channels.messaging, "send", unavailable)

    with pytest.raises(RetryableDeliveryError):
        await PushChannel().send("device-token", MESSAGE)


@pytest.mark.asyncio
async def test_push_without_firebase_is_retryable():
    """Until Firebase is initialized push reminders wait."""
    with pytest.raises(RetryableDeliveryError):
        await PushChannel().send("device-token", MESSAGE)
