"""Reminder channel adapters (email, SMS, push)."""

import re
from typing import Protocol, runtime_checkable

import httpx
import structlog
from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging

from app.config import settings
from app.core.exceptions import RetryableDeliveryError, TerminalDeliveryError
from app.core.firebase import get_firebase_app
from app.schemas.appointments import AppointmentResponse
from app.schemas.deliveries import DeliveryChannel, LeadTimeBucket, ReminderMessage

logger = structlog.get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
E164_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")

RESEND_API_URL = "https://api.resend.com/emails"
TWILIO_API_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"

BUCKET_PHRASES = {
    LeadTimeBucket.SEVEN_DAY: "in one week",
    LeadTimeBucket.THREE_DAY: "in three days",
    LeadTimeBucket.ONE_DAY: "tomorrow",
}


def build_reminder_message(
    bucket: LeadTimeBucket,
    appointment: AppointmentResponse,
    patient_name: str,
) -> ReminderMessage:
    """Render the plain-text reminder for one lead-time bucket."""
    when = appointment.scheduled_at.strftime("%b %d at %H:%M")
    phrase = BUCKET_PHRASES[bucket]
    return ReminderMessage(
        subject=f"[{settings.clinic_name}] Appointment reminder",
        body=(
            f"{patient_name}, this is a reminder of your appointment {phrase} on {when}. "
            "Please contact us as early as possible if you need to change or cancel it."
        ),
    )


@runtime_checkable
class ChannelAdapter(Protocol):
    """Sends one rendered reminder to one recipient.

    Returns normally on success; raises ``RetryableDeliveryError`` for
    transient failures and ``TerminalDeliveryError`` when the message can
    never be delivered.
    """

    async def send(self, recipient: str, message: ReminderMessage) -> None: ...


def _raise_for_response(channel: str, response: httpx.Response) -> None:
    """Classify a provider HTTP response."""
    if response.is_success:
        return
    detail = f"{channel} provider returned {response.status_code}: {response.text[:200]}"
    if response.status_code == 429 or response.status_code >= 500:
        raise RetryableDeliveryError(detail)
    raise TerminalDeliveryError(detail)


class EmailChannel:
    """Email through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = settings.channel_timeout_seconds,
    ):
        """Initialize with API credentials and an optional shared HTTP client."""
        self.api_key = api_key
        self.from_address = from_address
        self.client = client
        self.timeout = timeout

    async def send(self, recipient: str, message: ReminderMessage) -> None:
        """Send an email reminder."""
        if not EMAIL_PATTERN.match(recipient or ""):
            raise TerminalDeliveryError(f"Invalid email address: {recipient!r}")
        if not self.api_key:
            raise RetryableDeliveryError("Email channel is not configured")

        payload = {
            "from": self.from_address,
            "to": [recipient],
            "subject": message.subject,
            "text": message.body,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            if self.client is not None:
                response = await self.client.post(
                    RESEND_API_URL, json=payload, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        RESEND_API_URL, json=payload, headers=headers, timeout=self.timeout
                    )
        except httpx.HTTPError as e:
            raise RetryableDeliveryError(f"Email request failed: {e!s}") from e

        _raise_for_response("email", response)
        logger.info("email_reminder_sent", to=recipient)


class SmsChannel:
    """SMS through the Twilio REST API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = settings.channel_timeout_seconds,
    ):
        """Initialize with Twilio credentials and an optional shared HTTP client."""
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.client = client
        self.timeout = timeout

    async def send(self, recipient: str, message: ReminderMessage) -> None:
        """Send an SMS reminder."""
        # Twilio only accepts E.164 numbers
        if not E164_PATTERN.match(recipient or ""):
            raise TerminalDeliveryError(f"Phone number must be in E.164 format: {recipient!r}")
        if not (self.account_sid and self.auth_token and self.from_number):
            raise RetryableDeliveryError("SMS channel is not configured")

        url = TWILIO_API_URL.format(account_sid=self.account_sid)
        data = {"To": recipient, "From": self.from_number, "Body": message.body}
        auth = (self.account_sid, self.auth_token)

        try:
            if self.client is not None:
                response = await self.client.post(url, data=data, auth=auth, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, data=data, auth=auth, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise RetryableDeliveryError(f"SMS request failed: {e!s}") from e

        _raise_for_response("sms", response)
        logger.info("sms_reminder_sent", to=recipient)


class PushChannel:
    """Push notification through Firebase Cloud Messaging."""

    async def send(self, recipient: str, message: ReminderMessage) -> None:
        """Send a push reminder to one device token."""
        if not recipient:
            raise TerminalDeliveryError("Missing push token")

        fcm_message = messaging.Message(
            notification=messaging.Notification(title=message.subject, body=message.body),
            data={"type": "appointment_reminder"},
            token=recipient,
        )

        try:
            firebase_app = get_firebase_app()
        except RuntimeError as e:
            raise RetryableDeliveryError(str(e)) from e

        try:
            message_id = messaging.send(fcm_message, app=firebase_app)
        except (messaging.UnregisteredError, messaging.SenderIdMismatchError) as e:
            raise TerminalDeliveryError(f"Push token rejected: {e!s}") from e
        except firebase_exceptions.InvalidArgumentError as e:
            raise TerminalDeliveryError(f"Invalid push message: {e!s}") from e
        except ValueError as e:
            raise TerminalDeliveryError(f"Invalid push token: {e!s}") from e
        except firebase_exceptions.FirebaseError as e:
            raise RetryableDeliveryError(f"Push send failed: {e!s}") from e

        logger.info("push_reminder_sent", message_id=message_id)


def build_channel_adapters(
    client: httpx.AsyncClient | None = None,
) -> dict[DeliveryChannel, ChannelAdapter]:
    """Adapters for every channel, configured from settings."""
    return {
        DeliveryChannel.EMAIL: EmailChannel(
            api_key=settings.resend_api_key,
            from_address=settings.email_from_address,
            client=client,
        ),
        DeliveryChannel.SMS: SmsChannel(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            client=client,
        ),
        DeliveryChannel.PUSH: PushChannel(),
    }
