"""
Notification Gateways
Outbound email (SendGrid), SMS (Twilio) and push (FCM) adapters plus message templates
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import uuid

import httpx

from config import settings
from exceptions import GatewayError
from models import NotificationChannel
from tools.time_utils import utcnow


logger = logging.getLogger(__name__)


class NotificationTrigger(str, Enum):
    """Why a notification is being sent"""
    DOSE_REMINDER = "dose_reminder"
    MISSED_DOSE = "missed_dose"
    PATTERN_DETECTED = "pattern_detected"
    EMERGENCY_ALERT = "emergency_alert"
    RESPONSIBILITY_NEEDED = "responsibility_needed"
    WEEKLY_SUMMARY = "weekly_summary"
    MONTHLY_SUMMARY = "monthly_summary"


@dataclass
class OutboundMessage:
    """One message for one channel and one address"""
    channel: NotificationChannel
    address: str
    body: str
    subject: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryReceipt:
    """Result of a successful gateway send"""
    channel: NotificationChannel
    message_id: str
    delivered_at: datetime = field(default_factory=utcnow)


# Notification templates
NOTIFICATION_TEMPLATES: Dict[NotificationTrigger, Dict[str, str]] = {
    NotificationTrigger.DOSE_REMINDER: {
        "title": "Medication Reminder",
        "sms": "Reminder: {medication} ({dosage}) is due at {scheduled_time}.",
        "email_subject": "Medication Reminder - {medication}",
        "email_body": """
Hi {recipient_name},

This is a reminder that {patient_name}'s medication is due soon:

{medication} - {dosage}
Scheduled for: {scheduled_time}

- DoseLedger
        """,
        "push": "Time for {medication} ({dosage}) at {scheduled_time}",
    },
    NotificationTrigger.MISSED_DOSE: {
        "title": "Missed Dose",
        "sms": "{patient_name} missed {medication} scheduled for {scheduled_time}.",
        "email_subject": "Missed Medication - {medication}",
        "email_body": """
Hi {recipient_name},

A dose was not recorded within its grace period:

{medication} - {dosage}
Was scheduled for: {scheduled_time}
Patient: {patient_name}

Never double up on doses. Contact a healthcare provider if unsure.

- DoseLedger
        """,
        "push": "Missed {medication} at {scheduled_time}",
    },
    NotificationTrigger.PATTERN_DETECTED: {
        "title": "Adherence Pattern",
        "sms": "DoseLedger noticed a pattern for {medication}: {pattern_description}",
        "email_subject": "Adherence pattern detected - {medication}",
        "email_body": """
Hi {recipient_name},

We noticed a pattern in {patient_name}'s medication history:

{medication}: {pattern_description}

- DoseLedger
        """,
        "push": "Pattern for {medication}: {pattern_description}",
    },
    NotificationTrigger.EMERGENCY_ALERT: {
        "title": "URGENT: Medication Alert",
        "sms": "URGENT: {patient_name} - {alert_message}",
        "email_subject": "URGENT medication alert for {patient_name}",
        "email_body": """
URGENT

{alert_message}

Medication: {medication}
Patient: {patient_name}

- DoseLedger
        """,
        "push": "URGENT: {alert_message}",
    },
    NotificationTrigger.RESPONSIBILITY_NEEDED: {
        "title": "Help Needed",
        "sms": "{patient_name} needs help with {medication} due at {scheduled_time}.",
        "email_subject": "Help needed with {medication}",
        "email_body": """
Hi {recipient_name},

{patient_name} needs someone to help with a dose:

{medication} - {dosage}
Due at: {scheduled_time}

- DoseLedger
        """,
        "push": "Help needed: {medication} at {scheduled_time}",
    },
    NotificationTrigger.WEEKLY_SUMMARY: {
        "title": "Weekly Adherence Summary",
        "sms": "{patient_name}'s adherence this week: {adherence_rate}.",
        "email_subject": "Weekly medication summary for {patient_name}",
        "email_body": """
Hi {recipient_name},

Here's the weekly medication summary for {patient_name} ({window}):

Overall adherence: {adherence_rate}
Doses taken: {taken} of {scheduled}
Risk level: {risk_level}

- DoseLedger
        """,
        "push": "Weekly adherence: {adherence_rate}",
    },
    NotificationTrigger.MONTHLY_SUMMARY: {
        "title": "Monthly Adherence Summary",
        "sms": "{patient_name}'s adherence last month: {adherence_rate}.",
        "email_subject": "Monthly medication summary for {patient_name}",
        "email_body": """
Hi {recipient_name},

Here's the monthly medication summary for {patient_name} ({window}):

Overall adherence: {adherence_rate}
Doses taken: {taken} of {scheduled}
Risk level: {risk_level}

- DoseLedger
        """,
        "push": "Monthly adherence: {adherence_rate}",
    },
}


def render_message(trigger: NotificationTrigger, channel: NotificationChannel, context: Dict[str, Any]):
    """
    Render (subject, body) for a trigger and channel.
    Missing placeholders render as empty strings.
    """
    template = NOTIFICATION_TEMPLATES[NotificationTrigger(trigger)]
    values = defaultdict(str, {k: ("" if v is None else v) for k, v in context.items()})

    if channel == NotificationChannel.EMAIL:
        subject = template["email_subject"].format_map(values)
        body = template["email_body"].format_map(values).strip()
    else:
        subject = template["title"].format_map(values)
        body = template[channel.value].format_map(values)
    return subject, body


# ==================== GATEWAYS ====================

class NotificationGateway:
    """
    Fire-and-forget sender for one channel.

    send() returns a DeliveryReceipt or raises GatewayError; transient
    errors are retried by the dispatcher, terminal ones are not.
    """

    channel: NotificationChannel

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class HttpGateway(NotificationGateway):
    """Shared httpx plumbing and error mapping"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.post(url, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayError(f"{self.channel.value} gateway timed out: {e}", transient=True, channel=self.channel.value)
        except httpx.TransportError as e:
            raise GatewayError(f"{self.channel.value} gateway unreachable: {e}", transient=True, channel=self.channel.value)

        if response.status_code == 429 or response.status_code >= 500:
            raise GatewayError(
                f"{self.channel.value} gateway returned {response.status_code}",
                transient=True,
                channel=self.channel.value,
            )
        if response.status_code >= 400:
            raise GatewayError(
                f"{self.channel.value} gateway rejected message: {response.status_code} {response.text[:200]}",
                transient=False,
                channel=self.channel.value,
            )
        return response

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class SendGridEmailGateway(HttpGateway):
    channel = NotificationChannel.EMAIL
    url = "https://api.sendgrid.com/v3/mail/send"

    def __init__(self, api_key: str, from_email: str, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.from_email = from_email

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        payload = {
            "personalizations": [{"to": [{"email": message.address}]}],
            "from": {"email": self.from_email},
            "subject": message.subject or "",
            "content": [{"type": "text/plain", "value": message.body}],
        }
        response = await self._post(
            self.url,
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        message_id = response.headers.get("X-Message-Id") or f"email_{uuid.uuid4().hex}"
        logger.info(f"[EMAIL] Sent to {message.address}: {message.subject}")
        return DeliveryReceipt(channel=self.channel, message_id=message_id)


class TwilioSmsGateway(HttpGateway):
    channel = NotificationChannel.SMS

    def __init__(self, account_sid: str, auth_token: str, from_number: str, **kwargs):
        super().__init__(**kwargs)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number

    @property
    def url(self) -> str:
        return f"https://api.twilio.com/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        response = await self._post(
            self.url,
            data={"To": message.address, "From": self.from_number, "Body": message.body},
            auth=(self.account_sid, self.auth_token),
        )
        message_id = response.json().get("sid") or f"sms_{uuid.uuid4().hex}"
        logger.info(f"[SMS] Sent to {message.address}: {message.body[:50]}...")
        return DeliveryReceipt(channel=self.channel, message_id=message_id)


class FcmPushGateway(HttpGateway):
    channel = NotificationChannel.PUSH
    url = "https://fcm.googleapis.com/fcm/send"

    def __init__(self, server_key: str, **kwargs):
        super().__init__(**kwargs)
        self.server_key = server_key

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        payload = {
            "to": message.address,
            "notification": {"title": message.subject or "", "body": message.body},
            "data": {k: str(v) for k, v in message.data.items()},
        }
        response = await self._post(
            self.url,
            json=payload,
            headers={"Authorization": f"key={self.server_key}"},
        )
        body = response.json()
        if body.get("failure"):
            results = body.get("results") or [{}]
            raise GatewayError(
                f"push rejected: {results[0].get('error', 'unknown error')}",
                transient=False,
                channel=self.channel.value,
            )
        message_id = str(body.get("multicast_id") or f"push_{uuid.uuid4().hex}")
        logger.info(f"[PUSH] Sent: {message.subject} - {message.body[:30]}...")
        return DeliveryReceipt(channel=self.channel, message_id=message_id)


class LoggingGateway(NotificationGateway):
    """Simulated delivery used when a channel has no credentials configured"""

    def __init__(self, channel: NotificationChannel):
        self.channel = channel

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        logger.info(f"[{self.channel.value.upper()}] (simulated) To {message.address}: {message.body[:50]}...")
        return DeliveryReceipt(channel=self.channel, message_id=f"{self.channel.value}_{uuid.uuid4().hex}")


def build_gateways(config=settings, client: Optional[httpx.AsyncClient] = None) -> Dict[NotificationChannel, NotificationGateway]:
    """Gateway per channel from settings, simulated where credentials are missing"""
    gateways: Dict[NotificationChannel, NotificationGateway] = {}

    if config.SENDGRID_API_KEY:
        gateways[NotificationChannel.EMAIL] = SendGridEmailGateway(
            config.SENDGRID_API_KEY, config.SENDGRID_FROM_EMAIL, client=client
        )
    else:
        gateways[NotificationChannel.EMAIL] = LoggingGateway(NotificationChannel.EMAIL)

    if config.TWILIO_ACCOUNT_SID and config.TWILIO_AUTH_TOKEN and config.TWILIO_PHONE_NUMBER:
        gateways[NotificationChannel.SMS] = TwilioSmsGateway(
            config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN, config.TWILIO_PHONE_NUMBER, client=client
        )
    else:
        gateways[NotificationChannel.SMS] = LoggingGateway(NotificationChannel.SMS)

    if config.FCM_SERVER_KEY:
        gateways[NotificationChannel.PUSH] = FcmPushGateway(config.FCM_SERVER_KEY, client=client)
    else:
        gateways[NotificationChannel.PUSH] = LoggingGateway(NotificationChannel.PUSH)

    return gateways
