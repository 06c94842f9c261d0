from dataclasses import dataclass
from typing import Optional
from flask import current_app
from flask_mail import Message
from extensions import mail
from services.errors import PermanentTransportError
import logging
import re
import smtplib
import requests

logger = logging.getLogger("dispatcher")


@dataclass
class OutboundMessage:
    channel: str
    to: str
    body: str
    subject: Optional[str] = None
    html: Optional[str] = None
    from_name: Optional[str] = None
    reply_to: Optional[str] = None


@dataclass
class SendResult:
    success: bool
    provider_id: Optional[str] = None
    reason: Optional[str] = None
    permanent: bool = False

    @classmethod
    def ok(cls, provider_id):
        return cls(success=True, provider_id=provider_id)

    @classmethod
    def failure(cls, reason, permanent=False):
        return cls(success=False, reason=reason, permanent=permanent)


class EmailTransport:
    """Sends email through Flask-Mail."""

    def send(self, message):
        sender = current_app.config.get('MAIL_DEFAULT_SENDER') or current_app.config.get('MAIL_USERNAME')
        if not sender:
            return SendResult.failure("MAIL_USERNAME not set")
        if message.from_name:
            sender = (message.from_name, sender)

        msg = Message(
            subject=message.subject or "",
            sender=sender,
            recipients=[message.to],
            body=message.body,
            html=message.html,
            reply_to=message.reply_to,
        )
        try:
            mail.send(msg)
        except smtplib.SMTPRecipientsRefused as e:
            return SendResult.failure(f"Recipient refused: {e.recipients}", permanent=True)
        except (smtplib.SMTPException, OSError) as e:
            return SendResult.failure(str(e))
        return SendResult.ok(msg.msgId)


def sanitize_phone_number(phone):
    """Normalise user-entered numbers to E.164, assuming US numbers when no country code is given."""
    if not phone or not isinstance(phone, str):
        raise PermanentTransportError("Invalid phone number: must be a non-empty string")

    cleaned = re.sub(r"[^\d+]", "", phone)
    if cleaned.startswith('+') and 8 <= len(cleaned) <= 16:
        return cleaned
    if cleaned.startswith('1') and len(cleaned) == 11:
        return '+' + cleaned
    if len(cleaned) == 10:
        return '+1' + cleaned
    raise PermanentTransportError(f"Invalid phone number format: {phone}")


class SmsTransport:
    """Sends SMS through a Twilio-compatible REST API."""

    def __init__(self, session=None):
        self.session = session or requests.Session()

    def send(self, message):
        config = current_app.config
        sid = config.get('SMS_ACCOUNT_SID')
        token = config.get('SMS_AUTH_TOKEN')
        if not sid or not token or not config.get('SMS_FROM_NUMBER'):
            return SendResult.failure("SMS provider not configured")

        try:
            to = sanitize_phone_number(message.to)
        except PermanentTransportError as e:
            return SendResult.failure(str(e), permanent=True)

        url = f"{config['SMS_API_URL']}/Accounts/{sid}/Messages.json"
        payload = {"To": to, "From": config['SMS_FROM_NUMBER'], "Body": message.body}
        try:
            response = self.session.post(url, data=payload, auth=(sid, token),
                                         timeout=config.get('TRANSPORT_TIMEOUT_SECONDS', 20))
        except requests.RequestException as e:
            return SendResult.failure(f"SMS request failed: {e}")

        if response.status_code >= 500 or response.status_code == 429:
            return SendResult.failure(f"SMS provider error {response.status_code}")
        if response.status_code >= 400:
            return SendResult.failure(f"SMS rejected ({response.status_code}): {response.text[:200]}", permanent=True)
        return SendResult.ok(response.json().get("sid"))


def default_transports():
    return {"EMAIL": EmailTransport(), "SMS": SmsTransport()}
