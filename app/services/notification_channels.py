# Outbound notification channels (email via Resend, WhatsApp via Twilio)
import re
from dataclasses import dataclass
from typing import Dict, Optional

import resend
from flask import current_app
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client


@dataclass(frozen=True)
class SendResult:
    accepted: bool
    reference: Optional[str] = None
    reason: Optional[str] = None


class NotificationChannel:
    """
    A delivery channel.

    ``send`` must return SendResult(accepted=True) only once the provider has
    taken the message; any other outcome is reported as a failure so the
    caller can retry.
    """

    name = "channel"

    def recipient_for(self, customer) -> Optional[str]:
        raise NotImplementedError

    def send(
        self, recipient: str, template_id: str, params: Dict, idempotency_key: str
    ) -> SendResult:
        raise NotImplementedError

    def close(self):
        pass


class EmailChannel(NotificationChannel):
    """Centralized email delivery using Resend"""

    name = "email"

    def __init__(self, api_key, from_email):
        if not api_key:
            raise ValueError("RESEND_API_KEY is required for the email channel")
        resend.api_key = api_key
        self.from_email = from_email

    def recipient_for(self, customer):
        return customer.email or None

    def send(self, recipient, template_id, params, idempotency_key):
        try:
            email_response = resend.Emails.send(
                {
                    "from": self.from_email,
                    "to": [recipient],
                    "subject": params.get("subject") or "Your salon appointment",
                    "text": params["body"],
                    "headers": {"X-Entity-Ref-ID": idempotency_key},
                    "tags": [{"name": "template", "value": template_id}],
                }
            )
        except Exception as e:
            return SendResult(False, reason=str(e))

        email_id = email_response.get("id") if email_response else None
        if not email_id:
            return SendResult(False, reason="Resend returned no message id")
        return SendResult(True, reference=email_id)


def to_whatsapp_address(phone):
    """Normalize a phone number to ``whatsapp:+<digits>``."""
    if not phone:
        return None
    phone = phone[len("whatsapp:"):] if phone.startswith("whatsapp:") else phone
    trimmed = re.sub(r"[^+\d]", "", phone)
    if not trimmed or trimmed == "+":
        return None
    if trimmed.startswith("00"):
        trimmed = "+" + trimmed[2:]
    elif not trimmed.startswith("+"):
        trimmed = "+" + trimmed
    return f"whatsapp:{trimmed}"


class WhatsAppChannel(NotificationChannel):
    name = "whatsapp"

    def __init__(self, account_sid, auth_token, from_number):
        if not (account_sid and auth_token and from_number):
            raise ValueError("Twilio WhatsApp credentials are not configured")
        self.client = Client(account_sid, auth_token)
        self.from_number = (
            from_number
            if from_number.startswith("whatsapp:")
            else f"whatsapp:{from_number}"
        )

    def recipient_for(self, customer):
        return to_whatsapp_address(customer.phone)

    def send(self, recipient, template_id, params, idempotency_key):
        try:
            message = self.client.messages.create(
                from_=self.from_number, to=recipient, body=params["body"]
            )
        except TwilioRestException as e:
            return SendResult(False, reason=f"[{e.code}] {e.msg}")
        except Exception as e:
            return SendResult(False, reason=str(e))

        if getattr(message, "status", None) in ("failed", "undelivered"):
            return SendResult(False, reference=message.sid, reason=message.status)
        return SendResult(True, reference=message.sid)


class ConsoleChannel(NotificationChannel):
    """Accepts every message and writes it to the app log."""

    def __init__(self, name, contact_attr):
        self.name = name
        self.contact_attr = contact_attr

    def recipient_for(self, customer):
        contact = getattr(customer, self.contact_attr, None)
        if self.name == "whatsapp":
            return to_whatsapp_address(contact)
        return contact or None

    def send(self, recipient, template_id, params, idempotency_key):
        current_app.logger.info(
            f"[{self.name}:test] {template_id} to {recipient} "
            f"(key={idempotency_key}): {params.get('body')}"
        )
        return SendResult(True, reference=f"test-{idempotency_key}")


class ChannelRegistry:
    """The channels configured for this process, keyed by channel name."""

    def __init__(self, channels=None):
        self._channels = {}
        for channel in channels or []:
            self.register(channel)

    def register(self, channel):
        self._channels[channel.name] = channel

    def get(self, name):
        return self._channels.get(name)

    def names(self):
        return list(self._channels)

    def close(self):
        for channel in self._channels.values():
            channel.close()

    @classmethod
    def from_config(cls, config, logger):
        if config.get("NOTIFY_TEST_MODE"):
            logger.info("Notification channels running in TEST MODE")
            return cls(
                [ConsoleChannel("email", "email"), ConsoleChannel("whatsapp", "phone")]
            )

        registry = cls()
        if config.get("RESEND_API_KEY"):
            registry.register(
                EmailChannel(config["RESEND_API_KEY"], config["RESEND_FROM_EMAIL"])
            )
        else:
            logger.warning("Email channel disabled: RESEND_API_KEY not configured")

        if (
            config.get("TWILIO_ACCOUNT_SID")
            and config.get("TWILIO_AUTH_TOKEN")
            and config.get("TWILIO_WHATSAPP_FROM")
        ):
            registry.register(
                WhatsAppChannel(
                    config["TWILIO_ACCOUNT_SID"],
                    config["TWILIO_AUTH_TOKEN"],
                    config["TWILIO_WHATSAPP_FROM"],
                )
            )
        else:
            logger.warning("WhatsApp channel disabled: Twilio credentials not configured")
        return registry


def get_channels():
    return current_app.extensions["notification_channels"]
