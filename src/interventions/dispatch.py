"""
Outbound delivery of approved interventions.

Email goes through the Resend HTTP API and SMS through the Twilio REST API,
both with ``requests``. Contact guardrails (do-not-contact, channel consent,
missing address) are checked before any network call. Every failure is
raised as DispatchError so the workflow can record the intervention as
FAILED.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

import requests

from src.data.repository import InterventionRecord, MemberRecord

from .config import EngineConfig
from .errors import DispatchError

logger = logging.getLogger("retain.interventions.dispatch")

RESEND_URL = "https://api.resend.com/emails"
TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


@dataclass
class DispatchReceipt:
    provider: str
    provider_message_id: str


class Dispatcher(Protocol):
    def send(self, intervention: InterventionRecord, member: MemberRecord) -> DispatchReceipt:
        ...


def check_guardrails(intervention: InterventionRecord, member: MemberRecord) -> None:
    """Raise DispatchError if the member must not be contacted on this channel."""
    if member.do_not_contact:
        raise DispatchError("Member is marked do-not-contact")
    if intervention.channel == "EMAIL":
        if not member.consent_email:
            raise DispatchError("Member has not consented to email")
        if not member.email:
            raise DispatchError("Member has no email address")
    elif intervention.channel == "SMS":
        if not member.consent_sms:
            raise DispatchError("Member has not consented to SMS")
        if not member.phone:
            raise DispatchError("Member has no phone number")
    else:
        raise DispatchError(f"Unsupported channel: {intervention.channel}")


class EmailDispatcher:
    """Sends email through Resend."""

    def __init__(self, config: EngineConfig, session: requests.Session | None = None):
        self.config = config
        self.session = session or requests.Session()

    def send(self, intervention: InterventionRecord, member: MemberRecord) -> DispatchReceipt:
        if not self.config.resend_api_key:
            raise DispatchError("Email provider is not configured")

        payload = {
            "from": self.config.resend_from_email,
            "to": [member.email],
            "subject": intervention.rendered_subject or "",
            "text": intervention.rendered_body,
        }
        headers = {
            "Authorization": f"Bearer {self.config.resend_api_key}",
            # Resend dedups retries carrying the same key
            "Idempotency-Key": f"{intervention.id}-{intervention.attempt_count}",
        }
        try:
            r = self.session.post(
                RESEND_URL,
                json=payload,
                headers=headers,
                timeout=self.config.dispatch_timeout_seconds,
            )
            r.raise_for_status()
            message_id = r.json().get("id", "")
        except requests.exceptions.RequestException as e:
            logger.error(f"Resend request failed for intervention {intervention.id}: {e}")
            raise DispatchError(f"Email provider error: {e}") from e
        except ValueError as e:
            raise DispatchError("Email provider returned an invalid response") from e

        return DispatchReceipt(provider="resend", provider_message_id=message_id)


class SmsDispatcher:
    """Sends SMS through Twilio."""

    def __init__(self, config: EngineConfig, session: requests.Session | None = None):
        self.config = config
        self.session = session or requests.Session()

    def send(self, intervention: InterventionRecord, member: MemberRecord) -> DispatchReceipt:
        cfg = self.config
        if not (cfg.twilio_account_sid and cfg.twilio_auth_token and cfg.twilio_from_number):
            raise DispatchError("SMS provider is not configured")

        try:
            r = self.session.post(
                TWILIO_URL.format(sid=cfg.twilio_account_sid),
                data={
                    "From": cfg.twilio_from_number,
                    "To": member.phone,
                    "Body": intervention.rendered_body,
                },
                auth=(cfg.twilio_account_sid, cfg.twilio_auth_token),
                timeout=cfg.dispatch_timeout_seconds,
            )
            r.raise_for_status()
            message_id = r.json().get("sid", "")
        except requests.exceptions.RequestException as e:
            logger.error(f"Twilio request failed for intervention {intervention.id}: {e}")
            raise DispatchError(f"SMS provider error: {e}") from e
        except ValueError as e:
            raise DispatchError("SMS provider returned an invalid response") from e

        return DispatchReceipt(provider="twilio", provider_message_id=message_id)


class LoggingDispatcher:
    """Demo-mode dispatcher: logs the message instead of sending it."""

    def __init__(self):
        self.sent: list[str] = []

    def send(self, intervention: InterventionRecord, member: MemberRecord) -> DispatchReceipt:
        logger.info(
            f"[demo] {intervention.channel} to member {member.id}: "
            f"{intervention.rendered_subject or intervention.rendered_body[:60]}"
        )
        self.sent.append(intervention.id)
        return DispatchReceipt(provider="log", provider_message_id=f"log-{uuid.uuid4().hex[:12]}")


class ChannelDispatcher:
    """Routes an intervention to the provider for its channel after guardrail checks."""

    def __init__(
        self,
        email: Dispatcher,
        sms: Dispatcher,
    ):
        self.email = email
        self.sms = sms

    @classmethod
    def from_config(cls, config: EngineConfig) -> "ChannelDispatcher":
        session = requests.Session()
        return cls(
            email=EmailDispatcher(config, session),
            sms=SmsDispatcher(config, session),
        )

    @classmethod
    def for_demo(cls) -> "ChannelDispatcher":
        logging_dispatcher = LoggingDispatcher()
        return cls(email=logging_dispatcher, sms=logging_dispatcher)

    def send(self, intervention: InterventionRecord, member: MemberRecord) -> DispatchReceipt:
        check_guardrails(intervention, member)
        provider = self.sms if intervention.channel == "SMS" else self.email
        return provider.send(intervention, member)
