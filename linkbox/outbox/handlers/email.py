from typing import Optional

import requests

from linkbox.logging_config import get_logger
from linkbox.outbox.errors import HandlerPermanentError, HandlerTransientError
from linkbox.outbox.handlers.http import request_json

logger = get_logger(__name__)

JOB_TYPE = "send_transactional_email"


class EmailSender:
    """Contract for the email provider: send one message, return the provider's id.

    Providers must treat a repeated idempotency_key as the same message.
    """

    def send(self, message: dict, idempotency_key: str) -> Optional[str]:
        raise NotImplementedError


class ResendEmailSender(EmailSender):
    """Resend API client; Resend de-duplicates on the Idempotency-Key header."""

    def __init__(self, api_key, default_from, base_url="https://api.resend.com"):
        if not api_key:
            raise ValueError("Missing RESEND_API_KEY")
        self.default_from = default_from
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        })

    def send(self, message, idempotency_key):
        body = {"from": message.get("from") or self.default_from}
        body.update({k: v for k, v in message.items() if k != "from"})
        data = request_json(self.session, "POST", f"{self.base_url}/emails",
                            idempotency_key=idempotency_key, json=body)
        return (data or {}).get("id")


class UnconfiguredEmailSender(EmailSender):
    """Used when no provider key is set: jobs stay queued and retry until one is."""

    def send(self, message, idempotency_key):
        raise HandlerTransientError("Email provider is not configured (RESEND_API_KEY)")


def build_message(payload: dict) -> dict:
    to = payload.get("to")
    subject = payload.get("subject")
    if not to or not subject or not (payload.get("html") or payload.get("text")):
        raise HandlerPermanentError("Email payload requires 'to', 'subject' and 'html' or 'text'")

    message = {
        "to": to if isinstance(to, list) else [to],
        "subject": subject,
    }
    for key in ("from", "html", "text", "reply_to", "tags"):
        if payload.get(key):
            message[key] = payload[key]
    return message


class SendTransactionalEmail:
    """Handler for 'send_transactional_email' jobs."""

    def __init__(self, sender: EmailSender):
        self.sender = sender

    def __call__(self, payload, ctx):
        message = build_message(payload)
        provider_id = self.sender.send(message, ctx.idempotency_key)
        logger.info("Transactional email sent", job_id=ctx.job_id, attempt=ctx.attempt,
                    recipients=len(message["to"]), provider_id=provider_id)
        return {"provider_id": provider_id}


def email_sender_from_config(config) -> EmailSender:
    if not config.get("RESEND_API_KEY"):
        logger.warning("RESEND_API_KEY not set; email jobs will retry until it is configured")
        return UnconfiguredEmailSender()
    return ResendEmailSender(
        config.get("RESEND_API_KEY"),
        config.get("EMAIL_FROM"),
        base_url=config.get("RESEND_API_URL", "https://api.resend.com"),
    )
