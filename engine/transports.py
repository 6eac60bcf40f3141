"""Outbound delivery: email webhook, Twilio SMS, and the event notifier.

Each transport takes an optional ``httpx.AsyncClient`` so tests (and the
API app, which shares one client) can inject their own; otherwise a
short-lived client is created per request.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from engine.errors import TransportError

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


@dataclass
class EmailMessage:
    to: str
    subject: str
    body: str
    from_email: str = "system"
    from_name: str | None = None
    reply_to: str | None = None
    cc: str | None = None
    bcc: str | None = None
    is_html: bool = True
    card_id: str | None = None
    email_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class SmsMessage:
    to: str
    body: str
    from_number: str | None = None
    card_id: str | None = None


class EmailTransport(Protocol):
    async def send_email(self, message: EmailMessage) -> dict[str, Any]: ...


class SmsTransport(Protocol):
    async def send_sms(self, message: SmsMessage) -> dict[str, Any]: ...


async def _post(
    client: httpx.AsyncClient | None,
    url: str,
    timeout: float,
    **kwargs: Any,
) -> httpx.Response:
    """POST through the shared client if there is one, else a one-off client."""
    try:
        if client is not None:
            return await client.post(url, timeout=timeout, **kwargs)
        async with httpx.AsyncClient(timeout=timeout) as one_off:
            return await one_off.post(url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransportError(f"Request to {url} timed out") from e
    except httpx.HTTPError as e:
        raise TransportError(f"Request to {url} failed: {e}") from e


class WebhookEmailTransport:
    """Delivers email by POSTing JSON to a mail workflow webhook."""

    def __init__(
        self,
        webhook_url: str | None,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._client = client

    def build_payload(self, message: EmailMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "to": message.to,
            "from_email": message.from_email,
            "from_name": message.from_name,
            "reply_to": message.reply_to or message.from_email,
            "cc": message.cc,
            "bcc": message.bcc,
            "subject": message.subject,
            "body": message.body,
            "html": message.body if message.is_html else None,
            "text": None if message.is_html else message.body,
            "is_html": message.is_html,
            "card_id": message.card_id,
            "email_id": message.email_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        payload.update(message.extra)
        return payload

    async def send_email(self, message: EmailMessage) -> dict[str, Any]:
        """Send one email.

        Raises:
            TransportError: If no webhook is configured, or the request
                times out, fails, or returns a non-2xx status.
        """
        if not self.webhook_url:
            raise TransportError("Email webhook URL is not configured")

        response = await _post(
            self._client, self.webhook_url, self.timeout, json=self.build_payload(message)
        )
        if not response.is_success:
            raise TransportError(
                f"Email webhook returned {response.status_code}: {response.text[:200]}"
            )

        logger.info("Email sent to %s for card %s", message.to, message.card_id)
        try:
            body = response.json()
        except ValueError:
            body = None
        return {"status_code": response.status_code, "response": body}


class TwilioSmsTransport:
    """Sends SMS through the Twilio Messages REST API."""

    def __init__(
        self,
        account_sid: str | None,
        auth_token: str | None,
        phone_number: str | None,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.phone_number = phone_number
        self.timeout = timeout
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.phone_number)

    async def send_sms(self, message: SmsMessage) -> dict[str, Any]:
        """Send one SMS and return ``{sid, status}``.

        Raises:
            TransportError: If Twilio is not configured or rejects the message.
        """
        if not self.configured:
            raise TransportError(
                "Twilio is not configured (account SID, auth token and phone number required)"
            )

        url = f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"
        response = await _post(
            self._client,
            url,
            self.timeout,
            data={
                "To": message.to,
                "From": message.from_number or self.phone_number,
                "Body": message.body,
            },
            auth=(self.account_sid, self.auth_token),
        )
        if not response.is_success:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            raise TransportError(f"Twilio returned {response.status_code}: {detail}")

        data = response.json()
        logger.info("SMS %s sent to %s (%s)", data.get("sid"), message.to, data.get("status"))
        return {"sid": data.get("sid"), "status": data.get("status")}


class EventNotifier:
    """Fire-and-forget POST of automation events to an external webhook."""

    def __init__(
        self,
        webhook_url: str | None,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._client = client

    async def notify(self, event_type: str, payload: dict[str, Any]) -> bool:
        """Send an event. Returns False on any failure, never raises."""
        if not self.webhook_url:
            return False

        body = {
            "event_type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        try:
            response = await _post(self._client, self.webhook_url, self.timeout, json=body)
        except TransportError as e:
            logger.warning("Event webhook delivery failed for %s: %s", event_type, e)
            return False

        if not response.is_success:
            logger.warning(
                "Event webhook returned %d for %s", response.status_code, event_type
            )
            return False
        return True
