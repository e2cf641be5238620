from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Literal, Protocol

from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from .config import ConfigurationError
from .content import wrap_email_layout
from .formatting import mask_contact_target

TransportResultStatus = Literal["sent", "failed"]

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass(frozen=True)
class TransportResult:
    status: TransportResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class TransportConfigurationError(ConfigurationError):
    """Raised when a live transport is selected but cannot authenticate."""


class EmailTransport(Protocol):
    def send_email(self, *, to_address: str, subject: str, html_body: str) -> TransportResult: ...


class SmsTransport(Protocol):
    def send_sms(self, *, to_phone: str, text: str) -> TransportResult: ...


@dataclass(frozen=True)
class OutboundEmail:
    to_address: str
    subject: str
    html_body: str


@dataclass(frozen=True)
class OutboundSms:
    to_phone: str
    text: str


class StubEmailTransport:
    """Records outbound email in memory. Addresses containing ``fail`` are rejected."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.sent: list[OutboundEmail] = []
        self.failing = False

    def send_email(self, *, to_address: str, subject: str, html_body: str) -> TransportResult:
        attempted_at = datetime.now(timezone.utc)
        if self.failing or "fail" in to_address.lower():
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub email transport forced failure for recipient",
            )
        with self._lock:
            self.sent.append(OutboundEmail(to_address=to_address, subject=subject, html_body=html_body))
            sequence = len(self.sent)
        return TransportResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-email-{sequence}",
        )


class StubSmsTransport:
    """Records outbound SMS in memory. Numbers containing ``fail`` are rejected."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.sent: list[OutboundSms] = []
        self.failing = False

    def send_sms(self, *, to_phone: str, text: str) -> TransportResult:
        attempted_at = datetime.now(timezone.utc)
        if self.failing or "fail" in to_phone.lower():
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub SMS transport forced failure for recipient",
            )
        with self._lock:
            self.sent.append(OutboundSms(to_phone=to_phone, text=text))
            sequence = len(self.sent)
        return TransportResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-sms-{sequence}",
        )


class _TransportSendError(Exception):
    """Internal error raised when a provider HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


def _open(request: urllib.request.Request, timeout_seconds: int):
    try:
        return urllib.request.urlopen(request, timeout=timeout_seconds)
    except urllib.error.HTTPError as exc:
        raise _TransportSendError(
            error_code=f"http_{exc.code}",
            message=f"HTTP {exc.code}: {exc.reason}",
        ) from exc
    except urllib.error.URLError as exc:
        raise _TransportSendError(
            error_code="connection_error",
            message=f"Connection error: {exc.reason}",
        ) from exc
    except (socket.timeout, TimeoutError) as exc:
        raise _TransportSendError(
            error_code="timeout",
            message=f"Request timed out: {exc}",
        ) from exc


class SendGridEmailTransport:
    """Delivers email through the SendGrid v3 mail send API."""

    def __init__(self, *, api_key: str, from_address: str, timeout_seconds: int = 30) -> None:
        stripped_key = api_key.strip()
        if not stripped_key:
            raise TransportConfigurationError("SENDGRID_API_KEY must not be empty")
        if not from_address.strip():
            raise TransportConfigurationError("EMAIL_FROM_ADDRESS must not be empty")
        self._api_key = stripped_key
        self._from_address = from_address.strip()
        self._timeout_seconds = timeout_seconds

    def send_email(self, *, to_address: str, subject: str, html_body: str) -> TransportResult:
        attempted_at = datetime.now(timezone.utc)
        body = {
            "personalizations": [{"to": [{"email": to_address}]}],
            "from": _parse_from_address(self._from_address),
            "subject": subject,
            "content": [{"type": "text/html", "value": wrap_email_layout(html_body)}],
        }
        request = urllib.request.Request(
            SENDGRID_SEND_URL,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with _open(request, self._timeout_seconds) as response:
                message_id = response.headers.get("X-Message-Id") if response.headers is not None else None
        except _TransportSendError as exc:
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_contact_target(to_address, 'EMAIL')})",
            )
        return TransportResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


def _parse_from_address(value: str) -> dict[str, str]:
    """Split ``Name <addr@host>`` into SendGrid's from object."""
    if "<" in value and value.endswith(">"):
        name, _, address = value[:-1].partition("<")
        parsed = {"email": address.strip()}
        if name.strip():
            parsed["name"] = name.strip()
        return parsed
    return {"email": value}


class TwilioSmsTransport:
    """Delivers SMS through the Twilio Messages API client."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout_seconds: int = 30,
        client: Client | None = None,
    ) -> None:
        if not account_sid.strip() or not auth_token.strip() or not from_number.strip():
            raise TransportConfigurationError("TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER must be set")
        self._from_number = from_number.strip()
        self._client = client or Client(
            account_sid.strip(),
            auth_token.strip(),
            http_client=TwilioHttpClient(timeout=timeout_seconds),
        )

    def send_sms(self, *, to_phone: str, text: str) -> TransportResult:
        attempted_at = datetime.now(timezone.utc)
        masked = mask_contact_target(to_phone, "SMS")
        if not to_phone.startswith("+"):
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="invalid_recipient",
                error_message=f"SMS recipient must be in E.164 form (recipient: {masked})",
            )

        try:
            message = self._client.messages.create(body=text, from_=self._from_number, to=to_phone)
        except TwilioRestException as exc:
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=f"http_{exc.status}",
                error_message=f"HTTP {exc.status}: {exc.msg} (recipient: {masked})",
            )
        except OSError as exc:
            # requests connection and timeout errors are OSError subclasses
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="connection_error",
                error_message=f"Connection error: {exc} (recipient: {masked})",
            )
        return TransportResult(status="sent", attempted_at=attempted_at, provider_message_id=message.sid)


class UnavailableTransport:
    """Stands in for a live transport whose credentials are missing.

    Construction errors are deferred to the first send so the app can start in
    ``warn`` guard mode and report the problem per sweep instead.
    """

    def __init__(self, error: TransportConfigurationError) -> None:
        self._error = error

    def send_email(self, *, to_address: str, subject: str, html_body: str) -> TransportResult:
        raise self._error

    def send_sms(self, *, to_phone: str, text: str) -> TransportResult:
        raise self._error
