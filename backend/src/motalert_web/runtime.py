from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import ConfigurationError, Settings
from .content import default_composer
from .dedup import DedupGuard
from .dispatcher import ChannelDispatcher
from .notifier import (
    EmailTransport,
    SendGridEmailTransport,
    SmsTransport,
    StubEmailTransport,
    StubSmsTransport,
    TransportConfigurationError,
    TwilioSmsTransport,
    UnavailableTransport,
)
from .store import ReminderStore, create_reminder_store
from .sweeps import ReminderSweepService
from .usage import UsageAccountant

logger = logging.getLogger(__name__)


@dataclass
class ReminderRuntime:
    settings: Settings
    store: ReminderStore
    email_transport: EmailTransport
    sms_transport: SmsTransport
    usage: UsageAccountant
    dedup: DedupGuard
    dispatcher: ChannelDispatcher
    sweeps: ReminderSweepService


def _create_email_transport(settings: Settings) -> EmailTransport:
    sender_type = settings.email_sender_type.strip().lower()
    if sender_type == "sendgrid":
        try:
            return SendGridEmailTransport(
                api_key=settings.sendgrid_api_key,
                from_address=settings.email_from_address,
                timeout_seconds=settings.transport_timeout_seconds,
            )
        except TransportConfigurationError as exc:
            logger.warning("email transport unavailable: %s", exc)
            return UnavailableTransport(exc)
    if sender_type == "stub":
        return StubEmailTransport()
    raise ConfigurationError(f"unsupported EMAIL_SENDER_TYPE: {settings.email_sender_type}")


def _create_sms_transport(settings: Settings) -> SmsTransport:
    sender_type = settings.sms_sender_type.strip().lower()
    if sender_type == "twilio":
        try:
            return TwilioSmsTransport(
                account_sid=settings.twilio_account_sid,
                auth_token=settings.twilio_auth_token,
                from_number=settings.twilio_from_number,
                timeout_seconds=settings.transport_timeout_seconds,
            )
        except TransportConfigurationError as exc:
            logger.warning("sms transport unavailable: %s", exc)
            return UnavailableTransport(exc)
    if sender_type == "stub":
        return StubSmsTransport()
    raise ConfigurationError(f"unsupported SMS_SENDER_TYPE: {settings.sms_sender_type}")


def build_runtime(
    settings: Settings,
    *,
    store: ReminderStore | None = None,
    email_transport: EmailTransport | None = None,
    sms_transport: SmsTransport | None = None,
) -> ReminderRuntime:
    store = store or create_reminder_store(
        backend=settings.reminder_store_backend,
        database_url=settings.database_url,
    )
    email_transport = email_transport or _create_email_transport(settings)
    sms_transport = sms_transport or _create_sms_transport(settings)
    usage = UsageAccountant(store)
    dedup = DedupGuard(store, window_hours=settings.dedup_window_hours)
    dispatcher = ChannelDispatcher(
        store,
        email_transport=email_transport,
        sms_transport=sms_transport,
        usage=usage,
        composer=default_composer(store),
    )
    sweeps = ReminderSweepService(
        store=store,
        dispatcher=dispatcher,
        usage=usage,
        dedup=dedup,
        max_workers=settings.sweep_max_workers,
        deadline_seconds=settings.sweep_deadline_seconds,
        retry_max_age_hours=settings.retry_max_age_hours,
        pending_stale_minutes=settings.pending_stale_minutes,
        ops_summary_email=settings.ops_summary_email,
    )
    return ReminderRuntime(
        settings=settings,
        store=store,
        email_transport=email_transport,
        sms_transport=sms_transport,
        usage=usage,
        dedup=dedup,
        dispatcher=dispatcher,
        sweeps=sweeps,
    )
