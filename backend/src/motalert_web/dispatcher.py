from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from .config import ConfigurationError
from .content import FALLBACK_EMAIL_SUBJECT, ContentComposer, render_message
from .formatting import mask_contact_target
from .models import Channel, ReminderBucket
from .notifier import EmailTransport, SmsTransport, TransportResult
from .store import AccountRecord, ReminderRecord, ReminderStore, SubscriptionRecord, VehicleRecord
from .usage import UsageAccountant

logger = logging.getLogger(__name__)

DispatchStatus = Literal["sent", "failed", "skipped_quota"]


@dataclass(frozen=True)
class DispatchOutcome:
    status: DispatchStatus
    channel: Channel
    message_id: int | None = None
    recipient: str | None = None
    provider_ref: str | None = None
    error: str | None = None


def _error_text(result: TransportResult) -> str:
    if result.error_code and result.error_message:
        return f"{result.error_code}: {result.error_message}"
    return result.error_message or result.error_code or "unknown transport error"


class ChannelDispatcher:
    def __init__(
        self,
        store: ReminderStore,
        *,
        email_transport: EmailTransport,
        sms_transport: SmsTransport,
        usage: UsageAccountant,
        composer: ContentComposer,
    ) -> None:
        self._store = store
        self._email_transport = email_transport
        self._sms_transport = sms_transport
        self._usage = usage
        self._composer = composer

    def deliver(self, channel: Channel, recipient: str, subject: str | None, body: str) -> TransportResult:
        """Hand already-rendered content to the channel transport.

        Provider failures come back as ``failed`` results. Configuration errors
        propagate so the caller can abort the sweep.
        """
        try:
            if channel == "EMAIL":
                return self._email_transport.send_email(
                    to_address=recipient,
                    subject=subject or FALLBACK_EMAIL_SUBJECT,
                    html_body=body,
                )
            return self._sms_transport.send_sms(to_phone=recipient, text=body)
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.exception("%s transport raised for %s", channel, mask_contact_target(recipient, channel))
            return TransportResult(
                status="failed",
                attempted_at=datetime.now(timezone.utc),
                error_code="transport_exception",
                error_message=str(exc) or exc.__class__.__name__,
            )

    def dispatch(
        self,
        *,
        account: AccountRecord,
        vehicle: VehicleRecord,
        reminder: ReminderRecord,
        channel: Channel,
        subscription: SubscriptionRecord,
        bucket: ReminderBucket,
        now: datetime,
    ) -> DispatchOutcome:
        metered = subscription.subscription_id is not None and subscription.usage_ceiling is not None
        if metered and not self._usage.try_reserve(subscription.subscription_id):
            return DispatchOutcome(status="skipped_quota", channel=channel)

        # the reservation is settled exactly once, by record_success or release
        settled = not metered
        recipient = account.email if channel == "EMAIL" else (account.phone or "")
        try:
            rendered = render_message(
                channel,
                reminder.reminder_type,
                bucket,
                name=account.name,
                registration=vehicle.registration,
                due_date=reminder.due_date,
            )
            composed = self._composer.compose(
                rendered,
                channel=channel,
                account=account,
                subscription=subscription,
            )
            message = self._store.create_message(
                reminder_id=reminder.reminder_id,
                account_id=account.account_id,
                channel=channel,
                recipient=recipient,
                subject=composed.subject,
                content=composed.body,
                created_at=now,
            )
            result = self.deliver(channel, recipient, composed.subject, composed.body)

            masked = mask_contact_target(recipient, channel)
            if result.status == "sent":
                self._store.mark_message_sent(
                    message.message_id,
                    provider_ref=result.provider_message_id,
                    sent_at=result.attempted_at,
                )
                if metered:
                    settled = True
                    self._usage.record_success(subscription.subscription_id)
                logger.info(
                    "sent %s %s reminder for %s to %s (message %s)",
                    channel,
                    reminder.reminder_type,
                    vehicle.registration,
                    masked,
                    message.message_id,
                )
                return DispatchOutcome(
                    status="sent",
                    channel=channel,
                    message_id=message.message_id,
                    recipient=recipient,
                    provider_ref=result.provider_message_id,
                )

            error = _error_text(result)
            self._store.mark_message_failed(message.message_id, error=error)
            logger.warning(
                "%s %s reminder for %s to %s failed: %s",
                channel,
                reminder.reminder_type,
                vehicle.registration,
                masked,
                error,
            )
            return DispatchOutcome(
                status="failed",
                channel=channel,
                message_id=message.message_id,
                recipient=recipient,
                error=error,
            )
        finally:
            if not settled:
                self._usage.release(subscription.subscription_id)
