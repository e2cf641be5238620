from __future__ import annotations

import logging
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable

from .config import ConfigurationError
from .content import render_ops_summary
from .dedup import DedupGuard
from .dispatcher import ChannelDispatcher
from .due_set import DueSetSelector, DueTuple
from .entitlements import evaluate
from .formatting import mask_contact_target
from .models import NotifiedRecipient, ReminderBucketCounts, RetrySummary, SweepSummary
from .plans import PlanId
from .store import AccountRecord, ReminderStore, SubscriptionRecord, default_subscription
from .usage import UsageAccountant

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class SweepInProgressError(RuntimeError):
    """Raised when a sweep is requested while another one is still running."""


@dataclass
class _UnitResult:
    notified: list[NotifiedRecipient] = field(default_factory=list)
    failed: int = 0
    duplicate: int = 0
    skipped_quota: int = 0
    skipped_entitlement: int = 0


class ReminderSweepService:
    def __init__(
        self,
        *,
        store: ReminderStore,
        dispatcher: ChannelDispatcher,
        usage: UsageAccountant,
        dedup: DedupGuard,
        max_workers: int = 4,
        deadline_seconds: int = 300,
        retry_max_age_hours: int = 24,
        pending_stale_minutes: int = 15,
        ops_summary_email: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._usage = usage
        self._dedup = dedup
        self._selector = DueSetSelector(store)
        self._max_workers = max(1, max_workers)
        self._deadline_seconds = deadline_seconds
        self._retry_max_age_hours = retry_max_age_hours
        self._pending_stale_minutes = pending_stale_minutes
        self._ops_summary_email = ops_summary_email
        self._clock = clock
        self._sweep_lock = Lock()
        self._subscription_lock = Lock()

    def process(self, now: datetime | None = None, window_end: datetime | None = None) -> SweepSummary:
        if not self._sweep_lock.acquire(blocking=False):
            raise SweepInProgressError("a reminder sweep is already running")
        try:
            summary = self._process(now or _now_utc(), window_end)
        finally:
            self._sweep_lock.release()
        self._send_ops_summary(summary)
        return summary

    def retry_failed(self, max_age_hours: int | None = None, now: datetime | None = None) -> RetrySummary:
        if not self._sweep_lock.acquire(blocking=False):
            raise SweepInProgressError("a reminder sweep is already running")
        try:
            return self._retry_failed(max_age_hours or self._retry_max_age_hours, now or _now_utc())
        finally:
            self._sweep_lock.release()

    def _process(self, now: datetime, window_end: datetime | None) -> SweepSummary:
        errors: list[str] = []
        due = self._selector.select_due(now, window_end, errors=errors)
        logger.info("reminder sweep at %s selected %s due reminder(s)", now.isoformat(), len(due))

        deadline = self._clock() + self._deadline_seconds if self._deadline_seconds > 0 else None
        pending: deque[DueTuple] = deque(due)
        in_flight: dict[Future[_UnitResult], DueTuple] = {}
        results: list[tuple[DueTuple, _UnitResult]] = []
        config_error: ConfigurationError | None = None

        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="reminder-sweep") as executor:
            while pending or in_flight:
                while (
                    pending
                    and len(in_flight) < self._max_workers
                    and config_error is None
                    and (deadline is None or self._clock() < deadline)
                ):
                    unit = pending.popleft()
                    in_flight[executor.submit(self._run_unit, unit, now)] = unit
                if not in_flight:
                    break
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    unit = in_flight.pop(future)
                    try:
                        results.append((unit, future.result()))
                    except ConfigurationError as exc:
                        logger.error("aborting reminder sweep: %s", exc)
                        config_error = config_error or exc
                    except Exception as exc:
                        logger.exception(
                            "reminder unit failed for vehicle %s (%s)",
                            unit.vehicle.vehicle_id,
                            unit.reminder_type,
                        )
                        errors.append(f"vehicle {unit.vehicle.vehicle_id} {unit.reminder_type}: {exc}")

        if config_error is not None:
            raise config_error

        if pending:
            logger.warning("reminder sweep deadline reached; deferring %s unit(s)", len(pending))

        summary = self._build_summary(now, len(due), results, deferred=len(pending), errors=errors)
        logger.info(
            "reminder sweep finished: sent=%s failed=%s duplicate=%s skipped_quota=%s skipped_entitlement=%s deferred=%s",
            summary.sent_count,
            summary.failed_count,
            summary.duplicate_count,
            summary.skipped_quota_count,
            summary.skipped_entitlement_count,
            summary.deferred_count,
        )
        return summary

    def _resolve_subscription(self, account: AccountRecord) -> SubscriptionRecord:
        with self._subscription_lock:
            subscription = self._store.get_subscription_for_account(account.account_id)
            if subscription is not None:
                return subscription
            if account.role == "DRIVER":
                logger.info("creating free subscription for driver %s", account.account_id)
                return self._store.create_subscription(account.account_id, PlanId.DRIVER_FREE)
            return default_subscription(account.account_id)

    def _run_unit(self, unit: DueTuple, now: datetime) -> _UnitResult:
        result = _UnitResult()
        subscription = self._resolve_subscription(unit.account)
        decision = evaluate(subscription, unit.account, unit.reminder_type)
        if not decision.eligible:
            logger.info(
                "skipping %s reminder for vehicle %s: %s",
                unit.reminder_type,
                unit.vehicle.vehicle_id,
                decision.reason,
            )
            if decision.reason == "quota_exhausted":
                result.skipped_quota += 1
            else:
                result.skipped_entitlement += 1
            return result

        for channel in decision.channels:
            if self._dedup.has_recent_attempt(unit.reminder.reminder_id, channel, now=now):
                logger.info(
                    "duplicate %s reminder %s on %s suppressed",
                    unit.reminder_type,
                    unit.reminder.reminder_id,
                    channel,
                )
                result.duplicate += 1
                continue

            outcome = self._dispatcher.dispatch(
                account=unit.account,
                vehicle=unit.vehicle,
                reminder=unit.reminder,
                channel=channel,
                subscription=subscription,
                bucket=unit.bucket,
                now=now,
            )
            if outcome.status == "sent":
                result.notified.append(
                    NotifiedRecipient(
                        account_id=unit.account.account_id,
                        recipient_masked=mask_contact_target(outcome.recipient, channel),
                        channel=channel,
                        registration=unit.vehicle.registration,
                        reminder_type=unit.reminder_type,
                        bucket=unit.bucket,
                        days_until_due=unit.days_until_due,
                    )
                )
            elif outcome.status == "failed":
                result.failed += 1
            else:
                result.skipped_quota += 1
        return result

    def _build_summary(
        self,
        now: datetime,
        evaluated: int,
        results: list[tuple[DueTuple, _UnitResult]],
        *,
        deferred: int,
        errors: list[str],
    ) -> SweepSummary:
        buckets = ReminderBucketCounts()
        notified: list[NotifiedRecipient] = []
        failed = duplicate = skipped_quota = skipped_entitlement = 0
        for unit, result in results:
            if result.notified:
                setattr(buckets, unit.bucket, getattr(buckets, unit.bucket) + 1)
            notified.extend(result.notified)
            failed += result.failed
            duplicate += result.duplicate
            skipped_quota += result.skipped_quota
            skipped_entitlement += result.skipped_entitlement
        return SweepSummary(
            run_at=now,
            evaluated_count=evaluated,
            sent_count=len(notified),
            failed_count=failed,
            duplicate_count=duplicate,
            skipped_quota_count=skipped_quota,
            skipped_entitlement_count=skipped_entitlement,
            deferred_count=deferred,
            reminders_sent=buckets,
            errors=errors,
            notified=notified,
        )

    def _send_ops_summary(self, summary: SweepSummary) -> None:
        if not self._ops_summary_email:
            return
        digest = render_ops_summary(summary)
        try:
            result = self._dispatcher.deliver("EMAIL", self._ops_summary_email, digest.subject, digest.body)
        except Exception:
            logger.exception("failed to send reminder sweep summary email")
            return
        if result.status != "sent":
            logger.warning("reminder sweep summary email failed: %s", result.error_message or result.error_code)

    def _retry_failed(self, max_age_hours: int, now: datetime) -> RetrySummary:
        messages = self._store.list_retryable_messages(
            created_since=now - timedelta(hours=max_age_hours),
            pending_before=now - timedelta(minutes=self._pending_stale_minutes),
        )
        succeeded = 0
        still_failed = 0
        for message in messages:
            result = self._dispatcher.deliver(message.channel, message.recipient, message.subject, message.content)
            masked = mask_contact_target(message.recipient, message.channel)
            if result.status == "sent":
                self._store.mark_message_sent(
                    message.message_id,
                    provider_ref=result.provider_message_id,
                    sent_at=result.attempted_at,
                )
                subscription = self._store.get_subscription_for_account(message.account_id)
                if subscription is not None and subscription.subscription_id and subscription.usage_ceiling is not None:
                    self._usage.record_success(subscription.subscription_id, reserved=False)
                succeeded += 1
                logger.info("retried message %s to %s: sent", message.message_id, masked)
                continue

            error = result.error_message or result.error_code or "unknown transport error"
            self._store.mark_message_failed(message.message_id, error=error)
            still_failed += 1
            logger.warning("retried message %s to %s: still failing (%s)", message.message_id, masked, error)

        return RetrySummary(
            run_at=now,
            attempted=len(messages),
            succeeded=succeeded,
            still_failed=still_failed,
        )
