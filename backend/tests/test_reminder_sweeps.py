from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from motalert_web.config import ConfigurationError, Settings
from motalert_web.notifier import StubEmailTransport, StubSmsTransport, TransportConfigurationError, UnavailableTransport
from motalert_web.runtime import ReminderRuntime, build_runtime
from motalert_web.store import (
    AccountRecord,
    PartnerGarageRecord,
    StoreUnavailableError,
    SubscriptionRecord,
    VehicleRecord,
)
from motalert_web.sweeps import ReminderSweepService, SweepInProgressError

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


def _runtime(**overrides: object) -> ReminderRuntime:
    return build_runtime(Settings(**overrides))  # type: ignore[arg-type]


def _email(runtime: ReminderRuntime) -> StubEmailTransport:
    assert isinstance(runtime.email_transport, StubEmailTransport)
    return runtime.email_transport


def _sms(runtime: ReminderRuntime) -> StubSmsTransport:
    assert isinstance(runtime.sms_transport, StubSmsTransport)
    return runtime.sms_transport


def _add_driver(
    runtime: ReminderRuntime,
    *,
    account_id: str = "driver-1",
    email: str = "driver@example.com",
    phone: str | None = None,
    plan: str | None = None,
    role: str = "DRIVER",
    usage_count: int = 0,
    usage_ceiling: int | None = None,
) -> None:
    runtime.store.save_account(
        AccountRecord(account_id=account_id, email=email, name="Dana", role=role, phone=phone)  # type: ignore[arg-type]
    )
    if plan is not None:
        runtime.store.save_subscription(
            SubscriptionRecord(
                subscription_id=f"sub-{account_id}",
                account_id=account_id,
                plan=plan,
                status="ACTIVE",
                usage_count=usage_count,
                usage_ceiling=usage_ceiling,
            )
        )


def _add_vehicle(runtime: ReminderRuntime, *, vehicle_id: str, account_id: str = "driver-1", **due: object) -> None:
    runtime.store.save_vehicle(
        VehicleRecord(
            vehicle_id=vehicle_id,
            account_id=account_id,
            registration=f"AB{len(vehicle_id):02d} {vehicle_id[-3:].upper()}",
            **due,  # type: ignore[arg-type]
        )
    )


def _messages(runtime: ReminderRuntime, account_id: str = "driver-1"):
    return [message for row in runtime.store.list_account_reminders(account_id) for message in row.messages]


def test_free_driver_two_weeks_gets_one_email_and_usage_is_unchanged() -> None:
    runtime = _runtime()
    _add_driver(runtime, phone="07700 900123")
    _add_vehicle(runtime, vehicle_id="veh-abc", mot_due_date=TODAY + timedelta(days=14))

    summary = runtime.sweeps.process(now=NOW)

    assert summary.sent_count == 1
    assert summary.reminders_sent.two_weeks == 1
    messages = _messages(runtime)
    assert [(message.channel, message.status) for message in messages] == [("EMAIL", "SENT")]
    assert "in 2 weeks" in messages[0].content
    assert len(_email(runtime).sent) == 1
    assert _sms(runtime).sent == []
    subscription = runtime.store.get_subscription_for_account("driver-1")
    assert subscription is not None
    assert subscription.plan == "DRIVER_FREE"
    assert subscription.usage_count == 0
    assert summary.notified[0].recipient_masked == "d***@example.com"


def test_premium_driver_with_phone_gets_email_and_sms_on_due_day() -> None:
    runtime = _runtime()
    _add_driver(runtime, phone="07700 900123", plan="DRIVER_PREMIUM")
    _add_vehicle(runtime, vehicle_id="veh-abc", mot_due_date=TODAY)

    summary = runtime.sweeps.process(now=NOW)

    assert summary.sent_count == 2
    assert summary.reminders_sent.day_of == 1
    assert sorted((message.channel, message.status) for message in _messages(runtime)) == [
        ("EMAIL", "SENT"),
        ("SMS", "SENT"),
    ]
    assert _sms(runtime).sent[0].to_phone == "+447700900123"


def test_garage_starter_at_ceiling_sends_nothing() -> None:
    runtime = _runtime()
    _add_driver(
        runtime,
        account_id="garage-1",
        role="GARAGE",
        plan="GARAGE_STARTER",
        usage_count=100,
        usage_ceiling=100,
    )
    _add_vehicle(runtime, vehicle_id="veh-abc", account_id="garage-1", mot_due_date=TODAY + timedelta(days=30))

    summary = runtime.sweeps.process(now=NOW)

    assert summary.sent_count == 0
    assert summary.skipped_quota_count == 1
    assert _messages(runtime, "garage-1") == []
    assert _email(runtime).sent == []


def test_second_sweep_in_window_sends_nothing_new() -> None:
    runtime = _runtime()
    _add_driver(runtime, phone="+447700900123", plan="DRIVER_PREMIUM")
    _add_vehicle(runtime, vehicle_id="veh-abc", mot_due_date=TODAY + timedelta(days=2))

    first = runtime.sweeps.process(now=NOW)
    second = runtime.sweeps.process(now=NOW + timedelta(hours=3))

    assert first.sent_count == 2
    assert second.sent_count == 0
    assert second.duplicate_count == 2
    assert len(_messages(runtime)) == 2


def test_quota_is_never_exceeded_by_concurrent_units() -> None:
    runtime = _runtime(sweep_max_workers=4)
    _add_driver(
        runtime,
        account_id="garage-1",
        role="GARAGE",
        plan="GARAGE_STARTER",
        usage_count=97,
        usage_ceiling=100,
    )
    for index in range(8):
        _add_vehicle(
            runtime,
            vehicle_id=f"veh-{index:03d}",
            account_id="garage-1",
            mot_due_date=TODAY + timedelta(days=14),
        )

    summary = runtime.sweeps.process(now=NOW)

    assert summary.sent_count == 3
    assert summary.skipped_quota_count == 5
    subscription = runtime.store.get_subscription("sub-garage-1")
    assert subscription is not None
    assert subscription.usage_count == 100


def test_sent_messages_count_against_metered_plan() -> None:
    runtime = _runtime()
    _add_driver(runtime, account_id="garage-1", role="GARAGE", plan="GARAGE_PRO", usage_ceiling=500, phone="+447700900123")
    _add_vehicle(runtime, vehicle_id="veh-abc", account_id="garage-1", tax_due_date=TODAY + timedelta(days=30))

    summary = runtime.sweeps.process(now=NOW)

    assert summary.sent_count == 2
    subscription = runtime.store.get_subscription("sub-garage-1")
    assert subscription is not None
    assert subscription.usage_count == 2


def test_plan_excluded_type_is_skipped_for_entitlement() -> None:
    runtime = _runtime()
    _add_driver(runtime)
    _add_vehicle(runtime, vehicle_id="veh-abc", tax_due_date=TODAY + timedelta(days=14))

    summary = runtime.sweeps.process(now=NOW)

    assert summary.sent_count == 0
    assert summary.skipped_entitlement_count == 1


def test_retry_converges_failed_messages() -> None:
    runtime = _runtime()
    _add_driver(runtime)
    _add_vehicle(runtime, vehicle_id="veh-abc", mot_due_date=TODAY + timedelta(days=14))
    _email(runtime).failing = True

    summary = runtime.sweeps.process(now=NOW)
    assert summary.failed_count == 1
    assert [message.status for message in _messages(runtime)] == ["FAILED"]

    _email(runtime).failing = False
    retry = runtime.sweeps.retry_failed(now=NOW + timedelta(hours=1))

    assert (retry.attempted, retry.succeeded, retry.still_failed) == (1, 1, 0)
    message = _messages(runtime)[0]
    assert message.status == "SENT"
    assert message.tries == 2
    assert _email(runtime).sent[0].subject == "MOT Alert: AB07ABC due in 2 weeks"

    again = runtime.sweeps.retry_failed(now=NOW + timedelta(hours=2))
    assert again.attempted == 0


def test_retry_ignores_messages_older_than_window() -> None:
    runtime = _runtime()
    _add_driver(runtime)
    _add_vehicle(runtime, vehicle_id="veh-abc", mot_due_date=TODAY + timedelta(days=14))
    _email(runtime).failing = True
    runtime.sweeps.process(now=NOW)
    _email(runtime).failing = False

    retry = runtime.sweeps.retry_failed(now=NOW + timedelta(hours=25))

    assert retry.attempted == 0
    assert [message.status for message in _messages(runtime)] == ["FAILED"]


def test_retry_still_failing_keeps_failed_status() -> None:
    runtime = _runtime()
    _add_driver(runtime, email="fail@example.com")
    _add_vehicle(runtime, vehicle_id="veh-abc", mot_due_date=TODAY)

    runtime.sweeps.process(now=NOW)
    retry = runtime.sweeps.retry_failed(max_age_hours=2, now=NOW + timedelta(hours=1))

    assert (retry.attempted, retry.succeeded, retry.still_failed) == (1, 0, 1)
    message = _messages(runtime)[0]
    assert message.status == "FAILED"
    assert message.tries == 2


def test_malformed_vehicle_is_reported_and_others_proceed() -> None:
    runtime = _runtime()
    _add_driver(runtime)
    _add_vehicle(runtime, vehicle_id="veh-bad", mot_due_date="not-a-date")
    _add_vehicle(runtime, vehicle_id="veh-good", mot_due_date=TODAY + timedelta(days=2))

    summary = runtime.sweeps.process(now=NOW)

    assert summary.sent_count == 1
    assert len(summary.errors) == 1
    assert "veh-bad" in summary.errors[0]


def test_deadline_defers_units_not_started() -> None:
    runtime = _runtime()
    _add_driver(runtime, plan="DRIVER_PREMIUM")
    for index in range(3):
        _add_vehicle(runtime, vehicle_id=f"veh-{index:03d}", mot_due_date=TODAY + timedelta(days=14))
    ticks = iter([0.0, 0.0])
    service = ReminderSweepService(
        store=runtime.store,
        dispatcher=runtime.dispatcher,
        usage=runtime.usage,
        dedup=runtime.dedup,
        max_workers=1,
        deadline_seconds=10,
        clock=lambda: next(ticks, 100.0),
    )

    summary = service.process(now=NOW)

    assert summary.evaluated_count == 3
    assert summary.sent_count == 1
    assert summary.deferred_count == 2


def test_configuration_error_aborts_sweep() -> None:
    runtime = build_runtime(
        Settings(),
        email_transport=UnavailableTransport(TransportConfigurationError("SENDGRID_API_KEY must not be empty")),
    )
    _add_driver(runtime)
    _add_vehicle(runtime, vehicle_id="veh-abc", mot_due_date=TODAY)

    with pytest.raises(ConfigurationError, match="SENDGRID_API_KEY"):
        runtime.sweeps.process(now=NOW)

    assert [message.status for message in _messages(runtime)] == ["PENDING"]


def test_store_failure_after_send_does_not_hold_quota_for_later_sweeps() -> None:
    runtime = _runtime()
    _add_driver(
        runtime,
        account_id="garage-1",
        role="GARAGE",
        plan="GARAGE_STARTER",
        usage_count=99,
        usage_ceiling=100,
    )
    _add_vehicle(runtime, vehicle_id="veh-abc", account_id="garage-1", mot_due_date=TODAY)

    with patch.object(
        runtime.store,
        "mark_message_sent",
        side_effect=StoreUnavailableError("database unavailable"),
    ):
        with pytest.raises(StoreUnavailableError):
            runtime.sweeps.process(now=NOW)

    assert runtime.usage.reserved("sub-garage-1") == 0

    _add_vehicle(runtime, vehicle_id="veh-xyz", account_id="garage-1", mot_due_date=TODAY)
    summary = runtime.sweeps.process(now=NOW + timedelta(hours=1))

    assert summary.sent_count == 1
    assert summary.skipped_quota_count == 0
    subscription = runtime.store.get_subscription("sub-garage-1")
    assert subscription is not None
    assert subscription.usage_count == 100


def test_overlapping_sweep_is_rejected() -> None:
    runtime = _runtime()
    lock = runtime.sweeps._sweep_lock
    lock.acquire()
    try:
        with pytest.raises(SweepInProgressError):
            runtime.sweeps.process(now=NOW)
    finally:
        lock.release()


def test_ops_summary_email_is_sent_after_process() -> None:
    runtime = _runtime(ops_summary_email="ops@mot-alert.com")
    _add_driver(runtime)
    _add_vehicle(runtime, vehicle_id="veh-abc", mot_due_date=TODAY + timedelta(days=30))

    runtime.sweeps.process(now=NOW)

    recipients = [item.to_address for item in _email(runtime).sent]
    assert recipients == ["driver@example.com", "ops@mot-alert.com"]
    assert _email(runtime).sent[-1].subject == "MOT Alert sweep 2026-03-02: 1 sent, 0 failed"


def test_free_driver_email_carries_partner_ad_and_garage_customers_get_branding() -> None:
    runtime = _runtime()
    runtime.store.save_partner_garage(PartnerGarageRecord(garage_id="g-1", name="Acme Motors", phone="0161 000 0001"))
    runtime.store.save_partner_garage(
        PartnerGarageRecord(garage_id="g-2", account_id="garage-1", name="Best Garage", phone="0161 000 0002")
    )
    _add_driver(runtime)
    _add_driver(runtime, account_id="garage-1", role="GARAGE", plan="GARAGE_PRO", usage_ceiling=500)
    _add_vehicle(runtime, vehicle_id="veh-abc", mot_due_date=TODAY + timedelta(days=14))
    _add_vehicle(runtime, vehicle_id="veh-xyz", account_id="garage-1", mot_due_date=TODAY + timedelta(days=14))

    runtime.sweeps.process(now=NOW)

    driver_message = _messages(runtime, "driver-1")[0]
    garage_message = _messages(runtime, "garage-1")[0]
    assert "Partner Garage Recommendation" in driver_message.content
    assert "Book with Best Garage" in garage_message.content
    assert "Partner Garage Recommendation" not in garage_message.content
