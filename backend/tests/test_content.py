from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from motalert_web.content import (
    SMS_OPT_OUT,
    GarageBrandingPolicy,
    PartnerAdPolicy,
    default_composer,
    render_email,
    render_ops_summary,
    render_sms,
)
from motalert_web.models import NotifiedRecipient, SweepSummary
from motalert_web.store import (
    AccountRecord,
    InMemoryReminderStore,
    PartnerGarageRecord,
    SubscriptionRecord,
)

DUE = date(2026, 3, 16)


def _subscription(plan: str) -> SubscriptionRecord:
    return SubscriptionRecord(
        subscription_id="sub-1",
        account_id="acct-1",
        plan=plan,
        status="ACTIVE",
        usage_count=0,
        usage_ceiling=None,
    )


@pytest.mark.parametrize(
    ("bucket", "subject"),
    [
        ("one_month", "MOT Alert: AB12CDE due in 1 month"),
        ("two_weeks", "MOT Alert: AB12CDE due in 2 weeks"),
        ("two_days", "URGENT: AB12CDE MOT due in 2 days"),
        ("day_of", "TODAY: AB12CDE MOT is due"),
    ],
)
def test_mot_email_subject_per_bucket(bucket: str, subject: str) -> None:
    rendered = render_email("MOT", bucket, name="Dana", registration="AB12CDE", due_date=DUE)  # type: ignore[arg-type]

    assert rendered.subject == subject
    assert "Hi Dana," in rendered.body
    assert "16 Mar 2026" in rendered.body


def test_urgency_escalates_to_legal_risk_warning() -> None:
    informational = render_email("MOT", "one_month", name="Dana", registration="AB12CDE", due_date=DUE)
    urgent = render_email("MOT", "two_days", name="Dana", registration="AB12CDE", due_date=DUE)
    today = render_email("MOT", "day_of", name="Dana", registration="AB12CDE", due_date=DUE)

    assert "1,000 fine" not in informational.body
    assert "1,000 fine" in urgent.body
    assert "1,000 fine" in today.body


def test_two_week_email_mentions_two_weeks() -> None:
    rendered = render_email("MOT", "two_weeks", name="Dana", registration="AB12CDE", due_date=DUE)

    assert "in 2 weeks" in rendered.body


def test_other_reminder_types_have_their_own_copy() -> None:
    tax = render_email("TAX", "one_month", name="Dana", registration="AB12CDE", due_date=DUE)
    insurance = render_email("INSURANCE", "day_of", name="Dana", registration="AB12CDE", due_date=DUE)

    assert tax.subject == "Road Tax Reminder: AB12CDE due in 1 month"
    assert "gov.uk/vehicle-tax" in tax.body
    assert insurance.subject == "URGENT: Insurance Reminder: AB12CDE expires today"


def test_email_escapes_account_name() -> None:
    rendered = render_email("MOT", "one_month", name="<b>Dana</b>", registration="AB12CDE", due_date=DUE)

    assert "<b>Dana</b>" not in rendered.body
    assert "&lt;b&gt;Dana&lt;/b&gt;" in rendered.body


def test_sms_copy_ends_with_opt_out() -> None:
    rendered = render_sms("MOT", "day_of", name="Dana", registration="AB12CDE", due_date=DUE)

    assert rendered.subject is None
    assert rendered.body.startswith("Hi Dana, TODAY:")
    assert "£1,000 fine" in rendered.body
    assert rendered.body.endswith(SMS_OPT_OUT)


def test_partner_ads_rotate_on_free_plan_email_only() -> None:
    store = InMemoryReminderStore()
    store.save_partner_garage(PartnerGarageRecord(garage_id="g-1", name="Acme Motors", phone="0161 000 0001"))
    store.save_partner_garage(
        PartnerGarageRecord(garage_id="g-2", name="Best Garage", phone="0161 000 0002", website="best.example")
    )
    policy = PartnerAdPolicy(store)
    account = AccountRecord(account_id="acct-1", email="driver@example.com", name="Dana")
    email = render_email("MOT", "two_weeks", name="Dana", registration="AB12CDE", due_date=DUE)
    sms = render_sms("MOT", "two_weeks", name="Dana", registration="AB12CDE", due_date=DUE)

    first = policy.apply(email, channel="EMAIL", account=account, subscription=_subscription("DRIVER_FREE"))
    second = policy.apply(email, channel="EMAIL", account=account, subscription=_subscription("DRIVER_FREE"))
    premium = policy.apply(email, channel="EMAIL", account=account, subscription=_subscription("DRIVER_PREMIUM"))
    free_sms = policy.apply(sms, channel="SMS", account=account, subscription=_subscription("DRIVER_FREE"))

    assert "Partner Garage Recommendation" in first.body
    assert "Acme Motors" in first.body
    assert "Best Garage" in second.body
    assert premium == email
    assert free_sms == sms


def test_garage_branding_applies_to_both_channels() -> None:
    store = InMemoryReminderStore()
    store.save_partner_garage(
        PartnerGarageRecord(
            garage_id="g-1",
            account_id="garage-1",
            name="Acme Motors",
            phone="0161 000 0001",
            website="acme.example",
        )
    )
    account = AccountRecord(account_id="garage-1", email="desk@acme.example", name="Acme", role="GARAGE")
    policy = GarageBrandingPolicy(store)
    email = render_email("MOT", "two_days", name="Acme", registration="AB12CDE", due_date=DUE)
    sms = render_sms("MOT", "two_days", name="Acme", registration="AB12CDE", due_date=DUE)

    branded_email = policy.apply(email, channel="EMAIL", account=account, subscription=_subscription("GARAGE_PRO"))
    branded_sms = policy.apply(sms, channel="SMS", account=account, subscription=_subscription("GARAGE_PRO"))

    assert "Book with Acme Motors" in branded_email.body
    assert "Book now with Acme Motors. Call 0161 000 0001 or visit acme.example." in branded_sms.body
    assert branded_sms.body.endswith(SMS_OPT_OUT)


def test_default_composer_skips_ads_for_garage_accounts() -> None:
    store = InMemoryReminderStore()
    store.save_partner_garage(PartnerGarageRecord(garage_id="g-9", name="Partner", phone="0161 000 0009"))
    account = AccountRecord(account_id="garage-1", email="desk@acme.example", name="Acme", role="GARAGE")
    email = render_email("MOT", "two_days", name="Acme", registration="AB12CDE", due_date=DUE)

    composed = default_composer(store).compose(
        email,
        channel="EMAIL",
        account=account,
        subscription=_subscription("GARAGE_STARTER"),
    )

    assert composed == email


def test_partner_ads_are_for_drivers_only_even_on_free_tier() -> None:
    store = InMemoryReminderStore()
    store.save_partner_garage(PartnerGarageRecord(garage_id="g-9", name="Partner", phone="0161 000 0009"))
    garage = AccountRecord(account_id="garage-2", email="desk@other.example", name="Other", role="GARAGE")
    email = render_email("MOT", "two_weeks", name="Other", registration="AB12CDE", due_date=DUE)

    applied = PartnerAdPolicy(store).apply(
        email,
        channel="EMAIL",
        account=garage,
        subscription=_subscription("DRIVER_FREE"),
    )

    assert applied == email


def test_ops_summary_lists_counts_and_errors() -> None:
    summary = SweepSummary(
        run_at=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
        evaluated_count=3,
        sent_count=1,
        failed_count=1,
        duplicate_count=0,
        skipped_quota_count=1,
        skipped_entitlement_count=0,
        deferred_count=0,
        errors=["vehicle veh-9: MOT due date 'x' is not a date"],
        notified=[
            NotifiedRecipient(
                account_id="acct-1",
                recipient_masked="d***@example.com",
                channel="EMAIL",
                registration="AB12CDE",
                reminder_type="MOT",
                bucket="two_weeks",
                days_until_due=14,
            )
        ],
    )

    rendered = render_ops_summary(summary)

    assert rendered.subject == "MOT Alert sweep 2026-03-02: 1 sent, 1 failed"
    assert "Skipped (quota): 1" in rendered.body
    assert "veh-9" in rendered.body
    assert "d***@example.com" in rendered.body
