"""Message copy for reminder emails and SMS, plus the plan content policies.

Rendering is pure: it takes the recipient name, plate, due date and the
urgency bucket and returns the subject and body. Plan-dependent additions
(partner garage ads, garage branding) are applied afterwards by the
``ContentPolicy`` objects so the base copy stays the same for every plan.
"""

from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import date
from itertools import count
from threading import Lock
from typing import Protocol

from .formatting import format_due_date
from .models import Channel, ReminderBucket, ReminderType, SweepSummary
from .plans import features_for
from .store import AccountRecord, PartnerGarageRecord, ReminderStore, SubscriptionRecord

GOV_MOT_URL = "https://www.gov.uk/mot"
GOV_TAX_URL = "https://www.gov.uk/vehicle-tax"
SMS_OPT_OUT = "Reply STOP to unsubscribe."
FALLBACK_EMAIL_SUBJECT = "MOT Reminder"

_BUCKET_PHRASES: dict[ReminderBucket, str] = {
    "one_month": "in 1 month",
    "two_weeks": "in 2 weeks",
    "two_days": "in 2 days",
    "day_of": "today",
}

_TYPE_LABELS: dict[ReminderType, str] = {
    "MOT": "MOT",
    "TAX": "road tax",
    "INSURANCE": "insurance",
    "SERVICE": "service",
}


@dataclass(frozen=True)
class RenderedMessage:
    subject: str | None
    body: str


def _paragraphs(*lines: str) -> str:
    return "".join(f"<p>{line}</p>" for line in lines)


def _callout(title: str, items: list[str], *, background: str) -> str:
    bullets = "".join(f"<p>&bull; {item}</p>" for item in items)
    return (
        f'<div style="background: {background}; padding: 15px; border-radius: 5px; margin: 20px 0;">'
        f"<p><strong>{title}</strong></p>{bullets}</div>"
    )


def _mot_email(bucket: ReminderBucket, name: str, registration: str, due: str) -> RenderedMessage:
    greeting = f"Hi {name},"
    due_line = f"Your vehicle <strong>{registration}</strong> MOT is due on <strong>{due}</strong>."
    if bucket == "one_month":
        return RenderedMessage(
            subject=f"MOT Alert: {registration} due in 1 month",
            body='<h2 style="color: #dc2626;">MOT Reminder</h2>'
            + _paragraphs(greeting, due_line, "That's in 1 month - time to book your test!")
            + _callout(
                "Book your MOT test:",
                [
                    f'Find a local garage at <a href="{GOV_MOT_URL}">gov.uk/mot</a>',
                    "Book online or call your preferred garage",
                    "Cost: &pound;54.85 for most vehicles",
                ],
                background="#fef3c7",
            )
            + _paragraphs("Don't risk driving without a valid MOT!"),
        )
    if bucket == "two_weeks":
        return RenderedMessage(
            subject=f"MOT Alert: {registration} due in 2 weeks",
            body='<h2 style="color: #ea580c;">MOT Due Soon!</h2>'
            + _paragraphs(greeting, due_line, "That's in 2 weeks - book your test now!")
            + _callout(
                "Quick booking options:",
                [
                    f'<a href="{GOV_MOT_URL}">Book online at gov.uk</a>',
                    "Call your local garage",
                    "Use comparison sites for best prices",
                ],
                background="#fef3c7",
            )
            + _paragraphs("Don't forget - driving without MOT is illegal!"),
        )
    if bucket == "two_days":
        return RenderedMessage(
            subject=f"URGENT: {registration} MOT due in 2 days",
            body='<h2 style="color: #dc2626;">URGENT MOT REMINDER!</h2>'
            + _paragraphs(greeting, due_line, "<strong>That's in 2 days!</strong>")
            + _callout(
                "URGENT ACTION REQUIRED:",
                [
                    "Book your MOT test immediately",
                    "Don't drive without valid MOT",
                    "Risk of &pound;1,000 fine if caught",
                ],
                background="#fee2e2",
            )
            + _paragraphs(f'Book now at <a href="{GOV_MOT_URL}">gov.uk/mot</a>'),
        )
    return RenderedMessage(
        subject=f"TODAY: {registration} MOT is due",
        body='<h2 style="color: #dc2626;">MOT DUE TODAY!</h2>'
        + _paragraphs(
            greeting,
            f"Your vehicle <strong>{registration}</strong> MOT is due <strong>TODAY ({due})</strong>.",
        )
        + _callout(
            "CRITICAL:",
            [
                "You CANNOT drive legally without MOT",
                "Book test immediately",
                "Risk of &pound;1,000 fine + points",
            ],
            background="#fee2e2",
        )
        + _paragraphs(f'Book now at <a href="{GOV_MOT_URL}">gov.uk/mot</a>'),
    )


def _other_email(
    reminder_type: ReminderType,
    bucket: ReminderBucket,
    name: str,
    registration: str,
    due: str,
) -> RenderedMessage:
    label = _TYPE_LABELS[reminder_type]
    phrase = _BUCKET_PHRASES[bucket]
    urgent = bucket in {"two_days", "day_of"}
    if reminder_type == "TAX":
        subject = f"Road Tax Reminder: {registration} due {phrase}"
        tips = [
            f'Visit <a href="{GOV_TAX_URL}">gov.uk/vehicle-tax</a>',
            "Use your V5C log book",
            "Pay by direct debit or card",
        ]
        title = "Renew online:"
        verb = "is due on"
    elif reminder_type == "INSURANCE":
        subject = f"Insurance Reminder: {registration} expires {phrase}"
        tips = ["Contact your current insurer", "Compare quotes online", "Don't drive without insurance!"]
        title = "Renew your insurance:"
        verb = "expires on"
    else:
        subject = f"Service Reminder: {registration} due {phrase}"
        tips = ["Book with your usual garage", "Check your service book for what is due"]
        title = "Book your service:"
        verb = "is due on"
    if urgent:
        subject = f"URGENT: {subject}"
    return RenderedMessage(
        subject=subject,
        body=f'<h2 style="color: {"#dc2626" if urgent else "#2563eb"};">{label.capitalize()} Reminder</h2>'
        + _paragraphs(
            f"Hi {name},",
            f"Your vehicle <strong>{registration}</strong> {label} {verb} <strong>{due}</strong>.",
        )
        + _callout(title, tips, background="#fee2e2" if urgent else "#f0f9ff"),
    )


def render_email(
    reminder_type: ReminderType,
    bucket: ReminderBucket,
    *,
    name: str,
    registration: str,
    due_date: date,
) -> RenderedMessage:
    safe_name = html.escape(name or "there")
    safe_registration = html.escape(registration)
    due = format_due_date(due_date)
    if reminder_type == "MOT":
        return _mot_email(bucket, safe_name, safe_registration, due)
    return _other_email(reminder_type, bucket, safe_name, safe_registration, due)


def render_sms(
    reminder_type: ReminderType,
    bucket: ReminderBucket,
    *,
    name: str,
    registration: str,
    due_date: date,
) -> RenderedMessage:
    label = _TYPE_LABELS[reminder_type]
    due = format_due_date(due_date)
    greeting = f"Hi {name}, " if name else ""
    if bucket == "day_of":
        text = f"{greeting}TODAY: the {label} for {registration} is due ({due})."
    elif bucket == "two_days":
        text = f"{greeting}URGENT: the {label} for {registration} is due in 2 days on {due}."
    else:
        text = f"{greeting}your {label} for {registration} is due {_BUCKET_PHRASES[bucket]} on {due}."
    if reminder_type == "MOT" and bucket in {"two_days", "day_of"}:
        text += " Driving without a valid MOT risks a £1,000 fine."
    return RenderedMessage(subject=None, body=f"{text} {SMS_OPT_OUT}")


def render_message(
    channel: Channel,
    reminder_type: ReminderType,
    bucket: ReminderBucket,
    *,
    name: str,
    registration: str,
    due_date: date,
) -> RenderedMessage:
    if channel == "EMAIL":
        return render_email(reminder_type, bucket, name=name, registration=registration, due_date=due_date)
    return render_sms(reminder_type, bucket, name=name, registration=registration, due_date=due_date)


def _garage_email_block(heading: str, garage: PartnerGarageRecord) -> str:
    return (
        f"<br><br>{heading}<br>{html.escape(garage.name)}<br>"
        f"Phone: {html.escape(garage.phone)}<br>Website: {html.escape(garage.website or 'N/A')}"
    )


def _append_sms(body: str, addition: str) -> str:
    if body.endswith(SMS_OPT_OUT):
        return f"{body[: -len(SMS_OPT_OUT)]}{addition} {SMS_OPT_OUT}"
    return f"{body} {addition}"


class ContentPolicy(Protocol):
    def apply(
        self,
        rendered: RenderedMessage,
        *,
        channel: Channel,
        account: AccountRecord,
        subscription: SubscriptionRecord,
    ) -> RenderedMessage: ...


class GarageBrandingPolicy:
    """Adds the sending garage's booking details for GARAGE accounts."""

    def __init__(self, store: ReminderStore) -> None:
        self._store = store

    def apply(
        self,
        rendered: RenderedMessage,
        *,
        channel: Channel,
        account: AccountRecord,
        subscription: SubscriptionRecord,
    ) -> RenderedMessage:
        if account.role != "GARAGE":
            return rendered
        garage = self._store.get_garage_profile(account.account_id)
        if garage is None:
            return rendered
        if channel == "EMAIL":
            return RenderedMessage(
                subject=rendered.subject,
                body=rendered.body + _garage_email_block(f"Book with {html.escape(garage.name)}:", garage),
            )
        addition = f"Book now with {garage.name}. Call {garage.phone} or visit {garage.website or 'our website'}."
        return RenderedMessage(subject=rendered.subject, body=_append_sms(rendered.body, addition))


class PartnerAdPolicy:
    """Appends a partner garage recommendation to driver emails on ad-supported plans.

    Partners are rotated round-robin across calls so each opted-in garage gets
    an even share of impressions.
    """

    def __init__(self, store: ReminderStore) -> None:
        self._store = store
        self._lock = Lock()
        self._rotation = count()

    def apply(
        self,
        rendered: RenderedMessage,
        *,
        channel: Channel,
        account: AccountRecord,
        subscription: SubscriptionRecord,
    ) -> RenderedMessage:
        if channel != "EMAIL" or account.role != "DRIVER":
            return rendered
        if not features_for(subscription.plan).ads_enabled:
            return rendered
        partners = self._store.list_partner_garages()
        if not partners:
            return rendered
        with self._lock:
            index = next(self._rotation) % len(partners)
        block = _garage_email_block("Partner Garage Recommendation:", partners[index])
        return RenderedMessage(subject=rendered.subject, body=rendered.body + block)


class ContentComposer:
    def __init__(self, policies: list[ContentPolicy]) -> None:
        self._policies = list(policies)

    def compose(
        self,
        rendered: RenderedMessage,
        *,
        channel: Channel,
        account: AccountRecord,
        subscription: SubscriptionRecord,
    ) -> RenderedMessage:
        for policy in self._policies:
            rendered = policy.apply(rendered, channel=channel, account=account, subscription=subscription)
        return rendered


def default_composer(store: ReminderStore) -> ContentComposer:
    return ContentComposer([GarageBrandingPolicy(store), PartnerAdPolicy(store)])


def wrap_email_layout(body_html: str) -> str:
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        "<style>"
        "body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }"
        ".container { max-width: 600px; margin: 0 auto; padding: 20px; }"
        ".header { background: #1e40af; color: white; padding: 20px; text-align: center; }"
        ".content { padding: 20px; background: #f9fafb; }"
        ".footer { text-align: center; padding: 20px; font-size: 12px; color: #666; }"
        "</style></head><body><div class=\"container\">"
        "<div class=\"header\"><h1>MOT Alert</h1></div>"
        f"<div class=\"content\">{body_html}<p>Best regards,<br>The MOT Alert Team</p></div>"
        "<div class=\"footer\"><p>You are receiving this because you registered a vehicle with MOT Alert.</p>"
        "<p>MOT Alert Ltd, United Kingdom</p></div>"
        "</div></body></html>"
    )


def render_ops_summary(summary: SweepSummary) -> RenderedMessage:
    counts = summary.reminders_sent
    lines = [
        f"Evaluated: {summary.evaluated_count}",
        f"Sent: {summary.sent_count}",
        f"Failed: {summary.failed_count}",
        f"Duplicate: {summary.duplicate_count}",
        f"Skipped (quota): {summary.skipped_quota_count}",
        f"Skipped (entitlement): {summary.skipped_entitlement_count}",
        f"Deferred: {summary.deferred_count}",
        (
            f"Buckets: 1 month {counts.one_month}, 2 weeks {counts.two_weeks}, "
            f"2 days {counts.two_days}, day of {counts.day_of}"
        ),
    ]
    body = "<h2>Daily reminder sweep</h2>" + _paragraphs(*(html.escape(line) for line in lines))
    if summary.errors:
        body += "<h3>Errors</h3>" + _paragraphs(*(html.escape(error) for error in summary.errors))
    if summary.notified:
        rows = "".join(
            f"<tr><td>{html.escape(item.registration)}</td><td>{item.reminder_type}</td>"
            f"<td>{item.channel}</td><td>{html.escape(item.recipient_masked)}</td>"
            f"<td>{item.days_until_due}</td></tr>"
            for item in summary.notified
        )
        body += (
            "<h3>Notified</h3><table><tr><th>Registration</th><th>Type</th><th>Channel</th>"
            f"<th>Recipient</th><th>Days</th></tr>{rows}</table>"
        )
    subject = f"MOT Alert sweep {summary.run_at.date().isoformat()}: {summary.sent_count} sent, {summary.failed_count} failed"
    return RenderedMessage(subject=subject, body=body)
