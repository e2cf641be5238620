from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from .models import CHANNEL_ORDER, Channel, ReminderType
from .plans import features_for
from .store import AccountRecord, SubscriptionRecord

EntitlementReason = Literal[
    "eligible",
    "plan_excludes_type",
    "subscription_inactive",
    "quota_exhausted",
    "no_eligible_channel",
]


@dataclass(frozen=True)
class EntitlementDecision:
    eligible: bool
    reason: EntitlementReason
    channels: tuple[Channel, ...] = field(default_factory=tuple)


def is_eligible(subscription: SubscriptionRecord, reminder_type: ReminderType) -> bool:
    if subscription.status != "ACTIVE":
        return False
    return reminder_type in features_for(subscription.plan).allowed_reminder_types


def eligible_channels(subscription: SubscriptionRecord, account: AccountRecord) -> frozenset[Channel]:
    allowed = features_for(subscription.plan).allowed_channels
    channels: set[Channel] = set()
    if "EMAIL" in allowed and account.email.strip():
        channels.add("EMAIL")
    if "SMS" in allowed and account.phone:
        channels.add("SMS")
    return frozenset(channels)


def quota_exhausted(subscription: SubscriptionRecord) -> bool:
    if subscription.usage_ceiling is None:
        return False
    return subscription.usage_count >= subscription.usage_ceiling


def evaluate(
    subscription: SubscriptionRecord,
    account: AccountRecord,
    reminder_type: ReminderType,
) -> EntitlementDecision:
    if subscription.status != "ACTIVE":
        return EntitlementDecision(eligible=False, reason="subscription_inactive")
    if not is_eligible(subscription, reminder_type):
        return EntitlementDecision(eligible=False, reason="plan_excludes_type")
    if quota_exhausted(subscription):
        return EntitlementDecision(eligible=False, reason="quota_exhausted")
    channels = eligible_channels(subscription, account)
    if not channels:
        return EntitlementDecision(eligible=False, reason="no_eligible_channel")
    ordered = tuple(channel for channel in CHANNEL_ORDER if channel in channels)
    return EntitlementDecision(eligible=True, reason="eligible", channels=ordered)
