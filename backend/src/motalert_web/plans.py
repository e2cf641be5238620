"""Plan policy table.

Single source of truth for what each subscription tier may send. Lookups never
raise: a stale or unknown plan string resolves to the most restrictive tier's
entitlements and to the smallest finite usage ceiling, never to unlimited.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .models import Channel, ReminderType


class PlanId(str, Enum):
    DRIVER_FREE = "DRIVER_FREE"
    DRIVER_PREMIUM = "DRIVER_PREMIUM"
    GARAGE_STARTER = "GARAGE_STARTER"
    GARAGE_PRO = "GARAGE_PRO"
    GARAGE_PREMIUM = "GARAGE_PREMIUM"


@dataclass(frozen=True)
class PlanFeatures:
    allowed_reminder_types: frozenset[ReminderType]
    allowed_channels: frozenset[Channel]
    max_vehicles: int | None  # None = unlimited
    ads_enabled: bool
    custom_schedules: bool
    priority_support: bool


_ALL_TYPES: frozenset[ReminderType] = frozenset({"MOT", "TAX", "INSURANCE", "SERVICE"})
_MOT_ONLY: frozenset[ReminderType] = frozenset({"MOT"})
_EMAIL_ONLY: frozenset[Channel] = frozenset({"EMAIL"})
_EMAIL_AND_SMS: frozenset[Channel] = frozenset({"EMAIL", "SMS"})

_PLAN_FEATURES: dict[PlanId, PlanFeatures] = {
    PlanId.DRIVER_FREE: PlanFeatures(
        allowed_reminder_types=_MOT_ONLY,
        allowed_channels=_EMAIL_ONLY,
        max_vehicles=1,
        ads_enabled=True,
        custom_schedules=False,
        priority_support=False,
    ),
    PlanId.DRIVER_PREMIUM: PlanFeatures(
        allowed_reminder_types=_ALL_TYPES,
        allowed_channels=_EMAIL_AND_SMS,
        max_vehicles=3,
        ads_enabled=False,
        custom_schedules=True,
        priority_support=True,
    ),
    PlanId.GARAGE_STARTER: PlanFeatures(
        allowed_reminder_types=_MOT_ONLY,
        allowed_channels=_EMAIL_AND_SMS,
        max_vehicles=None,
        ads_enabled=False,
        custom_schedules=True,
        priority_support=False,
    ),
    PlanId.GARAGE_PRO: PlanFeatures(
        allowed_reminder_types=_ALL_TYPES,
        allowed_channels=_EMAIL_AND_SMS,
        max_vehicles=None,
        ads_enabled=False,
        custom_schedules=True,
        priority_support=True,
    ),
    PlanId.GARAGE_PREMIUM: PlanFeatures(
        allowed_reminder_types=_ALL_TYPES,
        allowed_channels=_EMAIL_AND_SMS,
        max_vehicles=None,
        ads_enabled=False,
        custom_schedules=True,
        priority_support=True,
    ),
}

_PLAN_QUOTAS: dict[PlanId, int | None] = {
    PlanId.DRIVER_FREE: None,
    PlanId.DRIVER_PREMIUM: None,
    PlanId.GARAGE_STARTER: 100,
    PlanId.GARAGE_PRO: 500,
    PlanId.GARAGE_PREMIUM: None,
}

MOST_RESTRICTIVE_PLAN = PlanId.DRIVER_FREE
UNKNOWN_PLAN_QUOTA = min(value for value in _PLAN_QUOTAS.values() if value is not None)


def parse_plan(value: str | PlanId | None) -> PlanId | None:
    if isinstance(value, PlanId):
        return value
    if value is None:
        return None
    normalized = str(value).strip().upper()
    try:
        return PlanId(normalized)
    except ValueError:
        return None


def features_for(plan: str | PlanId | None) -> PlanFeatures:
    plan_id = parse_plan(plan)
    if plan_id is None:
        return _PLAN_FEATURES[MOST_RESTRICTIVE_PLAN]
    return _PLAN_FEATURES[plan_id]


def quota_for(plan: str | PlanId | None) -> int | None:
    plan_id = parse_plan(plan)
    if plan_id is None:
        return UNKNOWN_PLAN_QUOTA
    return _PLAN_QUOTAS[plan_id]
