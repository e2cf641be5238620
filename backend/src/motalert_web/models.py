from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

ReminderType = Literal["MOT", "TAX", "INSURANCE", "SERVICE"]
Channel = Literal["EMAIL", "SMS"]
MessageStatus = Literal["PENDING", "SENT", "FAILED"]
AccountRole = Literal["DRIVER", "GARAGE", "ADMIN"]
SubscriptionStatus = Literal["ACTIVE", "PAST_DUE", "CANCELED"]
ReminderBucket = Literal["one_month", "two_weeks", "two_days", "day_of"]

REMINDER_TYPES: tuple[ReminderType, ...] = ("MOT", "TAX", "INSURANCE", "SERVICE")
CHANNEL_ORDER: tuple[Channel, ...] = ("EMAIL", "SMS")


def _normalize_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReminderActionRequest(BaseModel):
    action: str = Field(min_length=1, max_length=32)
    now_override: datetime | None = None
    window_end: datetime | None = None
    max_age_hours: int | None = Field(default=None, ge=1, le=168)

    @field_validator("action")
    @classmethod
    def _normalize_action(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("now_override", "window_end")
    @classmethod
    def _normalize_datetimes(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)

    @model_validator(mode="after")
    def _validate_window(self) -> ReminderActionRequest:
        if self.window_end is not None and self.now_override is not None and self.window_end < self.now_override:
            raise ValueError("window_end must be greater than or equal to now_override")
        return self


class ReminderBucketCounts(BaseModel):
    one_month: int = 0
    two_weeks: int = 0
    two_days: int = 0
    day_of: int = 0


class NotifiedRecipient(BaseModel):
    account_id: str
    recipient_masked: str
    channel: Channel
    registration: str
    reminder_type: ReminderType
    bucket: ReminderBucket
    days_until_due: int


class SweepSummary(BaseModel):
    run_at: datetime
    evaluated_count: int
    sent_count: int
    failed_count: int
    duplicate_count: int
    skipped_quota_count: int
    skipped_entitlement_count: int
    deferred_count: int
    reminders_sent: ReminderBucketCounts = Field(default_factory=ReminderBucketCounts)
    errors: list[str] = Field(default_factory=list)
    notified: list[NotifiedRecipient] = Field(default_factory=list)


class RetrySummary(BaseModel):
    run_at: datetime
    attempted: int
    succeeded: int
    still_failed: int


class MessageItem(BaseModel):
    message_id: int
    channel: Channel
    status: MessageStatus
    recipient_masked: str
    created_at: datetime
    sent_at: datetime | None = None
    provider_ref: str | None = None
    error: str | None = None


class ReminderItem(BaseModel):
    reminder_id: int
    vehicle_id: str
    registration: str
    reminder_type: ReminderType
    due_date: date
    is_active: bool
    messages: list[MessageItem] = Field(default_factory=list)


class ReminderListResponse(BaseModel):
    account_id: str
    reminders: list[ReminderItem]
