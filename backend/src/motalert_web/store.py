from __future__ import annotations

import secrets
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from itertools import count
from threading import Lock
from typing import Iterator, Protocol

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
    update,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .config import ConfigurationError
from .formatting import normalize_phone, normalize_registration
from .models import (
    AccountRole,
    Channel,
    MessageStatus,
    REMINDER_TYPES,
    ReminderType,
    SubscriptionStatus,
)
from .plans import PlanId, quota_for

DUE_DATE_FIELDS: dict[ReminderType, str] = {
    "MOT": "mot_due_date",
    "TAX": "tax_due_date",
    "INSURANCE": "insurance_due_date",
    "SERVICE": "service_due_date",
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AccountNotFoundError(KeyError):
    """Raised when an operation references an account id that does not exist."""


class MessageNotFoundError(KeyError):
    """Raised when an operation references a message id that does not exist."""


class SubscriptionNotFoundError(KeyError):
    """Raised when an operation references a subscription id that does not exist."""


class DuplicateRegistrationError(ValueError):
    """Raised when an account already owns another vehicle with the same plate."""


class StoreUnavailableError(ConfigurationError):
    """Raised when the backing database cannot be reached."""


@dataclass(frozen=True)
class AccountRecord:
    account_id: str
    email: str
    name: str
    role: AccountRole = "DRIVER"
    phone: str | None = None


@dataclass(frozen=True)
class SubscriptionRecord:
    subscription_id: str | None
    account_id: str
    plan: str
    status: SubscriptionStatus
    usage_count: int
    usage_ceiling: int | None


@dataclass(frozen=True)
class VehicleRecord:
    vehicle_id: str
    account_id: str
    registration: str
    make: str | None = None
    model: str | None = None
    year: int | None = None
    mot_due_date: date | None = None
    tax_due_date: date | None = None
    insurance_due_date: date | None = None
    service_due_date: date | None = None

    def due_date_for(self, reminder_type: ReminderType) -> object:
        return getattr(self, DUE_DATE_FIELDS[reminder_type])


@dataclass(frozen=True)
class ReminderRecord:
    reminder_id: int
    account_id: str
    vehicle_id: str
    reminder_type: ReminderType
    due_date: date
    is_active: bool
    created_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    message_id: int
    reminder_id: int
    account_id: str
    channel: Channel
    recipient: str
    subject: str | None
    content: str
    status: MessageStatus
    tries: int
    created_at: datetime
    sent_at: datetime | None = None
    provider_ref: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PartnerGarageRecord:
    garage_id: str
    name: str
    phone: str
    website: str | None = None
    account_id: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class ReminderWithMessages:
    reminder: ReminderRecord
    vehicle: VehicleRecord | None
    messages: list[MessageRecord] = field(default_factory=list)


def default_subscription(account_id: str) -> SubscriptionRecord:
    """The implicit free-tier subscription of an account that has no row."""
    return SubscriptionRecord(
        subscription_id=None,
        account_id=account_id,
        plan=PlanId.DRIVER_FREE.value,
        status="ACTIVE",
        usage_count=0,
        usage_ceiling=quota_for(PlanId.DRIVER_FREE),
    )


class ReminderStore(Protocol):
    def reset(self) -> None: ...

    def save_account(self, account: AccountRecord) -> AccountRecord: ...

    def get_account(self, account_id: str) -> AccountRecord | None: ...

    def save_subscription(self, subscription: SubscriptionRecord) -> SubscriptionRecord: ...

    def create_subscription(
        self,
        account_id: str,
        plan: str | PlanId,
        *,
        status: SubscriptionStatus = "ACTIVE",
    ) -> SubscriptionRecord: ...

    def get_subscription(self, subscription_id: str) -> SubscriptionRecord | None: ...

    def get_subscription_for_account(self, account_id: str) -> SubscriptionRecord | None: ...

    def increment_usage(self, subscription_id: str) -> int: ...

    def save_vehicle(self, vehicle: VehicleRecord) -> VehicleRecord: ...

    def get_vehicle(self, vehicle_id: str) -> VehicleRecord | None: ...

    def list_vehicles(self) -> list[VehicleRecord]: ...

    def sync_vehicle_reminders(
        self,
        vehicle: VehicleRecord,
        due_dates: dict[ReminderType, date | None],
        *,
        now: datetime,
    ) -> dict[ReminderType, ReminderRecord]: ...

    def create_message(
        self,
        *,
        reminder_id: int,
        account_id: str,
        channel: Channel,
        recipient: str,
        subject: str | None,
        content: str,
        created_at: datetime,
    ) -> MessageRecord: ...

    def mark_message_sent(self, message_id: int, *, provider_ref: str | None, sent_at: datetime) -> MessageRecord: ...

    def mark_message_failed(self, message_id: int, *, error: str) -> MessageRecord: ...

    def has_message_since(self, reminder_id: int, channel: Channel, since: datetime) -> bool: ...

    def list_retryable_messages(self, *, created_since: datetime, pending_before: datetime) -> list[MessageRecord]: ...

    def list_account_reminders(self, account_id: str, *, message_limit: int = 5) -> list[ReminderWithMessages]: ...

    def save_partner_garage(self, garage: PartnerGarageRecord) -> PartnerGarageRecord: ...

    def list_partner_garages(self) -> list[PartnerGarageRecord]: ...

    def get_garage_profile(self, account_id: str) -> PartnerGarageRecord | None: ...


def _normalized_account(account: AccountRecord) -> AccountRecord:
    return AccountRecord(
        account_id=account.account_id,
        email=account.email.strip(),
        name=account.name.strip(),
        role=account.role,
        phone=normalize_phone(account.phone),
    )


def _normalized_vehicle(vehicle: VehicleRecord) -> VehicleRecord:
    return VehicleRecord(**{**vehicle.__dict__, "registration": normalize_registration(vehicle.registration)})


class InMemoryReminderStore:
    """Thread-safe in-memory store with incremental reminder and message ids."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._reminder_counter = count(1)
        self._message_counter = count(1)
        self._subscription_counter = count(1)
        self._accounts: dict[str, AccountRecord] = {}
        self._subscriptions: dict[str, SubscriptionRecord] = {}
        self._vehicles: dict[str, VehicleRecord] = {}
        self._reminders: dict[int, ReminderRecord] = {}
        self._messages: dict[int, MessageRecord] = {}
        self._garages: dict[str, PartnerGarageRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._reminder_counter = count(1)
            self._message_counter = count(1)
            self._subscription_counter = count(1)
            self._accounts.clear()
            self._subscriptions.clear()
            self._vehicles.clear()
            self._reminders.clear()
            self._messages.clear()
            self._garages.clear()

    def save_account(self, account: AccountRecord) -> AccountRecord:
        record = _normalized_account(account)
        with self._lock:
            self._accounts[record.account_id] = record
        return record

    def get_account(self, account_id: str) -> AccountRecord | None:
        with self._lock:
            return self._accounts.get(account_id)

    def save_subscription(self, subscription: SubscriptionRecord) -> SubscriptionRecord:
        if not subscription.subscription_id:
            raise ValueError("subscription_id is required")
        with self._lock:
            for existing in self._subscriptions.values():
                if existing.account_id == subscription.account_id and existing.subscription_id != subscription.subscription_id:
                    raise ValueError(f"account {subscription.account_id} already has a subscription")
            self._subscriptions[subscription.subscription_id] = subscription
        return subscription

    def create_subscription(
        self,
        account_id: str,
        plan: str | PlanId,
        *,
        status: SubscriptionStatus = "ACTIVE",
    ) -> SubscriptionRecord:
        plan_value = plan.value if isinstance(plan, PlanId) else str(plan)
        with self._lock:
            for existing in self._subscriptions.values():
                if existing.account_id == account_id:
                    return existing
            record = SubscriptionRecord(
                subscription_id=f"sub_{next(self._subscription_counter):06d}",
                account_id=account_id,
                plan=plan_value,
                status=status,
                usage_count=0,
                usage_ceiling=quota_for(plan_value),
            )
            self._subscriptions[record.subscription_id] = record
            return record

    def get_subscription(self, subscription_id: str) -> SubscriptionRecord | None:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def get_subscription_for_account(self, account_id: str) -> SubscriptionRecord | None:
        with self._lock:
            for record in self._subscriptions.values():
                if record.account_id == account_id:
                    return record
            return None

    def increment_usage(self, subscription_id: str) -> int:
        with self._lock:
            row = self._subscriptions.get(subscription_id)
            if row is None:
                raise SubscriptionNotFoundError(subscription_id)
            updated = SubscriptionRecord(**{**row.__dict__, "usage_count": row.usage_count + 1})
            self._subscriptions[subscription_id] = updated
            return updated.usage_count

    def save_vehicle(self, vehicle: VehicleRecord) -> VehicleRecord:
        record = _normalized_vehicle(vehicle)
        with self._lock:
            for existing in self._vehicles.values():
                if (
                    existing.account_id == record.account_id
                    and existing.registration == record.registration
                    and existing.vehicle_id != record.vehicle_id
                ):
                    raise DuplicateRegistrationError(record.registration)
            self._vehicles[record.vehicle_id] = record
        return record

    def get_vehicle(self, vehicle_id: str) -> VehicleRecord | None:
        with self._lock:
            return self._vehicles.get(vehicle_id)

    def list_vehicles(self) -> list[VehicleRecord]:
        with self._lock:
            return sorted(self._vehicles.values(), key=lambda value: (value.account_id, value.vehicle_id))

    def sync_vehicle_reminders(
        self,
        vehicle: VehicleRecord,
        due_dates: dict[ReminderType, date | None],
        *,
        now: datetime,
    ) -> dict[ReminderType, ReminderRecord]:
        active: dict[ReminderType, ReminderRecord] = {}
        with self._lock:
            for reminder_type, due_date in due_dates.items():
                current = [
                    row
                    for row in self._reminders.values()
                    if row.vehicle_id == vehicle.vehicle_id and row.reminder_type == reminder_type and row.is_active
                ]
                keep: ReminderRecord | None = None
                for row in current:
                    if due_date is not None and row.due_date == due_date and keep is None:
                        keep = row
                        continue
                    self._reminders[row.reminder_id] = ReminderRecord(**{**row.__dict__, "is_active": False})
                if due_date is None:
                    continue
                if keep is None:
                    keep = ReminderRecord(
                        reminder_id=next(self._reminder_counter),
                        account_id=vehicle.account_id,
                        vehicle_id=vehicle.vehicle_id,
                        reminder_type=reminder_type,
                        due_date=due_date,
                        is_active=True,
                        created_at=now,
                    )
                    self._reminders[keep.reminder_id] = keep
                active[reminder_type] = keep
        return active

    def create_message(
        self,
        *,
        reminder_id: int,
        account_id: str,
        channel: Channel,
        recipient: str,
        subject: str | None,
        content: str,
        created_at: datetime,
    ) -> MessageRecord:
        with self._lock:
            record = MessageRecord(
                message_id=next(self._message_counter),
                reminder_id=reminder_id,
                account_id=account_id,
                channel=channel,
                recipient=recipient,
                subject=subject,
                content=content,
                status="PENDING",
                tries=0,
                created_at=_coerce_utc(created_at),
            )
            self._messages[record.message_id] = record
            return record

    def mark_message_sent(self, message_id: int, *, provider_ref: str | None, sent_at: datetime) -> MessageRecord:
        with self._lock:
            row = self._messages.get(message_id)
            if row is None:
                raise MessageNotFoundError(message_id)
            updated = MessageRecord(
                **{
                    **row.__dict__,
                    "status": "SENT",
                    "tries": row.tries + 1,
                    "sent_at": _coerce_utc(sent_at),
                    "provider_ref": provider_ref,
                    "error": None,
                }
            )
            self._messages[message_id] = updated
            return updated

    def mark_message_failed(self, message_id: int, *, error: str) -> MessageRecord:
        with self._lock:
            row = self._messages.get(message_id)
            if row is None:
                raise MessageNotFoundError(message_id)
            updated = MessageRecord(**{**row.__dict__, "status": "FAILED", "tries": row.tries + 1, "error": error})
            self._messages[message_id] = updated
            return updated

    def has_message_since(self, reminder_id: int, channel: Channel, since: datetime) -> bool:
        cutoff = _coerce_utc(since)
        with self._lock:
            return any(
                row.reminder_id == reminder_id and row.channel == channel and row.created_at >= cutoff
                for row in self._messages.values()
            )

    def list_retryable_messages(self, *, created_since: datetime, pending_before: datetime) -> list[MessageRecord]:
        since = _coerce_utc(created_since)
        stale_cutoff = _coerce_utc(pending_before)
        with self._lock:
            rows = [
                row
                for row in self._messages.values()
                if row.created_at >= since
                and (row.status == "FAILED" or (row.status == "PENDING" and row.created_at < stale_cutoff))
            ]
        return sorted(rows, key=lambda value: value.message_id)

    def list_account_reminders(self, account_id: str, *, message_limit: int = 5) -> list[ReminderWithMessages]:
        with self._lock:
            reminders = sorted(
                (row for row in self._reminders.values() if row.account_id == account_id),
                key=lambda value: (value.due_date, value.reminder_id),
            )
            result: list[ReminderWithMessages] = []
            for reminder in reminders:
                messages = sorted(
                    (row for row in self._messages.values() if row.reminder_id == reminder.reminder_id),
                    key=lambda value: (value.created_at, value.message_id),
                    reverse=True,
                )
                result.append(
                    ReminderWithMessages(
                        reminder=reminder,
                        vehicle=self._vehicles.get(reminder.vehicle_id),
                        messages=messages[:message_limit],
                    )
                )
            return result

    def save_partner_garage(self, garage: PartnerGarageRecord) -> PartnerGarageRecord:
        with self._lock:
            self._garages[garage.garage_id] = garage
        return garage

    def list_partner_garages(self) -> list[PartnerGarageRecord]:
        with self._lock:
            return sorted(
                (row for row in self._garages.values() if row.is_active),
                key=lambda value: value.garage_id,
            )

    def get_garage_profile(self, account_id: str) -> PartnerGarageRecord | None:
        with self._lock:
            for row in self._garages.values():
                if row.account_id == account_id and row.is_active:
                    return row
            return None


class ReminderStoreBase(DeclarativeBase):
    pass


class _AccountRow(ReminderStoreBase):
    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="DRIVER")
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)


class _SubscriptionRow(ReminderStoreBase):
    __tablename__ = "subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), ForeignKey("accounts.account_id"), nullable=False, unique=True)
    plan: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_ceiling: Mapped[int | None] = mapped_column(Integer, nullable=True)


class _VehicleRow(ReminderStoreBase):
    __tablename__ = "vehicles"
    __table_args__ = (UniqueConstraint("account_id", "registration", name="uq_vehicles_account_registration"),)

    vehicle_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), ForeignKey("accounts.account_id"), nullable=False, index=True)
    registration: Mapped[str] = mapped_column(String(16), nullable=False)
    make: Mapped[str | None] = mapped_column(String(64), nullable=True)
    model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mot_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    tax_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    insurance_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    service_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)


class _ReminderRow(ReminderStoreBase):
    __tablename__ = "reminders"
    __table_args__ = (Index("ix_reminders_vehicle_type_active", "vehicle_id", "reminder_type", "is_active"),)

    reminder_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), ForeignKey("accounts.account_id"), nullable=False, index=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), ForeignKey("vehicles.vehicle_id"), nullable=False)
    reminder_type: Mapped[str] = mapped_column(String(16), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageRow(ReminderStoreBase):
    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_reminder_channel_created", "reminder_id", "channel", "created_at"),)

    message_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reminder_id: Mapped[int] = mapped_column(Integer, ForeignKey("reminders.reminder_id"), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(8), nullable=False)
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(256), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING", index=True)
    tries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)


class _PartnerGarageRow(ReminderStoreBase):
    __tablename__ = "partner_garages"

    garage_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    website: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


def _account_from_row(row: _AccountRow) -> AccountRecord:
    return AccountRecord(
        account_id=row.account_id,
        email=row.email,
        name=row.name,
        role=row.role,  # type: ignore[arg-type]
        phone=row.phone,
    )


def _subscription_from_row(row: _SubscriptionRow) -> SubscriptionRecord:
    return SubscriptionRecord(
        subscription_id=row.subscription_id,
        account_id=row.account_id,
        plan=row.plan,
        status=row.status,  # type: ignore[arg-type]
        usage_count=row.usage_count,
        usage_ceiling=row.usage_ceiling,
    )


def _vehicle_from_row(row: _VehicleRow) -> VehicleRecord:
    return VehicleRecord(
        vehicle_id=row.vehicle_id,
        account_id=row.account_id,
        registration=row.registration,
        make=row.make,
        model=row.model,
        year=row.year,
        mot_due_date=row.mot_due_date,
        tax_due_date=row.tax_due_date,
        insurance_due_date=row.insurance_due_date,
        service_due_date=row.service_due_date,
    )


def _reminder_from_row(row: _ReminderRow) -> ReminderRecord:
    return ReminderRecord(
        reminder_id=row.reminder_id,
        account_id=row.account_id,
        vehicle_id=row.vehicle_id,
        reminder_type=row.reminder_type,  # type: ignore[arg-type]
        due_date=row.due_date,
        is_active=row.is_active,
        created_at=_coerce_utc(row.created_at),
    )


def _message_from_row(row: _MessageRow) -> MessageRecord:
    return MessageRecord(
        message_id=row.message_id,
        reminder_id=row.reminder_id,
        account_id=row.account_id,
        channel=row.channel,  # type: ignore[arg-type]
        recipient=row.recipient,
        subject=row.subject,
        content=row.content,
        status=row.status,  # type: ignore[arg-type]
        tries=row.tries,
        created_at=_coerce_utc(row.created_at),
        sent_at=_coerce_utc(row.sent_at) if row.sent_at is not None else None,
        provider_ref=row.provider_ref,
        error=row.error,
    )


def _garage_from_row(row: _PartnerGarageRow) -> PartnerGarageRecord:
    return PartnerGarageRecord(
        garage_id=row.garage_id,
        name=row.name,
        phone=row.phone,
        website=row.website,
        account_id=row.account_id,
        is_active=row.is_active,
    )


class SqlAlchemyReminderStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ConfigurationError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True, connect_args=connect_args)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderStoreBase.metadata.create_all(self._engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except OperationalError as exc:
            raise StoreUnavailableError(f"reminder store unavailable: {exc.orig}") from exc

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_MessageRow).delete()
                session.query(_ReminderRow).delete()
                session.query(_VehicleRow).delete()
                session.query(_SubscriptionRow).delete()
                session.query(_PartnerGarageRow).delete()
                session.query(_AccountRow).delete()

    def save_account(self, account: AccountRecord) -> AccountRecord:
        record = _normalized_account(account)
        with self._session() as session:
            with session.begin():
                row = session.get(_AccountRow, record.account_id)
                if row is None:
                    row = _AccountRow(account_id=record.account_id)
                    session.add(row)
                row.email = record.email
                row.name = record.name
                row.role = record.role
                row.phone = record.phone
        return record

    def get_account(self, account_id: str) -> AccountRecord | None:
        with self._session() as session:
            row = session.get(_AccountRow, account_id)
            return _account_from_row(row) if row is not None else None

    def save_subscription(self, subscription: SubscriptionRecord) -> SubscriptionRecord:
        if not subscription.subscription_id:
            raise ValueError("subscription_id is required")
        with self._session() as session:
            with session.begin():
                row = session.get(_SubscriptionRow, subscription.subscription_id)
                if row is None:
                    row = _SubscriptionRow(subscription_id=subscription.subscription_id)
                    session.add(row)
                row.account_id = subscription.account_id
                row.plan = subscription.plan
                row.status = subscription.status
                row.usage_count = subscription.usage_count
                row.usage_ceiling = subscription.usage_ceiling
        return subscription

    def create_subscription(
        self,
        account_id: str,
        plan: str | PlanId,
        *,
        status: SubscriptionStatus = "ACTIVE",
    ) -> SubscriptionRecord:
        plan_value = plan.value if isinstance(plan, PlanId) else str(plan)
        with self._session() as session:
            with session.begin():
                existing = session.execute(
                    select(_SubscriptionRow).where(_SubscriptionRow.account_id == account_id)
                ).scalar_one_or_none()
                if existing is not None:
                    return _subscription_from_row(existing)
                row = _SubscriptionRow(
                    subscription_id=f"sub_{secrets.token_hex(8)}",
                    account_id=account_id,
                    plan=plan_value,
                    status=status,
                    usage_count=0,
                    usage_ceiling=quota_for(plan_value),
                )
                session.add(row)
                return _subscription_from_row(row)

    def get_subscription(self, subscription_id: str) -> SubscriptionRecord | None:
        with self._session() as session:
            row = session.get(_SubscriptionRow, subscription_id)
            return _subscription_from_row(row) if row is not None else None

    def get_subscription_for_account(self, account_id: str) -> SubscriptionRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_SubscriptionRow).where(_SubscriptionRow.account_id == account_id)
            ).scalar_one_or_none()
            return _subscription_from_row(row) if row is not None else None

    def increment_usage(self, subscription_id: str) -> int:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_SubscriptionRow)
                    .where(_SubscriptionRow.subscription_id == subscription_id)
                    .values(usage_count=_SubscriptionRow.usage_count + 1)
                )
                if result.rowcount == 0:
                    raise SubscriptionNotFoundError(subscription_id)
                return session.execute(
                    select(_SubscriptionRow.usage_count).where(_SubscriptionRow.subscription_id == subscription_id)
                ).scalar_one()

    def save_vehicle(self, vehicle: VehicleRecord) -> VehicleRecord:
        record = _normalized_vehicle(vehicle)
        with self._session() as session:
            with session.begin():
                clash = session.execute(
                    select(_VehicleRow.vehicle_id)
                    .where(_VehicleRow.account_id == record.account_id)
                    .where(_VehicleRow.registration == record.registration)
                    .where(_VehicleRow.vehicle_id != record.vehicle_id)
                ).first()
                if clash is not None:
                    raise DuplicateRegistrationError(record.registration)
                row = session.get(_VehicleRow, record.vehicle_id)
                if row is None:
                    row = _VehicleRow(vehicle_id=record.vehicle_id)
                    session.add(row)
                row.account_id = record.account_id
                row.registration = record.registration
                row.make = record.make
                row.model = record.model
                row.year = record.year
                row.mot_due_date = record.mot_due_date
                row.tax_due_date = record.tax_due_date
                row.insurance_due_date = record.insurance_due_date
                row.service_due_date = record.service_due_date
        return record

    def get_vehicle(self, vehicle_id: str) -> VehicleRecord | None:
        with self._session() as session:
            row = session.get(_VehicleRow, vehicle_id)
            return _vehicle_from_row(row) if row is not None else None

    def list_vehicles(self) -> list[VehicleRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_VehicleRow).order_by(_VehicleRow.account_id.asc(), _VehicleRow.vehicle_id.asc())
            ).scalars()
            return [_vehicle_from_row(row) for row in rows]

    def sync_vehicle_reminders(
        self,
        vehicle: VehicleRecord,
        due_dates: dict[ReminderType, date | None],
        *,
        now: datetime,
    ) -> dict[ReminderType, ReminderRecord]:
        active: dict[ReminderType, ReminderRecord] = {}
        with self._session() as session:
            with session.begin():
                for reminder_type, due_date in due_dates.items():
                    rows = session.execute(
                        select(_ReminderRow)
                        .where(_ReminderRow.vehicle_id == vehicle.vehicle_id)
                        .where(_ReminderRow.reminder_type == reminder_type)
                        .where(_ReminderRow.is_active.is_(True))
                        .order_by(_ReminderRow.reminder_id.asc())
                    ).scalars().all()
                    keep: _ReminderRow | None = None
                    for row in rows:
                        if due_date is not None and row.due_date == due_date and keep is None:
                            keep = row
                            continue
                        row.is_active = False
                    if due_date is None:
                        continue
                    if keep is None:
                        keep = _ReminderRow(
                            account_id=vehicle.account_id,
                            vehicle_id=vehicle.vehicle_id,
                            reminder_type=reminder_type,
                            due_date=due_date,
                            is_active=True,
                            created_at=_coerce_utc(now),
                        )
                        session.add(keep)
                        session.flush()
                    active[reminder_type] = _reminder_from_row(keep)
        return active

    def create_message(
        self,
        *,
        reminder_id: int,
        account_id: str,
        channel: Channel,
        recipient: str,
        subject: str | None,
        content: str,
        created_at: datetime,
    ) -> MessageRecord:
        with self._session() as session:
            with session.begin():
                row = _MessageRow(
                    reminder_id=reminder_id,
                    account_id=account_id,
                    channel=channel,
                    recipient=recipient,
                    subject=subject,
                    content=content,
                    status="PENDING",
                    tries=0,
                    created_at=_coerce_utc(created_at),
                )
                session.add(row)
                session.flush()
                return _message_from_row(row)

    def mark_message_sent(self, message_id: int, *, provider_ref: str | None, sent_at: datetime) -> MessageRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_MessageRow, message_id)
                if row is None:
                    raise MessageNotFoundError(message_id)
                row.status = "SENT"
                row.tries = row.tries + 1
                row.sent_at = _coerce_utc(sent_at)
                row.provider_ref = provider_ref
                row.error = None
                return _message_from_row(row)

    def mark_message_failed(self, message_id: int, *, error: str) -> MessageRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_MessageRow, message_id)
                if row is None:
                    raise MessageNotFoundError(message_id)
                row.status = "FAILED"
                row.tries = row.tries + 1
                row.error = error
                return _message_from_row(row)

    def has_message_since(self, reminder_id: int, channel: Channel, since: datetime) -> bool:
        with self._session() as session:
            row = session.execute(
                select(_MessageRow.message_id)
                .where(_MessageRow.reminder_id == reminder_id)
                .where(_MessageRow.channel == channel)
                .where(_MessageRow.created_at >= _coerce_utc(since))
                .limit(1)
            ).first()
            return row is not None

    def list_retryable_messages(self, *, created_since: datetime, pending_before: datetime) -> list[MessageRecord]:
        since = _coerce_utc(created_since)
        stale_cutoff = _coerce_utc(pending_before)
        with self._session() as session:
            rows = session.execute(
                select(_MessageRow)
                .where(_MessageRow.created_at >= since)
                .where(
                    (_MessageRow.status == "FAILED")
                    | ((_MessageRow.status == "PENDING") & (_MessageRow.created_at < stale_cutoff))
                )
                .order_by(_MessageRow.message_id.asc())
            ).scalars()
            return [_message_from_row(row) for row in rows]

    def list_account_reminders(self, account_id: str, *, message_limit: int = 5) -> list[ReminderWithMessages]:
        with self._session() as session:
            reminders = session.execute(
                select(_ReminderRow)
                .where(_ReminderRow.account_id == account_id)
                .order_by(_ReminderRow.due_date.asc(), _ReminderRow.reminder_id.asc())
            ).scalars().all()
            result: list[ReminderWithMessages] = []
            for reminder in reminders:
                messages = session.execute(
                    select(_MessageRow)
                    .where(_MessageRow.reminder_id == reminder.reminder_id)
                    .order_by(_MessageRow.created_at.desc(), _MessageRow.message_id.desc())
                    .limit(message_limit)
                ).scalars()
                vehicle = session.get(_VehicleRow, reminder.vehicle_id)
                result.append(
                    ReminderWithMessages(
                        reminder=_reminder_from_row(reminder),
                        vehicle=_vehicle_from_row(vehicle) if vehicle is not None else None,
                        messages=[_message_from_row(row) for row in messages],
                    )
                )
            return result

    def save_partner_garage(self, garage: PartnerGarageRecord) -> PartnerGarageRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_PartnerGarageRow, garage.garage_id)
                if row is None:
                    row = _PartnerGarageRow(garage_id=garage.garage_id)
                    session.add(row)
                row.account_id = garage.account_id
                row.name = garage.name
                row.phone = garage.phone
                row.website = garage.website
                row.is_active = garage.is_active
        return garage

    def list_partner_garages(self) -> list[PartnerGarageRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_PartnerGarageRow)
                .where(_PartnerGarageRow.is_active.is_(True))
                .order_by(_PartnerGarageRow.garage_id.asc())
            ).scalars()
            return [_garage_from_row(row) for row in rows]

    def get_garage_profile(self, account_id: str) -> PartnerGarageRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_PartnerGarageRow)
                .where(_PartnerGarageRow.account_id == account_id)
                .where(_PartnerGarageRow.is_active.is_(True))
                .order_by(_PartnerGarageRow.garage_id.asc())
                .limit(1)
            ).scalar_one_or_none()
            return _garage_from_row(row) if row is not None else None


def create_reminder_store(*, backend: str, database_url: str) -> ReminderStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderStore(database_url)
    if normalized == "inmemory":
        return InMemoryReminderStore()
    raise ConfigurationError(f"unsupported REMINDER_STORE_BACKEND: {backend}")


__all__ = [
    "AccountNotFoundError",
    "AccountRecord",
    "DUE_DATE_FIELDS",
    "DuplicateRegistrationError",
    "InMemoryReminderStore",
    "MessageNotFoundError",
    "MessageRecord",
    "PartnerGarageRecord",
    "REMINDER_TYPES",
    "ReminderRecord",
    "ReminderStore",
    "ReminderStoreBase",
    "ReminderWithMessages",
    "SqlAlchemyReminderStore",
    "StoreUnavailableError",
    "SubscriptionNotFoundError",
    "SubscriptionRecord",
    "VehicleRecord",
    "create_reminder_store",
    "default_subscription",
]
