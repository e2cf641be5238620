from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from .models import REMINDER_TYPES, ReminderBucket, ReminderType
from .store import AccountRecord, ReminderRecord, ReminderStore, VehicleRecord

logger = logging.getLogger(__name__)

REMINDER_OFFSETS: dict[int, ReminderBucket] = {
    30: "one_month",
    14: "two_weeks",
    2: "two_days",
    0: "day_of",
}

_TYPE_ORDER = {reminder_type: index for index, reminder_type in enumerate(REMINDER_TYPES)}


class MalformedVehicleData(ValueError):
    """Raised when a stored due date cannot be interpreted as a calendar date."""

    def __init__(self, vehicle_id: str, reminder_type: ReminderType, value: object) -> None:
        super().__init__(f"vehicle {vehicle_id}: {reminder_type} due date {value!r} is not a date")
        self.vehicle_id = vehicle_id
        self.reminder_type = reminder_type
        self.value = value


@dataclass(frozen=True)
class DueTuple:
    account: AccountRecord
    vehicle: VehicleRecord
    reminder: ReminderRecord
    reminder_type: ReminderType
    due_date: date
    days_until_due: int

    @property
    def bucket(self) -> ReminderBucket:
        return REMINDER_OFFSETS[self.days_until_due]


def coerce_due_date(vehicle: VehicleRecord, reminder_type: ReminderType) -> date | None:
    value = vehicle.due_date_for(reminder_type)
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            return date.fromisoformat(stripped[:10])
        except ValueError as exc:
            raise MalformedVehicleData(vehicle.vehicle_id, reminder_type, value) from exc
    raise MalformedVehicleData(vehicle.vehicle_id, reminder_type, value)


def matching_offset(due_date: date, day: date) -> int | None:
    days = (due_date - day).days
    return days if days in REMINDER_OFFSETS else None


def _evaluation_days(now: datetime, window_end: datetime | None) -> list[date]:
    first = now.date()
    if window_end is None or window_end.date() <= first:
        return [first]
    span = (window_end.date() - first).days
    return [first + timedelta(days=offset) for offset in range(span + 1)]


class DueSetSelector:
    """Finds the (vehicle, reminder type) pairs whose due date hits a reminder offset.

    Matching is exact: a pair is due on the one calendar day that is 30, 14, 2
    or 0 days before its due date. ``window_end`` evaluates every day between
    ``now`` and ``window_end`` for callers that do not run daily.
    """

    def __init__(self, store: ReminderStore) -> None:
        self._store = store

    def select_due(
        self,
        now: datetime,
        window_end: datetime | None = None,
        *,
        errors: list[str] | None = None,
    ) -> list[DueTuple]:
        days = _evaluation_days(now, window_end)
        due: list[DueTuple] = []
        for vehicle in self._store.list_vehicles():
            account = self._store.get_account(vehicle.account_id)
            if account is None:
                logger.warning("vehicle %s references missing account %s", vehicle.vehicle_id, vehicle.account_id)
                continue

            due_dates: dict[ReminderType, date | None] = {}
            for reminder_type in REMINDER_TYPES:
                try:
                    due_dates[reminder_type] = coerce_due_date(vehicle, reminder_type)
                except MalformedVehicleData as exc:
                    logger.warning("skipping malformed vehicle data: %s", exc)
                    if errors is not None:
                        errors.append(str(exc))

            reminders = self._store.sync_vehicle_reminders(vehicle, due_dates, now=now)
            for reminder_type in REMINDER_TYPES:
                due_date = due_dates.get(reminder_type)
                reminder = reminders.get(reminder_type)
                if due_date is None or reminder is None:
                    continue
                offset = next(
                    (value for value in (matching_offset(due_date, day) for day in days) if value is not None),
                    None,
                )
                if offset is None:
                    continue
                due.append(
                    DueTuple(
                        account=account,
                        vehicle=vehicle,
                        reminder=reminder,
                        reminder_type=reminder_type,
                        due_date=due_date,
                        days_until_due=offset,
                    )
                )

        due.sort(key=lambda item: (item.account.account_id, item.vehicle.vehicle_id, _TYPE_ORDER[item.reminder_type]))
        return due
