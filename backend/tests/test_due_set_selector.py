from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from motalert_web.due_set import REMINDER_OFFSETS, DueSetSelector, matching_offset
from motalert_web.store import AccountRecord, InMemoryReminderStore, VehicleRecord

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


def _store_with_vehicle(**due_dates: object) -> InMemoryReminderStore:
    store = InMemoryReminderStore()
    store.save_account(AccountRecord(account_id="acct-1", email="driver@example.com", name="Dana"))
    store.save_vehicle(
        VehicleRecord(vehicle_id="veh-1", account_id="acct-1", registration="ab12 cde", **due_dates)  # type: ignore[arg-type]
    )
    return store


@pytest.mark.parametrize("days", [30, 14, 2, 0])
def test_exact_offsets_are_due(days: int) -> None:
    store = _store_with_vehicle(mot_due_date=TODAY + timedelta(days=days))

    due = DueSetSelector(store).select_due(NOW)

    assert len(due) == 1
    assert due[0].days_until_due == days
    assert due[0].bucket == REMINDER_OFFSETS[days]
    assert due[0].vehicle.registration == "AB12CDE"


@pytest.mark.parametrize("days", [31, 29, 15, 13, 3, 1, -1, 60])
def test_non_offset_days_are_not_due(days: int) -> None:
    store = _store_with_vehicle(mot_due_date=TODAY + timedelta(days=days))

    assert DueSetSelector(store).select_due(NOW) == []


def test_matching_offset_is_exact() -> None:
    assert matching_offset(date(2026, 4, 1), date(2026, 3, 2)) == 30
    assert matching_offset(date(2026, 3, 30), date(2026, 3, 2)) is None


def test_window_end_evaluates_each_day_in_range() -> None:
    store = _store_with_vehicle(mot_due_date=TODAY + timedelta(days=31))

    assert DueSetSelector(store).select_due(NOW) == []
    due = DueSetSelector(store).select_due(NOW, window_end=NOW + timedelta(days=1))

    assert len(due) == 1
    assert due[0].days_until_due == 30


def test_output_sorted_by_account_vehicle_and_type() -> None:
    store = InMemoryReminderStore()
    for account_id in ("acct-b", "acct-a"):
        store.save_account(AccountRecord(account_id=account_id, email=f"{account_id}@example.com", name="X"))
    store.save_vehicle(
        VehicleRecord(
            vehicle_id="veh-2",
            account_id="acct-b",
            registration="CD34EFG",
            service_due_date=TODAY,
            mot_due_date=TODAY + timedelta(days=2),
        )
    )
    store.save_vehicle(
        VehicleRecord(vehicle_id="veh-1", account_id="acct-a", registration="AB12CDE", tax_due_date=TODAY)
    )

    due = DueSetSelector(store).select_due(NOW)

    assert [(item.account.account_id, item.reminder_type) for item in due] == [
        ("acct-a", "TAX"),
        ("acct-b", "MOT"),
        ("acct-b", "SERVICE"),
    ]


def test_malformed_due_date_is_reported_and_other_types_still_selected() -> None:
    store = _store_with_vehicle(mot_due_date="31/02/2026", tax_due_date=TODAY + timedelta(days=14))
    errors: list[str] = []

    due = DueSetSelector(store).select_due(NOW, errors=errors)

    assert [item.reminder_type for item in due] == ["TAX"]
    assert len(errors) == 1
    assert "veh-1" in errors[0]
    assert "MOT" in errors[0]


def test_iso_string_due_dates_are_accepted() -> None:
    store = _store_with_vehicle(mot_due_date=(TODAY + timedelta(days=14)).isoformat())

    due = DueSetSelector(store).select_due(NOW)

    assert len(due) == 1
    assert due[0].due_date == TODAY + timedelta(days=14)


def test_due_date_change_regenerates_reminder() -> None:
    store = _store_with_vehicle(mot_due_date=TODAY + timedelta(days=14))
    selector = DueSetSelector(store)
    first = selector.select_due(NOW)[0].reminder

    vehicle = store.get_vehicle("veh-1")
    assert vehicle is not None
    store.save_vehicle(VehicleRecord(**{**vehicle.__dict__, "mot_due_date": TODAY + timedelta(days=30)}))
    second = selector.select_due(NOW)[0].reminder

    assert second.reminder_id != first.reminder_id
    assert second.due_date == TODAY + timedelta(days=30)
    rows = store.list_account_reminders("acct-1")
    assert {(row.reminder.reminder_id, row.reminder.is_active) for row in rows} == {
        (first.reminder_id, False),
        (second.reminder_id, True),
    }


def test_unchanged_due_date_keeps_reminder() -> None:
    store = _store_with_vehicle(mot_due_date=TODAY + timedelta(days=14))
    selector = DueSetSelector(store)

    first = selector.select_due(NOW)[0].reminder
    second = selector.select_due(NOW + timedelta(hours=1))[0].reminder

    assert first.reminder_id == second.reminder_id
