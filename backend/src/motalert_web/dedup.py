from __future__ import annotations

from datetime import datetime, timedelta, timezone

from .models import Channel
from .store import ReminderStore


class DedupGuard:
    """Answers whether a (reminder, channel) pair was already attempted recently.

    Any Message counts regardless of status, so a failed attempt is left to the
    retry sweep instead of being re-sent by the next process sweep.
    """

    def __init__(self, store: ReminderStore, *, window_hours: int = 24) -> None:
        self._store = store
        self._window_hours = window_hours

    def has_recent_attempt(
        self,
        reminder_id: int,
        channel: Channel,
        within_hours: int | None = None,
        now: datetime | None = None,
    ) -> bool:
        hours = self._window_hours if within_hours is None else within_hours
        reference = now or datetime.now(timezone.utc)
        return self._store.has_message_since(reminder_id, channel, reference - timedelta(hours=hours))
