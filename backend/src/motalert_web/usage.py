from __future__ import annotations

import logging
import zlib
from threading import Lock

from .store import ReminderStore, SubscriptionNotFoundError

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64


class UsageAccountant:
    """Counts successful sends against metered subscriptions.

    Every operation on one subscription runs under that subscription's lock
    stripe. ``try_reserve`` holds a slot for an in-flight send so that
    concurrent units of the same account cannot push usage past its ceiling;
    the slot is turned into a real increment by ``record_success`` or dropped
    by ``release``.
    """

    def __init__(self, store: ReminderStore, *, stripes: int = LOCK_STRIPES) -> None:
        self._store = store
        self._locks = tuple(Lock() for _ in range(max(1, stripes)))
        self._reserved: dict[str, int] = {}

    def _lock_for(self, subscription_id: str) -> Lock:
        return self._locks[zlib.crc32(subscription_id.encode("utf-8")) % len(self._locks)]

    def _drop_reservation(self, subscription_id: str) -> None:
        in_flight = self._reserved.get(subscription_id, 0)
        if in_flight > 1:
            self._reserved[subscription_id] = in_flight - 1
        else:
            self._reserved.pop(subscription_id, None)

    def reserved(self, subscription_id: str) -> int:
        with self._lock_for(subscription_id):
            return self._reserved.get(subscription_id, 0)

    def try_reserve(self, subscription_id: str) -> bool:
        with self._lock_for(subscription_id):
            subscription = self._store.get_subscription(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(subscription_id)
            if subscription.usage_ceiling is None:
                return True
            in_flight = self._reserved.get(subscription_id, 0)
            if subscription.usage_count + in_flight >= subscription.usage_ceiling:
                return False
            self._reserved[subscription_id] = in_flight + 1
            return True

    def release(self, subscription_id: str) -> None:
        with self._lock_for(subscription_id):
            self._drop_reservation(subscription_id)

    def record_success(self, subscription_id: str, *, reserved: bool = True) -> int | None:
        with self._lock_for(subscription_id):
            if reserved:
                self._drop_reservation(subscription_id)
            subscription = self._store.get_subscription(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(subscription_id)
            if subscription.usage_ceiling is None:
                return None
            usage = self._store.increment_usage(subscription_id)
            logger.debug("subscription %s usage now %s/%s", subscription_id, usage, subscription.usage_ceiling)
            return usage
