from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from store.db import SeenStore


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

DEFAULT_RETENTION = timedelta(days=7)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class Deduplicator:
    """Tracks alert ids already emitted, forgetting them after ``retention``.

    Every read and write goes through one lock so concurrent entry workers
    cannot both claim the same id.
    """

    def __init__(
        self,
        retention: timedelta = DEFAULT_RETENTION,
        *,
        store: SeenStore | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        if retention <= timedelta(0):
            raise ValueError("retention must be positive")
        self._retention = retention
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._seen: dict[str, datetime] = {}
        if store is not None:
            self._seen.update(store.load())
            self.evict_expired()

    @property
    def retention(self) -> timedelta:
        return self._retention

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def __contains__(self, alert_id: object) -> bool:
        if not isinstance(alert_id, str):
            return False
        return not self.is_new(alert_id)

    def _expired(self, seen_at: datetime, now: datetime) -> bool:
        return now - seen_at >= self._retention

    def _drop_if_expired(self, alert_id: str, now: datetime) -> None:
        seen_at = self._seen.get(alert_id)
        if seen_at is not None and self._expired(seen_at, now):
            del self._seen[alert_id]

    def is_new(self, alert_id: str) -> bool:
        now = self._clock()
        with self._lock:
            self._drop_if_expired(alert_id, now)
            return alert_id not in self._seen

    def mark_seen(self, alert_id: str) -> None:
        now = self._clock()
        with self._lock:
            self._seen[alert_id] = now
        if self._store is not None:
            self._store.add(alert_id, now)

    def claim(self, alert_id: str) -> bool:
        """Atomically check and mark; False means another caller got there first."""
        now = self._clock()
        with self._lock:
            self._drop_if_expired(alert_id, now)
            if alert_id in self._seen:
                return False
            self._seen[alert_id] = now
        if self._store is not None:
            self._store.add(alert_id, now)
        return True

    def release(self, alert_id: str) -> None:
        with self._lock:
            self._seen.pop(alert_id, None)
        if self._store is not None:
            self._store.remove(alert_id)

    def evict_expired(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        with self._lock:
            expired = [
                alert_id
                for alert_id, seen_at in self._seen.items()
                if self._expired(seen_at, now)
            ]
            for alert_id in expired:
                del self._seen[alert_id]
        if self._store is not None:
            self._store.delete_older_than(now - self._retention)
        if expired:
            logger.debug("evicted %d expired alert ids", len(expired))
        return len(expired)
