from __future__ import annotations

from collections import deque
from datetime import UTC, datetime

from ingest.pipeline import CycleReport, PipelineState
from store.db import Database


def _iso(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return ts.astimezone(tz=UTC).isoformat().replace("+00:00", "Z")


def record_cycle(db: Database, report: CycleReport) -> None:
    finished_at = report.finished_at or datetime.now(tz=UTC)
    with db.lock:
        db.conn.execute(
            """
            INSERT INTO cycles (
              feed_url, state, started_at, finished_at,
              entries, emitted, duplicates, filtered, failed, error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                report.feed_url,
                report.state.value,
                _iso(report.started_at),
                _iso(finished_at),
                report.entries,
                report.emitted,
                report.duplicates,
                report.filtered,
                len(report.failures),
                report.error,
            ),
        )
        db.conn.commit()


class CycleHealth:
    """Rolling view of recent poll cycles, optionally mirrored to sqlite."""

    def __init__(self, db: Database | None = None, *, history: int = 20) -> None:
        self._db = db
        self._recent: deque[CycleReport] = deque(maxlen=history)
        self.consecutive_failures = 0
        self.last_success_at: datetime | None = None
        self.last_error_at: datetime | None = None
        self.last_error: str | None = None
        self.total_emitted = 0

    def record(self, report: CycleReport) -> None:
        self._recent.append(report)
        self.total_emitted += report.emitted
        if report.state is PipelineState.ERROR_CYCLE:
            self.consecutive_failures += 1
            self.last_error_at = report.finished_at
            self.last_error = report.error
        else:
            self.consecutive_failures = 0
            self.last_success_at = report.finished_at
        if self._db is not None:
            record_cycle(self._db, report)

    def summary(self) -> dict:
        last = self._recent[-1] if self._recent else None
        return {
            "status": self.status,
            "consecutive_failures": self.consecutive_failures,
            "last_success_at": _iso(self.last_success_at),
            "last_error_at": _iso(self.last_error_at),
            "last_error": self.last_error,
            "total_emitted": self.total_emitted,
            "last_cycle": last.to_dict() if last is not None else None,
            "recent_cycles": len(self._recent),
        }

    @property
    def status(self) -> str:
        if not self._recent:
            return "starting"
        return "degraded" if self.consecutive_failures else "ok"
