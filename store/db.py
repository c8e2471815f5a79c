from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path


@dataclass(frozen=True)
class Database:
    conn: sqlite3.Connection
    lock: threading.Lock


_MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version INTEGER NOT NULL PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS seen_alerts (
          alert_id TEXT NOT NULL PRIMARY KEY,
          seen_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS seen_alerts_seen_at_idx ON seen_alerts(seen_at);
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS cycles (
          cycle_id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
          feed_url TEXT NOT NULL,
          state TEXT NOT NULL,
          started_at TEXT NOT NULL,
          finished_at TEXT NOT NULL,
          entries INTEGER NOT NULL DEFAULT 0,
          emitted INTEGER NOT NULL DEFAULT 0,
          duplicates INTEGER NOT NULL DEFAULT 0,
          filtered INTEGER NOT NULL DEFAULT 0,
          failed INTEGER NOT NULL DEFAULT 0,
          error TEXT NULL
        );

        CREATE INDEX IF NOT EXISTS cycles_started_at_idx ON cycles(started_at);
        """,
    ),
]


def open_database(path: Path | str) -> Database:
    if str(path) != ":memory:":
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=5000;")
    _apply_migrations(conn)
    return Database(conn=conn, lock=threading.Lock())


def _apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER NOT NULL PRIMARY KEY);"
    )
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) AS v FROM schema_migrations;"
    ).fetchone()
    current_version = int(row["v"])

    for version, sql in _MIGRATIONS:
        if version <= current_version:
            continue
        conn.executescript(sql)
        conn.execute("INSERT INTO schema_migrations(version) VALUES (?);", (version,))
        conn.commit()


def _iso(ts: datetime) -> str:
    return ts.astimezone(tz=UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _parse_iso(ts: str) -> datetime:
    if ts.endswith("Z"):
        return datetime.fromisoformat(ts.removesuffix("Z") + "+00:00")
    return datetime.fromisoformat(ts)


class SeenStore:
    """sqlite-backed copy of the dedup seen set, keyed by alert id."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def load(self) -> dict[str, datetime]:
        with self._db.lock:
            rows = self._db.conn.execute(
                "SELECT alert_id, seen_at FROM seen_alerts;"
            ).fetchall()
        return {str(row["alert_id"]): _parse_iso(str(row["seen_at"])) for row in rows}

    def add(self, alert_id: str, seen_at: datetime) -> None:
        with self._db.lock:
            self._db.conn.execute(
                "INSERT OR REPLACE INTO seen_alerts(alert_id, seen_at) VALUES (?, ?);",
                (alert_id, _iso(seen_at)),
            )
            self._db.conn.commit()

    def remove(self, alert_id: str) -> None:
        with self._db.lock:
            self._db.conn.execute(
                "DELETE FROM seen_alerts WHERE alert_id = ?;", (alert_id,)
            )
            self._db.conn.commit()

    def delete_older_than(self, cutoff: datetime) -> int:
        with self._db.lock:
            cur = self._db.conn.execute(
                "DELETE FROM seen_alerts WHERE seen_at <= ?;", (_iso(cutoff),)
            )
            self._db.conn.commit()
        return cur.rowcount
