from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from cadence.errors import NotFoundError
from cadence.models import Event, serialize_datetime, utc_now


logger = logging.getLogger(__name__)


class EventStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            series_id TEXT,
            created_by TEXT NOT NULL,
            start_time TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_series_id ON events(series_id);
        CREATE INDEX IF NOT EXISTS idx_events_created_by ON events(created_by);

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            event_id TEXT NOT NULL,
            actor_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event.from_dict(json.loads(row["payload_json"]))

    def create(self, event: Event) -> Event:
        now = utc_now()
        event.created_at = event.created_at or now
        event.updated_at = now
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO events(id, series_id, created_by, start_time, payload_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.id,
                        event.series_id,
                        event.created_by,
                        serialize_datetime(event.start_time),
                        json.dumps(event.to_dict(), ensure_ascii=False),
                        serialize_datetime(event.created_at),
                        serialize_datetime(event.updated_at),
                    ),
                )
                conn.commit()
        logger.debug("Created event %s", event.id)
        return event

    def save(self, event: Event) -> Event:
        event.updated_at = utc_now()
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE events
                    SET series_id = ?, start_time = ?, payload_json = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        event.series_id,
                        serialize_datetime(event.start_time),
                        json.dumps(event.to_dict(), ensure_ascii=False),
                        serialize_datetime(event.updated_at),
                        event.id,
                    ),
                )
                conn.commit()
                if cursor.rowcount == 0:
                    raise NotFoundError("Event not found")
        logger.debug("Saved event %s", event.id)
        return event

    def find_by_id(self, event_id: str) -> Event | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT payload_json
                    FROM events
                    WHERE id = ?
                    """,
                    (str(event_id),),
                ).fetchone()
        return self._row_to_event(row) if row else None

    def find_by_owner(self, owner_id: str) -> list[Event]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT payload_json
                    FROM events
                    WHERE created_by = ?
                    ORDER BY start_time ASC, id ASC
                    """,
                    (str(owner_id),),
                ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def find_by_series_id(self, series_id: str) -> list[Event]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT payload_json
                    FROM events
                    WHERE series_id = ?
                    ORDER BY start_time ASC, id ASC
                    """,
                    (str(series_id),),
                ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def delete_one(self, event_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM events WHERE id = ?", (str(event_id),))
                conn.commit()
                return cursor.rowcount > 0

    def delete_by_series_id(self, series_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM events WHERE series_id = ?", (str(series_id),))
                conn.commit()
                return int(cursor.rowcount)

    def record_audit_event(
        self,
        *,
        event_id: str,
        action: str,
        details: dict[str, Any],
        actor_id: str = "",
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(created_at, event_id, actor_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        serialize_datetime(utc_now()),
                        str(event_id),
                        str(actor_id or ""),
                        action,
                        json.dumps(details, ensure_ascii=False),
                    ),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, event_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if event_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, event_id, actor_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, event_id, actor_id, action, details_json
                        FROM audit_events
                        WHERE event_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(event_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
