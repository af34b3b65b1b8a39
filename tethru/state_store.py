from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from tethru.models import CalendarSettings, serialize_datetime, utc_now


def _utc_now() -> str:
    return utc_now().isoformat()


class StateStore:
    """SQLite-backed persistence for calendar settings, tokens, mappings and run history."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    yield conn
            finally:
                conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS calendar_settings (
            user_id TEXT PRIMARY KEY,
            connected INTEGER NOT NULL DEFAULT 0,
            sync_tasks INTEGER NOT NULL DEFAULT 1,
            sync_birthdays INTEGER NOT NULL DEFAULT 1,
            sync_important_dates INTEGER NOT NULL DEFAULT 1,
            sync_follow_ups INTEGER NOT NULL DEFAULT 1,
            last_sync_at TEXT,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS calendar_tokens (
            user_id TEXT PRIMARY KEY,
            ciphertext TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS calendar_mappings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            source_type TEXT NOT NULL,
            source_id TEXT NOT NULL,
            important_date_id TEXT NOT NULL DEFAULT '',
            external_event_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (user_id, source_type, source_id, important_date_id)
        );

        CREATE INDEX IF NOT EXISTS idx_calendar_mappings_root
            ON calendar_mappings (user_id, source_id);

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            synced INTEGER NOT NULL,
            errors_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Settings

    def get_settings(self, user_id: str) -> CalendarSettings:
        with self.transaction() as conn:
            row = conn.execute(
                """
                SELECT connected, sync_tasks, sync_birthdays, sync_important_dates,
                       sync_follow_ups, last_sync_at
                FROM calendar_settings
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        if row is None:
            return CalendarSettings()
        return CalendarSettings.from_dict(dict(row))

    def update_settings(self, user_id: str, **changes: Any) -> CalendarSettings:
        unknown = set(changes) - {"connected", "last_sync_at", *CalendarSettings.TOGGLES}
        if unknown:
            raise ValueError(f"Unknown calendar settings: {', '.join(sorted(unknown))}")
        with self.transaction() as conn:
            current = self.get_settings(user_id)
            for key, value in changes.items():
                if value is None and key != "last_sync_at":
                    continue
                setattr(current, key, value if key == "last_sync_at" else bool(value))
            conn.execute(
                """
                INSERT INTO calendar_settings(
                    user_id, connected, sync_tasks, sync_birthdays, sync_important_dates,
                    sync_follow_ups, last_sync_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    connected = excluded.connected,
                    sync_tasks = excluded.sync_tasks,
                    sync_birthdays = excluded.sync_birthdays,
                    sync_important_dates = excluded.sync_important_dates,
                    sync_follow_ups = excluded.sync_follow_ups,
                    last_sync_at = excluded.last_sync_at,
                    updated_at = excluded.updated_at
                """,
                (
                    user_id,
                    int(current.connected),
                    int(current.sync_tasks),
                    int(current.sync_birthdays),
                    int(current.sync_important_dates),
                    int(current.sync_follow_ups),
                    serialize_datetime(current.last_sync_at),
                    _utc_now(),
                ),
            )
        return current

    # Encrypted tokens

    def save_token_ciphertext(self, user_id: str, ciphertext: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO calendar_tokens(user_id, ciphertext, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    ciphertext = excluded.ciphertext,
                    updated_at = excluded.updated_at
                """,
                (user_id, ciphertext, _utc_now()),
            )

    def get_token_ciphertext(self, user_id: str) -> str | None:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT ciphertext FROM calendar_tokens WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return str(row["ciphertext"]) if row else None

    def delete_token_ciphertext(self, user_id: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM calendar_tokens WHERE user_id = ?", (user_id,))

    # Sync run history

    def start_sync_run(self, *, user_id: str, trigger: str, message: str = "running") -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs(user_id, run_at, trigger, status, message, duration_ms, synced, errors_json)
                VALUES (?, ?, ?, 'running', ?, 0, 0, '[]')
                """,
                (user_id, _utc_now(), trigger, message),
            )
            return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        synced: int,
        errors: list[str],
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE sync_runs
                SET status = ?, message = ?, duration_ms = ?, synced = ?, errors_json = ?
                WHERE id = ?
                """,
                (
                    str(status),
                    str(message),
                    int(duration_ms),
                    int(synced),
                    json.dumps(list(errors), ensure_ascii=False),
                    int(run_id),
                ),
            )

    def recent_sync_runs(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT id, run_at, trigger, status, message, duration_ms, synced, errors_json
                FROM sync_runs
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, max(1, limit)),
            ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["errors"] = json.loads(item.pop("errors_json") or "[]")
            output.append(item)
        return output

    # Key/value metadata (pending OAuth state)

    def set_meta(self, key: str, value: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO app_meta(key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (str(key), str(value), _utc_now()),
            )

    def get_meta(self, key: str) -> str | None:
        with self.transaction() as conn:
            row = conn.execute("SELECT value FROM app_meta WHERE key = ?", (str(key),)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def delete_meta(self, key: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM app_meta WHERE key = ?", (str(key),))
