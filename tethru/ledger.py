from __future__ import annotations

import sqlite3
from typing import Any

from tethru.models import CalendarMapping, SourceType, parse_iso_datetime, utc_now
from tethru.state_store import StateStore


class LedgerError(RuntimeError):
    """Raised when the mapping table cannot be read or written."""


_SELECT_COLUMNS = "id, source_type, source_id, important_date_id, external_event_id, created_at"


def _row_to_mapping(row: sqlite3.Row) -> CalendarMapping:
    return CalendarMapping(
        id=int(row["id"]),
        source_type=SourceType(row["source_type"]),
        source_id=str(row["source_id"]),
        important_date_id=str(row["important_date_id"]) or None,
        external_event_id=str(row["external_event_id"]),
        created_at=parse_iso_datetime(row["created_at"]) or utc_now(),
    )


class MappingLedger:
    """One user's CRM-fact -> external-event associations.

    The ``(source_type, source_id, important_date_id)`` tuple is unique; the
    important-date id only participates for ``importantDate`` rows and is
    stored as an empty string otherwise.
    """

    def __init__(self, state_store: StateStore, user_id: str) -> None:
        self.state_store = state_store
        self.user_id = user_id

    def _query(self, sql: str, params: tuple[Any, ...]) -> list[sqlite3.Row]:
        try:
            with self.state_store.transaction() as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise LedgerError(f"Mapping lookup failed: {exc}") from exc

    def find_by_source(
        self,
        source_type: SourceType,
        source_id: str,
        important_date_id: str | None = None,
    ) -> CalendarMapping | None:
        source_type = SourceType(source_type)
        sub_id = (important_date_id or "") if source_type is SourceType.IMPORTANT_DATE else ""
        rows = self._query(
            f"""
            SELECT {_SELECT_COLUMNS}
            FROM calendar_mappings
            WHERE user_id = ? AND source_type = ? AND source_id = ? AND important_date_id = ?
            """,
            (self.user_id, source_type.value, source_id, sub_id),
        )
        return _row_to_mapping(rows[0]) if rows else None

    def find_by_root_id(self, source_id: str) -> list[CalendarMapping]:
        rows = self._query(
            f"""
            SELECT {_SELECT_COLUMNS}
            FROM calendar_mappings
            WHERE user_id = ? AND source_id = ?
            ORDER BY id
            """,
            (self.user_id, source_id),
        )
        return [_row_to_mapping(row) for row in rows]

    def all(self) -> list[CalendarMapping]:
        rows = self._query(
            f"SELECT {_SELECT_COLUMNS} FROM calendar_mappings WHERE user_id = ? ORDER BY id",
            (self.user_id,),
        )
        return [_row_to_mapping(row) for row in rows]

    def insert(
        self,
        source_type: SourceType,
        source_id: str,
        external_event_id: str,
        important_date_id: str | None = None,
    ) -> CalendarMapping:
        source_type = SourceType(source_type)
        sub_id = (important_date_id or "") if source_type is SourceType.IMPORTANT_DATE else ""
        created_at = utc_now()
        try:
            with self.state_store.transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO calendar_mappings(
                        user_id, source_type, source_id, important_date_id, external_event_id, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (self.user_id, source_type.value, source_id, sub_id, external_event_id, created_at.isoformat()),
                )
                mapping_id = int(cursor.lastrowid)
        except sqlite3.IntegrityError as exc:
            raise LedgerError(
                f"Mapping already exists for {source_type.value}:{source_id}{':' + sub_id if sub_id else ''}"
            ) from exc
        except sqlite3.Error as exc:
            raise LedgerError(f"Mapping insert failed: {exc}") from exc
        return CalendarMapping(
            id=mapping_id,
            source_type=source_type,
            source_id=source_id,
            important_date_id=sub_id or None,
            external_event_id=external_event_id,
            created_at=created_at,
        )

    def delete(self, mapping_id: int) -> None:
        try:
            with self.state_store.transaction() as conn:
                conn.execute(
                    "DELETE FROM calendar_mappings WHERE user_id = ? AND id = ?",
                    (self.user_id, int(mapping_id)),
                )
        except sqlite3.Error as exc:
            raise LedgerError(f"Mapping delete failed: {exc}") from exc

    def delete_all(self) -> int:
        try:
            with self.state_store.transaction() as conn:
                cursor = conn.execute("DELETE FROM calendar_mappings WHERE user_id = ?", (self.user_id,))
                return int(cursor.rowcount)
        except sqlite3.Error as exc:
            raise LedgerError(f"Mapping delete failed: {exc}") from exc
