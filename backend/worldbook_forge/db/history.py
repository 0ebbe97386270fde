"""Append-only history of worldbook merges."""

from __future__ import annotations

import sqlite3

from worldbook_forge.core.logging import get_logger
from worldbook_forge.db.sqlite import SQLiteDatabase, dumps, loads
from worldbook_forge.models.entities import ChangedEntry, HistoryRecord

logger = get_logger(__name__)

DEFAULT_MAX_RECORDS = 100

_COLUMNS = "id, memory_index, memory_title, previous_json, new_json, changes_json, timestamp"


class HistoryStore:
    """Persist :class:`HistoryRecord` rows; the oldest rows are evicted past ``max_records``."""

    def __init__(self, db: SQLiteDatabase, max_records: int = DEFAULT_MAX_RECORDS) -> None:
        self.db = db
        self.max_records = max_records

    def append(self, record: HistoryRecord) -> int:
        self._enforce_limit()
        record_id = self.db.insert(
            f"INSERT INTO history ({_COLUMNS}) VALUES (NULL, ?, ?, ?, ?, ?, ?)",
            [
                record.memory_index,
                record.memory_title,
                dumps(record.previous_worldbook),
                dumps(record.new_worldbook),
                dumps([change.to_dict() for change in record.changed_entries]),
                record.timestamp,
            ],
        )
        record.id = record_id
        return record_id

    def get(self, record_id: int) -> HistoryRecord | None:
        row = self.db.execute(f"SELECT {_COLUMNS} FROM history WHERE id = ?", [record_id]).fetchone()
        return _row_to_record(row) if row else None

    def list_by_index(self, memory_index: int) -> list[HistoryRecord]:
        rows = self.db.query(
            f"SELECT {_COLUMNS} FROM history WHERE memory_index = ? ORDER BY timestamp DESC, id DESC",
            [memory_index],
        )
        return [_row_to_record(row) for row in rows]

    def list_all(self) -> list[HistoryRecord]:
        rows = self.db.query(f"SELECT {_COLUMNS} FROM history ORDER BY timestamp DESC, id DESC")
        return [_row_to_record(row) for row in rows]

    def count(self) -> int:
        row = self.db.execute("SELECT COUNT(*) AS count FROM history").fetchone()
        return int(row["count"]) if row else 0

    def clear(self) -> None:
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM history")

    def _enforce_limit(self) -> None:
        overflow = self.count() - self.max_records + 1
        if overflow <= 0:
            return
        with self.db.transaction() as cursor:
            cursor.execute(
                "DELETE FROM history WHERE id IN (SELECT id FROM history ORDER BY timestamp ASC, id ASC LIMIT ?)",
                [overflow],
            )
        logger.info("Evicted %s old history record(s)", overflow, extra={"ctx_evicted": overflow})


def _row_to_record(row: sqlite3.Row) -> HistoryRecord:
    return HistoryRecord(
        id=row["id"],
        memory_index=row["memory_index"],
        memory_title=row["memory_title"],
        previous_worldbook=loads(row["previous_json"]),
        new_worldbook=loads(row["new_json"]),
        changed_entries=[
            ChangedEntry(change["type"], change["category"], change["entryName"])
            for change in loads(row["changes_json"])
        ],
        timestamp=row["timestamp"],
    )


__all__ = ["HistoryStore", "DEFAULT_MAX_RECORDS"]
