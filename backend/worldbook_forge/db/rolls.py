"""Append-only store of per-chunk re-generation attempts."""

from __future__ import annotations

import sqlite3

from worldbook_forge.core.logging import get_logger
from worldbook_forge.db.sqlite import SQLiteDatabase, dumps, loads
from worldbook_forge.models.entities import RollRecord

logger = get_logger(__name__)

DEFAULT_MAX_PER_INDEX = 50

_COLUMNS = "id, memory_index, result_json, prompt, response, timestamp"


class RollStore:
    def __init__(self, db: SQLiteDatabase, max_per_index: int = DEFAULT_MAX_PER_INDEX) -> None:
        self.db = db
        self.max_per_index = max_per_index

    def append(self, record: RollRecord) -> int:
        self._enforce_limit(record.memory_index)
        record_id = self.db.insert(
            f"INSERT INTO rolls ({_COLUMNS}) VALUES (NULL, ?, ?, ?, ?, ?)",
            [
                record.memory_index,
                dumps(record.result),
                record.prompt,
                record.response,
                record.timestamp,
            ],
        )
        record.id = record_id
        return record_id

    def get(self, roll_id: int) -> RollRecord | None:
        row = self.db.execute(f"SELECT {_COLUMNS} FROM rolls WHERE id = ?", [roll_id]).fetchone()
        return _row_to_roll(row) if row else None

    def list_by_index(self, memory_index: int) -> list[RollRecord]:
        """Rolls for one chunk, newest first."""
        rows = self.db.query(
            f"SELECT {_COLUMNS} FROM rolls WHERE memory_index = ? ORDER BY timestamp DESC, id DESC",
            [memory_index],
        )
        return [_row_to_roll(row) for row in rows]

    def clear_index(self, memory_index: int) -> None:
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM rolls WHERE memory_index = ?", [memory_index])

    def clear(self) -> None:
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM rolls")

    def _enforce_limit(self, memory_index: int) -> None:
        row = self.db.execute("SELECT COUNT(*) AS count FROM rolls WHERE memory_index = ?", [memory_index]).fetchone()
        overflow = (int(row["count"]) if row else 0) - self.max_per_index + 1
        if overflow <= 0:
            return
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                DELETE FROM rolls WHERE id IN (
                  SELECT id FROM rolls WHERE memory_index = ? ORDER BY timestamp ASC, id ASC LIMIT ?
                )
                """,
                [memory_index, overflow],
            )
        logger.info(
            "Evicted %s old roll(s) for chunk %s",
            overflow,
            memory_index,
            extra={"ctx_index": memory_index, "ctx_evicted": overflow},
        )


def _row_to_roll(row: sqlite3.Row) -> RollRecord:
    return RollRecord(
        id=row["id"],
        memory_index=row["memory_index"],
        timestamp=row["timestamp"],
        result=loads(row["result_json"]),
        prompt=row["prompt"],
        response=row["response"],
    )


__all__ = ["RollStore", "DEFAULT_MAX_PER_INDEX"]
