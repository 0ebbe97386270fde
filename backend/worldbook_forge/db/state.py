"""Single-slot snapshot of the live worldbook for resuming after a restart."""

from __future__ import annotations

from worldbook_forge.core.logging import get_logger
from worldbook_forge.db.sqlite import SQLiteDatabase, dumps, loads
from worldbook_forge.models.entities import SavedState
from worldbook_forge.utils.time import now_ms

logger = get_logger(__name__)

DEFAULT_KEY = "current"


class StateStore:
    """Keep one :class:`SavedState` per ``key``; every save overwrites the last."""

    def __init__(self, db: SQLiteDatabase, key: str = DEFAULT_KEY) -> None:
        self.db = db
        self.key = key

    def save(self, state: SavedState) -> None:
        if not state.timestamp:
            state.timestamp = now_ms()
        with self.db.transaction() as cursor:
            cursor.execute(
                "INSERT OR REPLACE INTO state (key, worldbook_json, processed_json, failed_json, timestamp) "
                "VALUES (?, ?, ?, ?, ?)",
                [
                    self.key,
                    dumps(state.worldbook),
                    dumps(sorted(set(state.processed_indices))),
                    dumps(sorted(set(state.failed_indices))),
                    state.timestamp,
                ],
            )

    def load(self) -> SavedState | None:
        row = self.db.execute(
            "SELECT worldbook_json, processed_json, failed_json, timestamp FROM state WHERE key = ?",
            [self.key],
        ).fetchone()
        if row is None:
            return None
        return SavedState(
            worldbook=loads(row["worldbook_json"]),
            processed_indices=list(loads(row["processed_json"])),
            failed_indices=list(loads(row["failed_json"])),
            timestamp=row["timestamp"],
        )

    def has_state(self) -> bool:
        row = self.db.execute("SELECT 1 FROM state WHERE key = ?", [self.key]).fetchone()
        return row is not None

    def clear(self) -> None:
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM state WHERE key = ?", [self.key])
        logger.info("Cleared saved state %s", self.key, extra={"ctx_state_key": self.key})


__all__ = ["StateStore", "DEFAULT_KEY"]
