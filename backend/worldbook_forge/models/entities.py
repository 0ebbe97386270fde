"""Internal dataclasses for chunks, history and roll records."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Literal

KEYWORDS_FIELD = "关键词"
CONTENT_FIELD = "内容"
# field names models emit interchangeably with the canonical ones
KEYWORD_ALIASES = ("关键字", "keywords")
CONTENT_ALIASES = ("content",)

Entry = Dict[str, Any]
Category = Dict[str, Entry]
Worldbook = Dict[str, Category]

ChangeType = Literal["add", "modify", "delete"]


@dataclass(frozen=True, slots=True)
class Chunk:
    index: int
    title: str
    content: str


@dataclass(frozen=True, slots=True)
class ChangedEntry:
    type: ChangeType
    category: str
    entry_name: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "category": self.category, "entryName": self.entry_name}


@dataclass(slots=True)
class HistoryRecord:
    memory_index: int
    memory_title: str
    previous_worldbook: Worldbook
    new_worldbook: Worldbook
    changed_entries: list[ChangedEntry]
    timestamp: int
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "memory_index": self.memory_index,
            "memory_title": self.memory_title,
            "previous_worldbook": self.previous_worldbook,
            "new_worldbook": self.new_worldbook,
            "changed_entries": [change.to_dict() for change in self.changed_entries],
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class RollRecord:
    memory_index: int
    timestamp: int
    result: Worldbook
    prompt: str
    response: str
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SavedState:
    """Live worldbook plus chunk bookkeeping, enough to resume an interrupted run."""

    worldbook: Worldbook = field(default_factory=dict)
    processed_indices: list[int] = field(default_factory=list)
    failed_indices: list[int] = field(default_factory=list)
    timestamp: int = 0


@dataclass(slots=True)
class DuplicateGroup:
    names: list[str]
    main_name: str

    def to_dict(self) -> dict[str, Any]:
        return {"names": list(self.names), "main_name": self.main_name}


@dataclass(slots=True)
class PairVerdict:
    """Model judgement for one candidate pair."""

    pair_index: int
    name_a: str
    name_b: str
    is_same: bool
    main_name: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class ResolutionResult:
    pairs: list[tuple[str, str]] = field(default_factory=list)
    verdicts: list[PairVerdict] = field(default_factory=list)
    groups: list[DuplicateGroup] = field(default_factory=list)


__all__ = [
    "KEYWORDS_FIELD",
    "CONTENT_FIELD",
    "KEYWORD_ALIASES",
    "CONTENT_ALIASES",
    "Entry",
    "Category",
    "Worldbook",
    "ChangeType",
    "Chunk",
    "ChangedEntry",
    "HistoryRecord",
    "RollRecord",
    "SavedState",
    "DuplicateGroup",
    "PairVerdict",
    "ResolutionResult",
]
