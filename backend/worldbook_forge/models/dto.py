"""Pydantic DTOs exposed via API."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ChunkPayload(BaseModel):
    index: int | None = Field(default=None, description="Memory index; defaults to the position in the request")
    title: str = ""
    content: str


class ExtractRequest(BaseModel):
    chunks: list[ChunkPayload] = Field(min_length=1)
    incremental: bool | None = Field(default=None, description="Override the configured merge mode")
    resume: bool = Field(default=False, description="Skip chunks already merged in the saved state")


class ChangedEntryResponse(BaseModel):
    type: Literal["add", "modify", "delete"]
    category: str
    entryName: str


class ExtractResponse(BaseModel):
    completed: int
    failed: list[int]
    skipped: list[int] = Field(default_factory=list)
    errors: dict[int, str]
    changes: dict[int, list[ChangedEntryResponse]]
    entry_count: int


class WorldbookResponse(BaseModel):
    worldbook: dict[str, dict[str, Any]]
    entry_count: int


class HistoryItem(BaseModel):
    id: int
    memory_index: int
    memory_title: str
    changed_entries: list[ChangedEntryResponse]
    timestamp: int


class RollbackResponse(BaseModel):
    history_id: int
    worldbook: dict[str, dict[str, Any]]
    entry_count: int


class DuplicatesRequest(BaseModel):
    category: str
    apply: bool = Field(default=False, description="Merge confirmed groups into the worldbook")


class DuplicateGroupResponse(BaseModel):
    names: list[str]
    main_name: str


class DuplicatesResponse(BaseModel):
    category: str
    pairs: int
    groups: list[DuplicateGroupResponse]
    changes: list[ChangedEntryResponse]


class RollRequest(BaseModel):
    title: str = ""
    content: str


class RollResponse(BaseModel):
    id: int | None
    memory_index: int
    timestamp: int
    result: dict[str, dict[str, Any]]


class ApplyRollResponse(BaseModel):
    roll_id: int
    changes: list[ChangedEntryResponse]
    entry_count: int


class AbortResponse(BaseModel):
    status: Literal["aborted"] = "aborted"


class EntryRerollRequest(BaseModel):
    instructions: str = Field(default="", description="Extra requirements appended to the prompt")
    apply: bool = Field(default=False, description="Overwrite the entry in the worldbook")


class EntryRerollResponse(BaseModel):
    category: str
    entry_name: str
    entry: dict[str, Any]
    changes: list[ChangedEntryResponse]


class StateResponse(BaseModel):
    saved: bool
    processed_indices: list[int]
    failed_indices: list[int]
    entry_count: int
    timestamp: int | None = None


__all__ = [
    "ChunkPayload",
    "ExtractRequest",
    "ExtractResponse",
    "ChangedEntryResponse",
    "WorldbookResponse",
    "HistoryItem",
    "RollbackResponse",
    "DuplicatesRequest",
    "DuplicatesResponse",
    "DuplicateGroupResponse",
    "RollRequest",
    "RollResponse",
    "ApplyRollResponse",
    "AbortResponse",
    "EntryRerollRequest",
    "EntryRerollResponse",
    "StateResponse",
]
