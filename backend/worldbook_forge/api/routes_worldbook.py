"""Worldbook, history and duplicate routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from worldbook_forge.api.dependencies import get_history_store, get_pipeline, get_state_store
from worldbook_forge.core.errors import AbortedError, ParseError, ProviderError, RecordNotFoundError, WorldbookError
from worldbook_forge.db.history import HistoryStore
from worldbook_forge.db.state import StateStore
from worldbook_forge.merge.engine import count_entries
from worldbook_forge.models.dto import (
    DuplicateGroupResponse,
    DuplicatesRequest,
    DuplicatesResponse,
    EntryRerollRequest,
    EntryRerollResponse,
    HistoryItem,
    RollbackResponse,
    StateResponse,
    WorldbookResponse,
)
from worldbook_forge.models.entities import HistoryRecord
from worldbook_forge.pipeline.extraction import WorldbookPipeline

router = APIRouter()


@router.get("/worldbook", response_model=WorldbookResponse, summary="Current merged worldbook")
async def get_worldbook(pipeline: WorldbookPipeline = Depends(get_pipeline)) -> WorldbookResponse:
    return WorldbookResponse(worldbook=pipeline.worldbook, entry_count=count_entries(pipeline.worldbook))


@router.get("/history", response_model=list[HistoryItem], summary="List merge history, newest first")
async def list_history(
    memory_index: int | None = Query(default=None),
    store: HistoryStore = Depends(get_history_store),
) -> list[HistoryItem]:
    records = store.list_all() if memory_index is None else store.list_by_index(memory_index)
    return [_record_to_item(record) for record in records]


@router.post("/history/{history_id}/rollback", response_model=RollbackResponse, summary="Restore pre-merge state")
async def rollback(history_id: int, pipeline: WorldbookPipeline = Depends(get_pipeline)) -> RollbackResponse:
    try:
        worldbook = pipeline.rollback(history_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail="History record not found") from exc
    return RollbackResponse(history_id=history_id, worldbook=worldbook, entry_count=count_entries(worldbook))


@router.post("/duplicates", response_model=DuplicatesResponse, summary="Find and optionally merge aliased entries")
async def find_duplicates(
    request: DuplicatesRequest,
    pipeline: WorldbookPipeline = Depends(get_pipeline),
) -> DuplicatesResponse:
    if request.category not in pipeline.worldbook:
        raise HTTPException(status_code=404, detail="Category not found")
    try:
        resolution, changes = await pipeline.find_duplicates(request.category, apply=request.apply)
    except AbortedError as exc:
        raise HTTPException(status_code=409, detail="Duplicate check aborted") from exc
    except (ParseError, ProviderError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return DuplicatesResponse(
        category=request.category,
        pairs=len(resolution.pairs),
        groups=[DuplicateGroupResponse(**group.to_dict()) for group in resolution.groups],
        changes=[change.to_dict() for change in changes],
    )


@router.post(
    "/worldbook/{category}/{entry_name}/reroll",
    response_model=EntryRerollResponse,
    summary="Regenerate a single entry",
)
async def reroll_entry(
    category: str,
    entry_name: str,
    request: EntryRerollRequest,
    pipeline: WorldbookPipeline = Depends(get_pipeline),
) -> EntryRerollResponse:
    try:
        entry, changes = await pipeline.reroll_entry(
            category, entry_name, instructions=request.instructions, apply=request.apply
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Entry not found") from exc
    except WorldbookError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return EntryRerollResponse(
        category=category,
        entry_name=entry_name,
        entry=entry,
        changes=[change.to_dict() for change in changes],
    )


@router.get("/state", response_model=StateResponse, summary="Saved resume state")
async def get_state(
    pipeline: WorldbookPipeline = Depends(get_pipeline),
    store: StateStore = Depends(get_state_store),
) -> StateResponse:
    saved = store.load()
    return StateResponse(
        saved=saved is not None,
        processed_indices=sorted(pipeline.processed),
        failed_indices=sorted(pipeline.failed),
        entry_count=count_entries(pipeline.worldbook),
        timestamp=saved.timestamp if saved is not None else None,
    )


@router.delete("/state", response_model=StateResponse, summary="Clear the worldbook and saved state")
async def clear_state(pipeline: WorldbookPipeline = Depends(get_pipeline)) -> StateResponse:
    pipeline.clear_state()
    return StateResponse(saved=False, processed_indices=[], failed_indices=[], entry_count=0)


def _record_to_item(record: HistoryRecord) -> HistoryItem:
    return HistoryItem(
        id=record.id,
        memory_index=record.memory_index,
        memory_title=record.memory_title,
        changed_entries=[change.to_dict() for change in record.changed_entries],
        timestamp=record.timestamp,
    )


__all__ = ["router"]
