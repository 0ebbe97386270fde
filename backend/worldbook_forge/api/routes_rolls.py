"""Roll (re-generation) routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from worldbook_forge.api.dependencies import get_pipeline, get_roll_store
from worldbook_forge.core.errors import RecordNotFoundError, WorldbookError
from worldbook_forge.db.rolls import RollStore
from worldbook_forge.merge.engine import count_entries
from worldbook_forge.models.dto import ApplyRollResponse, RollRequest, RollResponse
from worldbook_forge.models.entities import Chunk, RollRecord
from worldbook_forge.pipeline.extraction import WorldbookPipeline

router = APIRouter()


@router.get("/{memory_index}", response_model=list[RollResponse], summary="List rolls for a chunk, newest first")
async def list_rolls(memory_index: int, store: RollStore = Depends(get_roll_store)) -> list[RollResponse]:
    return [_roll_to_response(record) for record in store.list_by_index(memory_index)]


@router.post("/{memory_index}", response_model=RollResponse, summary="Regenerate a chunk as a new roll")
async def create_roll(
    memory_index: int,
    request: RollRequest,
    pipeline: WorldbookPipeline = Depends(get_pipeline),
) -> RollResponse:
    chunk = Chunk(index=memory_index, title=request.title, content=request.content)
    try:
        record = await pipeline.reroll(chunk)
    except WorldbookError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return _roll_to_response(record)


@router.post("/apply/{roll_id}", response_model=ApplyRollResponse, summary="Merge a stored roll into the worldbook")
async def apply_roll(roll_id: int, pipeline: WorldbookPipeline = Depends(get_pipeline)) -> ApplyRollResponse:
    try:
        changes = await pipeline.apply_roll(roll_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Roll not found") from exc
    return ApplyRollResponse(
        roll_id=roll_id,
        changes=[change.to_dict() for change in changes],
        entry_count=count_entries(pipeline.worldbook),
    )


def _roll_to_response(record: RollRecord) -> RollResponse:
    return RollResponse(
        id=record.id,
        memory_index=record.memory_index,
        timestamp=record.timestamp,
        result=record.result,
    )


__all__ = ["router"]
