"""Extraction routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from worldbook_forge.api.dependencies import get_pipeline
from worldbook_forge.core.errors import AbortedError
from worldbook_forge.core.logging import get_logger
from worldbook_forge.merge.engine import count_entries
from worldbook_forge.models.dto import ExtractRequest, ExtractResponse
from worldbook_forge.models.entities import Chunk
from worldbook_forge.pipeline.extraction import WorldbookPipeline

router = APIRouter()
logger = get_logger(__name__)


@router.post("/extract", response_model=ExtractResponse, summary="Extract and merge a batch of chunks")
async def extract(
    request: ExtractRequest,
    pipeline: WorldbookPipeline = Depends(get_pipeline),
) -> ExtractResponse:
    chunks = [
        Chunk(index=payload.index if payload.index is not None else position, title=payload.title, content=payload.content)
        for position, payload in enumerate(request.chunks)
    ]
    try:
        report = await pipeline.run(chunks, incremental=request.incremental, resume=request.resume)
    except AbortedError as exc:
        logger.warning("Extraction aborted by request")
        raise HTTPException(status_code=409, detail="Extraction aborted") from exc
    return ExtractResponse(**report.to_dict(), entry_count=count_entries(pipeline.worldbook))


__all__ = ["router"]
