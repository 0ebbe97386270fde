"""Administrative routes for Worldbook Forge."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from worldbook_forge.api.dependencies import get_pipeline
from worldbook_forge.core.metrics import metrics_response
from worldbook_forge.models.dto import AbortResponse
from worldbook_forge.pipeline.extraction import WorldbookPipeline

router = APIRouter()


@router.post("/abort", response_model=AbortResponse, summary="Abort running extraction and duplicate checks")
async def abort(pipeline: WorldbookPipeline = Depends(get_pipeline)) -> AbortResponse:
    pipeline.abort()
    return AbortResponse()


@router.get("/metrics", summary="Prometheus metrics")
async def get_metrics():
    return metrics_response()


__all__ = ["router"]
