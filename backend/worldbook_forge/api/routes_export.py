"""Worldbook export routes."""

from __future__ import annotations

from typing import Literal
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Response

from worldbook_forge.api.dependencies import get_pipeline
from worldbook_forge.exporters import get_exporter
from worldbook_forge.pipeline.extraction import WorldbookPipeline

router = APIRouter()


@router.get("/export", summary="Download the worldbook as SillyTavern world info, JSON or text")
async def export_worldbook(
    fmt: Literal["tavern", "json", "txt"] = Query(default="tavern", alias="format"),
    name: str = Query(default="worldbook", min_length=1),
    pipeline: WorldbookPipeline = Depends(get_pipeline),
) -> Response:
    exporter = get_exporter(fmt)
    content = exporter.export(pipeline.worldbook, name=name)
    filename = quote(f"{name}.{exporter.extension}")
    return Response(
        content=content,
        media_type=exporter.media_type,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{filename}"},
    )


__all__ = ["router"]
