"""FastAPI application setup for Worldbook Forge."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from worldbook_forge import __version__
from worldbook_forge.api.dependencies import get_app_settings, get_database, get_pipeline
from worldbook_forge.api.routes_admin import router as admin_router
from worldbook_forge.api.routes_export import router as export_router
from worldbook_forge.api.routes_extract import router as extract_router
from worldbook_forge.api.routes_rolls import router as rolls_router
from worldbook_forge.api.routes_worldbook import router as worldbook_router
from worldbook_forge.core.logging import configure_logging

configure_logging()

app = FastAPI(
    title="Worldbook Forge",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://127.0.0.1:5174",
        "http://localhost:5174",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(extract_router, prefix="", tags=["extract"])
app.include_router(worldbook_router, prefix="", tags=["worldbook"])
app.include_router(export_router, prefix="", tags=["export"])
app.include_router(rolls_router, prefix="/rolls", tags=["rolls"])
app.include_router(admin_router, prefix="", tags=["admin"])


@app.on_event("startup")
async def startup() -> None:
    """Warm up core singletons on startup."""
    get_app_settings()
    get_database()
    get_pipeline()


@app.get("/health", tags=["admin"])
def health() -> dict[str, bool]:
    """Simple liveness check."""
    return {"ok": True}
