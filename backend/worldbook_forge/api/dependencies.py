"""Shared FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from worldbook_forge.core.config import Settings, get_settings
from worldbook_forge.db.history import HistoryStore
from worldbook_forge.db.rolls import RollStore
from worldbook_forge.db.sqlite import SQLiteDatabase
from worldbook_forge.db.state import StateStore
from worldbook_forge.llm.client import ModelClient, OpenAICompatClient
from worldbook_forge.pipeline.extraction import WorldbookPipeline

_DB: SQLiteDatabase | None = None
_MODEL: ModelClient | None = None
_PIPELINE: WorldbookPipeline | None = None


@lru_cache(maxsize=1)
def get_app_settings() -> Settings:
    return get_settings()


def get_database() -> SQLiteDatabase:
    global _DB
    if _DB is None:
        settings = get_app_settings()
        db = SQLiteDatabase(settings.db_path)
        db.ensure_schema()
        _DB = db
    return _DB


def get_history_store() -> HistoryStore:
    return HistoryStore(get_database(), max_records=get_app_settings().history_max_records)


def get_roll_store() -> RollStore:
    return RollStore(get_database(), max_per_index=get_app_settings().rolls_max_per_index)


def get_state_store() -> StateStore:
    return StateStore(get_database())


def get_model_client() -> ModelClient:
    global _MODEL
    if _MODEL is None:
        _MODEL = OpenAICompatClient.from_settings(get_app_settings())
    return _MODEL


def set_model_client(model: ModelClient | None) -> None:
    """Swap the model collaborator; the pipeline is rebuilt on next access."""
    global _MODEL, _PIPELINE
    _MODEL = model
    _PIPELINE = None


def get_pipeline() -> WorldbookPipeline:
    global _PIPELINE
    if _PIPELINE is None:
        _PIPELINE = WorldbookPipeline(
            model=get_model_client(),
            settings=get_app_settings(),
            history_store=get_history_store(),
            roll_store=get_roll_store(),
            state_store=get_state_store(),
        )
        _PIPELINE.restore_state()
    return _PIPELINE


def reset_dependencies() -> None:
    """Drop every cached singleton, closing the database."""
    global _DB, _MODEL, _PIPELINE
    if _DB is not None:
        _DB.close()
    _DB = None
    _MODEL = None
    _PIPELINE = None
    get_app_settings.cache_clear()
    get_settings.cache_clear()


__all__ = [
    "get_app_settings",
    "get_database",
    "get_history_store",
    "get_roll_store",
    "get_state_store",
    "get_model_client",
    "set_model_client",
    "get_pipeline",
    "reset_dependencies",
]
