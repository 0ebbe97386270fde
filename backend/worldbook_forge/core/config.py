"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

from worldbook_forge.scheduler.types import ParallelConfig

ENV_PREFIX = "WBF_"
DEFAULT_CONFIG_PATH = Path("~/.config/worldbook-forge/config.yaml")

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "db_path"): "db_path",
    ("parallel", "enabled"): "parallel_enabled",
    ("parallel", "concurrency"): "parallel_concurrency",
    ("parallel", "mode"): "parallel_mode",
    ("parallel", "retry_count"): "retry_count",
    ("parallel", "retry_delay_ms"): "retry_delay_ms",
    ("merge", "incremental"): "incremental_merge",
    ("merge", "duplicate_guard_chars"): "duplicate_guard_chars",
    ("merge", "force_chapter_marker"): "force_chapter_marker",
    ("merge", "chapter_categories"): "chapter_categories",
    ("parser", "filter_tags"): "filter_tags",
    ("duplicates", "batch_threshold"): "duplicate_batch_threshold",
    ("history", "max_records"): "history_max_records",
    ("rolls", "max_per_index"): "rolls_max_per_index",
    ("pipeline", "max_split_depth"): "max_split_depth",
    ("pipeline", "max_chunk_tokens"): "max_chunk_tokens",
    ("api", "base_url"): "api_base_url",
    ("api", "api_key"): "api_key",
    ("api", "model"): "api_model",
    ("api", "timeout_s"): "api_timeout_s",
    ("api", "max_tokens"): "api_max_tokens",
    ("api", "temperature"): "api_temperature",
}

DEFAULT_CHAPTER_CATEGORIES = ("剧情大纲", "剧情节点", "章节剧情")


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    db_path: Path = Field(default=Path.home() / ".worldbook-forge" / "wbf.db")

    parallel_enabled: bool = True
    parallel_concurrency: int = 3
    parallel_mode: Literal["independent", "batch"] = "independent"
    retry_count: int = 3
    retry_delay_ms: int = Field(default=1000, ge=0)

    incremental_merge: bool = True
    duplicate_guard_chars: int = Field(default=50, ge=0)
    force_chapter_marker: bool = True
    chapter_categories: list[str] = Field(default_factory=lambda: list(DEFAULT_CHAPTER_CATEGORIES))

    filter_tags: str = "thinking,/think"
    duplicate_batch_threshold: int = Field(default=5, ge=1)
    history_max_records: int = Field(default=100, ge=1)
    rolls_max_per_index: int = Field(default=50, ge=1)
    max_split_depth: int = Field(default=2, ge=0)
    max_chunk_tokens: int = Field(default=0, ge=0)

    api_base_url: str = "http://127.0.0.1:5000/v1"
    api_key: str | None = None
    api_model: str = "gpt-4o-mini"
    api_timeout_s: float = 120.0
    api_max_tokens: int = 8192
    api_temperature: float = 0.7

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("db_path", mode="before")
    @classmethod
    def _expand_db_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("db_path must be a path or string")

    @field_validator("chapter_categories", mode="before")
    @classmethod
    def _split_categories(cls, value: Any) -> Any:
        # env overrides arrive as "a,b,c"
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    def parallel_config(self) -> ParallelConfig:
        """Scheduler configuration derived from the parallel section."""
        return ParallelConfig(
            enabled=self.parallel_enabled,
            concurrency=self.parallel_concurrency,
            mode=self.parallel_mode,
            retry_count=self.retry_count,
            retry_delay_ms=self.retry_delay_ms,
        )

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with WBF_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor for dependency injection."""
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings", "DEFAULT_CHAPTER_CATEGORIES"]
