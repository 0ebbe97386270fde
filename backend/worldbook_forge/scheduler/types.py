"""Scheduler configuration and task bookkeeping structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10


class ParallelConfig(BaseModel):
    """Validated scheduler settings.

    ``concurrency`` is clamped into ``[1, 10]`` and ``retry_count`` to at
    least one attempt. Serial execution is not a mode: it is chosen
    automatically when ``enabled`` is false or there is at most one task.
    """

    enabled: bool = True
    concurrency: int = 3
    mode: Literal["independent", "batch"] = "independent"
    retry_count: int = 3
    retry_delay_ms: int = Field(default=1000, ge=0)

    @field_validator("concurrency", mode="after")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, value))

    @field_validator("retry_count", mode="after")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        return max(1, value)


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass(slots=True)
class TaskState:
    """Per-index status record owned by the scheduler."""

    index: int
    status: TaskStatus = TaskStatus.PENDING
    attempt: int = 0
    last_updated: int = 0
    result: Any = None
    error: BaseException | None = None


@dataclass(slots=True)
class ProgressEvent:
    index: int
    status: TaskStatus
    attempt: int = 0
    result: Any = None
    error: BaseException | None = None


@dataclass(slots=True)
class BatchOutcome:
    """Results and errors aligned with the input order; ``None`` where absent."""

    results: list[Any] = field(default_factory=list)
    errors: list[BaseException | None] = field(default_factory=list)

    @property
    def failed_indices(self) -> list[int]:
        return [idx for idx, error in enumerate(self.errors) if error is not None]


__all__ = [
    "MIN_CONCURRENCY",
    "MAX_CONCURRENCY",
    "ParallelConfig",
    "TaskStatus",
    "TaskState",
    "ProgressEvent",
    "BatchOutcome",
]
