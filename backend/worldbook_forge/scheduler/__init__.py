"""Bounded-concurrency task scheduling."""

from .semaphore import Semaphore
from .tasks import TaskScheduler
from .types import BatchOutcome, ParallelConfig, ProgressEvent, TaskState, TaskStatus

__all__ = [
    "Semaphore",
    "TaskScheduler",
    "BatchOutcome",
    "ParallelConfig",
    "ProgressEvent",
    "TaskState",
    "TaskStatus",
]
