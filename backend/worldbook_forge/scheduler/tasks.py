"""Retrying task scheduler with serial, independent and batch execution."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from worldbook_forge.core.errors import AbortedError
from worldbook_forge.core.logging import get_logger
from worldbook_forge.core.metrics import TASK_RETRIES, TASKS_TOTAL
from worldbook_forge.scheduler.semaphore import Semaphore
from worldbook_forge.scheduler.types import (
    BatchOutcome,
    ParallelConfig,
    ProgressEvent,
    TaskState,
    TaskStatus,
)
from worldbook_forge.utils.time import elapsed_ms, now_ms

logger = get_logger(__name__)

T = TypeVar("T")

Worker = Callable[[T, int, int], Awaitable[Any]]
ProgressCallback = Callable[[ProgressEvent], None]
StatusCallback = Callable[[TaskState], None]


class _Run:
    """State of one ``process`` call; never shared between calls."""

    def __init__(self, size: int, concurrency: int, on_progress: ProgressCallback | None) -> None:
        self.semaphore = Semaphore(concurrency)
        self.tasks = {idx: TaskState(index=idx, last_updated=now_ms()) for idx in range(size)}
        self.results: list[Any] = [None] * size
        self.errors: list[BaseException | None] = [None] * size
        self.on_progress = on_progress
        self.aborted = False

    def abort(self) -> None:
        self.aborted = True
        self.semaphore.abort()


class TaskScheduler:
    """Run an async worker over an ordered list of items.

    The worker is called as ``worker(item, index, attempt)``. Every input
    index gets exactly one slot in ``results`` and ``errors`` regardless of
    completion order. A task that exhausts its retries is recorded, never
    raised; only :meth:`abort` fails the whole run, with an
    :class:`AbortedError` whose ``outcome`` carries the partial results.

    Overlapping ``process`` calls each get their own task map, result slots
    and concurrency limit. :meth:`abort` stops every call in flight.
    """

    def __init__(
        self,
        config: ParallelConfig | None = None,
        *,
        on_progress: ProgressCallback | None = None,
        on_task_status: StatusCallback | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or ParallelConfig()
        self.on_progress = on_progress
        self.on_task_status = on_task_status
        self._sleep = sleep
        self._active: set[_Run] = set()
        self._last_run: _Run | None = None
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def running(self) -> int:
        return len(self._active)

    async def process(
        self,
        items: Sequence[T],
        worker: Worker,
        on_progress: ProgressCallback | None = None,
    ) -> BatchOutcome:
        self._aborted = False
        run = _Run(len(items), self.config.concurrency, on_progress or self.on_progress)
        self._active.add(run)
        self._last_run = run
        started = now_ms()
        try:
            if not self.config.enabled or len(items) <= 1:
                mode = "serial"
                await self._process_serial(run, items, worker)
            elif self.config.mode == "batch":
                mode = "batch"
                await self._process_batches(run, items, worker)
            else:
                mode = "independent"
                await self._process_independent(run, items, worker)
        finally:
            self._active.discard(run)

        outcome = BatchOutcome(results=list(run.results), errors=list(run.errors))
        logger.info(
            "Processed %s tasks in %s mode (%s failed) in %sms",
            len(items),
            mode,
            len(outcome.failed_indices),
            elapsed_ms(started),
            extra={"ctx_mode": mode, "ctx_tasks": len(items)},
        )
        if run.aborted:
            raise AbortedError("task scheduler aborted", outcome=outcome)
        return outcome

    def abort(self) -> None:
        """Stop admitting tasks and retries; in-flight worker calls finish on their own."""
        self._aborted = True
        for run in list(self._active):
            run.abort()

    def reset(self) -> None:
        self._aborted = False
        self._last_run = None

    def get_task_status(self, index: int) -> TaskState | None:
        """Status of ``index`` in the most recently started run."""
        if self._last_run is None:
            return None
        return self._last_run.tasks.get(index)

    def task_statuses(self) -> dict[int, TaskState]:
        return dict(self._last_run.tasks) if self._last_run is not None else {}

    # Execution modes --------------------------------------------------

    async def _process_serial(self, run: _Run, items: Sequence[T], worker: Worker) -> None:
        for index, item in enumerate(items):
            if run.aborted:
                self._record_failure(run, index, AbortedError("task scheduler aborted"))
                continue
            self._set_status(run, index, TaskStatus.PROCESSING)
            try:
                result = await self._execute_with_retry(run, item, index, worker)
            except Exception as exc:
                self._record_failure(run, index, exc)
            else:
                self._record_success(run, index, result)

    async def _process_independent(self, run: _Run, items: Sequence[T], worker: Worker) -> None:
        await asyncio.gather(
            *(self._execute_with_semaphore(run, item, index, worker) for index, item in enumerate(items))
        )

    async def _process_batches(self, run: _Run, items: Sequence[T], worker: Worker) -> None:
        size = self.config.concurrency
        for start in range(0, len(items), size):
            end = min(start + size, len(items))
            await asyncio.gather(
                *(self._execute_with_semaphore(run, items[index], index, worker) for index in range(start, end))
            )

    async def _execute_with_semaphore(self, run: _Run, item: T, index: int, worker: Worker) -> None:
        if run.aborted:
            self._record_failure(run, index, AbortedError("task scheduler aborted"))
            return
        try:
            await run.semaphore.acquire()
        except AbortedError as exc:
            self._record_failure(run, index, exc)
            return
        try:
            if run.aborted:
                raise AbortedError("task scheduler aborted")
            self._set_status(run, index, TaskStatus.PROCESSING)
            result = await self._execute_with_retry(run, item, index, worker)
        except Exception as exc:
            self._record_failure(run, index, exc)
        else:
            self._record_success(run, index, result)
        finally:
            run.semaphore.release()

    async def _execute_with_retry(self, run: _Run, item: T, index: int, worker: Worker) -> Any:
        last_error: BaseException | None = None
        attempts = self.config.retry_count
        state = run.tasks[index]
        for attempt in range(attempts):
            if run.aborted:
                raise AbortedError("task scheduler aborted")
            state.attempt = attempt
            if attempt > 0:
                self._set_status(run, index, TaskStatus.PROCESSING)
            try:
                return await worker(item, index, attempt)
            except Exception as exc:
                if not getattr(exc, "retryable", True):
                    raise
                last_error = exc
                if attempt < attempts - 1 and not run.aborted:
                    logger.warning(
                        "Task %s failed on attempt %s: %s",
                        index,
                        attempt + 1,
                        exc,
                        extra={"ctx_index": index, "ctx_attempt": attempt + 1},
                    )
                    TASK_RETRIES.inc()
                    self._set_status(run, index, TaskStatus.RETRYING)
                    self._emit(run, ProgressEvent(index=index, status=TaskStatus.RETRYING, attempt=attempt + 1, error=exc))
                    await self._sleep(self.config.retry_delay_ms / 1000 * (attempt + 1))
        assert last_error is not None
        raise last_error

    # Bookkeeping ------------------------------------------------------

    def _record_success(self, run: _Run, index: int, result: Any) -> None:
        run.results[index] = result
        state = self._set_status(run, index, TaskStatus.COMPLETED, result=result)
        TASKS_TOTAL.labels(status=TaskStatus.COMPLETED.value).inc()
        self._emit(run, ProgressEvent(index=index, status=TaskStatus.COMPLETED, attempt=state.attempt, result=result))

    def _record_failure(self, run: _Run, index: int, error: BaseException) -> None:
        run.errors[index] = error
        state = self._set_status(run, index, TaskStatus.FAILED, error=error)
        TASKS_TOTAL.labels(status=TaskStatus.FAILED.value).inc()
        if not isinstance(error, AbortedError):
            logger.error(
                "Task %s failed after %s attempt(s): %s",
                index,
                state.attempt + 1,
                error,
                extra={"ctx_index": index, "ctx_attempt": state.attempt + 1},
            )
        self._emit(run, ProgressEvent(index=index, status=TaskStatus.FAILED, attempt=state.attempt, error=error))

    def _set_status(
        self,
        run: _Run,
        index: int,
        status: TaskStatus,
        result: Any = None,
        error: BaseException | None = None,
    ) -> TaskState:
        state = run.tasks[index]
        state.status = status
        state.last_updated = now_ms()
        if result is not None:
            state.result = result
        if error is not None:
            state.error = error
        if self.on_task_status is not None:
            self.on_task_status(state)
        return state

    def _emit(self, run: _Run, event: ProgressEvent) -> None:
        if run.on_progress is not None:
            run.on_progress(event)


__all__ = ["TaskScheduler", "Worker", "ProgressCallback", "StatusCallback"]
