"""Tests for the retrying task scheduler."""

from __future__ import annotations

import asyncio

import pytest

from worldbook_forge.core.errors import AbortedError, TokenLimitError
from worldbook_forge.scheduler.tasks import TaskScheduler
from worldbook_forge.scheduler.types import ParallelConfig, TaskStatus


def make_scheduler(**overrides) -> tuple[TaskScheduler, list[float]]:
    delays: list[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    config = ParallelConfig(**{"retry_delay_ms": 0, **overrides})
    return TaskScheduler(config, sleep=record_sleep), delays


def test_parallel_config_clamps_values() -> None:
    assert ParallelConfig(concurrency=50).concurrency == 10
    assert ParallelConfig(concurrency=0).concurrency == 1
    assert ParallelConfig(retry_count=0).retry_count == 1


@pytest.mark.asyncio
async def test_results_align_with_input_order() -> None:
    scheduler, _ = make_scheduler(concurrency=4)

    async def worker(item: int, index: int, attempt: int) -> int:
        await asyncio.sleep(0.01 * (4 - index))
        return item * 10

    outcome = await scheduler.process([1, 2, 3, 4], worker)
    assert outcome.results == [10, 20, 30, 40]
    assert outcome.errors == [None, None, None, None]


@pytest.mark.asyncio
async def test_independent_mode_respects_concurrency() -> None:
    scheduler, _ = make_scheduler(concurrency=2)
    in_flight = 0
    peak = 0

    async def worker(item: int, index: int, attempt: int) -> int:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return item

    outcome = await scheduler.process(list(range(6)), worker)
    assert peak == 2
    assert outcome.results == list(range(6))


@pytest.mark.asyncio
async def test_serial_when_disabled() -> None:
    scheduler, _ = make_scheduler(enabled=False, concurrency=5)
    events: list[str] = []

    async def worker(item: str, index: int, attempt: int) -> str:
        events.append(f"start:{item}")
        await asyncio.sleep(0)
        events.append(f"end:{item}")
        return item

    await scheduler.process(["a", "b"], worker)
    assert events == ["start:a", "end:a", "start:b", "end:b"]


@pytest.mark.asyncio
async def test_batch_mode_waits_for_each_group() -> None:
    scheduler, _ = make_scheduler(mode="batch", concurrency=2)
    events: list[str] = []

    async def worker(item: int, index: int, attempt: int) -> int:
        events.append(f"start:{index}")
        await asyncio.sleep(0.01 if index == 0 else 0)
        events.append(f"end:{index}")
        return index

    outcome = await scheduler.process([0, 1, 2, 3], worker)
    assert outcome.results == [0, 1, 2, 3]
    assert events.index("start:2") > events.index("end:0")
    assert events.index("start:2") > events.index("end:1")


@pytest.mark.asyncio
async def test_retries_with_linear_backoff() -> None:
    scheduler, delays = make_scheduler(retry_count=3, retry_delay_ms=100)
    attempts: list[int] = []

    async def worker(item: str, index: int, attempt: int) -> str:
        attempts.append(attempt)
        if attempt < 2:
            raise RuntimeError("flaky")
        return "ok"

    outcome = await scheduler.process(["x"], worker)
    assert outcome.results == ["ok"]
    assert attempts == [0, 1, 2]
    assert delays == [0.1, 0.2]


@pytest.mark.asyncio
async def test_exhausted_task_is_recorded_not_raised() -> None:
    scheduler, _ = make_scheduler(retry_count=2, concurrency=3)

    async def worker(item: int, index: int, attempt: int) -> int:
        if index == 1:
            raise ValueError(f"bad {index}")
        return item

    outcome = await scheduler.process([5, 6, 7], worker)
    assert outcome.results == [5, None, 7]
    assert isinstance(outcome.errors[1], ValueError)
    assert outcome.failed_indices == [1]
    state = scheduler.get_task_status(1)
    assert state.status is TaskStatus.FAILED
    assert state.attempt == 1


@pytest.mark.asyncio
async def test_non_retryable_errors_fail_immediately() -> None:
    scheduler, delays = make_scheduler(retry_count=3)
    calls = 0

    async def worker(item: str, index: int, attempt: int) -> str:
        nonlocal calls
        calls += 1
        raise TokenLimitError("context length exceeded")

    outcome = await scheduler.process(["x"], worker)
    assert calls == 1
    assert delays == []
    assert isinstance(outcome.errors[0], TokenLimitError)


@pytest.mark.asyncio
async def test_progress_events_report_retries_and_completion() -> None:
    scheduler, _ = make_scheduler(retry_count=2)
    seen: list[tuple[int, TaskStatus]] = []

    async def worker(item: str, index: int, attempt: int) -> str:
        if attempt == 0:
            raise RuntimeError("first try fails")
        return item

    await scheduler.process(["a"], worker, on_progress=lambda event: seen.append((event.index, event.status)))
    assert seen == [(0, TaskStatus.RETRYING), (0, TaskStatus.COMPLETED)]


@pytest.mark.asyncio
async def test_abort_fails_queued_tasks_and_raises_with_partial_outcome() -> None:
    scheduler, _ = make_scheduler(concurrency=1)

    async def worker(item: int, index: int, attempt: int) -> int:
        if index == 0:
            scheduler.abort()
        return item

    with pytest.raises(AbortedError) as excinfo:
        await scheduler.process([1, 2, 3], worker)

    outcome = excinfo.value.outcome
    assert outcome.results[0] == 1
    assert all(isinstance(error, AbortedError) for error in outcome.errors[1:])


@pytest.mark.asyncio
async def test_scheduler_is_reusable_after_abort() -> None:
    scheduler, _ = make_scheduler(concurrency=2)
    scheduler.abort()

    async def worker(item: int, index: int, attempt: int) -> int:
        return item

    outcome = await scheduler.process([1, 2], worker)
    assert outcome.results == [1, 2]


@pytest.mark.asyncio
async def test_worker_that_always_fails_runs_exactly_retry_count_times() -> None:
    scheduler, delays = make_scheduler(retry_count=4)
    calls = 0

    async def worker(item: str, index: int, attempt: int) -> str:
        nonlocal calls
        calls += 1
        raise RuntimeError("upstream down")

    outcome = await scheduler.process(["x"], worker)
    assert calls == 4
    assert len(delays) == 3
    assert outcome.failed_indices == [0]
    assert isinstance(outcome.errors[0], RuntimeError)


@pytest.mark.asyncio
async def test_batch_mode_never_has_more_than_k_tasks_processing() -> None:
    processing: set[int] = set()
    peak = 0

    def track(state) -> None:
        nonlocal peak
        if state.status is TaskStatus.PROCESSING:
            processing.add(state.index)
        else:
            processing.discard(state.index)
        peak = max(peak, len(processing))

    config = ParallelConfig(mode="batch", concurrency=3, retry_count=2, retry_delay_ms=0)
    scheduler = TaskScheduler(config, on_task_status=track)

    async def worker(item: int, index: int, attempt: int) -> int:
        await asyncio.sleep(0.001 * (index % 3))
        if attempt == 0 and index % 2:
            raise RuntimeError("retry once")
        return item

    outcome = await scheduler.process(list(range(10)), worker)
    assert outcome.results == list(range(10))
    assert peak == 3


@pytest.mark.asyncio
async def test_abort_during_backoff_skips_remaining_attempts() -> None:
    calls = 0

    async def abort_while_waiting(delay: float) -> None:
        scheduler.abort()

    scheduler = TaskScheduler(ParallelConfig(retry_count=5, retry_delay_ms=100), sleep=abort_while_waiting)

    async def worker(item: str, index: int, attempt: int) -> str:
        nonlocal calls
        calls += 1
        raise RuntimeError("flaky")

    with pytest.raises(AbortedError) as excinfo:
        await scheduler.process(["x"], worker)
    assert calls == 1
    assert isinstance(excinfo.value.outcome.errors[0], AbortedError)


@pytest.mark.asyncio
async def test_overlapping_runs_keep_their_own_results() -> None:
    scheduler, _ = make_scheduler(concurrency=2)

    async def worker(item: str, index: int, attempt: int) -> str:
        await asyncio.sleep(0.001 * len(item))
        return item.upper()

    first, second = await asyncio.gather(
        scheduler.process(["a", "bb", "ccc", "dddd"], worker),
        scheduler.process(["x", "yy", "zzz"], worker),
    )
    assert first.results == ["A", "BB", "CCC", "DDDD"]
    assert second.results == ["X", "YY", "ZZZ"]
    assert scheduler.running == 0


@pytest.mark.asyncio
async def test_abort_stops_every_overlapping_run() -> None:
    scheduler, _ = make_scheduler(concurrency=1)
    started = asyncio.Event()

    async def worker(item: int, index: int, attempt: int) -> int:
        started.set()
        await asyncio.sleep(0.01)
        return item

    async def abort_once_started() -> None:
        await started.wait()
        scheduler.abort()

    first, second, _ = await asyncio.gather(
        scheduler.process([1, 2, 3], worker),
        scheduler.process([4, 5, 6], worker),
        abort_once_started(),
        return_exceptions=True,
    )
    assert isinstance(first, AbortedError)
    assert isinstance(second, AbortedError)
    assert first.outcome.results[0] == 1
    assert second.outcome.results[0] == 4
