"""Extraction pipeline orchestration."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from worldbook_forge.core.config import Settings
from worldbook_forge.core.errors import ParseError, RecordNotFoundError, TokenLimitError
from worldbook_forge.core.logging import get_logger
from worldbook_forge.core.metrics import WORLDBOOK_ENTRIES
from worldbook_forge.db.history import HistoryStore
from worldbook_forge.db.rolls import RollStore
from worldbook_forge.db.state import StateStore
from worldbook_forge.dedupe.resolver import DuplicateResolver
from worldbook_forge.llm.client import ModelClient
from worldbook_forge.merge.engine import MergeEngine, count_entries, snapshot
from worldbook_forge.models.entities import (
    CONTENT_FIELD,
    KEYWORDS_FIELD,
    ChangedEntry,
    Chunk,
    Entry,
    ResolutionResult,
    RollRecord,
    SavedState,
    Worldbook,
)
from worldbook_forge.parsing.response import extract_worldbook_data, parse_response
from worldbook_forge.pipeline.prompts import PromptBuilder
from worldbook_forge.scheduler.tasks import TaskScheduler
from worldbook_forge.scheduler.types import ProgressEvent, TaskStatus
from worldbook_forge.utils.time import now_ms
from worldbook_forge.utils.tokens import estimate_token_count

logger = get_logger(__name__)

PARAGRAPH_WINDOW = 1000
SENTENCE_WINDOW = 200
PART_SEPARATOR = "\n\n"


@dataclass(slots=True)
class ExtractionResult:
    entries: dict[str, dict[str, Any]]
    prompt: str
    response: str


@dataclass(slots=True)
class PipelineReport:
    results: list[ExtractionResult | None] = field(default_factory=list)
    errors: list[BaseException | None] = field(default_factory=list)
    changes: dict[int, list[ChangedEntry]] = field(default_factory=dict)
    skipped: list[int] = field(default_factory=list)

    @property
    def failed_indices(self) -> list[int]:
        return [idx for idx, error in enumerate(self.errors) if error is not None]

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": sum(1 for result in self.results if result is not None),
            "failed": self.failed_indices,
            "skipped": list(self.skipped),
            "errors": {idx: str(error) for idx, error in enumerate(self.errors) if error is not None},
            "changes": {idx: [change.to_dict() for change in items] for idx, items in self.changes.items()},
        }


def split_chunk(chunk: Chunk) -> tuple[Chunk, Chunk]:
    """Cut ``chunk`` near its middle, preferring a paragraph break, then a sentence end."""
    content = chunk.content
    mid = len(content) // 2
    cut = _nearest(content, "\n\n", mid, PARAGRAPH_WINDOW)
    if cut is not None:
        cut += 2
    else:
        cut = _nearest(content, "。", mid, SENTENCE_WINDOW)
        cut = cut + 1 if cut is not None else mid
    cut = max(1, min(cut, len(content) - 1))
    return (
        Chunk(index=chunk.index, title=f"{chunk.title}(上)", content=content[:cut]),
        Chunk(index=chunk.index, title=f"{chunk.title}(下)", content=content[cut:]),
    )


def _nearest(text: str, needle: str, mid: int, window: int) -> int | None:
    left = text.rfind(needle, max(0, mid - window), mid)
    right = text.find(needle, mid, mid + window)
    candidates = [pos for pos in (left, right) if pos > 0]
    if not candidates:
        return None
    return min(candidates, key=lambda pos: abs(pos - mid))


class WorldbookPipeline:
    """Coordinate prompt building, model calls, parsing, merging and persistence.

    Every mutation of :attr:`worldbook` happens under one lock, and with a
    ``state_store`` the worldbook plus the processed/failed chunk indices are
    saved after each mutation so a restarted service can resume.
    """

    def __init__(
        self,
        model: ModelClient,
        settings: Settings,
        history_store: HistoryStore | None = None,
        roll_store: RollStore | None = None,
        merge_engine: MergeEngine | None = None,
        prompt_builder: PromptBuilder | None = None,
        worldbook: Worldbook | None = None,
        state_store: StateStore | None = None,
    ) -> None:
        self.model = model
        self.settings = settings
        self.history_store = history_store
        self.roll_store = roll_store
        self.state_store = state_store
        self.merge_engine = merge_engine or MergeEngine(
            history_store,
            duplicate_guard_chars=settings.duplicate_guard_chars,
            chapter_categories=settings.chapter_categories,
        )
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.worldbook: Worldbook = worldbook if worldbook is not None else {}
        self.processed: set[int] = set()
        self.failed: set[int] = set()
        self.scheduler = TaskScheduler(settings.parallel_config())
        self.resolver = DuplicateResolver(
            model,
            settings.parallel_config(),
            batch_threshold=settings.duplicate_batch_threshold,
            prompt_builder=self.prompt_builder,
        )
        self._lock = asyncio.Lock()

    async def run(
        self,
        chunks: Sequence[Chunk],
        incremental: bool | None = None,
        on_progress: Callable[[ProgressEvent], None] | None = None,
        resume: bool = False,
    ) -> PipelineReport:
        """Extract every chunk and merge each result as soon as it completes.

        With ``resume`` chunks whose index was already merged are skipped and
        reported in ``skipped``; results and errors stay aligned with ``chunks``.
        """
        use_incremental = self.settings.incremental_merge if incremental is None else incremental
        report = PipelineReport(results=[None] * len(chunks), errors=[None] * len(chunks))

        async with self._lock:
            positions = [
                position
                for position, chunk in enumerate(chunks)
                if not (resume and chunk.index in self.processed)
            ]
            pending_set = set(positions)
            report.skipped = [position for position in range(len(chunks)) if position not in pending_set]

            def merge_on_completion(event: ProgressEvent) -> None:
                position = positions[event.index]
                chunk = chunks[position]
                if event.status is TaskStatus.COMPLETED and event.result is not None:
                    report.changes[position] = self.merge_engine.merge_with_history(
                        self.worldbook,
                        event.result.entries,
                        memory_index=chunk.index,
                        memory_title=chunk.title,
                        incremental=use_incremental,
                    )
                    self.processed.add(chunk.index)
                    self.failed.discard(chunk.index)
                    self.save_state()
                elif event.status is TaskStatus.FAILED:
                    self.failed.add(chunk.index)
                    self.save_state()
                if on_progress is not None:
                    on_progress(ProgressEvent(position, event.status, event.attempt, event.result, event.error))

            logger.info(
                "Starting extraction of %s chunk(s), %s skipped",
                len(positions),
                len(report.skipped),
                extra={"ctx_chunks": len(positions), "ctx_incremental": use_incremental},
            )
            outcome = await self.scheduler.process(
                [chunks[position] for position in positions],
                self.extract_chunk,
                on_progress=merge_on_completion,
            )
        for offset, position in enumerate(positions):
            report.results[position] = outcome.results[offset]
            report.errors[position] = outcome.errors[offset]
        return report

    async def extract_chunk(self, chunk: Chunk, index: int = 0, attempt: int = 0) -> ExtractionResult:
        """Scheduler worker: extract one chunk, pre-splitting it past the token budget."""
        budget = self.settings.max_chunk_tokens
        if budget and estimate_token_count(chunk.content) > budget:
            logger.info(
                "Chunk %s exceeds %s estimated tokens, splitting before request",
                chunk.index,
                budget,
                extra={"ctx_index": chunk.index},
            )
            return await self._extract_parts(split_chunk(chunk), depth=1, presplit=True)
        return await self._extract_with_split(chunk, depth=0)

    async def reroll(self, chunk: Chunk) -> RollRecord:
        """Regenerate one chunk and keep the result as a roll without merging it."""
        result = await self.extract_chunk(chunk)
        record = RollRecord(
            memory_index=chunk.index,
            timestamp=now_ms(),
            result=result.entries,
            prompt=result.prompt,
            response=result.response,
        )
        if self.roll_store is not None:
            self.roll_store.append(record)
        logger.info("Stored roll %s for chunk %s", record.id, chunk.index, extra={"ctx_index": chunk.index})
        return record

    async def apply_roll(self, roll_id: int, incremental: bool | None = None) -> list[ChangedEntry]:
        record = self.roll_store.get(roll_id) if self.roll_store is not None else None
        if record is None:
            raise RecordNotFoundError(f"roll {roll_id} not found")
        use_incremental = self.settings.incremental_merge if incremental is None else incremental
        async with self._lock:
            changes = self.merge_engine.merge_with_history(
                self.worldbook,
                record.result,
                memory_index=record.memory_index,
                memory_title=f"roll {roll_id}",
                incremental=use_incremental,
            )
            self.save_state()
        return changes

    async def reroll_entry(
        self,
        category: str,
        name: str,
        instructions: str = "",
        apply: bool = False,
    ) -> tuple[Entry, list[ChangedEntry]]:
        """Regenerate a single entry from its current keywords and content.

        A reply that is not JSON becomes the new content verbatim. With
        ``apply`` the entry's fields are overwritten in the worldbook and the
        change is recorded in history.
        """
        current = (self.worldbook.get(category) or {}).get(name)
        if not isinstance(current, Mapping):
            raise RecordNotFoundError(f"entry {category}/{name} not found")
        current = snapshot(current)
        prompt = self.prompt_builder.build_entry_reroll_prompt(category, name, current, instructions)
        response = await self.model.invoke(self.prompt_builder.to_messages(prompt))
        entry = self._read_entry(response, category, name)
        if not entry.get(KEYWORDS_FIELD) and current.get(KEYWORDS_FIELD):
            entry[KEYWORDS_FIELD] = current[KEYWORDS_FIELD]
        logger.info("Regenerated entry %s/%s", category, name, extra={"ctx_category": category, "ctx_entry": name})

        changes: list[ChangedEntry] = []
        if apply:
            async with self._lock:
                changes = self.merge_engine.merge_with_history(
                    self.worldbook,
                    {category: {name: entry}},
                    memory_index=-1,
                    memory_title=f"reroll {category}/{name}",
                    incremental=False,
                )
                self.save_state()
        return entry, changes

    def rollback(self, history_id: int) -> Worldbook:
        """Restore the worldbook as it was before ``history_id``; later history is kept."""
        record = self.history_store.get(history_id) if self.history_store is not None else None
        if record is None:
            raise RecordNotFoundError(f"history record {history_id} not found")
        restored = self.merge_engine.rollback(record)
        self.worldbook.clear()
        self.worldbook.update(restored)
        self.save_state()
        return self.worldbook

    async def find_duplicates(self, category: str, apply: bool = False) -> tuple[ResolutionResult, list[ChangedEntry]]:
        async with self._lock:
            entries = self.worldbook.get(category) or {}
            resolution = await self.resolver.resolve(entries, category)
            changes: list[ChangedEntry] = []
            if apply and resolution.groups:
                changes = self.merge_engine.merge_duplicates_with_history(self.worldbook, category, resolution.groups)
                self.save_state()
        return resolution, changes

    def abort(self) -> None:
        self.scheduler.abort()
        self.resolver.abort()

    # Saved state ------------------------------------------------------

    def save_state(self) -> None:
        if self.state_store is None:
            return
        self.state_store.save(
            SavedState(
                worldbook=self.worldbook,
                processed_indices=sorted(self.processed),
                failed_indices=sorted(self.failed),
                timestamp=now_ms(),
            )
        )

    def restore_state(self) -> bool:
        """Load the saved worldbook and chunk bookkeeping; False when nothing was saved."""
        state = self.state_store.load() if self.state_store is not None else None
        if state is None:
            return False
        self.worldbook.clear()
        self.worldbook.update(state.worldbook)
        self.processed = set(state.processed_indices)
        self.failed = set(state.failed_indices)
        WORLDBOOK_ENTRIES.set(count_entries(self.worldbook))
        logger.info(
            "Restored saved state with %s entries and %s processed chunk(s)",
            count_entries(self.worldbook),
            len(self.processed),
            extra={"ctx_processed": len(self.processed)},
        )
        return True

    def clear_state(self) -> None:
        """Forget the live worldbook and chunk bookkeeping; history and rolls are kept."""
        self.worldbook.clear()
        self.processed.clear()
        self.failed.clear()
        WORLDBOOK_ENTRIES.set(0)
        if self.state_store is not None:
            self.state_store.clear()

    # Internal helpers -------------------------------------------------

    async def _extract_with_split(self, chunk: Chunk, depth: int) -> ExtractionResult:
        try:
            return await self._extract_once(chunk)
        except TokenLimitError:
            if depth >= self.settings.max_split_depth or len(chunk.content) < 2:
                raise
            logger.warning(
                "Chunk %s hit the context limit, splitting (depth %s)",
                chunk.index,
                depth + 1,
                extra={"ctx_index": chunk.index, "ctx_depth": depth + 1},
            )
            return await self._extract_parts(split_chunk(chunk), depth=depth + 1)

    async def _extract_parts(self, parts: Sequence[Chunk], depth: int, presplit: bool = False) -> ExtractionResult:
        entries: dict[str, dict[str, Any]] = {}
        prompts: list[str] = []
        responses: list[str] = []
        for part in parts:
            if presplit and estimate_token_count(part.content) > self.settings.max_chunk_tokens and len(part.content) > 1:
                result = await self._extract_parts(split_chunk(part), depth=depth + 1, presplit=True)
            else:
                result = await self._extract_with_split(part, 0 if presplit else depth)
            self.merge_engine.merge_incremental(entries, result.entries)
            prompts.append(result.prompt)
            responses.append(result.response)
        return ExtractionResult(entries, PART_SEPARATOR.join(prompts), PART_SEPARATOR.join(responses))

    async def _extract_once(self, chunk: Chunk) -> ExtractionResult:
        prompt = self.prompt_builder.build_generation_prompt(chunk.title, chunk.content)
        # the model client has already stripped configured response tags
        response = await self.model.invoke(self.prompt_builder.to_messages(prompt))
        entries = extract_worldbook_data(parse_response(response))
        entries = self.merge_engine.post_process_with_chapter_index(
            entries,
            chunk.index + 1,
            force_chapter_marker=self.settings.force_chapter_marker,
        )
        return ExtractionResult(entries=entries, prompt=prompt, response=response)

    def _read_entry(self, response: str, category: str, name: str) -> Entry:
        try:
            parsed: Any = parse_response(response)
        except ParseError:
            return {CONTENT_FIELD: response.strip()}
        if isinstance(parsed, Mapping):
            nested = parsed.get(category)
            if isinstance(nested, Mapping) and isinstance(nested.get(name), Mapping):
                parsed = nested[name]
            elif isinstance(parsed.get(name), Mapping):
                parsed = parsed[name]
            return self.merge_engine.normalize_entry(dict(parsed))
        if isinstance(parsed, str):
            return {CONTENT_FIELD: parsed}
        return {CONTENT_FIELD: response.strip()}


__all__ = ["ExtractionResult", "PipelineReport", "WorldbookPipeline", "split_chunk"]
