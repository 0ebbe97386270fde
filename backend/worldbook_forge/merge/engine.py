"""Fold per-chunk extraction results into the cumulative worldbook."""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, MutableMapping, Protocol, Sequence

import orjson

from worldbook_forge.core.config import DEFAULT_CHAPTER_CATEGORIES
from worldbook_forge.core.logging import get_logger
from worldbook_forge.core.metrics import DUPLICATE_GROUPS, MERGE_CHANGES, WORLDBOOK_ENTRIES
from worldbook_forge.models.entities import (
    CONTENT_ALIASES,
    CONTENT_FIELD,
    KEYWORD_ALIASES,
    KEYWORDS_FIELD,
    Category,
    ChangedEntry,
    DuplicateGroup,
    Entry,
    HistoryRecord,
    Worldbook,
)
from worldbook_forge.utils.time import now_ms

logger = get_logger(__name__)

DEFAULT_DIVIDER = "\n\n---\n\n"
DEFAULT_GUARD_CHARS = 50

_KEYWORD_SPLIT_RE = re.compile(r"[,，]")
_CHAPTER_MARK_RE = re.compile(r"第\s*[一二三四五六七八九十百千万零〇\d]+\s*章")


class HistoryWriter(Protocol):
    def append(self, record: HistoryRecord) -> int: ...


def snapshot(data: Any) -> Any:
    """Deep copy through JSON.

    Non-serializable values, and integers outside the signed/unsigned 64-bit
    range, raise ``TypeError`` (``orjson.JSONEncodeError``).
    """
    return orjson.loads(orjson.dumps(data))


def count_entries(worldbook: Mapping[str, Any]) -> int:
    return sum(len(entries) for entries in worldbook.values() if isinstance(entries, Mapping))


class MergeEngine:
    """Normalizes, merges, diffs and records worldbook changes.

    The engine mutates the worldbook passed to it in place and holds no
    reference to it; callers must not run two merges on the same worldbook
    concurrently.
    """

    def __init__(
        self,
        history_store: HistoryWriter | None = None,
        *,
        duplicate_guard_chars: int = DEFAULT_GUARD_CHARS,
        divider: str = DEFAULT_DIVIDER,
        chapter_categories: Iterable[str] = DEFAULT_CHAPTER_CATEGORIES,
    ) -> None:
        self.history_store = history_store
        self.duplicate_guard_chars = duplicate_guard_chars
        self.divider = divider
        self.chapter_categories = frozenset(chapter_categories)

    # Normalization ----------------------------------------------------

    def normalize_entry(self, entry: Any) -> Any:
        """Collapse field aliases onto the canonical keyword/content fields."""
        if not isinstance(entry, MutableMapping):
            return entry
        for alias in CONTENT_ALIASES:
            if alias not in entry:
                continue
            alias_value = entry.pop(alias)
            current = entry.get(CONTENT_FIELD)
            if current is None or len(str(alias_value or "")) > len(str(current or "")):
                entry[CONTENT_FIELD] = alias_value
        for alias in KEYWORD_ALIASES:
            if alias not in entry:
                continue
            alias_value = entry.pop(alias)
            entry[KEYWORDS_FIELD] = _unique(_as_keywords(entry.get(KEYWORDS_FIELD)) + _as_keywords(alias_value))
        if KEYWORDS_FIELD in entry and not isinstance(entry[KEYWORDS_FIELD], list):
            entry[KEYWORDS_FIELD] = _unique(_as_keywords(entry[KEYWORDS_FIELD]))
        return entry

    def normalize_worldbook(self, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        for entries in data.values():
            if isinstance(entries, Mapping):
                for entry in entries.values():
                    self.normalize_entry(entry)
        return data

    # Merging ----------------------------------------------------------

    def merge_full(self, target: Worldbook, source: Mapping[str, Any]) -> None:
        """Deep-overwrite ``target`` with ``source``; later data wins field by field."""
        source = self.normalize_worldbook(snapshot(source))
        _deep_update(target, source)

    def merge_incremental(self, target: Worldbook, source: Mapping[str, Any]) -> None:
        """Accumulate ``source`` into ``target`` without discarding existing detail."""
        source = self.normalize_worldbook(snapshot(source))
        for category, entries in source.items():
            if not isinstance(entries, Mapping):
                continue
            target_category = target.setdefault(category, {})
            for name, incoming in entries.items():
                if not isinstance(incoming, Mapping):
                    continue
                existing = target_category.get(name)
                if not isinstance(existing, MutableMapping):
                    target_category[name] = dict(incoming)
                    continue
                self._fold_entry(existing, incoming)

    def _fold_entry(self, existing: Entry, incoming: Mapping[str, Any]) -> None:
        incoming_keywords = incoming.get(KEYWORDS_FIELD)
        if isinstance(incoming_keywords, list):
            existing[KEYWORDS_FIELD] = _unique(_as_keywords(existing.get(KEYWORDS_FIELD)) + incoming_keywords)

        new_content = incoming.get(CONTENT_FIELD)
        if not new_content:
            return
        new_content = str(new_content)
        current = str(existing.get(CONTENT_FIELD) or "")
        if not current:
            existing[CONTENT_FIELD] = new_content
            return
        if self.duplicate_guard_chars and new_content[: self.duplicate_guard_chars] in current:
            return
        existing[CONTENT_FIELD] = current + self.divider + new_content

    def find_changed_entries(self, old: Mapping[str, Any], new: Mapping[str, Any]) -> list[ChangedEntry]:
        """Ordered add/modify entries for ``new`` followed by deletions from ``old``."""
        changes: list[ChangedEntry] = []
        for category, new_entries in new.items():
            if not isinstance(new_entries, Mapping):
                continue
            old_entries = old.get(category)
            old_entries = old_entries if isinstance(old_entries, Mapping) else {}
            for name, entry in new_entries.items():
                if name not in old_entries:
                    changes.append(ChangedEntry("add", category, name))
                elif old_entries[name] != entry:
                    changes.append(ChangedEntry("modify", category, name))
        for category, old_entries in old.items():
            if not isinstance(old_entries, Mapping):
                continue
            new_entries = new.get(category)
            new_entries = new_entries if isinstance(new_entries, Mapping) else {}
            for name in old_entries:
                if name not in new_entries:
                    changes.append(ChangedEntry("delete", category, name))
        return changes

    def compare(self, result_a: Mapping[str, Any] | None, result_b: Mapping[str, Any] | None) -> list[ChangedEntry]:
        """Diff two extraction results, e.g. two rolls of the same chunk."""
        return self.find_changed_entries(result_a or {}, result_b or {})

    def merge_with_history(
        self,
        target: Worldbook,
        source: Mapping[str, Any],
        memory_index: int,
        memory_title: str,
        incremental: bool = True,
    ) -> list[ChangedEntry]:
        """Merge, diff against the pre-merge snapshot and append one history record."""
        previous = snapshot(target)
        if incremental:
            self.merge_incremental(target, source)
        else:
            self.merge_full(target, source)
        changes = self.find_changed_entries(previous, target)
        WORLDBOOK_ENTRIES.set(count_entries(target))
        if not changes:
            logger.debug("Merge of chunk %s changed nothing", memory_index, extra={"ctx_index": memory_index})
            return changes

        for change in changes:
            MERGE_CHANGES.labels(type=change.type).inc()
        if self.history_store is not None:
            record = HistoryRecord(
                memory_index=memory_index,
                memory_title=memory_title,
                previous_worldbook=previous,
                new_worldbook=target,
                changed_entries=changes,
                timestamp=now_ms(),
            )
            record_id = self.history_store.append(record)
            logger.info(
                "Recorded %s change(s) for chunk %s as history %s",
                len(changes),
                memory_index,
                record_id,
                extra={"ctx_index": memory_index, "ctx_history_id": record_id},
            )
        return changes

    def rollback(self, record: HistoryRecord) -> Worldbook:
        """Worldbook state before ``record`` was applied, as an independent copy."""
        logger.info(
            "Rolling back to state before history %s (chunk %s)",
            record.id,
            record.memory_index,
            extra={"ctx_history_id": record.id, "ctx_index": record.memory_index},
        )
        restored = snapshot(record.previous_worldbook)
        WORLDBOOK_ENTRIES.set(count_entries(restored))
        return restored

    # Post-processing --------------------------------------------------

    def post_process_with_chapter_index(
        self,
        result: Mapping[str, Any],
        chapter_index: int,
        force_chapter_marker: bool = True,
    ) -> dict[str, Any]:
        """Rewrite or append ``第N章`` in entry names of plot-outline categories."""
        if not isinstance(result, Mapping):
            return result
        if not force_chapter_marker:
            return dict(result)
        marker = f"第{chapter_index}章"
        processed: dict[str, Any] = {}
        for category, entries in result.items():
            if category not in self.chapter_categories or not isinstance(entries, Mapping):
                processed[category] = entries
                continue
            renamed: dict[str, Any] = {}
            for name, entry in entries.items():
                new_name = _CHAPTER_MARK_RE.sub(marker, name)
                if marker not in new_name and "-第" not in new_name:
                    new_name = f"{new_name}-{marker}"
                renamed[new_name] = entry
            processed[category] = renamed
        return processed

    # Duplicates -------------------------------------------------------

    def merge_confirmed_duplicates(self, entries: Category, groups: Sequence[DuplicateGroup]) -> int:
        """Fold every group into its main name and delete the other members."""
        merged = 0
        for group in groups:
            if len(group.names) < 2 or not group.main_name:
                continue
            members = [group.main_name] + [name for name in group.names if name != group.main_name]
            keywords: list[str] = []
            contents: list[str] = []
            found = 0
            for name in members:
                entry = entries.get(name)
                if not isinstance(entry, Mapping):
                    continue
                found += 1
                self.normalize_entry(entry)
                keywords.extend(_as_keywords(entry.get(KEYWORDS_FIELD)))
                keywords.append(name)
                if entry.get(CONTENT_FIELD):
                    contents.append(str(entry[CONTENT_FIELD]))
            if not found:
                logger.debug("Skipping group %s, no member left in category", group.main_name)
                continue
            main_entry = entries.get(group.main_name)
            folded: Entry = dict(main_entry) if isinstance(main_entry, Mapping) else {}
            folded[KEYWORDS_FIELD] = _unique(keywords)
            folded[CONTENT_FIELD] = self.divider.join(contents)
            entries[group.main_name] = folded
            for name in members[1:]:
                entries.pop(name, None)
            merged += 1
            DUPLICATE_GROUPS.inc()
            logger.info(
                "Merged %s into %s",
                ", ".join(members[1:]),
                group.main_name,
                extra={"ctx_main_name": group.main_name},
            )
        return merged

    def merge_duplicates_with_history(
        self,
        worldbook: Worldbook,
        category: str,
        groups: Sequence[DuplicateGroup],
        memory_index: int = -1,
        memory_title: str = "duplicate merge",
    ) -> list[ChangedEntry]:
        """Apply :meth:`merge_confirmed_duplicates` to one category and record history."""
        previous = snapshot(worldbook)
        entries = worldbook.setdefault(category, {})
        self.merge_confirmed_duplicates(entries, groups)
        changes = self.find_changed_entries(previous, worldbook)
        WORLDBOOK_ENTRIES.set(count_entries(worldbook))
        if changes and self.history_store is not None:
            self.history_store.append(
                HistoryRecord(
                    memory_index=memory_index,
                    memory_title=memory_title,
                    previous_worldbook=previous,
                    new_worldbook=worldbook,
                    changed_entries=changes,
                    timestamp=now_ms(),
                )
            )
        return changes


def _deep_update(target: MutableMapping[str, Any], source: Mapping[str, Any]) -> None:
    for key, value in source.items():
        if isinstance(value, Mapping):
            existing = target.get(key)
            if not isinstance(existing, MutableMapping):
                existing = {}
                target[key] = existing
            _deep_update(existing, value)
        else:
            target[key] = value


def _as_keywords(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in _KEYWORD_SPLIT_RE.split(value) if part.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value if item is not None and str(item) != ""]
    return [str(value)]


def _unique(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


__all__ = [
    "DEFAULT_DIVIDER",
    "DEFAULT_GUARD_CHARS",
    "HistoryWriter",
    "MergeEngine",
    "count_entries",
    "snapshot",
]
