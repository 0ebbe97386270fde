"""Detect aliased entries within a category and confirm them with the model."""

from __future__ import annotations

from itertools import combinations
from typing import Any, Callable, Iterable, Mapping, Sequence

from worldbook_forge.core.logging import get_logger
from worldbook_forge.llm.client import ModelClient
from worldbook_forge.models.entities import (
    CONTENT_FIELD,
    KEYWORDS_FIELD,
    DuplicateGroup,
    Entry,
    PairVerdict,
    ResolutionResult,
)
from worldbook_forge.parsing.response import parse_response
from worldbook_forge.pipeline.prompts import PromptBuilder
from worldbook_forge.scheduler.tasks import TaskScheduler
from worldbook_forge.scheduler.types import ParallelConfig

logger = get_logger(__name__)

DEFAULT_BATCH_THRESHOLD = 5
SHORT_NAME_CHARS = 2
SHORT_NAME_MAX_LEN = 3

CanonicalStrategy = Callable[[Sequence[str], Mapping[str, Entry]], str]


class UnionFind:
    """Disjoint sets over names mapped to dense integer ids on first sight."""

    def __init__(self, names: Iterable[str] = ()) -> None:
        self._ids: dict[str, int] = {}
        self._names: list[str] = []
        self._parent: list[int] = []
        self._rank: list[int] = []
        for name in names:
            self.add(name)

    def add(self, name: str) -> int:
        existing = self._ids.get(name)
        if existing is not None:
            return existing
        node = len(self._names)
        self._ids[name] = node
        self._names.append(name)
        self._parent.append(node)
        self._rank.append(0)
        return node

    def find(self, name: str) -> str:
        return self._names[self._root(self.add(name))]

    def union(self, a: str, b: str) -> None:
        root_a = self._root(self.add(a))
        root_b = self._root(self.add(b))
        if root_a == root_b:
            return
        if self._rank[root_a] < self._rank[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        if self._rank[root_a] == self._rank[root_b]:
            self._rank[root_a] += 1

    def groups(self) -> list[list[str]]:
        """Components with more than one member, in first-seen order."""
        members: dict[int, list[str]] = {}
        for node, name in enumerate(self._names):
            members.setdefault(self._root(node), []).append(name)
        return [group for group in members.values() if len(group) > 1]

    def _root(self, node: int) -> int:
        root = node
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[node] != root:
            self._parent[node], node = root, self._parent[node]
        return root


def longest_content(names: Sequence[str], entries: Mapping[str, Entry]) -> str:
    """Pick the member whose entry carries the most content; earlier names win ties."""
    best = names[0]
    best_len = -1
    for name in names:
        entry = entries.get(name) or {}
        length = len(str(entry.get(CONTENT_FIELD) or ""))
        if length > best_len:
            best, best_len = name, length
    return best


def short_name(name: str) -> str:
    return name if len(name) <= SHORT_NAME_MAX_LEN else name[-SHORT_NAME_CHARS:]


def short_name_match(name_a: str, name_b: str) -> bool:
    short_a = short_name(name_a)
    short_b = short_name(name_b)
    return short_a == short_b or short_b in name_a or short_a in name_b


def is_candidate_pair(name_a: str, name_b: str, entries: Mapping[str, Entry]) -> bool:
    keywords_a = set(_keywords(entries.get(name_a)))
    keywords_b = set(_keywords(entries.get(name_b)))
    if keywords_a & keywords_b:
        return True
    if name_a in name_b or name_b in name_a:
        return True
    return short_name_match(name_a, name_b)


def find_candidate_groups(entries: Mapping[str, Entry]) -> list[list[str]]:
    """Group names that look like aliases of each other in a single greedy scan.

    Each unclaimed name collects every later unclaimed name it matches
    directly; matches are not chained here, that happens after verification.
    """
    names = list(entries)
    claimed: set[str] = set()
    groups: list[list[str]] = []
    for i, name in enumerate(names):
        if name in claimed:
            continue
        group = [name]
        for other in names[i + 1 :]:
            if other in claimed:
                continue
            if is_candidate_pair(name, other, entries):
                group.append(other)
                claimed.add(other)
        if len(group) > 1:
            groups.append(group)
            claimed.update(group)
    return groups


def generate_pairs(group: Sequence[str]) -> list[tuple[str, str]]:
    return list(combinations(group, 2))


class DuplicateResolver:
    """Candidate scan, batched model verification and union-find grouping."""

    def __init__(
        self,
        model: ModelClient,
        config: ParallelConfig | None = None,
        *,
        batch_threshold: int = DEFAULT_BATCH_THRESHOLD,
        prompt_builder: PromptBuilder | None = None,
        canonical_strategy: CanonicalStrategy = longest_content,
    ) -> None:
        self.model = model
        self.batch_threshold = max(1, batch_threshold)
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.canonical_strategy = canonical_strategy
        self.scheduler = TaskScheduler(config)

    async def resolve(self, entries: Mapping[str, Entry], category: str) -> ResolutionResult:
        groups = find_candidate_groups(entries)
        logger.info(
            "Found %s candidate group(s) in %s",
            len(groups),
            category,
            extra={"ctx_category": category, "ctx_groups": len(groups)},
        )
        return await self.verify(groups, entries, category)

    async def verify(
        self,
        candidate_groups: Sequence[Sequence[str]],
        entries: Mapping[str, Entry],
        category: str,
    ) -> ResolutionResult:
        pairs = [pair for group in candidate_groups for pair in generate_pairs(group)]
        if not pairs:
            return ResolutionResult()

        if len(pairs) > self.batch_threshold:
            verdicts = await self._verify_in_batches(pairs, entries, category)
        else:
            verdicts = await self._verify_batch(0, pairs, pairs, entries, category)

        union_find = UnionFind(name for pair in pairs for name in pair)
        for verdict in verdicts:
            if verdict.is_same:
                name_a, name_b = pairs[verdict.pair_index]
                union_find.union(name_a, name_b)

        groups = [
            DuplicateGroup(names=group, main_name=self._select_main_name(group, verdicts, entries))
            for group in union_find.groups()
        ]
        logger.info(
            "Confirmed %s duplicate group(s) in %s from %s pair(s)",
            len(groups),
            category,
            len(pairs),
            extra={"ctx_category": category, "ctx_pairs": len(pairs)},
        )
        return ResolutionResult(pairs=pairs, verdicts=verdicts, groups=groups)

    def abort(self) -> None:
        self.scheduler.abort()

    async def _verify_in_batches(
        self,
        pairs: Sequence[tuple[str, str]],
        entries: Mapping[str, Entry],
        category: str,
    ) -> list[PairVerdict]:
        batches = [
            (start, list(pairs[start : start + self.batch_threshold]))
            for start in range(0, len(pairs), self.batch_threshold)
        ]

        async def worker(batch: tuple[int, list[tuple[str, str]]], index: int, attempt: int) -> list[PairVerdict]:
            start, batch_pairs = batch
            return await self._verify_batch(start, batch_pairs, pairs, entries, category)

        outcome = await self.scheduler.process(batches, worker)
        verdicts: list[PairVerdict] = []
        for index, result in enumerate(outcome.results):
            if outcome.errors[index] is not None:
                logger.warning(
                    "Duplicate verification batch %s failed: %s",
                    index,
                    outcome.errors[index],
                    extra={"ctx_category": category, "ctx_index": index},
                )
                continue
            verdicts.extend(result or [])
        return verdicts

    async def _verify_batch(
        self,
        start: int,
        batch_pairs: Sequence[tuple[str, str]],
        all_pairs: Sequence[tuple[str, str]],
        entries: Mapping[str, Entry],
        category: str,
    ) -> list[PairVerdict]:
        prompt = self.prompt_builder.build_duplicate_prompt(category, batch_pairs, entries)
        response = await self.model.invoke(self.prompt_builder.to_messages(prompt))
        parsed = parse_response(response)
        return _read_verdicts(parsed, start, len(batch_pairs), all_pairs)

    def _select_main_name(
        self,
        group: Sequence[str],
        verdicts: Sequence[PairVerdict],
        entries: Mapping[str, Entry],
    ) -> str:
        members = set(group)
        nominated = {
            verdict.main_name
            for verdict in verdicts
            if verdict.is_same and verdict.main_name in members
        }
        if len(nominated) == 1:
            return nominated.pop()
        return self.canonical_strategy(group, entries)


def _read_verdicts(
    parsed: Any,
    start: int,
    batch_size: int,
    all_pairs: Sequence[tuple[str, str]],
) -> list[PairVerdict]:
    items = parsed.get("results") if isinstance(parsed, Mapping) else None
    if not isinstance(items, list):
        return []
    verdicts: list[PairVerdict] = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        try:
            local = int(item.get("pair") or 1) - 1
        except (TypeError, ValueError):
            continue
        if local < 0 or local >= batch_size:
            continue
        global_index = start + local
        name_a, name_b = all_pairs[global_index]
        main_name = item.get("mainName")
        verdicts.append(
            PairVerdict(
                pair_index=global_index,
                name_a=name_a,
                name_b=name_b,
                is_same=_truthy(item.get("isSamePerson", item.get("isSame"))),
                main_name=str(main_name) if main_name else None,
                reason=item.get("reason"),
            )
        )
    return verdicts


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return value is True


def _keywords(entry: Entry | None) -> list[str]:
    if not isinstance(entry, Mapping):
        return []
    keywords = entry.get(KEYWORDS_FIELD) or []
    if isinstance(keywords, str):
        return [keywords]
    return [str(keyword) for keyword in keywords]


__all__ = [
    "CanonicalStrategy",
    "DuplicateResolver",
    "UnionFind",
    "find_candidate_groups",
    "generate_pairs",
    "is_candidate_pair",
    "longest_content",
    "short_name",
    "short_name_match",
]
