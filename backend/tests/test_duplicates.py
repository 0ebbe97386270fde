"""Tests for duplicate detection and verification."""

from __future__ import annotations

import asyncio
import re

import orjson
import pytest

from worldbook_forge.dedupe.resolver import (
    DuplicateResolver,
    UnionFind,
    find_candidate_groups,
    generate_pairs,
    longest_content,
    short_name_match,
)
from worldbook_forge.scheduler.types import ParallelConfig

_PAIR_RE = re.compile(r"配对(\d+): 「(.+?)」vs「(.+?)」")


def judge(same: set[frozenset[str]], main_name: str | None = None):
    """Build a model reply that answers every pair found in the prompt."""

    def reply(messages) -> str:
        results = []
        for number, name_a, name_b in _PAIR_RE.findall(messages[-1]["content"]):
            is_same = frozenset((name_a, name_b)) in same
            result = {"pair": int(number), "nameA": name_a, "nameB": name_b, "isSamePerson": is_same}
            if is_same:
                result["mainName"] = main_name or name_a
            results.append(result)
        return orjson.dumps({"results": results}).decode("utf-8")

    return reply


ENTRIES = {
    "张三": {"关键词": ["张三", "老张"], "内容": "剑客"},
    "老张": {"关键词": ["老张"], "内容": "酒馆里的常客，使一把长剑"},
    "李四": {"关键词": ["李四"], "内容": "书生"},
    "林黛玉": {"关键词": ["林黛玉"], "内容": "潇湘馆主人"},
    "黛玉": {"关键词": ["颦儿"], "内容": ""},
}


def test_candidate_groups_use_keywords_and_names() -> None:
    assert find_candidate_groups(ENTRIES) == [["张三", "老张"], ["林黛玉", "黛玉"]]


def test_candidate_scan_claims_each_name_once() -> None:
    entries = {"甲": {"关键词": ["x"]}, "乙": {"关键词": ["x"]}, "丙": {"关键词": ["x"]}}
    assert find_candidate_groups(entries) == [["甲", "乙", "丙"]]


@pytest.mark.parametrize(
    ("name_a", "name_b", "expected"),
    [
        ("诸葛孔明", "孔明", True),
        ("贾宝玉", "宝玉", True),
        ("张三", "李四", False),
        ("青云门", "天音寺", False),
    ],
)
def test_short_name_match(name_a: str, name_b: str, expected: bool) -> None:
    assert short_name_match(name_a, name_b) is expected


def test_generate_pairs_covers_every_combination() -> None:
    assert generate_pairs(["a", "b", "c"]) == [("a", "b"), ("a", "c"), ("b", "c")]


def test_union_find_groups_are_transitive() -> None:
    union_find = UnionFind(["a", "b", "c", "d", "e"])
    union_find.union("a", "b")
    union_find.union("c", "b")
    union_find.union("d", "e")
    assert union_find.groups() == [["a", "b", "c"], ["d", "e"]]
    assert union_find.find("c") == union_find.find("a")
    assert union_find.find("d") != union_find.find("a")


def test_longest_content_prefers_richest_entry() -> None:
    assert longest_content(["张三", "老张"], ENTRIES) == "老张"
    assert longest_content(["x", "y"], {}) == "x"


@pytest.mark.asyncio
async def test_verify_single_request_uses_model_nomination(make_model) -> None:
    model = make_model(default=judge({frozenset(("张三", "老张"))}, main_name="张三"))
    resolver = DuplicateResolver(model, ParallelConfig(retry_delay_ms=0))

    result = await resolver.verify([["张三", "老张"]], ENTRIES, "角色")

    assert len(model.calls) == 1
    assert "「张三」vs「老张」" in model.prompts[0]
    assert [(group.names, group.main_name) for group in result.groups] == [(["张三", "老张"], "张三")]


@pytest.mark.asyncio
async def test_verify_batches_map_pairs_to_global_indices(make_model) -> None:
    entries = {"甲": {"内容": "1"}, "乙": {"内容": "22"}, "丙": {"内容": "333"}}
    model = make_model(default=judge({frozenset(("甲", "乙")), frozenset(("乙", "丙"))}))
    resolver = DuplicateResolver(model, ParallelConfig(retry_delay_ms=0), batch_threshold=2)

    result = await resolver.verify([["甲", "乙", "丙"]], entries, "角色")

    assert len(model.calls) == 2
    assert sorted(verdict.pair_index for verdict in result.verdicts) == [0, 1, 2]
    assert [group.names for group in result.groups] == [["甲", "乙", "丙"]]


@pytest.mark.asyncio
async def test_conflicting_nominations_fall_back_to_strategy(make_model) -> None:
    entries = {"甲": {"内容": "1"}, "乙": {"内容": "22"}, "丙": {"内容": "333"}}
    replies = [
        orjson.dumps(
            {
                "results": [
                    {"pair": 1, "isSamePerson": True, "mainName": "甲"},
                    {"pair": 2, "isSamePerson": True, "mainName": "乙"},
                    {"pair": 3, "isSamePerson": "true", "mainName": "甲"},
                ]
            }
        ).decode("utf-8")
    ]
    resolver = DuplicateResolver(make_model(replies), ParallelConfig(retry_delay_ms=0))

    result = await resolver.verify([["甲", "乙", "丙"]], entries, "角色")
    assert result.groups[0].main_name == "丙"


@pytest.mark.asyncio
async def test_failed_batch_leaves_its_pairs_unconfirmed(make_model) -> None:
    entries = {"甲": {}, "乙": {}, "丙": {}}
    replies = [
        "sorry, I cannot answer that",
        '{"results": [{"pair": 1, "isSamePerson": true, "mainName": "乙"}]}',
    ]
    resolver = DuplicateResolver(
        make_model(replies),
        ParallelConfig(retry_count=1, retry_delay_ms=0),
        batch_threshold=2,
    )

    result = await resolver.verify([["甲", "乙", "丙"]], entries, "角色")

    assert [verdict.pair_index for verdict in result.verdicts] == [2]
    assert [(group.names, group.main_name) for group in result.groups] == [(["乙", "丙"], "乙")]


@pytest.mark.asyncio
async def test_out_of_range_pair_numbers_are_ignored(make_model) -> None:
    replies = ['{"results": [{"pair": 7, "isSamePerson": true}, {"pair": -1, "isSamePerson": true}]}']
    resolver = DuplicateResolver(make_model(replies), ParallelConfig(retry_delay_ms=0))
    result = await resolver.verify([["甲", "乙"]], {}, "角色")
    assert result.groups == []


@pytest.mark.asyncio
async def test_resolve_without_candidates_skips_model(make_model) -> None:
    model = make_model()
    resolver = DuplicateResolver(model, ParallelConfig(retry_delay_ms=0))
    result = await resolver.resolve({"张三": {"关键词": ["张三"]}, "李四": {"关键词": ["李四"]}}, "角色")
    assert result.groups == []
    assert model.calls == []


@pytest.mark.asyncio
async def test_resolve_end_to_end(make_model) -> None:
    model = make_model(default=judge({frozenset(("林黛玉", "黛玉"))}))
    resolver = DuplicateResolver(model, ParallelConfig(retry_delay_ms=0))
    result = await resolver.resolve(ENTRIES, "角色")
    assert [group.names for group in result.groups] == [["林黛玉", "黛玉"]]
    assert result.groups[0].main_name == "林黛玉"


@pytest.mark.asyncio
async def test_overlapping_resolves_on_one_resolver_stay_separate(make_model) -> None:
    first = {name: {"关键词": ["x"], "内容": name} for name in ("甲", "乙", "丙", "丁")}
    second = {name: {"关键词": ["y"], "内容": name} for name in ("子", "丑", "寅")}
    same = {frozenset(pair) for pair in generate_pairs(list(first)) + generate_pairs(list(second))}
    model = make_model(default=judge(same))
    scripted_invoke = model.invoke

    async def interleaved_invoke(messages):
        await asyncio.sleep(0.001)
        return await scripted_invoke(messages)

    model.invoke = interleaved_invoke
    resolver = DuplicateResolver(model, ParallelConfig(retry_delay_ms=0), batch_threshold=2)

    a, b = await asyncio.gather(resolver.resolve(first, "角色"), resolver.resolve(second, "角色"))

    assert sorted(verdict.pair_index for verdict in a.verdicts) == list(range(6))
    assert sorted(verdict.pair_index for verdict in b.verdicts) == list(range(3))
    assert [set(group.names) for group in a.groups] == [{"甲", "乙", "丙", "丁"}]
    assert [set(group.names) for group in b.groups] == [{"子", "丑", "寅"}]
    assert len(model.calls) == 5
