"""Tests for the merge engine."""

from __future__ import annotations

import pytest

from worldbook_forge.merge.engine import MergeEngine, count_entries, snapshot
from worldbook_forge.models.entities import ChangedEntry, DuplicateGroup, HistoryRecord


class MemoryHistory:
    def __init__(self) -> None:
        self.records: list[HistoryRecord] = []

    def append(self, record: HistoryRecord) -> int:
        record.id = len(self.records) + 1
        self.records.append(snapshot_record(record))
        return record.id


def snapshot_record(record: HistoryRecord) -> HistoryRecord:
    return HistoryRecord(
        memory_index=record.memory_index,
        memory_title=record.memory_title,
        previous_worldbook=snapshot(record.previous_worldbook),
        new_worldbook=snapshot(record.new_worldbook),
        changed_entries=list(record.changed_entries),
        timestamp=record.timestamp,
        id=record.id,
    )


def test_normalize_entry_collapses_aliases() -> None:
    engine = MergeEngine()
    entry = {"关键字": "甲,乙，丙", "content": "长一些的内容", "内容": "短"}
    engine.normalize_entry(entry)
    assert entry == {"关键词": ["甲", "乙", "丙"], "内容": "长一些的内容"}


def test_incremental_merge_unions_keywords_and_appends_content() -> None:
    engine = MergeEngine()
    target = {"角色": {"张三": {"关键词": ["张三"], "内容": "第一段"}}}
    engine.merge_incremental(target, {"角色": {"张三": {"关键词": ["老张", "张三"], "内容": "第二段"}}})
    entry = target["角色"]["张三"]
    assert entry["关键词"] == ["张三", "老张"]
    assert entry["内容"] == "第一段\n\n---\n\n第二段"


def test_incremental_merge_skips_repeated_content() -> None:
    engine = MergeEngine()
    content = "张三是一名剑客，" * 10
    target = {"角色": {"张三": {"关键词": [], "内容": content}}}
    engine.merge_incremental(target, {"角色": {"张三": {"内容": content + "多了一句"}}})
    assert target["角色"]["张三"]["内容"] == content


def test_incremental_merge_adds_new_entries_and_categories() -> None:
    engine = MergeEngine()
    target: dict = {}
    engine.merge_incremental(target, {"地点": {"长安": {"关键词": ["长安"], "内容": "都城"}}})
    assert target == {"地点": {"长安": {"关键词": ["长安"], "内容": "都城"}}}


def test_full_merge_overwrites_fields() -> None:
    engine = MergeEngine()
    target = {"角色": {"张三": {"关键词": ["张三"], "内容": "旧"}}}
    engine.merge_full(target, {"角色": {"张三": {"内容": "新"}}})
    assert target["角色"]["张三"] == {"关键词": ["张三"], "内容": "新"}


def test_find_changed_entries_reports_add_modify_delete() -> None:
    engine = MergeEngine()
    old = {"角色": {"甲": {"内容": "1"}, "乙": {"内容": "2"}}}
    new = {"角色": {"甲": {"内容": "1+"}, "丙": {"内容": "3"}}}
    assert engine.find_changed_entries(old, new) == [
        ChangedEntry("modify", "角色", "甲"),
        ChangedEntry("add", "角色", "丙"),
        ChangedEntry("delete", "角色", "乙"),
    ]


def test_merge_with_history_records_only_real_changes() -> None:
    history = MemoryHistory()
    engine = MergeEngine(history)
    worldbook: dict = {}

    changes = engine.merge_with_history(worldbook, {"角色": {"甲": {"内容": "x"}}}, 0, "第一章")
    assert changes == [ChangedEntry("add", "角色", "甲")]
    assert len(history.records) == 1
    assert history.records[0].previous_worldbook == {}
    assert history.records[0].new_worldbook == {"角色": {"甲": {"内容": "x"}}}

    assert engine.merge_with_history(worldbook, {"角色": {"甲": {"内容": "x"}}}, 1, "第二章") == []
    assert len(history.records) == 1


def test_rollback_returns_independent_copy_of_previous_state() -> None:
    history = MemoryHistory()
    engine = MergeEngine(history)
    worldbook: dict = {"角色": {"甲": {"内容": "a"}}}
    engine.merge_with_history(worldbook, {"角色": {"乙": {"内容": "b"}}}, 3, "chunk")
    engine.merge_with_history(worldbook, {"地点": {"城": {"内容": "c"}}}, 4, "chunk")

    restored = engine.rollback(history.records[0])
    assert restored == {"角色": {"甲": {"内容": "a"}}}
    restored["角色"]["甲"]["内容"] = "mutated"
    assert history.records[0].previous_worldbook["角色"]["甲"]["内容"] == "a"
    assert len(history.records) == 2


def test_snapshot_is_deep() -> None:
    data = {"a": {"b": [1, 2]}}
    copy = snapshot(data)
    copy["a"]["b"].append(3)
    assert data == {"a": {"b": [1, 2]}}


def test_chapter_suffix_is_rewritten_or_appended() -> None:
    engine = MergeEngine()
    result = {
        "剧情大纲": {"主线-第一章": {}, "支线": {}},
        "角色": {"张三": {}},
    }
    processed = engine.post_process_with_chapter_index(result, 5)
    assert set(processed["剧情大纲"]) == {"主线-第5章", "支线-第5章"}
    assert set(processed["角色"]) == {"张三"}


def test_chapter_suffix_disabled() -> None:
    engine = MergeEngine()
    result = {"剧情大纲": {"主线": {}}}
    assert engine.post_process_with_chapter_index(result, 2, force_chapter_marker=False) == result


def test_merge_confirmed_duplicates_folds_group_into_main_name() -> None:
    engine = MergeEngine()
    entries = {
        "张三": {"关键词": ["张三"], "内容": "剑客"},
        "老张": {"关键词": ["老张", "张师傅"], "内容": "酒馆常客"},
        "李四": {"关键词": ["李四"], "内容": "书生"},
    }
    merged = engine.merge_confirmed_duplicates(entries, [DuplicateGroup(["老张", "张三"], "张三")])
    assert merged == 1
    assert set(entries) == {"张三", "李四"}
    assert entries["张三"]["关键词"] == ["张三", "老张", "张师傅"]
    assert entries["张三"]["内容"] == "剑客\n\n---\n\n酒馆常客"


def test_merge_duplicates_with_history_records_changes() -> None:
    history = MemoryHistory()
    engine = MergeEngine(history)
    worldbook = {"角色": {"甲": {"内容": "a"}, "阿甲": {"内容": "b"}}}
    changes = engine.merge_duplicates_with_history(worldbook, "角色", [DuplicateGroup(["甲", "阿甲"], "甲")])
    assert ChangedEntry("delete", "角色", "阿甲") in changes
    assert ChangedEntry("modify", "角色", "甲") in changes
    assert count_entries(worldbook) == 1
    assert history.records[0].memory_index == -1


def test_group_with_no_member_left_writes_nothing() -> None:
    engine = MergeEngine()
    entries = {"李四": {"关键词": ["李四"], "内容": "书生"}}
    merged = engine.merge_confirmed_duplicates(entries, [DuplicateGroup(["张三", "老张"], "张三")])
    assert merged == 0
    assert entries == {"李四": {"关键词": ["李四"], "内容": "书生"}}


def test_reapplying_the_same_result_is_a_no_op() -> None:
    history = MemoryHistory()
    engine = MergeEngine(history)
    worldbook: dict = {}
    result = {"角色": {"张三": {"关键词": ["张三"], "内容": "剑客，使一把长剑"}}}

    engine.merge_with_history(worldbook, result, 0, "第1章")
    length = len(worldbook["角色"]["张三"]["内容"])

    assert engine.merge_with_history(worldbook, result, 0, "第1章") == []
    assert len(worldbook["角色"]["张三"]["内容"]) == length
    assert len(history.records) == 1


def test_new_content_for_an_entry_makes_it_strictly_longer() -> None:
    engine = MergeEngine()
    worldbook = {"角色": {"张三": {"关键词": ["张三"], "内容": "剑客"}}}
    before = len(worldbook["角色"]["张三"]["内容"])

    changes = engine.merge_with_history(worldbook, {"角色": {"张三": {"内容": "酒客"}}}, 1, "第2章")

    assert changes == [ChangedEntry("modify", "角色", "张三")]
    assert len(worldbook["角色"]["张三"]["内容"]) > before


def test_snapshot_rejects_integers_beyond_64_bits() -> None:
    with pytest.raises(TypeError):
        snapshot({"角色": {"张三": {"内容": 2**64}}})
