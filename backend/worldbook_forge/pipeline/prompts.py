"""Prompt templates for extraction and duplicate verification."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import orjson

from worldbook_forge.models.entities import CONTENT_FIELD, KEYWORDS_FIELD, Entry

PAIR_EXCERPT_CHARS = 300


@dataclass(frozen=True, slots=True)
class CategorySpec:
    name: str
    entry_example: str
    keywords_example: tuple[str, ...]
    content_guide: str


DEFAULT_CATEGORIES: tuple[CategorySpec, ...] = (
    CategorySpec("角色", "角色真实姓名", ("真实姓名", "称呼1", "称呼2"), "角色的身份、外貌、性格、经历与人际关系"),
    CategorySpec("地点", "地点名称", ("地点名", "别称"), "地点的位置、环境、历史与相关人物"),
    CategorySpec("组织", "组织名称", ("组织名", "简称"), "组织的性质、成员、目标与势力范围"),
    CategorySpec("剧情大纲", "主线剧情", ("剧情", "主线"), "本章主要事件的时间线与因果关系"),
)

DEFAULT_WORLDBOOK_PROMPT = """你是专业的小说世界书生成专家。请仔细阅读提供的小说内容，提取其中的关键信息，生成高质量的世界书条目。

重要要求：
1. 必须基于提供的具体小说内容，不要生成通用模板
2. 只输出以下指定分类：{ENABLED_CATEGORY_NAMES}，禁止输出其他未指定的分类
3. 关键词必须是文中实际出现的名称
4. 内容必须基于原文描述，不要添加原文没有的信息
5. 内容使用 markdown 格式

输出格式（标准 JSON）：
{DYNAMIC_JSON_TEMPLATE}

## 小说内容（{TITLE}）
{CONTENT}

直接输出 JSON，不要包含代码块标记。"""

DUPLICATE_PROMPT = """你是{CATEGORY}识别专家。请对以下每一对{CATEGORY}进行判断，判断它们是否为同一事物。

## 待判断的{CATEGORY}配对
{PAIRS}

## 判断依据
- 仔细阅读每个条目的关键词和内容摘要
- 考虑：全名 vs 简称、别名、昵称、代号等称呼变化
- 如果内容描述明显指向同一事物，则判定为相同
- 即使名字相似，如果核心特征明显不同，也要判定为不同

## 输出格式
{
    "results": [
        {"pair": 1, "nameA": "条目A名", "nameB": "条目B名", "isSamePerson": true, "mainName": "保留的名称", "reason": "判断依据"},
        {"pair": 2, "nameA": "条目A名", "nameB": "条目B名", "isSamePerson": false, "reason": "不是同一事物的原因"}
    ]
}"""

ENTRY_REROLL_PROMPT = """你是世界书条目优化专家。请重新生成以下条目，使其更加准确和完整。

## 当前条目
分类：{CATEGORY}
名称：{NAME}
关键词：{KEYWORDS}
内容：{CONTENT}

## 要求
1. 保留所有重要信息
2. 优化表达和结构
3. 补充可能的遗漏
4. 使用 markdown 格式

{EXTRA}请直接输出优化后的条目内容（JSON 格式），形如 {"关键词": ["..."], "内容": "..."}："""

DEFAULT_MESSAGE_CHAIN: tuple[dict[str, Any], ...] = ({"role": "user", "content": "{PROMPT}", "enabled": True},)


class PromptBuilder:
    """Render prompts and wrap them into role/content message lists."""

    def __init__(
        self,
        categories: Sequence[CategorySpec] = DEFAULT_CATEGORIES,
        template: str | None = None,
        message_chain: Sequence[Mapping[str, Any]] | None = None,
    ) -> None:
        self.categories = tuple(categories)
        self.template = template or DEFAULT_WORLDBOOK_PROMPT
        self.message_chain = tuple(message_chain) if message_chain else DEFAULT_MESSAGE_CHAIN

    @property
    def category_names(self) -> list[str]:
        return [category.name for category in self.categories]

    def build_generation_prompt(self, title: str, content: str) -> str:
        return (
            self.template.replace("{ENABLED_CATEGORY_NAMES}", ",".join(self.category_names))
            .replace("{DYNAMIC_JSON_TEMPLATE}", self.build_json_template())
            .replace("{TITLE}", title)
            .replace("{CONTENT}", content)
        )

    def build_json_template(self) -> str:
        template = {
            category.name: {
                category.entry_example: {
                    KEYWORDS_FIELD: list(category.keywords_example),
                    CONTENT_FIELD: category.content_guide,
                }
            }
            for category in self.categories
        }
        return orjson.dumps(template, option=orjson.OPT_INDENT_2).decode("utf-8")

    def build_duplicate_prompt(
        self,
        category: str,
        pairs: Sequence[tuple[str, str]],
        entries: Mapping[str, Entry],
    ) -> str:
        """Pairs are numbered from 1 within this prompt."""
        blocks = [
            _describe_pair(offset + 1, name_a, name_b, entries)
            for offset, (name_a, name_b) in enumerate(pairs)
        ]
        return DUPLICATE_PROMPT.replace("{CATEGORY}", category).replace("{PAIRS}", "\n\n".join(blocks))

    def build_entry_reroll_prompt(self, category: str, name: str, entry: Mapping[str, Any], instructions: str = "") -> str:
        keywords = entry.get(KEYWORDS_FIELD) or []
        keyword_text = ", ".join(str(k) for k in keywords) if isinstance(keywords, list) else str(keywords)
        extra = f"## 额外要求\n{instructions}\n\n" if instructions.strip() else ""
        return (
            ENTRY_REROLL_PROMPT.replace("{CATEGORY}", category)
            .replace("{NAME}", name)
            .replace("{KEYWORDS}", keyword_text or "无")
            .replace("{CONTENT}", str(entry.get(CONTENT_FIELD) or "无"))
            .replace("{EXTRA}", extra)
        )

    def to_messages(self, prompt: str) -> list[dict[str, str]]:
        """Expand the message chain, substituting ``{PROMPT}``; skip disabled or empty messages."""
        messages = [
            {"role": str(message.get("role") or "user"), "content": str(message.get("content") or "").replace("{PROMPT}", prompt)}
            for message in self.message_chain
            if message.get("enabled", True) is not False
        ]
        messages = [message for message in messages if message["content"].strip()]
        return messages or [{"role": "user", "content": prompt}]


def _describe_pair(number: int, name_a: str, name_b: str, entries: Mapping[str, Entry]) -> str:
    lines = [f"配对{number}: 「{name_a}」vs「{name_b}」"]
    for name in (name_a, name_b):
        entry = entries.get(name) or {}
        keywords = entry.get(KEYWORDS_FIELD) or []
        keyword_text = ", ".join(str(k) for k in keywords) if isinstance(keywords, list) else str(keywords)
        content = str(entry.get(CONTENT_FIELD) or "")
        excerpt = content[:PAIR_EXCERPT_CHARS] + ("..." if len(content) > PAIR_EXCERPT_CHARS else "")
        lines.append(f"  【{name}】关键词：{keyword_text or '无'}")
        lines.append(f"  内容摘要：{excerpt}")
    return "\n".join(lines)


__all__ = ["CategorySpec", "DEFAULT_CATEGORIES", "PromptBuilder"]
