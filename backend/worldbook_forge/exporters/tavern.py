"""SillyTavern world-info export."""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

import orjson

from worldbook_forge.models.entities import CONTENT_FIELD, KEYWORDS_FIELD

DEFAULT_TRIGGER_CATEGORIES = ("地点", "剧情大纲")
MAX_KEYWORD_CHARS = 20
STOP_KEYWORDS = frozenset({"的", "了", "在", "是", "有", "和", "与", "或", "但"})
DEFAULT_POSITION = 0
DEFAULT_DEPTH = 4
ORDER_STEP = 100

_KEYWORD_STRIP_RE = re.compile(r"[-_\s]+")


def clean_keywords(keywords: Any, fallback: str) -> list[str]:
    """Trigger keys: separators removed, stop words and overlong keys dropped, order kept."""
    if keywords is None:
        raw: list[Any] = []
    elif isinstance(keywords, (list, tuple)):
        raw = list(keywords)
    else:
        raw = [keywords]
    cleaned: list[str] = []
    for keyword in raw:
        key = _KEYWORD_STRIP_RE.sub("", str(keyword).strip())
        if not key or len(key) > MAX_KEYWORD_CHARS or key in STOP_KEYWORDS or key in cleaned:
            continue
        cleaned.append(key)
    return cleaned or [fallback]


class TavernExporter:
    """Flatten the worldbook into SillyTavern ``entries`` keyed by uid.

    Entries in trigger categories are selective (fire on their keys); all
    others are constant. ``positions`` overrides ``position``/``depth``/
    ``order`` per entry, looked up by ``"category/name"`` then by name.
    Entries without content are skipped.
    """

    media_type = "application/json"
    extension = "json"

    def __init__(
        self,
        trigger_categories: Iterable[str] = DEFAULT_TRIGGER_CATEGORIES,
        positions: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> None:
        self.trigger_categories = frozenset(trigger_categories)
        self.positions = dict(positions or {})

    def build(self, worldbook: Mapping[str, Any], name: str = "worldbook") -> dict[str, Any]:
        entries: dict[str, dict[str, Any]] = {}
        uid = 0
        for category, items in worldbook.items():
            if not isinstance(items, Mapping):
                continue
            selective = category in self.trigger_categories
            for entry_name, entry in items.items():
                if not isinstance(entry, Mapping):
                    continue
                content = str(entry.get(CONTENT_FIELD) or "").strip()
                if not content:
                    continue
                placement = self.positions.get(f"{category}/{entry_name}") or self.positions.get(entry_name) or {}
                entries[str(uid)] = {
                    "uid": uid,
                    "displayIndex": uid,
                    "comment": f"{category} - {entry_name}",
                    "key": clean_keywords(entry.get(KEYWORDS_FIELD), entry_name),
                    "keysecondary": [],
                    "content": content,
                    "constant": not selective,
                    "selective": selective,
                    "selectiveLogic": 0,
                    "addMemo": True,
                    "position": placement.get("position", DEFAULT_POSITION),
                    "depth": placement.get("depth", DEFAULT_DEPTH),
                    "order": placement.get("order", (uid + 1) * ORDER_STEP),
                    "disable": False,
                    "excludeRecursion": bool(placement.get("exclude_recursion", False)),
                    "preventRecursion": False,
                    "probability": 100,
                    "useProbability": True,
                    "group": category,
                    "caseSensitive": False,
                    "matchWholeWords": True,
                }
                uid += 1
        return {"name": name, "entries": entries}

    def export(self, worldbook: Mapping[str, Any], name: str = "worldbook") -> str:
        return orjson.dumps(self.build(worldbook, name), option=orjson.OPT_INDENT_2).decode("utf-8")


__all__ = ["TavernExporter", "clean_keywords"]
