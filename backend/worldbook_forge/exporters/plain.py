"""Raw JSON and readable text exports of the worldbook."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

import orjson

from worldbook_forge.models.entities import CONTENT_FIELD, KEYWORDS_FIELD

JSON_FORMAT_VERSION = 1
RULE = "=" * 40


def _stamp(exported_at: datetime | None) -> datetime:
    return exported_at or datetime.now(timezone.utc)


class JsonExporter:
    """The worldbook as-is under ``categories`` with a version and export time."""

    media_type = "application/json"
    extension = "json"

    def __init__(self, pretty: bool = True) -> None:
        self.pretty = pretty

    def export(self, worldbook: Mapping[str, Any], name: str = "worldbook", exported_at: datetime | None = None) -> str:
        payload = {
            "name": name,
            "version": JSON_FORMAT_VERSION,
            "exportTime": _stamp(exported_at).isoformat(),
            "categories": worldbook,
        }
        option = orjson.OPT_INDENT_2 if self.pretty else 0
        return orjson.dumps(payload, option=option).decode("utf-8")


class TextExporter:
    media_type = "text/plain; charset=utf-8"
    extension = "txt"

    def export(self, worldbook: Mapping[str, Any], name: str = "worldbook", exported_at: datetime | None = None) -> str:
        lines = [f"{name}", f"导出时间: {_stamp(exported_at).strftime('%Y-%m-%d %H:%M:%S')}", ""]
        for category, entries in worldbook.items():
            if not isinstance(entries, Mapping) or not entries:
                continue
            lines.extend([f"\n{RULE}", f"【{category}】", f"{RULE}\n"])
            for entry_name, entry in entries.items():
                entry = entry if isinstance(entry, Mapping) else {}
                lines.append(f"\n--- {entry_name or '未命名'} ---")
                keywords = entry.get(KEYWORDS_FIELD)
                if keywords:
                    text = ", ".join(str(k) for k in keywords) if isinstance(keywords, list) else str(keywords)
                    lines.append(f"关键词: {text}")
                if entry.get(CONTENT_FIELD):
                    lines.append(f"\n{entry[CONTENT_FIELD]}")
                lines.append("")
        return "\n".join(lines)


__all__ = ["JsonExporter", "TextExporter"]
