"""Worldbook exporters keyed by format name."""

from typing import Any, Mapping, Protocol

from .plain import JsonExporter, TextExporter
from .tavern import TavernExporter, clean_keywords


class Exporter(Protocol):
    media_type: str
    extension: str

    def export(self, worldbook: Mapping[str, Any], name: str = "worldbook") -> str: ...


EXPORTERS = {
    "tavern": TavernExporter,
    "json": JsonExporter,
    "txt": TextExporter,
}


def get_exporter(fmt: str) -> Exporter:
    try:
        return EXPORTERS[fmt]()
    except KeyError:
        raise ValueError(f"unknown export format {fmt!r}; expected one of {', '.join(EXPORTERS)}") from None


__all__ = [
    "EXPORTERS",
    "Exporter",
    "JsonExporter",
    "TavernExporter",
    "TextExporter",
    "clean_keywords",
    "get_exporter",
]
