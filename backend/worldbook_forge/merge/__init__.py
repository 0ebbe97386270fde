"""Worldbook merge, diff and history engine."""

from .engine import MergeEngine, count_entries, snapshot

__all__ = ["MergeEngine", "count_entries", "snapshot"]
