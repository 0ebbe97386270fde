"""Alias detection and model-confirmed duplicate grouping."""

from .resolver import DuplicateResolver, UnionFind, find_candidate_groups, generate_pairs, longest_content

__all__ = [
    "DuplicateResolver",
    "UnionFind",
    "find_candidate_groups",
    "generate_pairs",
    "longest_content",
]
