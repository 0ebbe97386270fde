"""Rough token estimates for mixed CJK/Latin text."""

from __future__ import annotations

import math
import re

_CJK_RE = re.compile(r"[一-龥]")
_WORD_RE = re.compile(r"[a-zA-Z]+")
_NUMBER_RE = re.compile(r"\d+")
_PUNCT_RE = re.compile(r"[^一-龥a-zA-Z0-9\s]")


def estimate_token_count(text: str | None) -> int:
    """Approximate tokenizer-independent count.

    CJK characters weigh 1.5, Latin words and digit runs 1, punctuation 0.5.
    """
    if not text:
        return 0
    tokens = len(_CJK_RE.findall(text)) * 1.5
    tokens += len(_WORD_RE.findall(text))
    tokens += len(_NUMBER_RE.findall(text))
    tokens += len(_PUNCT_RE.findall(text)) * 0.5
    return math.ceil(tokens)
