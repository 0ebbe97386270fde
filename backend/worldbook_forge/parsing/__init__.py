"""Response repair parsing and response hygiene helpers."""

from .response import (
    extract_worldbook_data,
    filter_response_tags,
    is_token_limit_error,
    parse_response,
)

__all__ = [
    "parse_response",
    "filter_response_tags",
    "is_token_limit_error",
    "extract_worldbook_data",
]
