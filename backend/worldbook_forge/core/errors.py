"""Error taxonomy shared by the scheduler, parser and model clients."""

from __future__ import annotations


class WorldbookError(Exception):
    """Base class for every error raised by Worldbook Forge."""

    retryable = True


class AbortedError(WorldbookError):
    """Cooperative cancellation; never retried."""

    retryable = False

    def __init__(self, message: str = "aborted", outcome: object | None = None) -> None:
        super().__init__(message)
        self.outcome = outcome


class ParseError(WorldbookError):
    """Model output could not be coerced into structured data."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class ProviderError(WorldbookError):
    """The model backend rejected or failed the request."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TokenLimitError(ProviderError):
    """Context-length overflow; the chunk must be split, not retried as-is."""

    retryable = False


class NetworkError(ProviderError):
    """Transport failure before a response was received."""


class ModelTimeoutError(ProviderError):
    """The model call did not finish within the configured timeout."""


class RecordNotFoundError(WorldbookError, LookupError):
    """A history or roll id that does not exist."""

    retryable = False


__all__ = [
    "WorldbookError",
    "AbortedError",
    "ParseError",
    "ProviderError",
    "TokenLimitError",
    "NetworkError",
    "ModelTimeoutError",
    "RecordNotFoundError",
]
