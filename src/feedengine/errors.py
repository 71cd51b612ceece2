"""Exception hierarchy raised by the feed engine."""

from __future__ import annotations

__all__ = [
    "FeedEngineError",
    "FormatError",
    "UnsupportedFormatError",
    "FetchError",
    "FetchTimeoutError",
    "FetchCancelledError",
    "ValidationError",
    "DuplicateDetectionError",
]


class FeedEngineError(Exception):
    """Base class for every error raised by :mod:`feedengine`."""


class FormatError(FeedEngineError):
    """The payload is not well-formed XML or not a feed we understand."""

    def __init__(self, message: str, url: str | None = None) -> None:
        self.url = url
        if url:
            message = f"{message} ({url})"
        super().__init__(message)


class UnsupportedFormatError(FormatError):
    """Well-formed XML that is neither RSS 2.0, Atom nor RDF."""


class FetchError(FeedEngineError):
    """Raised when a URL could not be fetched through any transport."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        retryable: bool = True,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.retryable = retryable
        self.status_code = status_code


class FetchTimeoutError(FetchError):
    """A single attempt ran past its timeout."""


class FetchCancelledError(FetchError):
    """The caller cancelled the fetch."""

    def __init__(self, message: str = "Request was cancelled", *, url: str | None = None) -> None:
        super().__init__(message, url=url, retryable=False)


class ValidationError(FeedEngineError):
    """The feed responded but is not usable."""

    def __init__(self, message: str, *, suggestions: list[str] | None = None) -> None:
        super().__init__(message)
        self.suggestions = list(suggestions or [])


class DuplicateDetectionError(FeedEngineError):
    """The duplicate detector could not compare two URLs."""
