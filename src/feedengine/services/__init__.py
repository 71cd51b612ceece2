"""Service layer entry points for the feed engine."""

from __future__ import annotations

from .cache import FeedCache  # noqa: F401
from .duplicates import FeedDuplicateDetector, normalize_url  # noqa: F401
from .fetcher import CancelToken, Fetcher  # noqa: F401
from .loader import FeedLoader, categorize_error, merge_articles  # noqa: F401
from .normalizer import normalize_feed  # noqa: F401
from .opml import generate_opml, parse_opml, read_opml  # noqa: F401
from .validator import FeedDiscovery, FeedValidator  # noqa: F401

__all__ = [
    "CancelToken",
    "FeedCache",
    "FeedDiscovery",
    "FeedDuplicateDetector",
    "FeedLoader",
    "FeedValidator",
    "Fetcher",
    "categorize_error",
    "generate_opml",
    "merge_articles",
    "normalize_feed",
    "normalize_url",
    "parse_opml",
    "read_opml",
]
