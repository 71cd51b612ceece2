"""Session-scoped facade wiring the cache, fetcher, loader, validator and detector together."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, List, Sequence

from feedengine.config import EngineSettings
from feedengine.models import (
    Article,
    DuplicateDetectionResult,
    FeedCategory,
    FeedSource,
    FeedValidationResult,
    LoadingState,
    LoadingUpdate,
)
from feedengine.services.cache import FeedCache
from feedengine.services.duplicates import FeedDuplicateDetector
from feedengine.services.fetcher import Fetcher
from feedengine.services.loader import FeedLoader
from feedengine.services.opml import DEFAULT_OPML_TITLE, OpmlImport, generate_opml, read_opml
from feedengine.services.validator import FeedValidator, ProgressCallback

__all__ = ["FeedEngine"]

logger = logging.getLogger(__name__)


class FeedEngine:
    """One instance per application session. Use as a context manager or call :meth:`close`."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        fetcher: Fetcher | None = None,
        cache: FeedCache | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.fetcher = fetcher or Fetcher(self.settings)
        self.cache = cache or FeedCache(self.settings.cache_max_age, blob_root=self.settings.blob_root)
        self.loader = FeedLoader(self.cache, self.fetcher, self.settings)
        self.validator = FeedValidator(self.fetcher, self.settings)
        self.detector = FeedDuplicateDetector()
        self._closed = False

    def __enter__(self) -> "FeedEngine":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # loading

    @property
    def loading_state(self) -> LoadingState:
        return self.loader.loading_state

    @property
    def articles(self) -> List[Article]:
        return self.loader.articles

    def summary(self) -> str:
        return self.loader.summary()

    def load_feeds(
        self, sources: Iterable[FeedSource], force_refresh: bool = False
    ) -> Iterator[LoadingUpdate]:
        return self.loader.load_feeds(sources, force_refresh=force_refresh)

    def load_all(self, sources: Iterable[FeedSource], force_refresh: bool = False) -> List[Article]:
        return self.loader.load_all(sources, force_refresh=force_refresh)

    def retry_failed_feeds(self) -> Iterator[LoadingUpdate]:
        return self.loader.retry_failed_feeds()

    def retry_selected_feeds(self, urls: Iterable[str]) -> Iterator[LoadingUpdate]:
        return self.loader.retry_selected_feeds(urls)

    def cancel_loading(self) -> None:
        self.loader.cancel_loading()

    # validation

    def validate_feed(self, url: str) -> FeedValidationResult:
        return self.validator.validate_feed(url)

    def validate_feed_with_discovery(
        self, url: str, on_progress: ProgressCallback | None = None
    ) -> FeedValidationResult:
        return self.validator.validate_feed_with_discovery(url, on_progress)

    def revalidate_feed(self, url: str) -> FeedValidationResult:
        return self.validator.revalidate_feed(url)

    # duplicates and OPML

    def detect_duplicate(
        self, url: str, existing: Iterable[FeedSource]
    ) -> DuplicateDetectionResult:
        return self.detector.detect_duplicate(url, existing)

    def import_opml(self, text: str | bytes) -> OpmlImport:
        return read_opml(text)

    def export_opml(
        self,
        sources: Iterable[FeedSource],
        categories: Sequence[FeedCategory] = (),
        *,
        title: str = DEFAULT_OPML_TITLE,
        owner_name: str | None = None,
        owner_email: str | None = None,
        include_categories: bool = True,
        include_metadata: bool = True,
    ) -> str:
        return generate_opml(
            sources,
            categories,
            title=title,
            owner_name=owner_name,
            owner_email=owner_email,
            include_categories=include_categories,
            include_metadata=include_metadata,
            detector=self.detector,
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.loader.close()
        self.fetcher.close()
        logger.debug("Feed engine closed")
