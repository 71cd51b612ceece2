"""Progressive, stale-while-revalidate loading of many feeds at once.

A run publishes cached articles straight away when any source is still
fresh, fetches every source concurrently, and re-merges the successful
results as each one lands. Callers consume the run as a stream of
:class:`LoadingUpdate` snapshots.
"""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Literal, Sequence

from feedengine.config import EngineSettings
from feedengine.errors import (
    FeedEngineError,
    FetchCancelledError,
    FetchTimeoutError,
    FormatError,
)
from feedengine.models import (
    Article,
    CacheEntry,
    ErrorType,
    FeedError,
    FeedSource,
    LoadingState,
    LoadingUpdate,
    utcnow,
)
from feedengine.services.cache import FeedCache
from feedengine.services.fetcher import CancelToken, Fetcher
from feedengine.services.normalizer import normalize_feed

__all__ = ["FeedLoader", "FeedResult", "categorize_error", "merge_articles"]

logger = logging.getLogger(__name__)

_TIMEOUT_WORDS = ("timeout", "timed out", "abort")
_CORS_WORDS = ("cors", "cross-origin", "access-control-allow-origin")
_PARSE_WORDS = ("xml", "parse", "parsing", "unsupported", "not a valid rss")
_NETWORK_WORDS = ("network", "connection", "fetch", "dns", "http ", "transports failed")


def categorize_error(error: BaseException | str) -> ErrorType:
    """Map a failure to the bucket that drives the remediation hint shown to users."""

    if isinstance(error, FetchTimeoutError):
        return "timeout"
    if isinstance(error, FormatError):
        return "parse"

    message = str(error).lower()
    if any(word in message for word in _TIMEOUT_WORDS):
        return "timeout"
    if any(word in message for word in _CORS_WORDS):
        return "cors"
    if any(word in message for word in _PARSE_WORDS):
        return "parse"
    if any(word in message for word in _NETWORK_WORDS):
        return "network"
    return "unknown"


def merge_articles(groups: Iterable[Sequence[Article]]) -> List[Article]:
    """Concatenate ``groups`` and stable-sort newest first."""

    merged: List[Article] = []
    for group in groups:
        merged.extend(group)
    return sorted(merged, key=lambda article: article.published_at, reverse=True)


@dataclass(frozen=True)
class FeedResult:
    url: str
    title: str
    articles: List[Article] = field(default_factory=list)
    success: bool = True
    error: FeedError | None = None


@dataclass
class _Run:
    kind: Literal["load", "retry"]
    sources: List[FeedSource]
    token: CancelToken
    pending: int
    results: Dict[str, FeedResult] = field(default_factory=dict)
    updates: "queue.Queue[LoadingUpdate]" = field(default_factory=queue.Queue)

    @property
    def active(self) -> bool:
        return self.pending > 0 and not self.token.cancelled


def _unique_sources(sources: Iterable[FeedSource]) -> List[FeedSource]:
    seen: set[str] = set()
    unique: List[FeedSource] = []
    for source in sources:
        if source.url in seen:
            continue
        seen.add(source.url)
        unique.append(source)
    return unique


class FeedLoader:
    """Coordinates cache reads, concurrent fetches and progressive merging.

    Only one run is active at a time: starting a new load or retry cancels the
    run still in flight. A cancelled run performs no further cache writes or
    state changes, and the articles merged so far stay available.
    """

    def __init__(
        self,
        cache: FeedCache | None = None,
        fetcher: Fetcher | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self.settings = settings or (fetcher.settings if fetcher is not None else EngineSettings())
        self.cache = cache or FeedCache(self.settings.cache_max_age, blob_root=self.settings.blob_root)
        self.fetcher = fetcher or Fetcher(self.settings)
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.max_concurrency, thread_name_prefix="feed-loader"
        )
        self._lock = threading.RLock()
        self._sources: List[FeedSource] = []
        self._state = LoadingState()
        self._articles: List[Article] = []
        self._feed_results: Dict[str, FeedResult] = {}
        self._run: _Run | None = None

    # ------------------------------------------------------------------ state

    @property
    def loading_state(self) -> LoadingState:
        with self._lock:
            return self._state.model_copy(deep=True)

    @property
    def articles(self) -> List[Article]:
        with self._lock:
            return list(self._articles)

    @property
    def feed_results(self) -> Dict[str, FeedResult]:
        with self._lock:
            return dict(self._feed_results)

    def summary(self) -> str:
        """Human readable outcome of the last run, e.g. ``Loaded 2 of 3 feeds, 1 failed``."""

        with self._lock:
            state = self._state
            failed = len(state.errors)
            loaded = sum(1 for result in self._feed_results.values() if result.success)
            total = len(self._sources)
        if total == 0:
            return "No feeds configured"
        message = f"Loaded {loaded} of {total} feeds"
        if failed:
            message += f", {failed} failed"
        return message

    # ------------------------------------------------------------- operations

    def load_feeds(
        self, sources: Iterable[FeedSource], force_refresh: bool = False
    ) -> Iterator[LoadingUpdate]:
        """Start loading ``sources`` and return the stream of updates.

        The first update is published immediately: cached articles in a
        background refresh when any source has a fresh cache entry, otherwise a
        plain loading state. The stream ends with a ``success`` update, or an
        ``idle`` update when the run is cancelled or superseded.
        """

        sources = _unique_sources(sources)
        token = CancelToken()

        with self._lock:
            self._supersede_current_run()
            self._sources = sources

            if not sources:
                self._articles = []
                self._feed_results = {}
                self._state = LoadingState(status="success", progress=100.0)
                return iter([self._snapshot()])

            urls = {source.url for source in sources}
            seed = {url: result for url, result in self._feed_results.items() if url in urls}
            background = False
            if not force_refresh and any(self.cache.is_fresh(source.url) for source in sources):
                background = True
                for source in sources:
                    entry = self.cache.get_any(source.url)
                    if entry is not None:
                        seed[source.url] = FeedResult(
                            url=source.url, title=entry.title, articles=list(entry.articles)
                        )

            self._feed_results = seed
            self._state = LoadingState(
                status="loading", total_feeds=len(sources), is_background_refresh=background
            )
            if background:
                self._articles = self._merge_locked()
                logger.info(
                    "Displaying %d cached articles while refreshing %d feeds",
                    len(self._articles),
                    len(sources),
                )

            run = _Run(kind="load", sources=sources, token=token, pending=len(sources))
            self._run = run
            first = self._snapshot()

        self._submit(run)
        return self._stream(run, first)

    def load_all(self, sources: Iterable[FeedSource], force_refresh: bool = False) -> List[Article]:
        """Run :meth:`load_feeds` to completion and return the merged articles."""

        for _ in self.load_feeds(sources, force_refresh=force_refresh):
            pass
        return self.articles

    def retry_failed_feeds(self) -> Iterator[LoadingUpdate]:
        with self._lock:
            urls = [error.url for error in self._state.errors]
        return self.retry_selected_feeds(urls)

    def retry_selected_feeds(self, urls: Iterable[str]) -> Iterator[LoadingUpdate]:
        """Re-run only the configured sources whose URL is in ``urls``."""

        wanted = set(urls)
        with self._lock:
            sources = [source for source in self._sources if source.url in wanted]
            if not sources:
                return iter([self._snapshot()])

            self._supersede_current_run()
            retry_urls = {source.url for source in sources}
            logger.info("Retrying %d feeds", len(sources))
            self._state = LoadingState(
                status="loading",
                total_feeds=len(sources),
                errors=[error for error in self._state.errors if error.url not in retry_urls],
            )
            run = _Run(kind="retry", sources=sources, token=CancelToken(), pending=len(sources))
            self._run = run
            first = self._snapshot()

        self._submit(run)
        return self._stream(run, first)

    def cancel_loading(self) -> None:
        """Abort the run in flight and return to ``idle``, keeping merged articles."""

        with self._lock:
            run = self._run
            if run is not None and run.active:
                run.token.cancel()
                self._state.status = "idle"
                self._state.is_background_refresh = False
                run.updates.put(self._snapshot())
            else:
                self._state.status = "idle"
        logger.info("Feed loading cancelled")

    def close(self) -> None:
        self.cancel_loading()
        self._executor.shutdown(wait=False, cancel_futures=True)

    # -------------------------------------------------------------- internals

    def _supersede_current_run(self) -> None:
        run = self._run
        if run is None or not run.active:
            return
        logger.info("Cancelling the feed run still in flight")
        run.token.cancel()
        stale = self._snapshot()
        stale.state.status = "idle"
        run.updates.put(stale)

    def _submit(self, run: _Run) -> None:
        for source in run.sources:
            self._executor.submit(self._run_task, run, source)

    def _stream(self, run: _Run, first: LoadingUpdate) -> Iterator[LoadingUpdate]:
        yield first
        while True:
            update = run.updates.get()
            yield update
            if update.state.status != "loading":
                return

    def _run_task(self, run: _Run, source: FeedSource) -> None:
        try:
            result = self._load_single_feed(source, run.token)
            if result is None:
                return
            self._complete(run, source, result)
        except Exception:
            logger.exception("Feed loading broke while handling %s", source.url)
            with self._lock:
                if self._run is run and not run.token.cancelled:
                    run.token.cancel()
                    self._state.status = "error"
                    self._state.is_background_refresh = False
                    run.updates.put(self._snapshot())

    def _load_single_feed(self, source: FeedSource, token: CancelToken) -> FeedResult | None:
        logger.debug("Loading feed %s", source.url)
        try:
            body = self.fetcher.fetch(
                source.url, timeout=self.settings.feed_timeout, cancel_token=token
            )
            token.raise_if_cancelled(source.url)
            parsed = normalize_feed(body, source.url, summary_length=self.settings.summary_length)
        except FetchCancelledError:
            return None
        except FeedEngineError as exc:
            logger.warning("Failed to load feed %s: %s", source.url, exc)
            error = FeedError(
                url=source.url,
                message=str(exc),
                error_type=categorize_error(exc),
                feed_title=source.custom_title or source.url,
            )
            return FeedResult(
                url=source.url,
                title=source.custom_title or source.url,
                success=False,
                error=error,
            )

        return FeedResult(url=source.url, title=parsed.title, articles=list(parsed.articles))

    def _complete(self, run: _Run, source: FeedSource, result: FeedResult) -> None:
        with self._lock:
            if self._run is not run or run.token.cancelled:
                return

            if result.success:
                self.cache.put(
                    source.url,
                    CacheEntry(
                        feed_url=source.url,
                        title=result.title,
                        articles=result.articles,
                        fetched_at=utcnow(),
                    ),
                )
                self._feed_results[source.url] = result
            elif result.error is not None:
                self._state.errors.append(result.error)

            run.results[source.url] = result
            run.pending -= 1
            self._state.loaded_feeds += 1
            self._state.progress = self._state.loaded_feeds / self._state.total_feeds * 100

            if run.pending == 0:
                self._finish_locked(run)
            else:
                self._articles = self._merge_locked()
            run.updates.put(self._snapshot())

    def _finish_locked(self, run: _Run) -> None:
        successes = {url: result for url, result in run.results.items() if result.success}
        if run.kind == "load":
            self._feed_results = successes
        else:
            self._feed_results.update(successes)
        self._articles = self._merge_locked()
        self._state.status = "success"
        self._state.progress = 100.0
        self._state.is_background_refresh = False
        logger.info(
            "Feed loading completed: %d of %d feeds succeeded, %d errors",
            len(successes),
            len(run.sources),
            len(self._state.errors),
        )

    def _merge_locked(self) -> List[Article]:
        return merge_articles(
            self._feed_results[source.url].articles
            for source in self._sources
            if source.url in self._feed_results
        )

    def _snapshot(self) -> LoadingUpdate:
        return LoadingUpdate(state=self._state.model_copy(deep=True), articles=list(self._articles))
