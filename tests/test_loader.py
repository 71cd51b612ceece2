from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List

import pytest

from feedengine.config import EngineSettings
from feedengine.errors import FetchCancelledError, FetchError, FetchTimeoutError, FormatError
from feedengine.models import Article, CacheEntry, FeedSource, utcnow
from feedengine.services.cache import FeedCache
from feedengine.services.loader import FeedLoader, categorize_error, merge_articles

ALPHA = "https://alpha.example/rss"
BETA = "https://beta.example/rss"


def _rss(title: str, *items: tuple[str, str]) -> str:
    entries = "".join(
        f"<item><title>{name}</title><link>https://{title.lower()}.example/{name}</link>"
        f"<pubDate>{date}</pubDate></item>"
        for name, date in items
    )
    return f'<rss version="2.0"><channel><title>{title}</title>{entries}</channel></rss>'


ALPHA_FEED = _rss("Alpha", ("a1", "Tue, 30 Apr 2024 10:00:00 GMT"), ("a2", "Sat, 27 Apr 2024 10:00:00 GMT"))
BETA_FEED = _rss("Beta", ("b1", "Mon, 29 Apr 2024 10:00:00 GMT"))


class FakeFetcher:
    """Serves canned bodies or raises canned errors; ``blocked`` URLs wait for cancellation."""

    def __init__(self, outcomes: Dict[str, object], blocked: set[str] | None = None) -> None:
        self.outcomes = outcomes
        self.blocked = blocked or set()
        self.calls: List[str] = []
        self.started = threading.Event()

    def fetch(self, url, *, timeout=None, max_retries=None, cancel_token=None):
        self.calls.append(url)
        if url in self.blocked:
            self.started.set()
            if cancel_token.wait(5):
                raise FetchCancelledError(url=url)
        outcome = self.outcomes[url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        pass


def _loader(fetcher: FakeFetcher, cache: FeedCache | None = None) -> FeedLoader:
    settings = EngineSettings(max_concurrency=4)
    return FeedLoader(cache or FeedCache(), fetcher, settings)


def _sources(*urls: str) -> List[FeedSource]:
    return [FeedSource(url=url, custom_title=url.split("//")[1].split(".")[0].title()) for url in urls]


def test_load_all_merges_feeds_newest_first() -> None:
    loader = _loader(FakeFetcher({ALPHA: ALPHA_FEED, BETA: BETA_FEED}))

    articles = loader.load_all(_sources(ALPHA, BETA))

    assert [article.title for article in articles] == ["a1", "b1", "a2"]
    state = loader.loading_state
    assert state.status == "success"
    assert state.progress == 100
    assert state.loaded_feeds == 2
    assert state.errors == []
    assert loader.summary() == "Loaded 2 of 2 feeds"


def test_stream_reports_progress_for_each_feed() -> None:
    loader = _loader(FakeFetcher({ALPHA: ALPHA_FEED, BETA: BETA_FEED}))

    updates = list(loader.load_feeds(_sources(ALPHA, BETA)))

    assert updates[0].state.status == "loading"
    assert [update.state.loaded_feeds for update in updates[1:]] == [1, 2]
    assert updates[-1].state.status == "success"
    assert len(updates[-1].articles) == 3


def test_successful_feeds_are_written_to_the_cache() -> None:
    cache = FeedCache()
    loader = _loader(FakeFetcher({ALPHA: ALPHA_FEED}), cache)

    loader.load_all(_sources(ALPHA))

    entry = cache.get_fresh(ALPHA)
    assert entry is not None
    assert entry.title == "Alpha"
    assert len(entry.articles) == 2


def test_partial_failure_is_recorded_not_raised() -> None:
    fetcher = FakeFetcher({ALPHA: ALPHA_FEED, BETA: FetchError("Network error: connection refused")})
    cache = FeedCache()
    loader = _loader(fetcher, cache)

    articles = loader.load_all(_sources(ALPHA, BETA))

    assert [article.source_title for article in articles] == ["Alpha", "Alpha"]
    state = loader.loading_state
    assert state.status == "success"
    assert len(state.errors) == 1
    error = state.errors[0]
    assert error.url == BETA
    assert error.error_type == "network"
    assert error.feed_title == "Beta"
    assert cache.get_any(BETA) is None
    assert loader.summary() == "Loaded 1 of 2 feeds, 1 failed"


def test_parse_failures_are_categorized() -> None:
    loader = _loader(FakeFetcher({ALPHA: "<rss><channel>"}))

    loader.load_all(_sources(ALPHA))

    assert loader.loading_state.errors[0].error_type == "parse"


def test_cached_articles_are_shown_while_refreshing() -> None:
    cache = FeedCache()
    stale_article = Article(
        title="cached", link="https://alpha.example/cached", published_at=utcnow(), source_title="Alpha"
    )
    cache.put(ALPHA, CacheEntry(feed_url=ALPHA, title="Alpha", articles=[stale_article], fetched_at=utcnow()))
    loader = _loader(FakeFetcher({ALPHA: ALPHA_FEED, BETA: BETA_FEED}), cache)

    updates = loader.load_feeds(_sources(ALPHA, BETA))
    first = next(updates)

    assert first.state.is_background_refresh is True
    assert [article.title for article in first.articles] == ["cached"]

    final = list(updates)[-1]
    assert final.state.status == "success"
    assert final.state.is_background_refresh is False
    assert [article.title for article in final.articles] == ["a1", "b1", "a2"]


def test_force_refresh_skips_the_cache() -> None:
    cache = FeedCache()
    cache.put(ALPHA, CacheEntry(feed_url=ALPHA, title="Alpha", articles=[], fetched_at=utcnow()))
    fetcher = FakeFetcher({ALPHA: ALPHA_FEED})
    loader = _loader(fetcher, cache)

    first = next(loader.load_feeds(_sources(ALPHA), force_refresh=True))

    assert first.state.is_background_refresh is False
    assert first.articles == []


def test_stale_cache_does_not_start_a_background_refresh() -> None:
    cache = FeedCache(timedelta(minutes=15))
    cache.put(
        ALPHA,
        CacheEntry(feed_url=ALPHA, title="Alpha", articles=[], fetched_at=utcnow() - timedelta(hours=1)),
    )
    loader = _loader(FakeFetcher({ALPHA: ALPHA_FEED}), cache)

    first = next(loader.load_feeds(_sources(ALPHA)))

    assert first.state.is_background_refresh is False


def test_empty_source_list_finishes_immediately() -> None:
    loader = _loader(FakeFetcher({}))

    updates = list(loader.load_feeds([]))

    assert len(updates) == 1
    assert updates[0].state.status == "success"
    assert loader.summary() == "No feeds configured"


def test_retry_failed_feeds_reloads_only_the_failures() -> None:
    fetcher = FakeFetcher({ALPHA: ALPHA_FEED, BETA: FetchError("Network error: down")})
    loader = _loader(fetcher)
    loader.load_all(_sources(ALPHA, BETA))

    fetcher.outcomes[BETA] = BETA_FEED
    fetcher.calls.clear()
    final = list(loader.retry_failed_feeds())[-1]

    assert fetcher.calls == [BETA]
    assert final.state.status == "success"
    assert final.state.errors == []
    assert [article.title for article in final.articles] == ["a1", "b1", "a2"]


def test_retry_selected_feeds_ignores_unknown_urls() -> None:
    loader = _loader(FakeFetcher({ALPHA: ALPHA_FEED}))
    loader.load_all(_sources(ALPHA))

    updates = list(loader.retry_selected_feeds(["https://unknown.example/rss"]))

    assert len(updates) == 1
    assert updates[0].state.status == "success"


def test_cancel_loading_keeps_articles_and_skips_cache_writes() -> None:
    fetcher = FakeFetcher({ALPHA: ALPHA_FEED, BETA: BETA_FEED}, blocked={BETA})
    cache = FeedCache()
    loader = _loader(fetcher, cache)

    updates = loader.load_feeds(_sources(ALPHA, BETA))
    assert fetcher.started.wait(5)
    seen = [next(updates)]
    while seen[-1].state.loaded_feeds < 1:
        seen.append(next(updates))

    loader.cancel_loading()
    remaining = list(updates)
    loader._executor.shutdown(wait=True)

    assert remaining[-1].state.status == "idle"
    assert loader.loading_state.status == "idle"
    assert [article.title for article in loader.articles] == ["a1", "a2"]
    assert cache.get_any(BETA) is None


def test_new_load_cancels_the_run_in_flight() -> None:
    fetcher = FakeFetcher({ALPHA: ALPHA_FEED, BETA: BETA_FEED}, blocked={BETA})
    loader = _loader(fetcher)

    first_run = loader.load_feeds(_sources(BETA))
    assert fetcher.started.wait(5)

    fetcher.blocked.clear()
    second_run = list(loader.load_feeds(_sources(ALPHA)))

    assert list(first_run)[-1].state.status == "idle"
    assert second_run[-1].state.status == "success"
    assert [article.title for article in loader.articles] == ["a1", "a2"]


@pytest.mark.parametrize(
    "error, expected",
    [
        (FetchTimeoutError("Request timeout after 10s"), "timeout"),
        (FormatError("XML parsing error: bad"), "parse"),
        (FetchError("Blocked by CORS policy"), "cors"),
        (FetchError("All transports failed. Last error: HTTP 502: Bad Gateway"), "network"),
        (RuntimeError("something odd"), "unknown"),
        ("The operation was aborted", "timeout"),
    ],
)
def test_categorize_error(error, expected) -> None:
    assert categorize_error(error) == expected


def test_merge_articles_is_stable_for_equal_dates() -> None:
    when = datetime(2024, 4, 30, tzinfo=timezone.utc)
    first = Article(title="first", link="https://a.example/1", published_at=when)
    second = Article(title="second", link="https://b.example/1", published_at=when)
    newest = Article(title="newest", link="https://b.example/2", published_at=when + timedelta(hours=1))

    merged = merge_articles([[first], [second, newest]])

    assert [article.title for article in merged] == ["newest", "first", "second"]
