"""Feed validation with per-path attempt history and feed discovery for web pages."""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, Iterator, List, Sequence
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from feedengine.config import EngineSettings
from feedengine.errors import (
    FeedEngineError,
    FetchError,
    FetchTimeoutError,
    FormatError,
    UnsupportedFormatError,
)
from feedengine.models import (
    DiscoveredFeed,
    DiscoveryProgress,
    FeedValidationResult,
    ParsedFeed,
    ValidationAttempt,
    ValidationIssue,
    utcnow,
)
from feedengine.services.duplicates import normalize_url
from feedengine.services.fetcher import DirectTransport, Fetcher
from feedengine.services.normalizer import normalize_feed

__all__ = [
    "COMMON_FEED_PATHS",
    "FeedDiscovery",
    "FeedValidator",
    "MAX_ATTEMPT_HISTORY",
    "ProgressCallback",
    "classify_failure",
]

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[DiscoveryProgress], None]

MAX_ATTEMPT_HISTORY = 10
MAX_ANCHOR_CANDIDATES = 20

LINK_DISCOVERY_CONFIDENCE = 0.9
COMMON_PATH_CONFIDENCE = 0.7
ANCHOR_CONFIDENCE = 0.6

FEED_LINK_TYPES = {
    "application/rss+xml": "rss",
    "application/rdf+xml": "rss",
    "application/atom+xml": "atom",
}

COMMON_FEED_PATHS = (
    "/rss.xml",
    "/feed.xml",
    "/atom.xml",
    "/rss",
    "/feed",
    "/feeds/all.atom.xml",
    "/feeds/posts/default",
    "/blog/rss.xml",
    "/blog/feed.xml",
    "/news/rss.xml",
    "/index.xml",
    "/feed/",
    "/rss/",
    "/feeds/",
    "/wp-rss2.php",
    "/wp-atom.php",
    "/wp-rdf.php",
)

_FEEDISH_HREF = re.compile(
    r"(?:/(?:rss|atom|feeds?)(?:\.xml)?/?$|\.(?:rss|atom)$|/(?:rss|atom|feed)\.xml$|[?&]feed=)",
    re.IGNORECASE,
)

NO_FEEDS_FOUND = "No RSS feeds found on this website"


def _with_scheme(url: str) -> str:
    url = url.strip()
    if "://" not in url:
        return f"https://{url}"
    return url


def classify_failure(url: str, errors: Sequence[FeedEngineError]) -> ValidationIssue:
    """Turn the failures of every attempted path into one actionable issue."""

    format_error = next((error for error in errors if isinstance(error, FormatError)), None)
    if format_error is not None:
        if isinstance(format_error, UnsupportedFormatError):
            return ValidationIssue(
                type="not_a_feed",
                message=str(format_error),
                suggestions=[
                    "Check if the URL points to a valid RSS or Atom feed",
                    "The address may be a web page; try feed discovery to find its feed",
                ],
            )
        return ValidationIssue(
            type="parse",
            message=str(format_error),
            suggestions=[
                "The feed contains malformed XML",
                "Check if the URL points to a valid RSS or Atom feed",
            ],
        )

    if errors and all(isinstance(error, FetchTimeoutError) for error in errors):
        return ValidationIssue(
            type="timeout",
            message=str(errors[0]),
            retryable=True,
            suggestions=["The server took too long to respond", "Try again in a few minutes"],
        )

    fetch_errors = [error for error in errors if isinstance(error, FetchError)]
    with_status = [error for error in fetch_errors if error.status_code is not None]
    primary = with_status[0] if with_status else (errors[0] if errors else None)
    message = str(primary) if primary is not None else "Feed validation failed"
    retryable = any(error.retryable for error in fetch_errors)
    https_hint = ["Try using HTTPS instead of HTTP"] if url.lower().startswith("http://") else []

    status = getattr(primary, "status_code", None)
    if status == 404 or status == 410:
        return ValidationIssue(
            type="not_found",
            message=message,
            suggestions=[
                "The feed URL was not found on the server",
                "Check the URL for typos",
                "The feed may have moved to a different URL",
            ],
        )
    if status is not None and status >= 500:
        return ValidationIssue(
            type="server_error",
            message=message,
            retryable=True,
            suggestions=["The server is experiencing issues", "Try again in a few minutes"],
        )

    lowered = message.lower()
    if "cors" in lowered or "cross-origin" in lowered:
        return ValidationIssue(
            type="cors",
            message=message,
            retryable=retryable,
            suggestions=["The feed server doesn't allow direct browser access", *https_hint],
        )
    if fetch_errors:
        return ValidationIssue(
            type="network",
            message=message,
            retryable=retryable,
            suggestions=[
                "Check your internet connection",
                "Verify the URL is correct",
                *https_hint,
            ],
        )
    return ValidationIssue(type="unknown", message=message, suggestions=https_hint)


class FeedDiscovery:
    """Find feeds advertised by, or conventionally placed next to, a web page."""

    def __init__(self, fetcher: Fetcher, settings: EngineSettings | None = None) -> None:
        self.fetcher = fetcher
        self.settings = settings or fetcher.settings

    def discover(self, url: str, on_progress: ProgressCallback | None = None) -> List[DiscoveredFeed]:
        """Return verified feed candidates for ``url``, most confident first."""

        page_url = _with_scheme(url)
        notify = on_progress or (lambda progress: None)

        notify(DiscoveryProgress(stage="fetching_page", message=f"Fetching {page_url}"))
        candidates: List[DiscoveredFeed] = []
        try:
            html = self.fetcher.fetch(page_url, max_retries=1)
        except FetchError as exc:
            logger.info("Could not fetch %s for discovery: %s", page_url, exc)
        else:
            notify(DiscoveryProgress(stage="scanning", message="Scanning page for feed links"))
            candidates = self.extract_candidates(html, page_url)

        verified: List[DiscoveredFeed] = []
        if candidates:
            notify(
                DiscoveryProgress(
                    stage="verifying",
                    message=f"Verifying {len(candidates)} candidates",
                    candidates_found=len(candidates),
                )
            )
            verified = [feed for feed in map(self._verify, candidates) if feed is not None]

        if not verified:
            notify(DiscoveryProgress(stage="probing", message="Probing common feed locations"))
            verified = [feed for feed in self._probe_common_paths(page_url) if feed is not None]

        feeds = self._dedupe(verified)
        notify(
            DiscoveryProgress(
                stage="done",
                message=f"Found {len(feeds)} feeds" if feeds else NO_FEEDS_FOUND,
                candidates_found=len(feeds),
            )
        )
        logger.info("Discovery for %s found %d feeds", page_url, len(feeds))
        return feeds

    def extract_candidates(self, html: str, base_url: str) -> List[DiscoveredFeed]:
        """Return unverified candidates from alternate links and feed-looking anchors."""

        soup = BeautifulSoup(html, "lxml")
        base = soup.find("base", href=True)
        if base is not None:
            base_url = urljoin(base_url, base["href"].strip())

        candidates: List[DiscoveredFeed] = []
        for link in soup.find_all("link", href=True):
            rel = link.get("rel") or []
            if isinstance(rel, str):
                rel = rel.split()
            feed_type = FEED_LINK_TYPES.get((link.get("type") or "").split(";")[0].strip().lower())
            if feed_type is None or "alternate" not in [value.lower() for value in rel]:
                continue
            candidates.append(
                DiscoveredFeed(
                    url=urljoin(base_url, link["href"].strip()),
                    title=(link.get("title") or "").strip(),
                    type=feed_type,
                    discovery_method="link_discovery",
                    confidence=LINK_DISCOVERY_CONFIDENCE,
                )
            )

        anchors = 0
        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].strip()
            candidate = urljoin(base_url, href).split("#", 1)[0]
            if urlparse(candidate).scheme not in {"http", "https"}:
                continue
            if not _FEEDISH_HREF.search(candidate):
                continue
            candidates.append(
                DiscoveredFeed(
                    url=candidate,
                    title=anchor.get_text(" ", strip=True),
                    type="atom" if "atom" in candidate.lower() else "rss",
                    discovery_method="heuristic",
                    confidence=ANCHOR_CONFIDENCE,
                )
            )
            anchors += 1
            if anchors >= MAX_ANCHOR_CANDIDATES:
                break

        return self._dedupe(candidates)

    def _probe_common_paths(self, page_url: str) -> Iterator[DiscoveredFeed | None]:
        parsed = urlparse(page_url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        for path in COMMON_FEED_PATHS:
            candidate = DiscoveredFeed(
                url=f"{origin}{path}",
                discovery_method="heuristic",
                confidence=COMMON_PATH_CONFIDENCE,
            )
            yield self._verify(candidate, direct_only=True)

    def _verify(self, candidate: DiscoveredFeed, *, direct_only: bool = False) -> DiscoveredFeed | None:
        try:
            if direct_only:
                body = self.fetcher.fetch_via(DirectTransport(), candidate.url)
            else:
                body = self.fetcher.fetch(candidate.url, max_retries=1)
            parsed = normalize_feed(body, candidate.url, summary_length=self.settings.summary_length)
        except FeedEngineError as exc:
            logger.debug("Discarding candidate %s: %s", candidate.url, exc)
            return None

        return candidate.model_copy(
            update={
                "title": candidate.title or parsed.title,
                "description": parsed.description,
                "type": "atom" if parsed.format == "atom" else "rss",
            }
        )

    @staticmethod
    def _dedupe(feeds: Sequence[DiscoveredFeed]) -> List[DiscoveredFeed]:
        best: Dict[str, DiscoveredFeed] = {}
        for feed in feeds:
            key = normalize_url(feed.url)
            current = best.get(key)
            if current is None or feed.confidence > current.confidence:
                best[key] = feed
        return sorted(best.values(), key=lambda feed: feed.confidence, reverse=True)


class FeedValidator:
    """Validate feed URLs through every transport and remember the outcome for a while.

    Results are cached per normalized URL for ``settings.validation_cache_ttl``.
    Every path tried is recorded as a :class:`ValidationAttempt`. Each run
    keeps its own attempts, bounded to :data:`MAX_ATTEMPT_HISTORY` entries.
    """

    def __init__(
        self,
        fetcher: Fetcher | None = None,
        settings: EngineSettings | None = None,
        *,
        discovery: FeedDiscovery | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or (fetcher.settings if fetcher is not None else EngineSettings())
        self.fetcher = fetcher or Fetcher(self.settings)
        self.discovery = discovery or FeedDiscovery(self.fetcher, self.settings)
        self._clock = clock
        self._results: Dict[str, FeedValidationResult] = {}
        self._history: Dict[str, Deque[ValidationAttempt]] = {}
        self._lock = threading.Lock()

    def validate_feed(self, url: str) -> FeedValidationResult:
        key = normalize_url(url)
        cached = self._cached_result(key)
        if cached is not None:
            logger.debug("Using cached validation result for %s", url)
            return cached

        target = _with_scheme(url)
        attempts: Deque[ValidationAttempt] = deque(maxlen=MAX_ATTEMPT_HISTORY)
        errors: List[FeedEngineError] = []
        parsed: ParsedFeed | None = None
        tries = 0

        for transport in self.fetcher.transports:
            tries += 1
            started = time.perf_counter()
            try:
                body = self.fetcher.fetch_via(transport, target, timeout=self.settings.fetch_timeout)
                parsed = normalize_feed(body, target, summary_length=self.settings.summary_length)
            except FormatError as exc:
                attempts.append(self._attempt(transport.name, started, error=str(exc)))
                errors.append(exc)
                # Every path returns the same document, so a non-feed stays a non-feed.
                break
            except FetchError as exc:
                attempts.append(self._attempt(transport.name, started, error=str(exc)))
                errors.append(exc)
                continue
            attempts.append(self._attempt(transport.name, started))
            break

        if parsed is not None:
            result = FeedValidationResult(
                url=url,
                status="valid",
                title=parsed.title,
                description=parsed.description,
                validation_attempts=list(attempts),
                total_retries=tries - 1,
                last_validated=self._clock(),
            )
            logger.info("Validated feed %s after %d attempts", url, tries)
        else:
            if not errors:
                errors.append(FetchError("No transports configured", url=target, retryable=False))
            issue = classify_failure(target, errors)
            result = FeedValidationResult(
                url=url,
                status="timeout" if issue.type == "timeout" else "invalid",
                error=issue,
                validation_attempts=list(attempts),
                total_retries=max(tries - 1, 0),
                last_validated=self._clock(),
            )
            logger.warning("Feed %s failed validation: %s", url, issue.message)

        with self._lock:
            self._results[key] = result
            self._history[key] = list(attempts)
        return result.model_copy(deep=True)

    def validate_feed_with_discovery(
        self, url: str, on_progress: ProgressCallback | None = None
    ) -> FeedValidationResult:
        """Validate ``url`` and fall back to discovering feeds from the page it points at.

        A single high-confidence candidate with no other plausible one is
        validated and returned. Anything more ambiguous comes back with
        ``requires_user_selection`` set and the candidates attached. The
        discovery step is recorded as one more attempt of the same run.
        """

        notify = on_progress or (lambda progress: None)
        notify(DiscoveryProgress(stage="validating", message=f"Validating {url}"))
        result = self.validate_feed(url)
        if result.is_valid:
            notify(DiscoveryProgress(stage="done", message="Feed is valid"))
            return result

        started = time.perf_counter()
        discovered = self.discovery.discover(url, on_progress)
        attempts: Deque[ValidationAttempt] = deque(
            result.validation_attempts, maxlen=MAX_ATTEMPT_HISTORY
        )
        attempts.append(
            self._attempt("discovery", started, error=None if discovered else NO_FEEDS_FOUND)
        )
        with self._lock:
            self._history[normalize_url(url)] = list(attempts)

        if not discovered:
            issue = result.error or ValidationIssue(type="unknown", message=NO_FEEDS_FOUND)
            issue = issue.model_copy(
                update={"suggestions": [*issue.suggestions, NO_FEEDS_FOUND]}
            )
            return result.model_copy(
                update={
                    "error": issue,
                    "discovered_feeds": [],
                    "validation_attempts": list(attempts),
                }
            )

        high = [feed for feed in discovered if feed.confidence >= self.settings.high_confidence]
        plausible = [
            feed for feed in discovered if feed.confidence >= self.settings.plausible_confidence
        ]
        if len(high) == 1 and len(plausible) == 1:
            chosen = high[0]
            logger.info("Auto-selected discovered feed %s for %s", chosen.url, url)
            validated = self.validate_feed(chosen.url)
            if validated.is_valid:
                return validated.model_copy(update={"discovered_feeds": discovered})

        logger.info("Discovery for %s needs a user choice among %d feeds", url, len(discovered))
        return result.model_copy(
            update={
                "discovered_feeds": discovered,
                "requires_user_selection": True,
                "validation_attempts": list(attempts),
            }
        )

    def revalidate_feed(self, url: str) -> FeedValidationResult:
        """Forget the cached result for ``url`` and validate it again."""

        with self._lock:
            self._results.pop(normalize_url(url), None)
        return self.validate_feed(url)

    def clear_cache(self) -> None:
        with self._lock:
            self._results.clear()
            self._history.clear()

    def attempt_history(self, url: str) -> List[ValidationAttempt]:
        """Attempts made by the most recent validation run for ``url``."""

        with self._lock:
            return list(self._history.get(normalize_url(url), ()))

    def _cached_result(self, key: str) -> FeedValidationResult | None:
        with self._lock:
            result = self._results.get(key)
        if result is None or result.last_validated is None:
            return None
        if self._clock() - result.last_validated >= self.settings.validation_cache_ttl:
            return None
        return result.model_copy(deep=True)

    def _attempt(self, method: str, started: float, *, error: str | None = None) -> ValidationAttempt:
        return ValidationAttempt(
            method=method,
            success=error is None,
            response_time_ms=round((time.perf_counter() - started) * 1000, 1),
            timestamp=self._clock(),
            error=error,
        )
