"""Detect feed sources that point at the same feed under a different URL."""

from __future__ import annotations

import logging
from difflib import SequenceMatcher
from typing import Dict, Iterable, List, Literal, NamedTuple, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit

from feedengine.errors import DuplicateDetectionError
from feedengine.models import (
    DuplicateDetectionResult,
    DuplicateGroup,
    DuplicateRemovalResult,
    FeedSource,
    RemovedDuplicate,
)

__all__ = ["DUPLICATE_THRESHOLD", "FeedDuplicateDetector", "TRACKING_PARAMETERS", "normalize_url"]

logger = logging.getLogger(__name__)

TRACKING_PARAMETERS = frozenset({"fbclid", "gclid", "ref", "mc_cid", "mc_eid", "_ga"})
TRACKING_PREFIXES = ("utm_",)
DEFAULT_PORTS = {"http": 80, "https": 443}

#: Near matches at or above this confidence are reported as duplicates.
DUPLICATE_THRESHOLD = 0.85
SIMILAR_PATH_RATIO = 0.8

NO_DUPLICATES = "No duplicates detected"


class _UrlKey(NamedTuple):
    scheme: str
    host: str
    path: str
    query: str


def _is_tracking(name: str) -> bool:
    lowered = name.lower()
    return lowered in TRACKING_PARAMETERS or lowered.startswith(TRACKING_PREFIXES)


def _split(url: str) -> _UrlKey:
    candidate = url.strip()
    if not candidate:
        raise DuplicateDetectionError("Empty URL")
    if "://" not in candidate:
        candidate = f"https://{candidate}"

    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError as exc:
        raise DuplicateDetectionError(f"Malformed URL {url!r}: {exc}") from exc

    host = (parts.hostname or "").lower()
    if not host:
        raise DuplicateDetectionError(f"URL without host: {url!r}")
    if host.startswith("www."):
        host = host[4:]

    scheme = parts.scheme.lower()
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        host = f"{host}:{port}"

    params = [
        (name, value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking(name)
    ]
    return _UrlKey(scheme, host, parts.path.rstrip("/"), urlencode(sorted(params)))


def normalize_url(url: str) -> str:
    """Return the comparison key for ``url``.

    Lower-cases scheme and host, drops ``www.``, default ports, fragments,
    trailing slashes and tracking parameters, and sorts the remaining query
    parameters. Input that cannot be parsed comes back trimmed and
    lower-cased instead of raising.
    """

    try:
        key = _split(url)
    except DuplicateDetectionError:
        return (url or "").strip().lower()
    normalized = f"{key.scheme}://{key.host}{key.path}"
    if key.query:
        normalized = f"{normalized}?{key.query}"
    return normalized


class FeedDuplicateDetector:
    """Compare candidate URLs against the configured sources without network access."""

    def __init__(self, threshold: float = DUPLICATE_THRESHOLD) -> None:
        self.threshold = threshold

    @staticmethod
    def normalize_url(url: str) -> str:
        return normalize_url(url)

    def detect_duplicate(
        self, url: str, existing: Iterable[FeedSource]
    ) -> DuplicateDetectionResult:
        """Return the best match for ``url`` among ``existing``.

        Detection problems never block adding a feed: they come back as a
        non-duplicate result whose reason names the failure.
        """

        normalized = normalize_url(url)
        try:
            return self._detect(url, normalized, existing)
        except DuplicateDetectionError as exc:
            logger.warning("Duplicate detection failed for %s: %s", url, exc)
            return DuplicateDetectionResult(
                is_duplicate=False,
                confidence=0.0,
                reason=f"Duplicate detection failed: {exc}",
                normalized_url=normalized,
            )

    def _detect(
        self, url: str, normalized: str, existing: Iterable[FeedSource]
    ) -> DuplicateDetectionResult:
        candidate = _split(url)
        best: DuplicateDetectionResult | None = None

        for source in existing:
            if normalize_url(source.url) == normalized:
                return DuplicateDetectionResult(
                    is_duplicate=True,
                    duplicate_of=source,
                    confidence=1.0,
                    reason="Identical normalized URLs",
                    normalized_url=normalized,
                )
            try:
                other = _split(source.url)
            except DuplicateDetectionError:
                logger.debug("Skipping unparseable source %s", source.url)
                continue

            scored = self._compare(candidate, other)
            if scored is None:
                continue
            confidence, reason = scored
            if best is None or confidence > best.confidence:
                best = DuplicateDetectionResult(
                    is_duplicate=confidence >= self.threshold,
                    duplicate_of=source,
                    confidence=confidence,
                    reason=reason,
                    normalized_url=normalized,
                )

        if best is not None:
            return best
        return DuplicateDetectionResult(
            is_duplicate=False, confidence=0.0, reason=NO_DUPLICATES, normalized_url=normalized
        )

    @staticmethod
    def _compare(candidate: _UrlKey, other: _UrlKey) -> tuple[float, str] | None:
        if candidate.host != other.host:
            return None
        if candidate.path == other.path:
            if candidate.scheme != other.scheme:
                return 0.95, "Same host and path over a different scheme"
            return 0.9, "Same host and path with different query parameters"

        ratio = SequenceMatcher(None, candidate.path.lower(), other.path.lower()).ratio()
        if ratio < SIMILAR_PATH_RATIO:
            return None
        confidence = round(0.5 + 0.3 * ratio, 2)
        return confidence, f"Same host with a very similar path ({ratio:.0%} alike)"

    def find_duplicate_groups(self, sources: Sequence[FeedSource]) -> List[DuplicateGroup]:
        """Group sources sharing a normalized URL; singletons are left out."""

        groups: Dict[str, List[FeedSource]] = {}
        for source in sources:
            groups.setdefault(normalize_url(source.url), []).append(source)
        return [
            DuplicateGroup(normalized_url=key, feeds=feeds)
            for key, feeds in groups.items()
            if len(feeds) > 1
        ]

    def remove_duplicates(
        self, sources: Sequence[FeedSource], keep: Literal["first", "last"] = "first"
    ) -> DuplicateRemovalResult:
        """Keep one source per normalized URL, preserving the order of the kept ones."""

        ordered = list(sources) if keep == "first" else list(reversed(sources))
        kept: Dict[str, FeedSource] = {}
        removed: List[RemovedDuplicate] = []
        for source in ordered:
            key = normalize_url(source.url)
            if key in kept:
                removed.append(RemovedDuplicate(original_feed=source, duplicate_of=kept[key]))
                continue
            kept[key] = source

        unique = list(kept.values())
        if keep == "last":
            unique.reverse()
            removed.reverse()
        if removed:
            logger.info("Removed %d duplicate feeds", len(removed))
        return DuplicateRemovalResult(unique_feeds=unique, removed_duplicates=removed)
