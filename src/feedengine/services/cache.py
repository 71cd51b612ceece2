"""Stale-while-revalidate store of normalized articles keyed by feed URL."""

from __future__ import annotations

import hashlib
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List

from pydantic import ValidationError as ModelValidationError

from feedengine.blobstore import delete_blob, load_json, resolve_blob_root, store_json
from feedengine.models import CacheEntry, utcnow

__all__ = ["DEFAULT_MAX_AGE", "FeedCache", "cache_blob_path"]

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(minutes=15)
CACHE_SUBDIR = "cache"


def _key(feed_url: str) -> str:
    return feed_url.strip()


def cache_blob_path(feed_url: str) -> str:
    """Return the blob path used to persist the entry for ``feed_url``."""

    digest = hashlib.sha1(_key(feed_url).encode("utf-8")).hexdigest()
    return f"{CACHE_SUBDIR}/{digest}.json"


class FeedCache:
    """One :class:`CacheEntry` per feed URL, replaced wholesale on every write.

    When ``blob_root`` is given, entries are mirrored to JSON files so a new
    session starts with the previous session's articles. Unreadable files are
    cache misses.
    """

    def __init__(
        self,
        max_age: timedelta = DEFAULT_MAX_AGE,
        *,
        blob_root: Path | str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.max_age = max_age
        self._blob_root = resolve_blob_root(blob_root) if blob_root is not None else None
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def put(self, feed_url: str, entry: CacheEntry) -> None:
        key = _key(feed_url)
        with self._lock:
            self._entries[key] = entry
        if self._blob_root is not None:
            try:
                store_json(cache_blob_path(key), entry.model_dump(mode="json"), blob_root=self._blob_root)
            except OSError as exc:
                logger.warning("Failed to persist cache entry for %s: %s", key, exc)

    def get_any(self, feed_url: str) -> CacheEntry | None:
        """Return the entry for ``feed_url`` regardless of its age."""

        key = _key(feed_url)
        with self._lock:
            entry = self._entries.get(key)
        if entry is None and self._blob_root is not None:
            entry = self._load_persisted(key)
        return entry

    def get_fresh(self, feed_url: str, max_age: timedelta | None = None) -> CacheEntry | None:
        entry = self.get_any(feed_url)
        if entry is None or not self._is_entry_fresh(entry, max_age):
            return None
        return entry

    def is_fresh(self, feed_url: str, max_age: timedelta | None = None) -> bool:
        return self.get_fresh(feed_url, max_age) is not None

    def age(self, feed_url: str) -> timedelta | None:
        entry = self.get_any(feed_url)
        if entry is None:
            return None
        return self._clock() - entry.fetched_at

    def invalidate(self, feed_url: str) -> None:
        key = _key(feed_url)
        with self._lock:
            self._entries.pop(key, None)
        if self._blob_root is not None:
            delete_blob(cache_blob_path(key), blob_root=self._blob_root)

    def clear(self) -> None:
        with self._lock:
            keys = list(self._entries)
            self._entries.clear()
        if self._blob_root is not None:
            for key in keys:
                delete_blob(cache_blob_path(key), blob_root=self._blob_root)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def _is_entry_fresh(self, entry: CacheEntry, max_age: timedelta | None) -> bool:
        limit = self.max_age if max_age is None else max_age
        return self._clock() - entry.fetched_at < limit

    def _load_persisted(self, key: str) -> CacheEntry | None:
        try:
            payload = load_json(cache_blob_path(key), blob_root=self._blob_root)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache entry for %s: %s", key, exc)
            return None

        try:
            entry = CacheEntry.model_validate(payload)
        except ModelValidationError as exc:
            logger.warning("Ignoring malformed cache entry for %s: %s", key, exc)
            return None

        if entry.fetched_at.tzinfo is None or _key(entry.feed_url) != key:
            logger.warning("Ignoring inconsistent cache entry for %s", key)
            return None

        with self._lock:
            self._entries.setdefault(key, entry)
        return entry
