"""Domain models used across the engine."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

FeedFormat = Literal["rss", "atom", "rdf"]
ErrorType = Literal["timeout", "network", "parse", "cors", "unknown"]
LoadingStatus = Literal["idle", "loading", "success", "error"]
ValidationStatus = Literal["unchecked", "checking", "valid", "invalid", "timeout"]
IssueType = Literal[
    "network", "timeout", "cors", "not_found", "server_error", "parse", "not_a_feed", "unknown"
]
DiscoveryMethod = Literal["direct", "link_discovery", "heuristic"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Article(BaseModel):
    """A normalized feed entry. Instances are never mutated once built."""

    model_config = ConfigDict(frozen=True)

    title: str
    link: str
    published_at: datetime
    summary: str = ""
    image_url: Optional[str] = None
    author: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    source_title: str = ""


class FeedSource(BaseModel):
    """A user configured feed. Owned by the caller."""

    url: str
    custom_title: Optional[str] = None
    category_id: Optional[str] = None


class FeedCategory(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    order: int = 0


class ParsedFeed(BaseModel):
    """Output of :func:`feedengine.services.normalizer.normalize_feed`."""

    title: str
    description: str = ""
    format: FeedFormat
    articles: List[Article] = Field(default_factory=list)


class CacheEntry(BaseModel):
    feed_url: str
    title: str
    articles: List[Article] = Field(default_factory=list)
    fetched_at: datetime


class ValidationAttempt(BaseModel):
    method: str
    success: bool
    response_time_ms: float
    timestamp: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None


class ValidationIssue(BaseModel):
    type: IssueType
    message: str
    retryable: bool = False
    suggestions: List[str] = Field(default_factory=list)


class DiscoveredFeed(BaseModel):
    url: str
    title: str = ""
    description: str = ""
    type: Literal["rss", "atom"] = "rss"
    discovery_method: DiscoveryMethod
    confidence: float = Field(ge=0.0, le=1.0)


class DiscoveryProgress(BaseModel):
    """Progress notification emitted while discovery runs."""

    stage: Literal["validating", "fetching_page", "scanning", "probing", "verifying", "done"]
    message: str
    candidates_found: int = 0


class FeedValidationResult(BaseModel):
    url: str
    status: ValidationStatus = "unchecked"
    title: str = ""
    description: str = ""
    error: Optional[ValidationIssue] = None
    validation_attempts: List[ValidationAttempt] = Field(default_factory=list)
    total_retries: int = 0
    discovered_feeds: Optional[List[DiscoveredFeed]] = None
    requires_user_selection: bool = False
    last_validated: Optional[datetime] = None

    @property
    def is_valid(self) -> bool:
        return self.status == "valid"


class DuplicateDetectionResult(BaseModel):
    is_duplicate: bool
    duplicate_of: Optional[FeedSource] = None
    confidence: float = 0.0
    reason: str
    normalized_url: str = ""


class DuplicateGroup(BaseModel):
    """Sources that share one normalized URL."""

    normalized_url: str
    feeds: List[FeedSource] = Field(default_factory=list)


class RemovedDuplicate(BaseModel):
    original_feed: FeedSource
    duplicate_of: FeedSource


class DuplicateRemovalResult(BaseModel):
    unique_feeds: List[FeedSource] = Field(default_factory=list)
    removed_duplicates: List[RemovedDuplicate] = Field(default_factory=list)


class FeedError(BaseModel):
    url: str
    message: str
    error_type: ErrorType = "unknown"
    feed_title: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class LoadingState(BaseModel):
    status: LoadingStatus = "idle"
    progress: float = 0.0
    loaded_feeds: int = 0
    total_feeds: int = 0
    errors: List[FeedError] = Field(default_factory=list)
    is_background_refresh: bool = False


class LoadingUpdate(BaseModel):
    """One snapshot of a running load: the state plus the merged articles."""

    state: LoadingState
    articles: List[Article] = Field(default_factory=list)


__all__ = [
    "Article",
    "CacheEntry",
    "DiscoveredFeed",
    "DiscoveryProgress",
    "DuplicateDetectionResult",
    "DuplicateGroup",
    "DuplicateRemovalResult",
    "FeedCategory",
    "FeedError",
    "FeedSource",
    "FeedValidationResult",
    "LoadingState",
    "LoadingUpdate",
    "ParsedFeed",
    "RemovedDuplicate",
    "ValidationAttempt",
    "ValidationIssue",
    "utcnow",
]
