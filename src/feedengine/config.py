"""Configuration models and helpers for the feed engine."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import Iterable, List, Literal

from pydantic import BaseModel, Field, ValidationError

from feedengine.models import FeedSource

__all__ = [
    "DEFAULT_FEEDS_PATH",
    "DEFAULT_RELAYS",
    "DEFAULT_SETTINGS_PATH",
    "EngineSettings",
    "FeedListConfig",
    "RelayConfig",
    "load_settings",
]

DEFAULT_SETTINGS_PATH = Path(__file__).resolve().parents[2] / "data" / "settings.json"
DEFAULT_FEEDS_PATH = Path(__file__).resolve().parents[2] / "data" / "feeds.json"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/129.0.0.0 Safari/537.36"
)


class RelayConfig(BaseModel):
    """A fallback relay the fetcher tries after the direct request."""

    name: str = Field(..., description="Name recorded in validation attempts and logs")
    prefix: str = Field(
        ..., description="Relay URL that the percent-encoded target URL is appended to"
    )
    envelope: Literal["raw", "json"] = Field(
        default="raw",
        description="Whether the relay returns the body as-is or wrapped in a JSON object",
    )
    envelope_field: str = Field(
        default="contents", description="JSON key holding the payload when envelope is json"
    )
    enabled: bool = True


DEFAULT_RELAYS: List[RelayConfig] = [
    RelayConfig(name="allorigins", prefix="https://api.allorigins.win/get?url=", envelope="json"),
    RelayConfig(name="corsproxy", prefix="https://corsproxy.io/?"),
    RelayConfig(name="cors-anywhere", prefix="https://cors-anywhere.herokuapp.com/"),
]


def _load_json(path: Path) -> object:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"Configuration file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in configuration file: {path}") from exc


class EngineSettings(BaseModel):
    """Tunables for fetching, caching, loading and validation."""

    fetch_timeout: float = Field(default=8.0, gt=0, description="Per-attempt timeout in seconds")
    feed_timeout: float = Field(
        default=10.0, gt=0, description="Per-attempt timeout used by the progressive loader"
    )
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    relay_pause: float = Field(
        default=0.5, ge=0, description="Pause between two transports inside one round"
    )
    cache_max_age_minutes: float = Field(default=15, gt=0)
    max_concurrency: int = Field(default=8, ge=1)
    summary_length: int = Field(default=200, ge=1)
    validation_cache_ttl_minutes: float = Field(default=5, ge=0)
    high_confidence: float = Field(default=0.8, ge=0, le=1)
    plausible_confidence: float = Field(default=0.5, ge=0, le=1)
    relays: List[RelayConfig] = Field(default_factory=lambda: list(DEFAULT_RELAYS))
    user_agent: str = DEFAULT_USER_AGENT
    blob_root: str | None = Field(
        default=None, description="Directory for persisted cache entries; memory only when unset"
    )

    @property
    def cache_max_age(self) -> timedelta:
        return timedelta(minutes=self.cache_max_age_minutes)

    @property
    def validation_cache_ttl(self) -> timedelta:
        return timedelta(minutes=self.validation_cache_ttl_minutes)

    def enabled_relays(self) -> List[RelayConfig]:
        return [relay for relay in self.relays if relay.enabled]

    @classmethod
    def from_file(cls, path: Path | str | None = None) -> "EngineSettings":
        """Load settings from a JSON file."""

        config_path = Path(path) if path else DEFAULT_SETTINGS_PATH
        data = _load_json(config_path)
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Configuration file is invalid: {config_path}\n{exc}") from exc

    def dump(self, path: Path | str | None = None) -> None:
        """Persist the settings back to disk as JSON."""

        config_path = Path(path) if path else DEFAULT_SETTINGS_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(self.model_dump_json(indent=2), encoding="utf-8")


def load_settings(path: Path | str | None = None) -> EngineSettings:
    """Return settings from ``path`` (or the default file), falling back to defaults."""

    config_path = Path(path) if path else DEFAULT_SETTINGS_PATH
    if not config_path.exists():
        return EngineSettings()
    return EngineSettings.from_file(config_path)


class FeedListConfig(BaseModel):
    """Collection of :class:`FeedSource` entries used by the command line runner."""

    feeds: List[FeedSource] = Field(default_factory=list)

    @classmethod
    def from_file(cls, path: Path | str | None = None) -> "FeedListConfig":
        """Load a feed list from a JSON file."""

        config_path = Path(path) if path else DEFAULT_FEEDS_PATH
        data = _load_json(config_path)
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Configuration file is invalid: {config_path}\n{exc}") from exc

    def dump(self, path: Path | str | None = None) -> None:
        """Persist the feed list back to disk as JSON."""

        config_path = Path(path) if path else DEFAULT_FEEDS_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(self.model_dump_json(indent=2), encoding="utf-8")

    def iter_feeds(self) -> Iterable[FeedSource]:
        return iter(self.feeds)

    def add_feed(self, feed: FeedSource) -> None:
        self.feeds.append(feed)
