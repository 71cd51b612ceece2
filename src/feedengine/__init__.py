"""Feed engine package exposing configuration, models and the engine facade."""

from __future__ import annotations

from .config import EngineSettings, FeedListConfig, load_settings  # noqa: F401
from .engine import FeedEngine  # noqa: F401
from .models import Article, FeedSource, LoadingState  # noqa: F401

__all__ = ["Article", "EngineSettings", "FeedEngine", "FeedListConfig", "FeedSource", "LoadingState", "load_settings"]
