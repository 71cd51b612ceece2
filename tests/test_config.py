from pathlib import Path

import pytest

pytest.importorskip("pydantic")

from feedengine.config import EngineSettings, FeedListConfig, RelayConfig, load_settings
from feedengine.models import FeedSource


def test_round_trip(tmp_path: Path) -> None:
    config_path = tmp_path / "feeds.json"
    config = FeedListConfig(feeds=[FeedSource(url="https://example.com/rss", custom_title="Example")])
    config.dump(config_path)

    loaded = FeedListConfig.from_file(config_path)
    assert loaded.feeds[0].url == "https://example.com/rss"
    assert loaded.feeds[0].custom_title == "Example"


def test_settings_round_trip(tmp_path: Path) -> None:
    config_path = tmp_path / "settings.json"
    settings = EngineSettings(
        max_retries=5,
        relays=[RelayConfig(name="mirror", prefix="https://mirror.example/?", envelope="json")],
    )
    settings.dump(config_path)

    loaded = EngineSettings.from_file(config_path)
    assert loaded.max_retries == 5
    assert [relay.name for relay in loaded.enabled_relays()] == ["mirror"]
    assert loaded.relays[0].envelope_field == "contents"


def test_settings_defaults() -> None:
    settings = EngineSettings()

    assert settings.fetch_timeout == 8.0
    assert settings.feed_timeout == 10.0
    assert settings.max_retries == 3
    assert settings.cache_max_age.total_seconds() == 15 * 60
    assert [relay.name for relay in settings.relays] == ["allorigins", "corsproxy", "cors-anywhere"]


def test_load_settings_falls_back_to_defaults(tmp_path: Path) -> None:
    assert load_settings(tmp_path / "missing.json") == EngineSettings()


def test_missing_feed_list_raises_file_not_found(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        FeedListConfig.from_file(tmp_path / "missing.json")


def test_invalid_json_raises_value_error(tmp_path: Path) -> None:
    config_path = tmp_path / "settings.json"
    config_path.write_text("{broken", encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid JSON"):
        EngineSettings.from_file(config_path)


def test_invalid_schema_raises_value_error(tmp_path: Path) -> None:
    config_path = tmp_path / "settings.json"
    config_path.write_text('{"max_retries": 0}', encoding="utf-8")

    with pytest.raises(ValueError, match="invalid"):
        EngineSettings.from_file(config_path)


def test_add_feed() -> None:
    config = FeedListConfig()
    config.add_feed(FeedSource(url="https://example.com/rss"))

    assert [feed.url for feed in config.iter_feeds()] == ["https://example.com/rss"]
