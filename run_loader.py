"""Convenience script for loading the configured feeds locally."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Ensure the src directory is on the Python path so the feedengine package can be imported
SRC_PATH = Path(__file__).resolve().parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from feedengine.config import FeedListConfig, load_settings  # noqa: E402  (import after path setup)
from feedengine.engine import FeedEngine  # noqa: E402


def main(argv: list[str] | None = None) -> None:
    """Load the feed list, run one progressive load and print the merged articles as JSON."""

    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--feeds", type=Path, default=None, help="Feed list JSON file")
    parser.add_argument("--settings", type=Path, default=None, help="Engine settings JSON file")
    parser.add_argument("--force-refresh", action="store_true", help="Ignore fresh cache entries")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    try:
        feeds = FeedListConfig.from_file(args.feeds)
        settings = load_settings(args.settings)
    except (FileNotFoundError, ValueError) as exc:
        logging.error("Could not load configuration: %s", exc)
        sys.exit(1)

    with FeedEngine(settings) as engine:
        for update in engine.load_feeds(feeds.iter_feeds(), force_refresh=args.force_refresh):
            state = update.state
            logging.info(
                "%s: %d/%d feeds, %d articles",
                state.status,
                state.loaded_feeds,
                state.total_feeds,
                len(update.articles),
            )
        logging.info(engine.summary())
        for error in engine.loading_state.errors:
            logging.warning("%s (%s): %s", error.feed_title or error.url, error.error_type, error.message)

        payload = [article.model_dump(mode="json") for article in engine.articles]

    print(json.dumps(payload, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
