"""OPML 2.0 import and export of feed source lists."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Dict, Iterable, List, Sequence
from urllib.parse import urlparse

from lxml import etree
from pydantic import BaseModel, Field

from feedengine.errors import FormatError
from feedengine.models import FeedCategory, FeedSource, utcnow
from feedengine.services.duplicates import FeedDuplicateDetector

__all__ = [
    "DEFAULT_OPML_TITLE",
    "OpmlImport",
    "UNCATEGORIZED",
    "generate_opml",
    "parse_opml",
    "read_opml",
]

logger = logging.getLogger(__name__)

DEFAULT_OPML_TITLE = "Personal News Dashboard Feeds"
UNCATEGORIZED = "Uncategorized"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'

_FEED_SEGMENT = re.compile(r"^(?:rss|atom|feeds?|index\.xml)$|\.(?:xml|rss|atom|rdf|php)$", re.IGNORECASE)


class OpmlImport(BaseModel):
    sources: List[FeedSource] = Field(default_factory=list)
    categories: List[FeedCategory] = Field(default_factory=list)


def _slugify(name: str) -> str:
    normalized = re.sub(r"[^a-z0-9]+", "-", name.strip().lower())
    slug = normalized.strip("-")
    return slug or "category"


def read_opml(text: str | bytes) -> OpmlImport:
    """Read every feed outline and every folder outline from an OPML document.

    Feed outlines are those carrying ``xmlUrl``; their ``title`` (or ``text``)
    becomes the custom title. The nearest enclosing outline without ``xmlUrl``
    becomes the category.
    """

    data = text.encode("utf-8") if isinstance(text, str) else text
    parser = etree.XMLParser(resolve_entities=False, no_network=True)
    try:
        root = etree.fromstring(data.strip(), parser=parser)
    except etree.XMLSyntaxError as exc:
        raise FormatError(f"Invalid OPML document: {exc}") from exc
    if root is None or etree.QName(root).localname.lower() != "opml":
        raise FormatError("Invalid OPML document: missing <opml> root element")

    body = root.find("body")
    if body is None:
        raise FormatError("Invalid OPML document: missing <body> element")

    result = OpmlImport()
    categories: Dict[str, FeedCategory] = {}
    seen: set[str] = set()

    def walk(element: etree._Element, category_id: str | None) -> None:
        for outline in element.iterchildren("outline"):
            url = (outline.get("xmlUrl") or "").strip()
            label = (outline.get("title") or outline.get("text") or "").strip()
            if url:
                if url in seen:
                    continue
                seen.add(url)
                result.sources.append(
                    FeedSource(url=url, custom_title=label or None, category_id=category_id)
                )
                continue

            folder_id = category_id
            if label:
                folder_id = _slugify(label)
                if folder_id not in categories:
                    categories[folder_id] = FeedCategory(
                        id=folder_id,
                        name=label,
                        description=outline.get("description") or None,
                        order=len(categories),
                    )
            walk(outline, folder_id)

    walk(body, None)
    result.categories = list(categories.values())
    logger.info(
        "Imported %d feeds in %d categories from OPML", len(result.sources), len(result.categories)
    )
    return result


def parse_opml(text: str | bytes) -> List[FeedSource]:
    """Return the feed sources listed in an OPML document."""

    return read_opml(text).sources


def _default_title(url: str) -> str:
    host = urlparse(url).hostname or url
    return host[4:] if host.startswith("www.") else host


def _html_url(url: str) -> str:
    """Guess the site address from a feed address by dropping the feed file segment."""

    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return url
    segments = [segment for segment in parsed.path.split("/") if segment]
    if segments and _FEED_SEGMENT.search(segments[-1]):
        segments.pop()
    path = "/" + "/".join(segments) if segments else ""
    return f"{parsed.scheme}://{parsed.netloc}{path}"


def _feed_outline(parent: etree._Element, source: FeedSource, *, include_metadata: bool) -> None:
    title = source.custom_title or _default_title(source.url)
    outline = etree.SubElement(parent, "outline")
    outline.set("type", "rss")
    outline.set("text", title)
    outline.set("title", title)
    outline.set("xmlUrl", source.url)
    outline.set("htmlUrl", _html_url(source.url))
    if include_metadata and source.category_id:
        outline.set("category", source.category_id)


def generate_opml(
    sources: Iterable[FeedSource],
    categories: Sequence[FeedCategory] = (),
    *,
    title: str = DEFAULT_OPML_TITLE,
    owner_name: str | None = None,
    owner_email: str | None = None,
    include_categories: bool = True,
    include_metadata: bool = True,
    detector: FeedDuplicateDetector | None = None,
    now: datetime | None = None,
) -> str:
    """Serialize ``sources`` as OPML 2.0.

    Duplicate sources are dropped first. With categories, feeds are nested in
    one outline per non-empty category (in category ``order``) and feeds
    without a known category go into an ``Uncategorized`` outline.
    """

    detector = detector or FeedDuplicateDetector()
    unique = detector.remove_duplicates(list(sources)).unique_feeds
    stamp = format_datetime((now or utcnow()).astimezone(timezone.utc), usegmt=True)

    root = etree.Element("opml", version="2.0")
    head = etree.SubElement(root, "head")
    etree.SubElement(head, "title").text = title
    etree.SubElement(head, "dateCreated").text = stamp
    etree.SubElement(head, "dateModified").text = stamp
    if owner_name:
        etree.SubElement(head, "ownerName").text = owner_name
    if owner_email:
        etree.SubElement(head, "ownerEmail").text = owner_email
    body = etree.SubElement(root, "body")

    if not include_categories or not categories:
        for source in unique:
            _feed_outline(body, source, include_metadata=include_metadata)
    else:
        known = {category.id for category in categories}
        for category in sorted(categories, key=lambda item: item.order):
            members = [source for source in unique if source.category_id == category.id]
            if not members:
                continue
            folder = etree.SubElement(body, "outline")
            folder.set("text", category.name)
            folder.set("title", category.name)
            if category.description:
                folder.set("description", category.description)
            for source in members:
                _feed_outline(folder, source, include_metadata=include_metadata)

        loose = [source for source in unique if source.category_id not in known]
        if loose:
            folder = etree.SubElement(body, "outline")
            folder.set("text", UNCATEGORIZED)
            folder.set("title", UNCATEGORIZED)
            for source in loose:
                _feed_outline(folder, source, include_metadata=include_metadata)

    logger.info("Exported %d feeds to OPML", len(unique))
    return XML_DECLARATION + etree.tostring(root, encoding="unicode", pretty_print=True)
