"""Turn raw RSS 2.0, Atom and RDF documents into :class:`Article` lists.

Publishers disagree on which element carries a given field, so every field is
read through an ordered list of candidate element names. Names written with a
prefix (``media:content``) match the well-known module namespace for that
prefix; bare names (``content``) never match elements living in one of those
module namespaces.
"""

from __future__ import annotations

import codecs
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Sequence

from bs4 import BeautifulSoup
from dateutil import parser as date_parser
from lxml import etree

from feedengine.errors import FormatError, UnsupportedFormatError
from feedengine.models import Article, ParsedFeed, utcnow

__all__ = ["SUMMARY_LENGTH", "UNTITLED_FEED", "html_to_text", "normalize_feed"]

logger = logging.getLogger(__name__)

UNTITLED_FEED = "Untitled Feed"
SUMMARY_LENGTH = 200

MODULE_NAMESPACES = {
    "media": "http://search.yahoo.com/mrss/",
    "dc": "http://purl.org/dc/elements/1.1/",
    "content": "http://purl.org/rss/1.0/modules/content/",
    "itunes": "http://www.itunes.com/dtds/podcast-1.0.dtd",
    "rdf": "http://www.w3.org/1999/02/22-rdf-syntax-ns#",
}
_MODULE_NAMESPACE_URIS = frozenset(MODULE_NAMESPACES.values())

DATE_FIELDS = ("pubDate", "published", "updated", "dc:date", "date")
BODY_FIELDS = ("description", "summary", "content", "content:encoded")
AUTHOR_FIELDS = ("author", "dc:creator", "creator")

# Timezone abbreviations seen in RFC 822 dates that dateutil does not know.
TZINFOS = {
    "EST": timezone(timedelta(hours=-5)),
    "EDT": timezone(timedelta(hours=-4)),
    "CST": timezone(timedelta(hours=-6)),
    "CDT": timezone(timedelta(hours=-5)),
    "MST": timezone(timedelta(hours=-7)),
    "MDT": timezone(timedelta(hours=-6)),
    "PST": timezone(timedelta(hours=-8)),
    "PDT": timezone(timedelta(hours=-7)),
    "GMT": timezone.utc,
    "UTC": timezone.utc,
    "BST": timezone(timedelta(hours=1)),
}

_IMG_PATTERNS = (
    re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"'][^>]*>", re.IGNORECASE),
    re.compile(r"<img[^>]+src=([^\s>]+)[^>]*>", re.IGNORECASE),
    re.compile(r"src=[\"']([^\"']+\.(?:jpg|jpeg|png|gif|webp|svg))[^\"']*", re.IGNORECASE),
    re.compile(r"(https?://[^\s<>\"']+\.(?:jpg|jpeg|png|gif|webp|svg))", re.IGNORECASE),
)
_WHITESPACE = re.compile(r"\s+")


def _split_tag(tag: str) -> tuple[str | None, str]:
    if tag.startswith("{"):
        namespace, _, local = tag[1:].partition("}")
        return namespace, local
    return None, tag


def _matches(element: etree._Element, name: str) -> bool:
    tag = element.tag
    if not isinstance(tag, str):
        return False

    namespace, local = _split_tag(tag)
    prefix, _, wanted = name.rpartition(":")
    if prefix:
        if local == wanted and (
            namespace == MODULE_NAMESPACES.get(prefix) or element.prefix == prefix
        ):
            return True
        # Undeclared prefixes survive recovery parsing as part of the tag name.
        return namespace is None and local == name
    return local == wanted and namespace not in _MODULE_NAMESPACE_URIS


def _find_all(
    element: etree._Element, name: str, *, include_self: bool = False
) -> Iterator[etree._Element]:
    for candidate in element.iter():
        if candidate is element and not include_self:
            continue
        if _matches(candidate, name):
            yield candidate


def _find_first(element: etree._Element, name: str, *, include_self: bool = False):
    return next(_find_all(element, name, include_self=include_self), None)


def _child(element: etree._Element, names: Sequence[str]) -> etree._Element | None:
    for name in names:
        for child in element:
            if _matches(child, name) and _text(child):
                return child
    return None


def _text(element: etree._Element | None) -> str:
    if element is None:
        return ""
    return _WHITESPACE.sub(" ", "".join(element.itertext())).strip()


def _inner_markup(element: etree._Element) -> str:
    """Return the element body as markup: text for escaped HTML, serialized children for XHTML."""

    if len(element) == 0:
        return element.text or ""
    parts = [element.text or ""]
    for child in element:
        parts.append(etree.tostring(child, encoding="unicode", with_tail=True))
    return "".join(parts)


def _first_with_text(element: etree._Element, names: Sequence[str]) -> etree._Element | None:
    for name in names:
        for candidate in _find_all(element, name):
            if _text(candidate):
                return candidate
    return None


def html_to_text(markup: str) -> str:
    """Strip tags and collapse whitespace."""

    if not markup:
        return ""
    if "<" not in markup and "&" not in markup:
        return _WHITESPACE.sub(" ", markup).strip()
    text = BeautifulSoup(markup, "html.parser").get_text(" ")
    return _WHITESPACE.sub(" ", text).strip()


def _parse_date(value: str) -> datetime | None:
    try:
        parsed = date_parser.parse(value, tzinfos=TZINFOS)
    except (ValueError, OverflowError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _entry_link(entry: etree._Element) -> str:
    links = list(_find_all(entry, "link"))
    for link in links:
        text = _text(link)
        if text:
            return text

    with_href = [link for link in links if link.get("href")]
    for link in with_href:
        if (link.get("rel") or "alternate") == "alternate":
            return link.get("href", "").strip()
    if with_href:
        return with_href[0].get("href", "").strip()

    for guid in _find_all(entry, "guid"):
        value = _text(guid)
        if guid.get("isPermaLink", "true").lower() != "false" and value.startswith(("http://", "https://")):
            return value
    return ""


def _entry_author(entry: etree._Element) -> str | None:
    element = _first_with_text(entry, AUTHOR_FIELDS)
    if element is None:
        return None
    name = _find_first(element, "name")
    return _text(name) or _text(element) or None


def _entry_categories(entry: etree._Element) -> List[str]:
    seen: dict[str, None] = {}
    for category in _find_all(entry, "category"):
        value = _text(category) or (category.get("term") or category.get("label") or "").strip()
        if value:
            seen.setdefault(value, None)
    return list(seen)


def _entry_image(entry: etree._Element, body_markup: str) -> str | None:
    for enclosure in _find_all(entry, "enclosure"):
        if (enclosure.get("type") or "").lower().startswith("image/") and enclosure.get("url"):
            return enclosure.get("url")

    for media in _find_all(entry, "media:content"):
        is_image = (media.get("type") or "").lower().startswith("image/") or media.get("medium") == "image"
        if is_image and media.get("url"):
            return media.get("url")

    for thumbnail in _find_all(entry, "media:thumbnail"):
        if thumbnail.get("url"):
            return thumbnail.get("url")

    if body_markup:
        for pattern in _IMG_PATTERNS:
            match = pattern.search(body_markup)
            if match:
                return match.group(1)

    for image in _find_all(entry, "itunes:image"):
        if image.get("href"):
            return image.get("href")

    return None


def _parse_entry(
    entry: etree._Element,
    *,
    source_title: str,
    fetched_at: datetime,
    summary_length: int,
) -> Article | None:
    title = _text(_find_first(entry, "title"))
    link = _entry_link(entry)
    if not title or not link:
        return None

    published_at = None
    date_element = _first_with_text(entry, DATE_FIELDS)
    if date_element is not None:
        published_at = _parse_date(_text(date_element))

    body_element = _first_with_text(entry, BODY_FIELDS)
    body_markup = _inner_markup(body_element) if body_element is not None else ""
    summary = html_to_text(body_markup)[:summary_length].rstrip()

    return Article(
        title=title,
        link=link,
        published_at=published_at or fetched_at,
        summary=summary,
        image_url=_entry_image(entry, body_markup),
        author=_entry_author(entry),
        categories=_entry_categories(entry),
        source_title=source_title,
    )


def _parse_document(payload: str | bytes, feed_url: str) -> etree._Element:
    # Decoded text is re-encoded as UTF-8, overriding any declared encoding.
    encoding = None
    if isinstance(payload, str):
        payload = payload.lstrip("\ufeff").encode("utf-8")
        encoding = "utf-8"
    data = payload.removeprefix(codecs.BOM_UTF8).lstrip()

    if not data:
        raise FormatError("Empty feed document", feed_url)

    try:
        root = etree.fromstring(data, parser=_make_parser(recover=False, encoding=encoding))
    except etree.XMLSyntaxError as exc:
        if not _only_namespace_errors(exc):
            raise FormatError(f"XML parsing error: {exc}", feed_url) from exc
        logger.debug("Reparsing %s in recovery mode after namespace errors", feed_url)
        root = etree.fromstring(data, parser=_make_parser(recover=True, encoding=encoding))

    if root is None:
        raise FormatError("XML parsing error: document has no root element", feed_url)
    return root


def _make_parser(*, recover: bool, encoding: str | None = None) -> etree.XMLParser:
    return etree.XMLParser(
        recover=recover, encoding=encoding, resolve_entities=False, no_network=True
    )


def _only_namespace_errors(exc: etree.XMLSyntaxError) -> bool:
    entries = list(getattr(exc, "error_log", None) or [])
    if not entries:
        return False
    return all(entry.domain == etree.ErrorDomains.NAMESPACE for entry in entries)


def normalize_feed(
    payload: str | bytes,
    feed_url: str = "",
    *,
    fetched_at: datetime | None = None,
    summary_length: int = SUMMARY_LENGTH,
) -> ParsedFeed:
    """Parse ``payload`` and return the feed title, description and articles.

    ``feed_url`` only appears in error messages and logs. ``fetched_at`` is the
    publish date given to entries without a usable date; it defaults to now.

    Raises :class:`FormatError` for malformed XML and
    :class:`UnsupportedFormatError` for XML that is not a feed.
    """

    root = _parse_document(payload, feed_url)
    fetched_at = fetched_at or utcnow()

    channel = _find_first(root, "channel", include_self=True)
    if channel is not None:
        _, root_name = _split_tag(root.tag)
        feed_format = "rdf" if root_name in {"RDF", "rdf:RDF"} else "rss"
        container = channel
        entries = list(_find_all(root, "item"))
    else:
        atom_feed = _find_first(root, "feed", include_self=True)
        if atom_feed is not None:
            feed_format = "atom"
            container = atom_feed
            entries = list(_find_all(atom_feed, "entry"))
        else:
            entries = list(_find_all(root, "item"))
            if not entries:
                raise UnsupportedFormatError("Not a valid RSS, Atom, or RDF feed", feed_url)
            feed_format = "rdf"
            container = root

    title = _text(_child(container, ("title",))) or UNTITLED_FEED
    description = html_to_text(_text(_child(container, ("description", "subtitle", "tagline"))))

    articles: List[Article] = []
    seen_links: set[str] = set()
    dropped = 0
    for index, entry in enumerate(entries, start=1):
        try:
            article = _parse_entry(
                entry, source_title=title, fetched_at=fetched_at, summary_length=summary_length
            )
        except (ValueError, TypeError) as exc:
            logger.warning("Failed to parse entry %d from %s: %s", index, feed_url, exc)
            article = None

        if article is None:
            dropped += 1
            continue
        if article.link in seen_links:
            continue
        seen_links.add(article.link)
        articles.append(article)

    if dropped:
        logger.debug("Dropped %d entries without title or link from %s", dropped, feed_url)

    return ParsedFeed(title=title, description=description, format=feed_format, articles=articles)
