from __future__ import annotations

from datetime import datetime, timezone

import pytest

from feedengine.errors import FormatError, UnsupportedFormatError
from feedengine.services.normalizer import html_to_text, normalize_feed

FETCHED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:dc="http://purl.org/dc/elements/1.1/"
     xmlns:media="http://search.yahoo.com/mrss/"
     xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Example News</title>
    <description>All the news</description>
    <link>https://example.com</link>
    <item>
      <title>First story</title>
      <link>https://example.com/first</link>
      <pubDate>Tue, 30 Apr 2024 10:00:00 GMT</pubDate>
      <description><![CDATA[<p>Hello <b>world</b></p><img src="https://example.com/body.jpg">]]></description>
      <dc:creator>Jane Writer</dc:creator>
      <category>World</category>
      <category>World</category>
      <category>Politics</category>
      <media:thumbnail url="https://example.com/thumb.jpg" />
    </item>
    <item>
      <title>Second story</title>
      <link>https://example.com/second</link>
      <pubDate>Wed, 01 May 2024 08:30:00 EST</pubDate>
      <content:encoded><![CDATA[<div><img src="https://example.com/second.png" alt=""></div>]]></content:encoded>
    </item>
  </channel>
</rss>
"""

ATOM = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Example Atom</title>
  <subtitle>Atom subtitle</subtitle>
  <entry>
    <title>Atom entry</title>
    <link rel="alternate" href="https://example.com/atom-entry" />
    <updated>2024-04-30T10:00:00Z</updated>
    <summary>Short &lt;em&gt;summary&lt;/em&gt;</summary>
    <author><name>Sam Author</name></author>
    <category term="tech" />
  </entry>
</feed>
"""

RDF = """<?xml version="1.0"?>
<rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#"
         xmlns="http://purl.org/rss/1.0/"
         xmlns:dc="http://purl.org/dc/elements/1.1/">
  <channel rdf:about="https://example.com">
    <title>Example RDF</title>
    <description>RDF description</description>
  </channel>
  <item rdf:about="https://example.com/rdf-item">
    <title>RDF item</title>
    <link>https://example.com/rdf-item</link>
    <dc:date>2024-04-30T10:00:00+02:00</dc:date>
    <description>RDF body</description>
  </item>
</rdf:RDF>
"""


def test_rss_feed_is_normalized() -> None:
    parsed = normalize_feed(RSS, "https://example.com/rss.xml", fetched_at=FETCHED_AT)

    assert parsed.format == "rss"
    assert parsed.title == "Example News"
    assert parsed.description == "All the news"
    assert [article.link for article in parsed.articles] == [
        "https://example.com/first",
        "https://example.com/second",
    ]

    first = parsed.articles[0]
    assert first.summary == "Hello world"
    assert first.author == "Jane Writer"
    assert first.source_title == "Example News"
    assert sorted(first.categories) == ["Politics", "World"]
    assert first.published_at == datetime(2024, 4, 30, 10, 0, tzinfo=timezone.utc)
    assert first.image_url == "https://example.com/thumb.jpg"


def test_rss_dates_with_us_timezone_abbreviations_are_converted_to_utc() -> None:
    parsed = normalize_feed(RSS, fetched_at=FETCHED_AT)

    assert parsed.articles[1].published_at == datetime(2024, 5, 1, 13, 30, tzinfo=timezone.utc)


def test_image_falls_back_to_first_img_in_body() -> None:
    parsed = normalize_feed(RSS, fetched_at=FETCHED_AT)

    assert parsed.articles[1].image_url == "https://example.com/second.png"


def test_atom_feed_is_normalized() -> None:
    parsed = normalize_feed(ATOM, fetched_at=FETCHED_AT)

    assert parsed.format == "atom"
    assert parsed.title == "Example Atom"
    assert parsed.description == "Atom subtitle"

    entry = parsed.articles[0]
    assert entry.link == "https://example.com/atom-entry"
    assert entry.summary == "Short summary"
    assert entry.author == "Sam Author"
    assert entry.categories == ["tech"]
    assert entry.published_at == datetime(2024, 4, 30, 10, 0, tzinfo=timezone.utc)


def test_rdf_feed_is_normalized() -> None:
    parsed = normalize_feed(RDF, fetched_at=FETCHED_AT)

    assert parsed.format == "rdf"
    assert parsed.title == "Example RDF"
    assert parsed.articles[0].link == "https://example.com/rdf-item"
    assert parsed.articles[0].published_at == datetime(2024, 4, 30, 8, 0, tzinfo=timezone.utc)


def test_tag_variants_produce_the_same_article() -> None:
    rss = """<rss version="2.0"><channel><title>Same</title>
      <item><title>Story</title><link>https://example.com/story</link>
      <pubDate>Tue, 30 Apr 2024 10:00:00 GMT</pubDate><description>Body text</description></item>
    </channel></rss>"""
    atom = """<feed xmlns="http://www.w3.org/2005/Atom"><title>Same</title>
      <entry><title>Story</title><link href="https://example.com/story"/>
      <published>2024-04-30T10:00:00Z</published><summary>Body text</summary></entry>
    </feed>"""

    from_rss = normalize_feed(rss, fetched_at=FETCHED_AT).articles[0]
    from_atom = normalize_feed(atom, fetched_at=FETCHED_AT).articles[0]

    assert from_rss == from_atom


def test_entries_without_title_or_link_are_dropped() -> None:
    rss = """<rss version="2.0"><channel><title>Partial</title>
      <item><title>No link</title></item>
      <item><link>https://example.com/no-title</link></item>
      <item><title>Complete</title><link>https://example.com/complete</link></item>
    </channel></rss>"""

    parsed = normalize_feed(rss, fetched_at=FETCHED_AT)

    assert [article.title for article in parsed.articles] == ["Complete"]


def test_repeated_links_keep_the_first_entry() -> None:
    rss = """<rss version="2.0"><channel><title>Dupes</title>
      <item><title>One</title><link>https://example.com/a</link></item>
      <item><title>Two</title><link>https://example.com/a</link></item>
    </channel></rss>"""

    parsed = normalize_feed(rss, fetched_at=FETCHED_AT)

    assert [article.title for article in parsed.articles] == ["One"]


def test_missing_or_unparseable_dates_fall_back_to_fetch_time() -> None:
    rss = """<rss version="2.0"><channel><title>Dates</title>
      <item><title>Undated</title><link>https://example.com/a</link></item>
      <item><title>Garbled</title><link>https://example.com/b</link><pubDate>someday</pubDate></item>
    </channel></rss>"""

    parsed = normalize_feed(rss, fetched_at=FETCHED_AT)

    assert [article.published_at for article in parsed.articles] == [FETCHED_AT, FETCHED_AT]


def test_summary_is_truncated() -> None:
    body = "word " * 100
    rss = f"""<rss version="2.0"><channel><title>Long</title>
      <item><title>Long</title><link>https://example.com/a</link><description>{body}</description></item>
    </channel></rss>"""

    parsed = normalize_feed(rss, fetched_at=FETCHED_AT)

    assert len(parsed.articles[0].summary) <= 200


def test_missing_feed_title_uses_placeholder() -> None:
    rss = """<rss version="2.0"><channel>
      <item><title>Story</title><link>https://example.com/a</link></item>
    </channel></rss>"""

    parsed = normalize_feed(rss, fetched_at=FETCHED_AT)

    assert parsed.title == "Untitled Feed"
    assert parsed.articles[0].source_title == "Untitled Feed"


def test_image_enclosure_wins_over_body_image() -> None:
    rss = """<rss version="2.0"><channel><title>Images</title>
      <item><title>Story</title><link>https://example.com/a</link>
        <enclosure url="https://example.com/enclosure.jpg" type="image/jpeg" length="1" />
        <description><![CDATA[<img src="https://example.com/body.jpg">]]></description>
      </item>
    </channel></rss>"""

    parsed = normalize_feed(rss, fetched_at=FETCHED_AT)

    assert parsed.articles[0].image_url == "https://example.com/enclosure.jpg"


def test_byte_order_mark_and_undeclared_prefixes_are_tolerated() -> None:
    rss = "\ufeff" + """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Sloppy</title>
  <item><title>Story</title><link>https://example.com/a</link>
    <media:thumbnail url="https://example.com/thumb.jpg" />
  </item>
</channel></rss>"""

    parsed = normalize_feed(rss, fetched_at=FETCHED_AT)

    assert parsed.title == "Sloppy"
    assert parsed.articles[0].image_url == "https://example.com/thumb.jpg"


def test_text_and_bytes_honour_their_encodings() -> None:
    document = (
        '<?xml version="1.0" encoding="ISO-8859-1"?>'
        "<rss><channel><title>Café</title>"
        "<item><title>Crème</title><link>https://example.com/creme</link></item>"
        "</channel></rss>"
    )

    from_text = normalize_feed(document)
    from_bytes = normalize_feed(document.encode("latin-1"))

    assert from_text.title == from_bytes.title == "Café"
    assert from_text.articles[0].title == from_bytes.articles[0].title == "Crème"


def test_malformed_xml_raises_format_error() -> None:
    with pytest.raises(FormatError):
        normalize_feed("<rss><channel><title>Broken</channel>", "https://example.com/broken")


def test_empty_document_raises_format_error() -> None:
    with pytest.raises(FormatError):
        normalize_feed("   ")


def test_xml_that_is_not_a_feed_is_unsupported() -> None:
    with pytest.raises(UnsupportedFormatError, match="Not a valid RSS, Atom, or RDF feed"):
        normalize_feed("<html><body><p>Hello</p></body></html>")


def test_html_to_text_collapses_whitespace() -> None:
    assert html_to_text("<p>Hello\n\n   <b>there</b></p>") == "Hello there"
    assert html_to_text("") == ""
