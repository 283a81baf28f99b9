#!/usr/bin/env python3
"""
Feed document decoder.

Parses raw feed payloads into a Channel of normalized Items. RSS 2.0, RDF
(RSS 1.0) and Atom are tried in that order against the same document tree;
each attempt either returns a Channel or raises DialectMismatch, and only when
all three fail does the caller see a DecodeError listing every attempt.

The payload's XML prolog is authoritative for its character set: the bytes are
decoded with the declared encoding (via BeautifulSoup's UnicodeDammit) before
ElementTree sees them, so feeds served as ISO-8859-1, windows-1252, Shift_JIS
and friends parse the same way UTF-8 feeds do.
"""

import calendar
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from time import time
from typing import Callable, List, Optional, Tuple
from xml.etree import ElementTree as ET

from bs4 import UnicodeDammit
from feedparser.datetimes import _parse_date as feedparser_parse_date

from config import get_logger
from errors import DecodeError, DialectMismatch, MalformedInput
from models import Channel, Item
from telemetry import trace_span

# Module-specific logger
logger = get_logger("decoder")

XML_HEADER_PREFIX = b'<?xml version="1.0" encoding="'
ATOM_NAMESPACE = "http://www.w3.org/2005/Atom"

_PROLOG_ENCODING_RE = re.compile(r'^(\s*<\?xml[^>]*?encoding\s*=\s*["\'])([^"\']*)(["\'])')
_CUSTOM_DATE_FORMATS = (
    "%d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)


def check_xml_header(data: bytes) -> None:
    """Reject payloads that do not start with a standard XML declaration."""
    if len(data or b"") < len(XML_HEADER_PREFIX):
        raise MalformedInput("buffer is too short to have XML header")
    if not data.startswith(XML_HEADER_PREFIX):
        raise MalformedInput("buffer does not have XML header")


def _parse_document(data: bytes) -> ET.Element:
    """Decode the payload using its declared charset and build the element tree."""
    dammit = UnicodeDammit(data, is_html=False)
    text = dammit.unicode_markup
    if text is None:
        raise MalformedInput("unable to determine the payload's character encoding")
    if dammit.original_encoding and dammit.original_encoding.lower() not in ("utf-8", "ascii"):
        logger.debug(f"Transcoding payload from {dammit.original_encoding}")

    # The text is now unicode; the prolog must stop claiming otherwise
    text = _PROLOG_ENCODING_RE.sub(r'\1utf-8\3', text, count=1)
    try:
        return ET.fromstring(text.encode("utf-8"))
    except ET.ParseError as e:
        raise MalformedInput(f"XML decode error: {e}") from e


def _split_tag(tag) -> Tuple[str, str]:
    """Split '{namespace}local' into (namespace, local)."""
    if not isinstance(tag, str):
        return "", ""
    if tag.startswith("{"):
        namespace, _, local = tag[1:].partition("}")
        return namespace, local
    return "", tag


def _children(parent: Optional[ET.Element], name: str) -> List[ET.Element]:
    if parent is None:
        return []
    return [child for child in parent if _split_tag(child.tag)[1] == name]


def _child(parent: Optional[ET.Element], name: str) -> Optional[ET.Element]:
    """First child with the given local name, preferring the parent's own namespace.

    RSS channels routinely carry both <link> and <atom:link>; the unprefixed one
    is the channel link.
    """
    matches = _children(parent, name)
    if not matches:
        return None
    namespace = _split_tag(parent.tag)[0]
    for child in matches:
        if _split_tag(child.tag)[0] == namespace:
            return child
    return matches[0]


def _element_text(element: Optional[ET.Element]) -> str:
    if element is None:
        return ""
    if len(element):
        # Inline markup (e.g. Atom type="xhtml") is kept as serialized XML
        try:
            inner = (element.text or "") + "".join(ET.tostring(child, encoding="unicode") for child in element)
        except RecursionError as e:
            raise MalformedInput(f"markup inside <{_split_tag(element.tag)[1]}> is nested too deeply") from e
        return inner.strip()
    return (element.text or "").strip()


def _child_text(parent: Optional[ET.Element], *names: str) -> str:
    """Text of the first non-empty child among names, tried in order."""
    for name in names:
        value = _element_text(_child(parent, name))
        if value:
            return value
    return ""


def _parse_rfc1123(value: str) -> Optional[int]:
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _parse_rfc3339(value: str) -> Optional[int]:
    candidate = value
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _parse_with_feedparser(value: str) -> Optional[int]:
    try:
        time_struct = feedparser_parse_date(value)
        if time_struct:
            # feedparser normalizes to UTC
            return calendar.timegm(time_struct)
    except (ValueError, TypeError, OverflowError):
        return None
    return None


def _parse_with_custom_formats(value: str) -> Optional[int]:
    for fmt in _CUSTOM_DATE_FORMATS:
        try:
            dt = datetime.strptime(value, fmt)
        except ValueError:
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    return None


def parse_date_string(value: Optional[str]) -> Optional[int]:
    """Parse a feed date into a Unix timestamp, or None if no format matches.

    RFC 1123 (with named or numeric zone) and RFC 3339 cover nearly every feed;
    feedparser's handlers and a few strptime formats catch the rest.
    """
    if not value or not value.strip():
        return None
    value = value.strip()
    for parser in (_parse_rfc1123, _parse_rfc3339, _parse_with_feedparser, _parse_with_custom_formats):
        timestamp = parser(value)
        if timestamp is not None:
            return timestamp
    return None


def parse_pub_date(value: Optional[str]) -> int:
    """Publication timestamp of an item; missing or unparseable dates become now."""
    timestamp = parse_date_string(value)
    if timestamp is not None:
        return timestamp
    if value and value.strip():
        logger.info(f"Unable to parse publication date {value!r}; using current time")
    else:
        logger.debug("Item has no publication date; using current time")
    return int(time())


def _build_item(element: ET.Element, description_fields: Tuple[str, ...], date_fields: Tuple[str, ...],
                guid_field: str) -> Item:
    return Item(
        title=_child_text(element, "title"),
        link=_child_text(element, "link"),
        description=_child_text(element, *description_fields),
        pub_date=parse_pub_date(_child_text(element, *date_fields)),
        guid=_child_text(element, guid_field) or None,
    )


def parse_rss(root: ET.Element) -> Channel:
    """RSS 0.9x/2.0: <rss><channel><item/>...</channel></rss>."""
    _, name = _split_tag(root.tag)
    if name.lower() != "rss":
        raise DialectMismatch("RSS", f"root element is <{name}>, not <rss>")
    channel = _child(root, "channel")
    if channel is None:
        raise DialectMismatch("RSS", "missing <channel> element")

    items = [
        _build_item(element, ("description",), ("pubDate", "date"), "guid")
        for element in _children(channel, "item")
    ]
    return Channel(
        title=_child_text(channel, "title"),
        link=_child_text(channel, "link"),
        description=_child_text(channel, "description"),
        pub_date=parse_date_string(_child_text(channel, "pubDate", "lastBuildDate", "date")),
        items=items,
    )


def parse_rdf(root: ET.Element) -> Channel:
    """RSS 1.0: <rdf:RDF> with <channel> and <item> elements as siblings."""
    _, name = _split_tag(root.tag)
    if name.lower() != "rdf":
        raise DialectMismatch("RDF", f"root element is <{name}>, not <rdf:RDF>")
    channel = _child(root, "channel")

    items = [
        _build_item(element, ("description",), ("date", "pubDate"), "guid")
        for element in _children(root, "item")
    ]
    return Channel(
        title=_child_text(channel, "title"),
        link=_child_text(channel, "link"),
        description=_child_text(channel, "description"),
        pub_date=parse_date_string(_child_text(channel, "date", "pubDate")),
        items=items,
    )


def _atom_links(parent: ET.Element) -> List[Tuple[str, str]]:
    """(rel, href) for each <link> with an href, in document order."""
    links = []
    for link in _children(parent, "link"):
        href = (link.get("href") or "").strip()
        if href:
            links.append(((link.get("rel") or "alternate").strip(), href))
    return links


def parse_atom(root: ET.Element) -> Channel:
    """Atom (RFC 4287): namespaced <feed> with <entry> elements."""
    if root.tag != f"{{{ATOM_NAMESPACE}}}feed":
        _, name = _split_tag(root.tag)
        raise DialectMismatch("Atom", f"root element is <{name}>, not an Atom <feed>")

    links = _atom_links(root)
    channel_link = next((href for rel, href in links if rel == "self"), links[0][1] if links else "")

    items = []
    for entry in _children(root, "entry"):
        entry_links = _atom_links(entry)
        items.append(Item(
            title=_child_text(entry, "title"),
            link=entry_links[0][1] if entry_links else "",
            description=_child_text(entry, "content", "summary"),
            pub_date=parse_pub_date(_child_text(entry, "updated", "published")),
            guid=_child_text(entry, "id") or None,
        ))

    return Channel(
        title=_child_text(root, "title"),
        link=channel_link,
        description=_child_text(root, "subtitle"),
        pub_date=parse_date_string(_child_text(root, "updated")),
        items=items,
    )


DIALECTS: Tuple[Tuple[str, Callable[[ET.Element], Channel]], ...] = (
    ("RSS", parse_rss),
    ("RDF", parse_rdf),
    ("Atom", parse_atom),
)


@trace_span(
    "decoder.parse_feed_xml",
    tracer_name="decoder",
    attr_from_args=lambda data: {"payload.bytes": len(data or b"")},
)
def parse_feed_xml(data: bytes) -> Channel:
    """Parse a raw feed payload into a Channel.

    Raises:
        MalformedInput: the payload is not an XML document.
        DecodeError: the document is XML but not RSS, RDF or Atom; the
            per-dialect failures are available as ``attempts``.
    """
    check_xml_header(data)
    root = _parse_document(bytes(data))

    attempts: List[DecodeError] = []
    for dialect, parser in DIALECTS:
        try:
            channel = parser(root)
        except DialectMismatch as e:
            logger.debug(f"Payload is not {dialect}: {e.reason}")
            attempts.append(e)
            continue
        logger.debug(f"Parsed {dialect} document '{channel.title}' with {len(channel.items)} item(s)")
        return channel

    raise DecodeError(attempts=attempts)
