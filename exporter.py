#!/usr/bin/env python3
"""
RSS 2.0 export of stored items (feedgen).

Each item's GUID is its link, and the channel's pubDate/lastBuildDate are the
feed's last poll time. The XML declaration is rewritten to the double-quoted
form so exported files can be polled back by this same program.
"""

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from feedgen.feed import FeedGenerator

from config import get_logger
from models import Feed, StoredItem

# Module-specific logger
logger = get_logger("exporter")

XML_DECLARATION = b'<?xml version="1.0" encoding="UTF-8"?>'
_XML_DECLARATION_RE = re.compile(rb'^\s*<\?xml[^>]*\?>')


def _xml_safe(text: Optional[str]) -> str:
    """Drop characters XML 1.0 cannot carry (NUL and other C0 controls)."""
    if not text:
        return ''
    return ''.join(
        char for char in str(text)
        if char in ('\t', '\n', '\r') or (ord(char) >= 32 and ord(char) != 0x7F)
    )


def _utc(timestamp: int) -> datetime:
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


def build_feed_xml(feed: Feed, items: List[StoredItem], description: Optional[str] = None) -> str:
    """Render feed and its items (newest first) as an RSS 2.0 document."""
    fg = FeedGenerator()
    fg.id(_xml_safe(feed.uri))
    fg.title(_xml_safe(feed.name))
    fg.link(href=_xml_safe(feed.uri), rel='alternate')
    fg.description(_xml_safe(description) or f"Items from {_xml_safe(feed.name)}")
    fg.generator('Feed Poller')
    if feed.last_poll_time is not None:
        fg.pubDate(_utc(feed.last_poll_time))
        fg.lastBuildDate(_utc(feed.last_poll_time))

    # feedgen prepends entries, so add oldest first to keep newest first in the output
    for item in reversed(items):
        fe = fg.add_entry()
        link = _xml_safe(item.link)
        fe.title(_xml_safe(item.title) or link)
        fe.link(href=link)
        fe.guid(link, permalink=True)
        item_description = _xml_safe(item.description)
        if item_description:
            fe.description(item_description)
        fe.pubDate(_utc(item.publication_date))

    xml = fg.rss_str(pretty=True)
    return _XML_DECLARATION_RE.sub(XML_DECLARATION, xml, count=1).decode('utf-8')


def write_feed_xml(feed: Feed, items: List[StoredItem], filename: str,
                   description: Optional[str] = None) -> Path:
    """Write the RSS document for feed to filename and return its path."""
    output_path = Path(filename)
    if output_path.parent and not output_path.parent.exists():
        output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(build_feed_xml(feed, items, description=description), encoding='utf-8')
    logger.info(f"Wrote {len(items)} item(s) for {feed.name} to {output_path}")
    return output_path
