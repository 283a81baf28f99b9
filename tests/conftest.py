import os

# Keep spans in-process and instrumentation off for the test run
os.environ.setdefault("DISABLE_TELEMETRY", "true")

from datetime import datetime, timezone
from email.utils import format_datetime
from html import escape

import pytest
import pytest_asyncio

from models import DatabaseQueue


RSS_PAYLOAD = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:atom="http://www.w3.org/2005/Atom" xmlns:dc="http://purl.org/dc/elements/1.1/">
  <channel>
    <atom:link href="https://example.com/rss.xml" rel="self" type="application/rss+xml"/>
    <title>Example RSS</title>
    <link>https://example.com/</link>
    <description>An example feed</description>
    <pubDate>Mon, 06 Jan 2025 10:00:00 +0000</pubDate>
    <item>
      <title>First post</title>
      <link>https://example.com/1</link>
      <description>&lt;p&gt;Hello &amp;amp; welcome&lt;/p&gt;</description>
      <pubDate>Mon, 06 Jan 2025 09:00:00 +0000</pubDate>
      <guid>https://example.com/1</guid>
    </item>
    <item>
      <title>Second post</title>
      <link>https://example.com/2</link>
      <description>Plain text</description>
      <pubDate>Sun, 05 Jan 2025 09:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Third post</title>
      <link>https://example.com/3</link>
      <description>Dated with Dublin Core</description>
      <dc:date>2025-01-04T09:00:00Z</dc:date>
      <guid isPermaLink="false">post-3</guid>
    </item>
  </channel>
</rss>
"""

RDF_PAYLOAD = b"""<?xml version="1.0" encoding="UTF-8"?>
<rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#"
         xmlns="http://purl.org/rss/1.0/"
         xmlns:dc="http://purl.org/dc/elements/1.1/">
  <channel rdf:about="https://example.org/">
    <title>Example RDF</title>
    <link>https://example.org/</link>
    <description>RDF feed</description>
    <dc:date>2025-01-06T10:00:00Z</dc:date>
  </channel>
  <item rdf:about="https://example.org/a">
    <title>Item A</title>
    <link>https://example.org/a</link>
    <description>About A</description>
    <dc:date>2025-01-06T08:30:00+00:00</dc:date>
  </item>
  <item rdf:about="https://example.org/b">
    <title>Item B</title>
    <link>https://example.org/b</link>
    <description>About B</description>
  </item>
</rdf:RDF>
"""

ATOM_PAYLOAD = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Example Atom</title>
  <subtitle>Atom feed</subtitle>
  <link href="https://example.net/" rel="alternate"/>
  <link href="https://example.net/atom.xml" rel="self"/>
  <updated>2025-01-06T12:00:00Z</updated>
  <id>urn:uuid:feed</id>
  <entry>
    <title>Entry One</title>
    <link href="https://example.net/one" rel="alternate"/>
    <link href="https://example.net/one/comments" rel="replies"/>
    <id>urn:uuid:entry-1</id>
    <updated>2025-01-06T11:00:00Z</updated>
    <summary>Short one</summary>
    <content type="html">&lt;p&gt;Full one&lt;/p&gt;</content>
  </entry>
  <entry>
    <title>Entry Two</title>
    <link href="https://example.net/two"/>
    <id>urn:uuid:entry-2</id>
    <published>2025-01-05T11:00:00Z</published>
    <summary>Only a summary</summary>
  </entry>
</feed>
"""


def _rss_item(item: dict) -> str:
    parts = [f"<title>{escape(item.get('title', item['link']))}</title>", f"<link>{escape(item['link'])}</link>"]
    parts.append(f"<description>{escape(item.get('description', ''))}</description>")
    if item.get('pub_date') is not None:
        published = datetime.fromtimestamp(item['pub_date'], tz=timezone.utc)
        parts.append(f"<pubDate>{format_datetime(published)}</pubDate>")
    if item.get('guid'):
        parts.append(f"<guid>{escape(item['guid'])}</guid>")
    return "<item>" + "".join(parts) + "</item>"


def build_rss(*items: dict) -> bytes:
    body = "".join(_rss_item(item) for item in items)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel><title>Generated</title><link>https://example.com/</link>'
        f'<description>Generated feed</description>{body}</channel></rss>'
    ).encode("utf-8")


class StubFetcher:
    """Serves canned payloads (or raises canned errors) by URI."""

    def __init__(self):
        self.payloads = {}
        self.errors = {}
        self.calls = []

    async def fetch(self, uri: str) -> bytes:
        self.calls.append(uri)
        if uri in self.errors:
            raise self.errors[uri]
        return self.payloads[uri]


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


@pytest.fixture
def stub_fetcher():
    return StubFetcher()


@pytest.fixture
def make_rss():
    return build_rss


@pytest.fixture
def add_feed(db):
    """Register a feed and return it as stored, optionally already polled."""

    async def _add_feed(name, uri=None, last_poll_time=None, archive=False, active=True,
                        update_frequency_seconds=3600):
        feed_id = await db.execute('register_feed', name=name, uri=uri or f"https://example.com/{name}.xml",
                                   update_frequency_seconds=update_frequency_seconds,
                                   archive=archive, active=active)
        if last_poll_time is not None:
            await db.execute('set_feed_last_poll_time', feed_id=feed_id, timestamp=last_poll_time)
        return await db.execute('get_feed_by_name', name=name)

    return _add_feed
