#!/usr/bin/env python3
"""
Feed poll scheduler.

Walks the active feeds, polls the ones that are due, and records new items.
One feed's failure is logged and skipped; the rest of the run carries on.

A single feed cycle is: fetch, keep the raw payload, decode, compute the
cutoff, sanity-check the batch, admit items, then stamp the feed with the time
the cycle started. The stamp is only written once everything else succeeded,
so a failed feed is retried on the next run.
"""

from asyncio import sleep, CancelledError
from time import time
from typing import Any, Dict, Iterable, Optional

from admission import ItemAdmission, get_feed_cutoff_time, sanity_check_items
from config import config, get_logger
from decoder import parse_feed_xml
from errors import FeedPollerError, FetchError, PersistenceError, UnknownFeedError
from fetcher import FeedFetcher
from models import DatabaseQueue, Feed
from telemetry import trace_span
from utils import duration_until_next_update_for_display, format_duration

# Module-specific logger
logger = get_logger("poller")


class FeedPoller:
    """Polls registered feeds through a fetcher into the store."""

    def __init__(self, db: DatabaseQueue, fetcher: FeedFetcher, ignore_poll_times: Optional[bool] = None,
                 ignore_publication_times: Optional[bool] = None, user_id: Optional[int] = None) -> None:
        self.db = db
        self.fetcher = fetcher
        self.ignore_poll_times = config.IGNORE_POLL_TIMES if ignore_poll_times is None else bool(ignore_poll_times)
        self.admission = ItemAdmission(db, ignore_publication_times=ignore_publication_times, user_id=user_id)

    def is_feed_due(self, feed: Feed, now: Optional[float] = None) -> bool:
        """A feed is due when it was never polled or its update frequency has elapsed."""
        if self.ignore_poll_times or feed.never_polled:
            return True
        current = time() if now is None else now
        return current - feed.last_poll_time >= feed.update_frequency_seconds

    @trace_span(
        "poll_feed",
        tracer_name="poller",
        attr_from_args=lambda self, feed: {
            "feed.id": int(feed.id),
            "feed.name": feed.name,
            "feed.uri": feed.uri,
        },
    )
    async def poll_feed(self, feed: Feed) -> int:
        """Run one poll cycle for feed and return the number of items recorded."""
        poll_timestamp = int(time())

        try:
            payload = await self.fetcher.fetch(feed.uri)
        except FetchError as e:
            if e.payload is not None:
                await self.db.execute('set_feed_last_raw_payload', feed_id=feed.id, payload=e.payload)
            raise

        await self.db.execute('set_feed_last_raw_payload', feed_id=feed.id, payload=payload)

        channel = parse_feed_xml(payload)
        cutoff = await get_feed_cutoff_time(self.db, feed)
        items = channel.items
        sanity_check_items(items)

        recorded = await self.admission.admit_items(feed, items, cutoff)

        # Warns on every fully-new batch except a feed's first poll (everything is
        # new then) and an empty batch (0 == 0 says nothing about missed items)
        if items and recorded == len(items) and not feed.never_polled:
            logger.warning(
                f"{feed.name}: all {recorded} item(s) in the feed were new; "
                f"some items may have been missed between polls"
            )

        await self.db.execute('set_feed_last_poll_time', feed_id=feed.id, timestamp=poll_timestamp)
        return recorded

    @trace_span(
        "poll_feeds",
        tracer_name="poller",
        attr_from_args=lambda self, only_names=None: {
            "feed.only_names": ",".join(only_names) if only_names else "",
        },
    )
    async def poll_feeds(self, only_names: Optional[Iterable[str]] = None) -> int:
        """Poll every due active feed (optionally only the named ones).

        Returns:
            The number of feeds updated successfully.

        Raises:
            UnknownFeedError: a requested name is not an active feed.
        """
        feeds = await self.db.execute('list_active_feeds')

        if only_names:
            wanted = set(only_names)
            unknown = sorted(wanted - {feed.name for feed in feeds})
            if unknown:
                raise UnknownFeedError(f"feed(s) not found or inactive: {', '.join(unknown)}")
            feeds = [feed for feed in feeds if feed.name in wanted]

        now = time()
        updated = 0
        for feed in feeds:
            if not self.is_feed_due(feed, now):
                logger.debug(
                    f"{feed.name}: polled {format_duration(now - feed.last_poll_time)} ago, "
                    f"due in {duration_until_next_update_for_display(feed.last_poll_time, feed.update_frequency_seconds, now)}"
                )
                continue

            logger.info(f"Updating feed {feed.name}")
            try:
                recorded = await self.poll_feed(feed)
            except FeedPollerError as e:
                logger.error(f"❌ Failed to update feed {feed.name}: {e}")
                continue
            except Exception as e:
                logger.exception(f"❌ Unexpected error updating feed {feed.name}: {type(e).__name__}: {e}")
                continue

            logger.info(f"Updated feed {feed.name} ({recorded} new item(s))")
            updated += 1

        logger.info(f"Updated {updated}/{len(feeds)} feed(s)")
        return updated

    async def sync_feed_sources(self, sources: Optional[Dict[str, Dict[str, Any]]] = None) -> int:
        """Register or update the feeds from the feeds.yaml registry; returns the count synced."""
        sources = config.FEED_SOURCES if sources is None else sources
        synced = 0
        for name, source in sources.items():
            try:
                await self.db.execute(
                    'register_feed',
                    name=name,
                    uri=source['url'],
                    update_frequency_seconds=source.get('update_frequency_seconds'),
                    archive=source.get('archive', False),
                    active=source.get('active', True),
                )
            except PersistenceError as e:
                logger.error(f"Could not register feed {name}: {e}")
                continue
            synced += 1
        logger.info(f"Synced {synced}/{len(sources)} feed(s) from configuration")
        return synced


@trace_span("poller.single_run", tracer_name="poller")
async def main_async_single_run(only_names: Optional[Iterable[str]] = None,
                                ignore_poll_times: Optional[bool] = None,
                                ignore_publication_times: Optional[bool] = None,
                                sync: bool = False,
                                db_path: Optional[str] = None) -> int:
    """Open the store, poll once, and close everything. Returns feeds updated."""
    db = DatabaseQueue(db_path or config.DATABASE_PATH)
    fetcher = FeedFetcher()
    await db.start()
    try:
        await fetcher.initialize()
        poller = FeedPoller(db, fetcher, ignore_poll_times=ignore_poll_times,
                            ignore_publication_times=ignore_publication_times)
        if sync:
            await poller.sync_feed_sources()
        return await poller.poll_feeds(only_names=only_names)
    finally:
        await fetcher.close()
        await db.stop()


@trace_span("poller.main_loop", tracer_name="poller")
async def main_async(only_names: Optional[Iterable[str]] = None,
                     ignore_publication_times: Optional[bool] = None,
                     sync: bool = False,
                     db_path: Optional[str] = None) -> None:
    """Poll repeatedly, sleeping POLL_INTERVAL_MINUTES between runs."""
    db = DatabaseQueue(db_path or config.DATABASE_PATH)
    fetcher = FeedFetcher()
    await db.start()
    try:
        await fetcher.initialize()
        poller = FeedPoller(db, fetcher, ignore_publication_times=ignore_publication_times)
        if sync:
            await poller.sync_feed_sources()

        interval_seconds = config.POLL_INTERVAL_MINUTES * 60
        while True:
            try:
                await poller.poll_feeds(only_names=only_names)
            except FeedPollerError as e:
                logger.error(f"❌ Poll run failed: {e}")
            except Exception as e:
                logger.exception(f"❌ Unexpected error in poll run: {type(e).__name__}: {e}")
            logger.info(f"Sleeping for {format_duration(interval_seconds)} until next run")
            await sleep(interval_seconds)
    except CancelledError:
        logger.info("Feed poller loop was cancelled")
        raise
    finally:
        await fetcher.close()
        await db.stop()
