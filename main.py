#!/usr/bin/env python3
"""
Feed Poller command line.

Modes:
  poll       Poll due feeds once (optionally only --feed-name ones)
  loop       Poll repeatedly every POLL_INTERVAL_MINUTES
  sync       Register/update feeds from feeds.yaml
  status     Show registered feeds and when they are next due
  export     Write one feed's stored items as an RSS 2.0 file
  mark-read  Mark unread items read, optionally per feed and/or before a date

Meant to be run from cron (poll) or as a long-lived service (loop).
"""

import asyncio
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional
import argparse

from config import config, get_logger
from decoder import parse_date_string
from errors import UnknownFeedError
from exporter import write_feed_xml
from models import DatabaseQueue
from poller import FeedPoller, main_async, main_async_single_run
from fetcher import FeedFetcher
from reader import ItemReader
from telemetry import init_telemetry, trace_span
from utils import (
    duration_since_update_for_display,
    duration_until_next_update_for_display,
    safe_filename,
    update_frequency_for_display,
)

# Module-specific logger
logger = get_logger("main")


@asynccontextmanager
async def open_database(db_path: Optional[str] = None):
    db = DatabaseQueue(db_path or config.DATABASE_PATH)
    await db.start()
    try:
        yield db
    finally:
        await db.stop()


class PollerOrchestrator:
    """Runs one CLI mode and reports success as a bool."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or config.DATABASE_PATH

    async def run_poll(self, only_names: Optional[List[str]] = None, ignore_poll_times: bool = False,
                       ignore_publication_times: bool = False, sync: bool = False) -> bool:
        """Poll due feeds once."""
        logger.info("📡 Polling feeds")
        start_time = time.time()
        try:
            updated = await main_async_single_run(
                only_names=only_names,
                ignore_poll_times=ignore_poll_times or None,
                ignore_publication_times=ignore_publication_times or None,
                sync=sync,
                db_path=self.db_path,
            )
        except Exception as e:
            logger.error(f"❌ Poll failed: {e}")
            return False
        logger.info(f"✅ Poll completed in {time.time() - start_time:.1f}s ({updated} feed(s) updated)")
        return True

    async def run_loop(self, only_names: Optional[List[str]] = None,
                       ignore_publication_times: bool = False, sync: bool = False) -> bool:
        """Poll forever; returns only on failure to start or cancellation."""
        logger.info(f"🕐 Polling every {config.POLL_INTERVAL_MINUTES} minute(s)")
        try:
            await main_async(
                only_names=only_names,
                ignore_publication_times=ignore_publication_times or None,
                sync=sync,
                db_path=self.db_path,
            )
        except asyncio.CancelledError:
            return True
        except Exception as e:
            logger.error(f"❌ Poll loop failed: {e}")
            return False
        return True

    @trace_span("run_sync", tracer_name="orchestrator")
    async def run_sync(self) -> bool:
        """Register feeds from feeds.yaml."""
        logger.info(f"🔄 Syncing feeds from {config.FEEDS_CONFIG_PATH}")
        try:
            async with open_database(self.db_path) as db, FeedFetcher() as fetcher:
                synced = await FeedPoller(db, fetcher).sync_feed_sources()
        except Exception as e:
            logger.error(f"❌ Sync failed: {e}")
            return False
        if synced != len(config.FEED_SOURCES):
            logger.warning(f"⚠️ Only {synced}/{len(config.FEED_SOURCES)} feed(s) synced")
            return False
        logger.info(f"✅ Synced {synced} feed(s)")
        return True

    async def check_status(self) -> dict:
        """Collect per-feed status from the database."""
        status = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'feeds': [],
        }
        async with open_database(self.db_path) as db:
            reader = ItemReader(db)
            status['unread_items'] = await reader.count_items()
            status['total_items'] = await db.execute('count_items')
            now = time.time()
            for feed in await db.execute('list_feeds'):
                status['feeds'].append({
                    'name': feed.name,
                    'uri': feed.uri,
                    'active': feed.active,
                    'archive': feed.archive,
                    'items': await db.execute('count_items', feed_id=feed.id),
                    'frequency': update_frequency_for_display(feed.update_frequency_seconds),
                    'last_polled': duration_since_update_for_display(feed.last_poll_time, now),
                    'next_due': duration_until_next_update_for_display(
                        feed.last_poll_time, feed.update_frequency_seconds, now),
                })
        return status

    def print_status(self, status: dict) -> None:
        """Print formatted status information."""
        print(f"\n📊 Feed Poller Status")
        print(f"⏰ {status['timestamp']}")
        print(f"💾 Database: {self.db_path}")
        print(f"📰 Items: {status['total_items']} ({status['unread_items']} unread)")
        print(f"\n📡 Feeds ({len(status['feeds'])}):")
        for feed in status['feeds']:
            flags = []
            if not feed['active']:
                flags.append("inactive")
            if feed['archive']:
                flags.append("archive")
            suffix = f" [{', '.join(flags)}]" if flags else ""
            last = "never polled" if feed['last_polled'] == "never" else f"polled {feed['last_polled']} ago"
            print(f"   {feed['name']}{suffix}: {feed['items']} item(s), every {feed['frequency']}, "
                  f"{last}, due in {feed['next_due']}")
            print(f"      {feed['uri']}")

    @trace_span("run_export", tracer_name="orchestrator",
                attr_from_args=lambda self, feed_name, output=None, limit=None: {"feed.name": feed_name})
    async def run_export(self, feed_name: str, output: Optional[str] = None, limit: Optional[int] = None) -> bool:
        """Write a feed's newest stored items to an RSS file."""
        logger.info(f"📄 Exporting feed {feed_name}")
        try:
            async with open_database(self.db_path) as db:
                feed = await db.execute('get_feed_by_name', name=feed_name)
                if feed is None:
                    raise UnknownFeedError(f"feed not found: {feed_name}")
                items = await db.execute('list_feed_items', feed_id=feed.id, limit=limit or config.PAGE_SIZE)
            path = write_feed_xml(feed, items, output or f"{safe_filename(feed.name)}.xml")
        except Exception as e:
            logger.error(f"❌ Export failed: {e}")
            return False
        logger.info(f"✅ Exported {len(items)} item(s) to {path}")
        return True

    async def run_mark_read(self, feed_name: Optional[str] = None, before: Optional[str] = None) -> bool:
        """Mark unread items read."""
        logger.info("📬 Marking items read")
        try:
            before_timestamp = None
            if before:
                before_timestamp = parse_date_string(before)
                if before_timestamp is None:
                    raise ValueError(f"unrecognized date: {before}")
            async with open_database(self.db_path) as db:
                feed_id = None
                if feed_name:
                    feed = await db.execute('get_feed_by_name', name=feed_name)
                    if feed is None:
                        raise UnknownFeedError(f"feed not found: {feed_name}")
                    feed_id = feed.id
                changed = await ItemReader(db).mark_many_read(feed_id=feed_id, before=before_timestamp)
        except Exception as e:
            logger.error(f"❌ Mark read failed: {e}")
            return False
        logger.info(f"✅ Marked {changed} item(s) read")
        return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Poller')
    parser.add_argument('mode', choices=['poll', 'loop', 'sync', 'status', 'export', 'mark-read'],
                        help='Operation mode')
    parser.add_argument('--feed-name', action='append', dest='feed_names', metavar='NAME',
                        help='Limit to this feed (repeatable for poll/loop)')
    parser.add_argument('--ignore-poll-times', action='store_true',
                        help='Poll every feed regardless of when it was last polled')
    parser.add_argument('--ignore-publication-times', action='store_true',
                        help='Record GUID-less items even if published before the cutoff')
    parser.add_argument('--config', type=str,
                        help='Path to the feeds.yaml registry')
    parser.add_argument('--sync', action='store_true',
                        help='Sync feeds.yaml into the database before polling')
    parser.add_argument('--database', type=str,
                        help='SQLite database path (default: DATABASE_PATH)')
    parser.add_argument('--output', type=str,
                        help='Output file for export')
    parser.add_argument('--limit', type=int,
                        help='Number of items to export')
    parser.add_argument('--before', type=str,
                        help='Only mark items published before this date')
    return parser


def main():
    """Main entry point."""
    args = build_parser().parse_args()

    if args.config:
        config.reload_feed_sources(args.config)
    init_telemetry("feed-poller")

    orchestrator = PollerOrchestrator(args.database)
    feed_names = args.feed_names or None

    try:
        if args.mode == 'poll':
            success = asyncio.run(orchestrator.run_poll(
                only_names=feed_names,
                ignore_poll_times=args.ignore_poll_times,
                ignore_publication_times=args.ignore_publication_times,
                sync=args.sync,
            ))
            sys.exit(0 if success else 1)

        elif args.mode == 'loop':
            success = asyncio.run(orchestrator.run_loop(
                only_names=feed_names,
                ignore_publication_times=args.ignore_publication_times,
                sync=args.sync,
            ))
            sys.exit(0 if success else 1)

        elif args.mode == 'sync':
            success = asyncio.run(orchestrator.run_sync())
            sys.exit(0 if success else 1)

        elif args.mode == 'status':
            status = asyncio.run(orchestrator.check_status())
            orchestrator.print_status(status)

        elif args.mode == 'export':
            if not feed_names or len(feed_names) != 1:
                logger.error("❌ export needs exactly one --feed-name")
                sys.exit(1)
            success = asyncio.run(orchestrator.run_export(feed_names[0], output=args.output, limit=args.limit))
            sys.exit(0 if success else 1)

        elif args.mode == 'mark-read':
            if feed_names and len(feed_names) > 1:
                logger.error("❌ mark-read accepts at most one --feed-name")
                sys.exit(1)
            success = asyncio.run(orchestrator.run_mark_read(
                feed_name=feed_names[0] if feed_names else None,
                before=args.before,
            ))
            sys.exit(0 if success else 1)

    except KeyboardInterrupt:
        logger.info("👋 Feed poller shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
