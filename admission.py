#!/usr/bin/env python3
"""
Item admission decisions.

Given a feed, a freshly decoded batch of items and the feed's cutoff time,
decide item by item whether to record it. The rules, in priority order:

1. A feed that has never been polled records everything it has not already
   stored, regardless of publication date.
2. Items with a GUID are identified by it. An item whose link is already
   stored without a GUID gets the GUID backfilled instead of being duplicated.
3. Items without a GUID are identified by link, and anything published before
   the cutoff is treated as already seen.

Recorded items of first-poll and archive feeds are marked read immediately so
a new subscription does not flood the unread list.
"""

from typing import Iterable, List, Optional, Set

from config import config, get_logger
from errors import InvariantViolation, SanityViolation
from models import DatabaseQueue, Feed, Item, ReadState
from utils import format_timestamp, truncate_string

# Module-specific logger
logger = get_logger("admission")


def sanity_check_items(items: Iterable[Item]) -> None:
    """Reject a batch that cannot be admitted consistently.

    Raises:
        SanityViolation: an item lacks a link, or two items share a link or a
            non-empty GUID.
    """
    seen_links: Set[str] = set()
    seen_guids: Set[str] = set()
    for position, item in enumerate(items):
        if not item.link:
            raise SanityViolation(f"item {position} ({item.title!r}) has no link")
        if item.link in seen_links:
            raise SanityViolation(f"duplicate link in feed: {item.link}")
        seen_links.add(item.link)
        if item.guid:
            if item.guid in seen_guids:
                raise SanityViolation(f"duplicate GUID in feed: {item.guid}")
            seen_guids.add(item.guid)


async def get_feed_cutoff_time(db: DatabaseQueue, feed: Feed) -> Optional[int]:
    """Newest stored publication date for the feed, else its last poll time.

    Returns None only for a feed with no items that has never been polled.
    """
    newest = await db.execute('get_max_publication_date', feed_id=feed.id)
    if newest is not None:
        return int(newest)
    return feed.last_poll_time


class ItemAdmission:
    """Applies the admission rules for one user's view of the store."""

    def __init__(self, db: DatabaseQueue, ignore_publication_times: Optional[bool] = None,
                 user_id: Optional[int] = None):
        self.db = db
        self.ignore_publication_times = (config.IGNORE_PUBLICATION_TIMES if ignore_publication_times is None
                                         else bool(ignore_publication_times))
        self.user_id = config.DEFAULT_USER_ID if user_id is None else int(user_id)

    async def should_record_item(self, feed: Feed, item: Item, cutoff: Optional[int]) -> bool:
        """Decide whether item is new for feed. May backfill a GUID as a side effect."""
        if feed.never_polled:
            # Rows left by an interrupted first poll are already stored
            if item.guid and await self.db.execute('item_exists_by_guid', feed_id=feed.id, guid=item.guid):
                return False
            if await self.db.execute('item_exists_by_link', feed_id=feed.id, link=item.link):
                return False
            return True

        if item.guid:
            return await self._should_record_item_with_guid(feed, item)

        if await self.db.execute('item_exists_by_link', feed_id=feed.id, link=item.link):
            logger.debug(f"{feed.name}: already have {item.link}")
            return False

        if self.ignore_publication_times:
            return True

        if cutoff is not None and item.pub_date < cutoff:
            logger.info(
                f"{feed.name}: skipping {truncate_string(item.title, 80)!r}, published "
                f"{format_timestamp(item.pub_date)} before cutoff {format_timestamp(cutoff)}"
            )
            return False

        return True

    async def _should_record_item_with_guid(self, feed: Feed, item: Item) -> bool:
        if await self.db.execute('item_exists_by_guid', feed_id=feed.id, guid=item.guid):
            logger.debug(f"{feed.name}: already have GUID {item.guid}")
            return False

        stored = await self.db.execute('find_item_by_link', feed_id=feed.id, link=item.link)
        if stored is None:
            return True

        if stored.guid is None:
            logger.debug(f"{feed.name}: backfilling GUID {item.guid} onto item {stored.id}")
            await self.db.execute('backfill_item_guid', item_id=stored.id, guid=item.guid)
            return False

        if stored.guid == item.guid:
            raise InvariantViolation(
                f"{feed.name}: GUID {item.guid!r} not found by GUID lookup but present on item {stored.id}"
            )

        logger.warning(
            f"{feed.name}: item {stored.id} at {item.link} has GUID {stored.guid!r}, "
            f"feed now reports {item.guid!r}; keeping the stored item"
        )
        return False

    async def record_item(self, feed: Feed, item: Item) -> int:
        """Store item and return its id.

        First-poll and archive items are inserted already READ, in one
        transaction, so a retried first poll never finds them unread.
        """
        item_id = await self.db.execute(
            'insert_item',
            feed_id=feed.id,
            title=item.title,
            description=item.description,
            link=item.link,
            pub_date=item.pub_date,
            guid=item.guid,
            read_state=ReadState.READ if feed.never_polled or feed.archive else None,
            user_id=self.user_id,
        )
        logger.debug(f"{feed.name}: recorded item {item_id} {item.link}")
        return item_id

    async def admit_items(self, feed: Feed, items: List[Item], cutoff: Optional[int]) -> int:
        """Admit items in order of appearance; return how many were recorded.

        The first error aborts the batch. Items recorded before it stay recorded.
        """
        recorded = 0
        for item in items:
            if await self.should_record_item(feed, item, cutoff):
                await self.record_item(feed, item)
                recorded += 1
        return recorded
