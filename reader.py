#!/usr/bin/env python3
"""
Read-side queries over the item store.

ItemReader pages through a user's unread, read and read-later items and
applies read-state changes, including the "read after archive" bookkeeping
for items that were set aside and later read.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from math import ceil
from typing import Iterable, List, Optional, Tuple

from config import config, get_logger
from models import DatabaseQueue, ReadState, StoredItem
from utils import html_description, sanitize_item_text, truncate_string

# Module-specific logger
logger = get_logger("reader")


@dataclass
class ItemView:
    """An item prepared for display."""

    id: int
    feed_id: int
    feed_name: str
    title: str
    description_html: str
    link: str
    publication_date: str
    read_state: ReadState


def build_item_view(item: StoredItem) -> ItemView:
    """Sanitize and format a stored item for display."""
    description = truncate_string(sanitize_item_text(item.description), config.DESCRIPTION_DISPLAY_LIMIT)
    published = datetime.fromtimestamp(int(item.publication_date), tz=timezone.utc)
    return ItemView(
        id=item.id,
        feed_id=item.feed_id,
        feed_name=item.feed_name or "",
        title=sanitize_item_text(item.title),
        description_html=html_description(description),
        link=item.link,
        publication_date=published.isoformat(),
        read_state=item.read_state,
    )


class ItemReader:
    def __init__(self, db: DatabaseQueue, user_id: Optional[int] = None, page_size: Optional[int] = None):
        self.db = db
        self.user_id = config.DEFAULT_USER_ID if user_id is None else int(user_id)
        self.page_size = int(page_size or config.PAGE_SIZE)

    async def count_items(self, state: ReadState = ReadState.UNREAD) -> int:
        return await self.db.execute('count_items_by_state', user_id=self.user_id, state=ReadState(state))

    async def page_count(self, state: ReadState = ReadState.UNREAD) -> int:
        """Number of pages needed for the items in state (at least 1)."""
        total = await self.count_items(state)
        return max(1, ceil(total / self.page_size))

    async def list_items(self, state: ReadState = ReadState.UNREAD, order: str = "desc",
                         page: int = 1) -> List[ItemView]:
        """One page of items, ordered by publication date, feed name, then title.

        Raises:
            ValueError: page is below 1 or order is not "asc"/"desc".
        """
        if page < 1:
            raise ValueError(f"Invalid page: {page}")
        items = await self.db.execute(
            'list_items_by_state',
            user_id=self.user_id,
            state=ReadState(state),
            order=order,
            limit=self.page_size,
            offset=(page - 1) * self.page_size,
        )
        return [build_item_view(item) for item in items]

    async def get_item(self, item_id: int) -> StoredItem:
        item = await self.db.execute('get_item', item_id=item_id, user_id=self.user_id)
        if item is None:
            raise LookupError(f"item {item_id} not found")
        return item

    async def update_read_flags(self, read_ids: Iterable[int] = (),
                                archive_ids: Iterable[int] = ()) -> Tuple[int, int]:
        """Mark read_ids read and archive_ids read-later.

        Returns:
            (read_count, archived_count)
        """
        read_count = 0
        for item_id in read_ids:
            item = await self.get_item(item_id)
            if item.read_state == ReadState.READ_LATER:
                await self.db.execute('record_read_after_archive', user_id=self.user_id,
                                      feed_id=item.feed_id, item_id=item.id)
            await self.db.execute('set_item_read_state', item_id=item.id, user_id=self.user_id,
                                  state=ReadState.READ)
            read_count += 1

        archived_count = 0
        for item_id in archive_ids:
            item = await self.get_item(item_id)
            await self.db.execute('set_item_read_state', item_id=item.id, user_id=self.user_id,
                                  state=ReadState.READ_LATER)
            archived_count += 1

        logger.info(f"Marked {read_count} item(s) read and {archived_count} item(s) read-later")
        return read_count, archived_count

    async def mark_many_read(self, feed_id: Optional[int] = None, before: Optional[int] = None) -> int:
        """Bulk-mark unread items read; returns how many changed."""
        changed = await self.db.execute('set_many_read', user_id=self.user_id, feed_id=feed_id, before=before)
        logger.info(f"Marked {changed} item(s) read")
        return changed
