import logging

import pytest

from admission import ItemAdmission, get_feed_cutoff_time, sanity_check_items
from errors import InvariantViolation, SanityViolation
from models import Feed, Item, ReadState, StoredItem

T = 1736154000  # 2025-01-06 09:00 UTC
HOUR = 3600


def make_item(link, guid=None, pub_date=T, title="Title"):
    return Item(title=title, link=link, description="", pub_date=pub_date, guid=guid)


class ScriptedDB:
    """Answers execute() from a table of canned results and records the calls."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def execute(self, operation_name, **params):
        self.calls.append((operation_name, params))
        return self.responses.get(operation_name)


def test_sanity_check_accepts_distinct_items():
    sanity_check_items([make_item("https://a/1", "g1"), make_item("https://a/2"), make_item("https://a/3")])
    sanity_check_items([])


@pytest.mark.parametrize("items, message", [
    ([make_item("https://a/1"), make_item("")], "has no link"),
    ([make_item("https://a/1"), make_item("https://a/1")], "duplicate link"),
    ([make_item("https://a/1", "g"), make_item("https://a/2", "g")], "duplicate GUID"),
])
def test_sanity_check_rejects(items, message):
    with pytest.raises(SanityViolation, match=message):
        sanity_check_items(items)


@pytest.mark.asyncio
async def test_cutoff_prefers_newest_stored_item(db, add_feed):
    never = await add_feed('never')
    assert await get_feed_cutoff_time(db, never) is None

    polled = await add_feed('polled', last_poll_time=T)
    assert await get_feed_cutoff_time(db, polled) == T

    await db.execute('insert_item', feed_id=polled.id, title='x', description='', link='https://p/1',
                     pub_date=T - 5 * HOUR)
    assert await get_feed_cutoff_time(db, polled) == T - 5 * HOUR


@pytest.mark.asyncio
async def test_never_polled_feed_records_old_items(db, add_feed):
    feed = await add_feed('fresh')
    admission = ItemAdmission(db, ignore_publication_times=False)

    assert await admission.should_record_item(feed, make_item("https://f/1", pub_date=1), cutoff=None)


@pytest.mark.asyncio
async def test_never_polled_feed_skips_rows_already_stored(db, add_feed):
    feed = await add_feed('fresh')
    await db.execute('insert_item', feed_id=feed.id, title='x', description='', link='https://f/1', pub_date=T)
    admission = ItemAdmission(db)

    assert not await admission.should_record_item(feed, make_item("https://f/1"), cutoff=None)


@pytest.mark.asyncio
async def test_known_guid_with_new_link_is_skipped(db, add_feed):
    feed = await add_feed('blog', last_poll_time=T)
    await db.execute('insert_item', feed_id=feed.id, title='x', description='', link='https://b/old-scheme/1',
                     pub_date=T, guid='g1')
    admission = ItemAdmission(db)

    assert not await admission.should_record_item(feed, make_item("https://b/new-scheme/1", guid="g1"), cutoff=T)
    assert await db.execute('count_items', feed_id=feed.id) == 1


@pytest.mark.asyncio
async def test_guid_is_backfilled_onto_item_stored_by_link(db, add_feed):
    feed = await add_feed('blog', last_poll_time=T)
    await db.execute('insert_item', feed_id=feed.id, title='x', description='', link='a', pub_date=T)
    admission = ItemAdmission(db)

    assert not await admission.should_record_item(feed, make_item("a", guid="g1"), cutoff=T)

    stored = await db.execute('find_item_by_link', feed_id=feed.id, link='a')
    assert stored.guid == "g1"
    assert await db.execute('count_items', feed_id=feed.id) == 1


@pytest.mark.asyncio
async def test_link_stored_under_different_guid_is_skipped_with_warning(db, add_feed, caplog):
    caplog.set_level(logging.WARNING, logger="FeedPoller.admission")
    feed = await add_feed('blog', last_poll_time=T)
    await db.execute('insert_item', feed_id=feed.id, title='x', description='', link='a', pub_date=T, guid='g1')
    admission = ItemAdmission(db)

    assert not await admission.should_record_item(feed, make_item("a", guid="g2"), cutoff=T)
    stored = await db.execute('find_item_by_link', feed_id=feed.id, link='a')
    assert stored.guid == "g1"
    assert "keeping the stored item" in caplog.text


@pytest.mark.asyncio
async def test_guid_found_by_link_but_not_by_guid_is_an_invariant_violation():
    feed = Feed(id=1, name='blog', uri='https://b/rss', update_frequency_seconds=3600, last_poll_time=T)
    stored = StoredItem(id=7, feed_id=1, title='x', description='', link='a', publication_date=T, guid='g1')
    db = ScriptedDB({'item_exists_by_guid': False, 'find_item_by_link': stored})

    with pytest.raises(InvariantViolation):
        await ItemAdmission(db).should_record_item(feed, make_item("a", guid="g1"), cutoff=T)


@pytest.mark.asyncio
async def test_new_guid_and_link_is_recorded_regardless_of_cutoff(db, add_feed):
    feed = await add_feed('blog', last_poll_time=T)
    admission = ItemAdmission(db)

    assert await admission.should_record_item(feed, make_item("https://b/2", guid="g2", pub_date=T - HOUR),
                                              cutoff=T)


@pytest.mark.asyncio
async def test_guidless_known_link_is_skipped(db, add_feed):
    feed = await add_feed('blog', last_poll_time=T)
    await db.execute('insert_item', feed_id=feed.id, title='x', description='', link='a', pub_date=T)
    admission = ItemAdmission(db, ignore_publication_times=True)

    assert not await admission.should_record_item(feed, make_item("a", pub_date=T + HOUR), cutoff=T)


@pytest.mark.asyncio
async def test_guidless_item_before_cutoff(db, add_feed, caplog):
    caplog.set_level(logging.INFO, logger="FeedPoller.admission")
    feed = await add_feed('blog', last_poll_time=T)
    item = make_item("new", pub_date=T - HOUR)

    assert not await ItemAdmission(db, ignore_publication_times=False).should_record_item(feed, item, cutoff=T)
    assert "before cutoff" in caplog.text

    assert await ItemAdmission(db, ignore_publication_times=True).should_record_item(feed, item, cutoff=T)


@pytest.mark.asyncio
async def test_guidless_item_at_or_after_cutoff_is_recorded(db, add_feed):
    feed = await add_feed('blog', last_poll_time=T)
    admission = ItemAdmission(db, ignore_publication_times=False)

    assert await admission.should_record_item(feed, make_item("x", pub_date=T), cutoff=T)
    assert await admission.should_record_item(feed, make_item("y", pub_date=T + HOUR), cutoff=T)


@pytest.mark.asyncio
@pytest.mark.parametrize("last_poll_time, archive, expected", [
    (None, False, ReadState.READ),
    (T, True, ReadState.READ),
    (T, False, ReadState.UNREAD),
])
async def test_record_item_marks_read_for_first_poll_and_archive(db, add_feed, last_poll_time, archive, expected):
    feed = await add_feed('blog', last_poll_time=last_poll_time, archive=archive)
    item_id = await ItemAdmission(db, user_id=1).record_item(feed, make_item("https://b/1", guid="g1"))

    assert await db.execute('get_item_read_state', item_id=item_id, user_id=1) == expected


@pytest.mark.asyncio
async def test_admit_items_counts_recorded(db, add_feed):
    feed = await add_feed('blog', last_poll_time=T)
    await db.execute('insert_item', feed_id=feed.id, title='x', description='', link='https://b/1', pub_date=T)
    items = [
        make_item("https://b/1"),
        make_item("https://b/2", pub_date=T + HOUR),
        make_item("https://b/3", pub_date=T - HOUR),
        make_item("https://b/4", guid="g4", pub_date=T - HOUR),
    ]

    recorded = await ItemAdmission(db, ignore_publication_times=False).admit_items(feed, items, cutoff=T)
    assert recorded == 2
    assert await db.execute('count_items', feed_id=feed.id) == 3
