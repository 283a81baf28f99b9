import sqlite3

import pytest

from errors import InvariantViolation, PersistenceError
from models import DatabaseQueue, ReadState


@pytest.mark.asyncio
async def test_register_feed_upserts_by_name(db):
    feed_id = await db.execute('register_feed', name='lwn', uri='https://lwn.net/headlines/rss')
    again = await db.execute('register_feed', name='lwn', uri='https://lwn.net/headlines/newrss',
                             update_frequency_seconds=600, archive=True)
    assert again == feed_id

    feed = await db.execute('get_feed_by_name', name='lwn')
    assert feed.uri == 'https://lwn.net/headlines/newrss'
    assert feed.update_frequency_seconds == 600
    assert feed.archive is True
    assert feed.never_polled


@pytest.mark.asyncio
async def test_list_active_feeds_orders_by_name(db, add_feed):
    await add_feed('zeta')
    await add_feed('alpha')
    await add_feed('dormant', active=False)

    active = await db.execute('list_active_feeds')
    assert [feed.name for feed in active] == ['alpha', 'zeta']
    everything = await db.execute('list_feeds')
    assert [feed.name for feed in everything] == ['alpha', 'dormant', 'zeta']


@pytest.mark.asyncio
async def test_poll_time_and_payload(db, add_feed):
    feed = await add_feed('blog')
    await db.execute('set_feed_last_poll_time', feed_id=feed.id, timestamp=1700000000)
    await db.execute('set_feed_last_raw_payload', feed_id=feed.id, payload=b'\x00raw bytes')

    stored = await db.execute('get_feed_by_name', name='blog')
    assert stored.last_poll_time == 1700000000
    assert await db.execute('get_feed_last_raw_payload', feed_id=feed.id) == b'\x00raw bytes'


@pytest.mark.asyncio
async def test_set_poll_time_for_missing_feed_fails(db):
    with pytest.raises(PersistenceError) as excinfo:
        await db.execute('set_feed_last_poll_time', feed_id=999, timestamp=1)
    assert excinfo.value.operation == 'set_feed_last_poll_time'


@pytest.mark.asyncio
async def test_item_lookups_and_max_publication_date(db, add_feed):
    feed = await add_feed('blog')
    assert await db.execute('get_max_publication_date', feed_id=feed.id) is None

    await db.execute('insert_item', feed_id=feed.id, title='One', description='', link='https://b/1',
                     pub_date=100, guid='g1')
    await db.execute('insert_item', feed_id=feed.id, title='Two', description='', link='https://b/2',
                     pub_date=300)

    assert await db.execute('get_max_publication_date', feed_id=feed.id) == 300
    assert await db.execute('item_exists_by_guid', feed_id=feed.id, guid='g1')
    assert not await db.execute('item_exists_by_guid', feed_id=feed.id, guid='g2')
    assert await db.execute('item_exists_by_link', feed_id=feed.id, link='https://b/2')
    stored = await db.execute('find_item_by_link', feed_id=feed.id, link='https://b/2')
    assert stored.title == 'Two' and stored.guid is None
    assert await db.execute('count_items', feed_id=feed.id) == 2


@pytest.mark.asyncio
async def test_unique_constraints_surface_as_invariant_violations(db, add_feed):
    feed = await add_feed('blog')
    await db.execute('insert_item', feed_id=feed.id, title='One', description='', link='https://b/1',
                     pub_date=100, guid='g1')

    with pytest.raises(InvariantViolation):
        await db.execute('insert_item', feed_id=feed.id, title='Dup', description='', link='https://b/1',
                         pub_date=100)
    with pytest.raises(InvariantViolation):
        await db.execute('insert_item', feed_id=feed.id, title='Dup', description='', link='https://b/other',
                         pub_date=100, guid='g1')

    # Items without GUIDs never collide on the GUID index
    await db.execute('insert_item', feed_id=feed.id, title='A', description='', link='https://b/a', pub_date=1)
    await db.execute('insert_item', feed_id=feed.id, title='B', description='', link='https://b/b', pub_date=1)
    assert await db.execute('count_items') == 3


@pytest.mark.asyncio
async def test_backfill_only_touches_rows_without_guid(db, add_feed):
    feed = await add_feed('blog')
    item_id = await db.execute('insert_item', feed_id=feed.id, title='One', description='', link='https://b/1',
                               pub_date=100)

    await db.execute('backfill_item_guid', item_id=item_id, guid='g1')
    assert await db.execute('item_exists_by_guid', feed_id=feed.id, guid='g1')

    with pytest.raises(InvariantViolation):
        await db.execute('backfill_item_guid', item_id=item_id, guid='g2')


@pytest.mark.asyncio
async def test_read_state_upsert(db, add_feed):
    feed = await add_feed('blog')
    item_id = await db.execute('insert_item', feed_id=feed.id, title='One', description='', link='https://b/1',
                               pub_date=100)

    assert await db.execute('get_item_read_state', item_id=item_id, user_id=1) == ReadState.UNREAD
    await db.execute('set_item_read_state', item_id=item_id, user_id=1, state=ReadState.READ)
    await db.execute('set_item_read_state', item_id=item_id, user_id=1, state=ReadState.READ_LATER)
    assert await db.execute('get_item_read_state', item_id=item_id, user_id=1) == ReadState.READ_LATER

    cursor = db.conn.execute("SELECT COUNT(*) FROM item_states WHERE item_id = ?", (item_id,))
    assert cursor.fetchone()[0] == 1


@pytest.mark.asyncio
async def test_set_many_read_leaves_read_later_alone(db, add_feed):
    feed = await add_feed('blog')
    other = await add_feed('other')
    ids = []
    for n, pub_date in enumerate([100, 200, 300]):
        ids.append(await db.execute('insert_item', feed_id=feed.id, title=f'T{n}', description='',
                                    link=f'https://b/{n}', pub_date=pub_date))
    other_id = await db.execute('insert_item', feed_id=other.id, title='O', description='', link='https://o/1',
                                pub_date=100)
    await db.execute('set_item_read_state', item_id=ids[0], user_id=1, state=ReadState.READ_LATER)

    changed = await db.execute('set_many_read', user_id=1, feed_id=feed.id, before=300)
    assert changed == 1
    assert await db.execute('get_item_read_state', item_id=ids[0], user_id=1) == ReadState.READ_LATER
    assert await db.execute('get_item_read_state', item_id=ids[1], user_id=1) == ReadState.READ
    assert await db.execute('get_item_read_state', item_id=ids[2], user_id=1) == ReadState.UNREAD
    assert await db.execute('get_item_read_state', item_id=other_id, user_id=1) == ReadState.UNREAD


@pytest.mark.asyncio
async def test_list_items_rejects_unknown_order(db):
    with pytest.raises(ValueError):
        await db.execute('list_items_by_state', user_id=1, state=ReadState.UNREAD, order='sideways')


@pytest.mark.asyncio
async def test_private_and_unknown_operations_are_rejected(db):
    with pytest.raises(PersistenceError):
        await db.execute('_dispatch')
    with pytest.raises(PersistenceError):
        await db.execute('drop_everything')


@pytest.mark.asyncio
async def test_execute_requires_running_worker(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "idle.db"))
    with pytest.raises(PersistenceError, match="not running"):
        await queue.execute('list_feeds')


@pytest.mark.asyncio
async def test_migrations_upgrade_older_schema(tmp_path):
    db_path = tmp_path / "old.db"
    conn = sqlite3.connect(db_path)
    conn.executescript("""
        CREATE TABLE feeds (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            uri TEXT NOT NULL UNIQUE,
            update_frequency_seconds INTEGER NOT NULL DEFAULT 3600,
            active INTEGER NOT NULL DEFAULT 1,
            last_poll_time INTEGER,
            create_time INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
            update_time INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
        );
        CREATE TABLE items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            feed_id INTEGER NOT NULL REFERENCES feeds(id),
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            link TEXT NOT NULL,
            publication_date INTEGER NOT NULL,
            create_time INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
            update_time INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
            UNIQUE (feed_id, link)
        );
        CREATE TABLE users (id INTEGER PRIMARY KEY AUTOINCREMENT, email TEXT NOT NULL UNIQUE);
        CREATE TABLE item_states (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            state TEXT NOT NULL DEFAULT 'unread',
            item_id INTEGER NOT NULL REFERENCES items(id),
            user_id INTEGER NOT NULL REFERENCES users(id),
            UNIQUE (item_id, user_id)
        );
        INSERT INTO users (id, email) VALUES (1, 'admin@localhost');
        INSERT INTO feeds (name, uri) VALUES ('legacy', 'https://legacy.example.com/rss');
        INSERT INTO items (feed_id, title, link, publication_date) VALUES (1, 'Old', 'https://legacy/1', 5);
    """)
    conn.commit()
    conn.close()

    queue = DatabaseQueue(str(db_path))
    await queue.start()
    try:
        feed_columns = [row[1] for row in queue.conn.execute("PRAGMA table_info(feeds)")]
        item_columns = [row[1] for row in queue.conn.execute("PRAGMA table_info(items)")]
        assert 'last_payload' in feed_columns and 'archive' in feed_columns
        assert 'guid' in item_columns

        feed = await queue.execute('get_feed_by_name', name='legacy')
        assert feed.archive is False
        stored = await queue.execute('find_item_by_link', feed_id=feed.id, link='https://legacy/1')
        await queue.execute('backfill_item_guid', item_id=stored.id, guid='legacy-1')
        await queue.execute('record_read_after_archive', user_id=1, feed_id=feed.id, item_id=stored.id)
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_insert_item_with_read_state_is_all_or_nothing(db, add_feed, monkeypatch):
    feed = await add_feed('blog')
    item_id = await db.execute('insert_item', feed_id=feed.id, title='One', description='', link='https://b/1',
                               pub_date=100, read_state=ReadState.READ, user_id=1)
    assert await db.execute('get_item_read_state', item_id=item_id, user_id=1) == ReadState.READ

    def broken_write(self, cursor, item_id, user_id, state):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(DatabaseQueue, '_write_read_state', broken_write)
    with pytest.raises(PersistenceError):
        await db.execute('insert_item', feed_id=feed.id, title='Two', description='', link='https://b/2',
                         pub_date=200, read_state=ReadState.READ, user_id=1)

    assert not await db.execute('item_exists_by_link', feed_id=feed.id, link='https://b/2')
    assert await db.execute('count_items', feed_id=feed.id) == 1
