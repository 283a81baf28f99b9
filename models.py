#!/usr/bin/env python3
"""
Database models and operations for the Feed Poller.

This module contains the domain records shared by the decoder, the admission
engine and the reader, plus the DatabaseQueue that owns the single SQLite
connection and serializes every store access through one worker task.
"""

from dataclasses import dataclass, field
from enum import Enum
from os import path, access, R_OK
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

# Import config for unified logging
from config import config, get_logger
from errors import FeedPollerError, PersistenceError, InvariantViolation
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")


class ReadState(str, Enum):
    """Per-user item state. A missing row means UNREAD."""

    UNREAD = "unread"
    READ = "read"
    READ_LATER = "read-later"

    def __str__(self) -> str:
        return self.value


@dataclass
class Feed:
    """A subscription and its polling state."""

    id: int
    name: str
    uri: str
    update_frequency_seconds: int
    last_poll_time: Optional[int] = None
    archive: bool = False
    active: bool = True

    @property
    def never_polled(self) -> bool:
        return self.last_poll_time is None

    @classmethod
    def from_row(cls, row: Row) -> "Feed":
        return cls(
            id=row['id'],
            name=row['name'],
            uri=row['uri'],
            update_frequency_seconds=row['update_frequency_seconds'],
            last_poll_time=row['last_poll_time'],
            archive=bool(row['archive']),
            active=bool(row['active']),
        )


@dataclass
class Item:
    """A normalized feed entry as produced by the decoder. Never stored directly."""

    title: str
    link: str
    description: str
    pub_date: int
    guid: Optional[str] = None


@dataclass
class Channel:
    """A decoded feed document."""

    title: str
    link: str
    description: str
    pub_date: Optional[int] = None
    items: List[Item] = field(default_factory=list)


@dataclass
class StoredItem:
    """A persisted item, optionally joined with its feed name and read state."""

    id: int
    feed_id: int
    title: str
    description: str
    link: str
    publication_date: int
    guid: Optional[str] = None
    feed_name: Optional[str] = None
    read_state: ReadState = ReadState.UNREAD

    @classmethod
    def from_row(cls, row: Row) -> "StoredItem":
        keys = row.keys()
        return cls(
            id=row['id'],
            feed_id=row['feed_id'],
            title=row['title'],
            description=row['description'],
            link=row['link'],
            publication_date=row['publication_date'],
            guid=row['guid'],
            feed_name=row['feed_name'] if 'feed_name' in keys else None,
            read_state=ReadState(row['read_state']) if 'read_state' in keys else ReadState.UNREAD,
        )


_FEED_COLUMNS = "id, name, uri, update_frequency_seconds, last_poll_time, archive, active"
_ITEM_COLUMNS = "i.id, i.feed_id, i.title, i.description, i.link, i.publication_date, i.guid"
SORT_ORDERS = {"asc": "ASC", "desc": "DESC"}


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            schema_sql = _read_schema_file()
            cursor.executescript(schema_sql)
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists; checking migrations")
            _run_migrations(conn)

    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _table_columns(cursor, table: str) -> List[str]:
    cursor.execute(f"PRAGMA table_info({table})")
    return [column[1] for column in cursor.fetchall()]


def _run_migrations(conn) -> None:
    """Bring databases created by older releases up to the current schema."""
    cursor = conn.cursor()

    try:
        feed_columns = _table_columns(cursor, "feeds")

        # Migration 1: keep the most recent raw payload per feed for diagnostics
        if 'last_payload' not in feed_columns:
            logger.info("Adding last_payload column to feeds table")
            cursor.execute("ALTER TABLE feeds ADD COLUMN last_payload BLOB")

        # Migration 2: archive-only feeds (new items are recorded as read)
        if 'archive' not in feed_columns:
            logger.info("Adding archive column to feeds table")
            cursor.execute("ALTER TABLE feeds ADD COLUMN archive INTEGER NOT NULL DEFAULT 0")

        # Migration 3: provider-supplied item identifiers
        if 'guid' not in _table_columns(cursor, "items"):
            logger.info("Adding guid column to items table")
            cursor.execute("ALTER TABLE items ADD COLUMN guid TEXT")
        cursor.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_items_feed_guid ON items(feed_id, guid)")

        # Migration 4: items read after having been set aside as read-later
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS read_after_archive (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                feed_id INTEGER NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
                item_id INTEGER NOT NULL REFERENCES items(id) ON DELETE CASCADE,
                create_time INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
            )
        """)

        conn.commit()
    except Error as e:
        logger.error(f"Error running migrations: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")

    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


class DatabaseQueue:
    """Serializes database operations onto a single connection.

    Callers submit work with ``await db.execute("operation_name", **params)``;
    the worker dispatches to the method of the same name. sqlite3 failures come
    back as PersistenceError, and domain errors raised by an operation (such as
    InvariantViolation) are re-raised unchanged in the caller.
    """

    _NOT_OPERATIONS = frozenset({"start", "stop", "execute"})

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the connection, apply schema/migrations and start the worker."""
        if self.running:
            return

        if self.db_path != ":memory:" and not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise PersistenceError("initialize", str(e)) from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.debug(f"Database worker started for {self.db_path}")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.debug("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    self.results[operation_id] = {"result": self._dispatch(operation_name, params)}
                except FeedPollerError as e:
                    self.results[operation_id] = {"error": e}
                except Error as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    if self.conn and self.conn.in_transaction:
                        self.conn.rollback()
                    error = PersistenceError(operation_name, str(e))
                    error.__cause__ = e
                    self.results[operation_id] = {"error": error}
                except Exception as e:
                    logger.error(f"Unexpected error in database operation {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    def _dispatch(self, operation_name: str, params: Dict[str, Any]) -> Any:
        if operation_name.startswith("_") or operation_name in self._NOT_OPERATIONS:
            raise PersistenceError(operation_name, "unknown operation")
        method = getattr(self, operation_name, None)
        if not callable(method):
            raise PersistenceError(operation_name, "unknown operation")
        return method(**params)

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation on the worker and return its result."""
        if not self.running:
            raise PersistenceError(operation_name, "database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise PersistenceError(operation_name, "database worker stopped before completing the operation")
            if "error" in result:
                raise result["error"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Feed Management Operations
    def register_feed(self, name: str, uri: str, update_frequency_seconds: Optional[int] = None,
                      archive: bool = False, active: bool = True) -> int:
        """Insert a feed or update the existing feed with the same name. Returns its id."""
        frequency = int(update_frequency_seconds or config.DEFAULT_UPDATE_FREQUENCY_SECONDS)
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                INSERT INTO feeds (name, uri, update_frequency_seconds, archive, active)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (name) DO UPDATE SET
                    uri = excluded.uri,
                    update_frequency_seconds = excluded.update_frequency_seconds,
                    archive = excluded.archive,
                    active = excluded.active,
                    update_time = strftime('%s', 'now')
                """,
                (name, uri, frequency, int(bool(archive)), int(bool(active)))
            )
            self.conn.commit()
            cursor.execute("SELECT id FROM feeds WHERE name = ?", (name,))
            return cursor.fetchone()['id']
        finally:
            cursor.close()

    def get_feed_by_name(self, name: str) -> Optional[Feed]:
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT {_FEED_COLUMNS} FROM feeds WHERE name = ?", (name,))
            row = cursor.fetchone()
            return Feed.from_row(row) if row else None
        finally:
            cursor.close()

    def list_active_feeds(self) -> List[Feed]:
        """Feeds eligible for polling, ordered by name."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT {_FEED_COLUMNS} FROM feeds WHERE active = 1 ORDER BY name")
            return [Feed.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def list_feeds(self) -> List[Feed]:
        """All feeds, active or not, ordered by name."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT {_FEED_COLUMNS} FROM feeds ORDER BY name")
            return [Feed.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def set_feed_last_poll_time(self, feed_id: int, timestamp: int) -> None:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE feeds SET last_poll_time = ?, update_time = strftime('%s', 'now') WHERE id = ?",
                (int(timestamp), feed_id)
            )
            if cursor.rowcount != 1:
                self.conn.rollback()
                raise PersistenceError("set_feed_last_poll_time", f"feed {feed_id} not found")
            self.conn.commit()
        finally:
            cursor.close()

    def set_feed_last_raw_payload(self, feed_id: int, payload: bytes) -> None:
        cursor = self.conn.cursor()
        try:
            cursor.execute("UPDATE feeds SET last_payload = ? WHERE id = ?", (bytes(payload), feed_id))
            if cursor.rowcount != 1:
                self.conn.rollback()
                raise PersistenceError("set_feed_last_raw_payload", f"feed {feed_id} not found")
            self.conn.commit()
        finally:
            cursor.close()

    def get_feed_last_raw_payload(self, feed_id: int) -> Optional[bytes]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT last_payload FROM feeds WHERE id = ?", (feed_id,))
            row = cursor.fetchone()
            return bytes(row['last_payload']) if row and row['last_payload'] is not None else None
        finally:
            cursor.close()

    # Item Admission Operations
    def get_max_publication_date(self, feed_id: int) -> Optional[int]:
        """Newest stored publication date for a feed, or None if it has no items."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT MAX(publication_date) AS max_date FROM items WHERE feed_id = ?", (feed_id,))
            row = cursor.fetchone()
            return row['max_date'] if row else None
        finally:
            cursor.close()

    def item_exists_by_guid(self, feed_id: int, guid: str) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT 1 FROM items WHERE feed_id = ? AND guid = ? LIMIT 1", (feed_id, guid))
            return cursor.fetchone() is not None
        finally:
            cursor.close()

    def item_exists_by_link(self, feed_id: int, link: str) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT 1 FROM items WHERE feed_id = ? AND link = ? LIMIT 1", (feed_id, link))
            return cursor.fetchone() is not None
        finally:
            cursor.close()

    def find_item_by_link(self, feed_id: int, link: str) -> Optional[StoredItem]:
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT {_ITEM_COLUMNS} FROM items i WHERE i.feed_id = ? AND i.link = ?", (feed_id, link))
            row = cursor.fetchone()
            return StoredItem.from_row(row) if row else None
        finally:
            cursor.close()

    def insert_item(self, feed_id: int, title: str, description: str, link: str, pub_date: int,
                    guid: Optional[str] = None, read_state: Optional[ReadState] = None,
                    user_id: Optional[int] = None) -> int:
        """Insert a new item and return its id.

        With read_state, the item's state for user_id (default user if omitted)
        is written in the same transaction, so the row never exists without it.

        Callers check for duplicates first; a uniqueness failure here means the
        pre-checks and the stored rows disagree, which is raised as InvariantViolation.
        """
        cursor = self.conn.cursor()
        try:
            try:
                cursor.execute(
                    """
                    INSERT INTO items (feed_id, title, description, link, publication_date, guid)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (feed_id, title or "", description or "", link, int(pub_date), guid)
                )
                item_id = cursor.lastrowid
                if read_state is not None:
                    owner = config.DEFAULT_USER_ID if user_id is None else user_id
                    self._write_read_state(cursor, item_id, owner, read_state)
            except IntegrityError as e:
                self.conn.rollback()
                raise InvariantViolation(f"item {link!r} for feed {feed_id} collides with a stored item: {e}") from e
            except Error:
                self.conn.rollback()
                raise
            self.conn.commit()
            return item_id
        finally:
            cursor.close()

    def backfill_item_guid(self, item_id: int, guid: str) -> None:
        """Record a GUID on an item stored before its feed supplied one."""
        cursor = self.conn.cursor()
        try:
            try:
                cursor.execute(
                    "UPDATE items SET guid = ?, update_time = strftime('%s', 'now') WHERE id = ? AND guid IS NULL",
                    (guid, item_id)
                )
            except IntegrityError as e:
                self.conn.rollback()
                raise InvariantViolation(f"GUID {guid!r} already belongs to another item: {e}") from e
            if cursor.rowcount != 1:
                self.conn.rollback()
                raise InvariantViolation(f"item {item_id} does not exist or already has a GUID")
            self.conn.commit()
        finally:
            cursor.close()

    def count_items(self, feed_id: Optional[int] = None) -> int:
        """Number of stored items, overall or for one feed."""
        cursor = self.conn.cursor()
        try:
            if feed_id is None:
                cursor.execute("SELECT COUNT(*) FROM items")
            else:
                cursor.execute("SELECT COUNT(*) FROM items WHERE feed_id = ?", (feed_id,))
            return int(cursor.fetchone()[0])
        finally:
            cursor.close()

    # Read State Operations
    def _write_read_state(self, cursor, item_id: int, user_id: int, state: ReadState) -> None:
        cursor.execute(
            """
            INSERT INTO item_states (state, item_id, user_id)
            VALUES (?, ?, ?)
            ON CONFLICT (item_id, user_id) DO UPDATE SET
                state = excluded.state,
                update_time = strftime('%s', 'now')
            """,
            (ReadState(state).value, item_id, user_id)
        )

    def set_item_read_state(self, item_id: int, user_id: int, state: ReadState) -> None:
        """Insert or update the read state of an item for a user."""
        cursor = self.conn.cursor()
        try:
            self._write_read_state(cursor, item_id, user_id, state)
            self.conn.commit()
        finally:
            cursor.close()

    def get_item_read_state(self, item_id: int, user_id: int) -> ReadState:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT state FROM item_states WHERE item_id = ? AND user_id = ?", (item_id, user_id))
            row = cursor.fetchone()
            return ReadState(row['state']) if row else ReadState.UNREAD
        finally:
            cursor.close()

    def set_many_read(self, user_id: int, feed_id: Optional[int] = None, before: Optional[int] = None) -> int:
        """Mark every unread item read, optionally limited to a feed and/or older than a timestamp.

        Items set aside as read-later are left alone.
        """
        filters = ""
        params: List[Any] = [user_id, user_id]
        if feed_id is not None:
            filters += " AND i.feed_id = ?"
            params.append(feed_id)
        if before is not None:
            filters += " AND i.publication_date < ?"
            params.append(int(before))

        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"""
                INSERT INTO item_states (state, item_id, user_id)
                SELECT 'read', i.id, ?
                FROM items i
                LEFT JOIN item_states s ON s.item_id = i.id AND s.user_id = ?
                WHERE COALESCE(s.state, 'unread') = 'unread'{filters}
                ON CONFLICT (item_id, user_id) DO UPDATE SET
                    state = excluded.state,
                    update_time = strftime('%s', 'now')
                """,
                params
            )
            self.conn.commit()
            return cursor.rowcount
        finally:
            cursor.close()

    def record_read_after_archive(self, user_id: int, feed_id: int, item_id: int) -> None:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO read_after_archive (user_id, feed_id, item_id) VALUES (?, ?, ?)",
                (user_id, feed_id, item_id)
            )
            self.conn.commit()
        finally:
            cursor.close()

    # Reader Queries
    def count_items_by_state(self, user_id: int, state: ReadState) -> int:
        """Count items of active feeds that are in the given state for a user."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                SELECT COUNT(*)
                FROM items i
                JOIN feeds f ON f.id = i.feed_id
                LEFT JOIN item_states s ON s.item_id = i.id AND s.user_id = ?
                WHERE f.active = 1 AND COALESCE(s.state, 'unread') = ?
                """,
                (user_id, ReadState(state).value)
            )
            return int(cursor.fetchone()[0])
        finally:
            cursor.close()

    def list_items_by_state(self, user_id: int, state: ReadState, order: str = "desc",
                            limit: int = 50, offset: int = 0) -> List[StoredItem]:
        """Page through items of active feeds in the given state for a user."""
        direction = SORT_ORDERS.get(str(order).lower())
        if direction is None:
            raise ValueError(f"Invalid sort order: {order}")

        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"""
                SELECT {_ITEM_COLUMNS}, f.name AS feed_name, COALESCE(s.state, 'unread') AS read_state
                FROM items i
                JOIN feeds f ON f.id = i.feed_id
                LEFT JOIN item_states s ON s.item_id = i.id AND s.user_id = ?
                WHERE f.active = 1 AND COALESCE(s.state, 'unread') = ?
                ORDER BY i.publication_date {direction}, f.name, i.title
                LIMIT ? OFFSET ?
                """,
                (user_id, ReadState(state).value, int(limit), int(offset))
            )
            return [StoredItem.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def get_item(self, item_id: int, user_id: int) -> Optional[StoredItem]:
        """One item with its feed name and the user's read state."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"""
                SELECT {_ITEM_COLUMNS}, f.name AS feed_name, COALESCE(s.state, 'unread') AS read_state
                FROM items i
                JOIN feeds f ON f.id = i.feed_id
                LEFT JOIN item_states s ON s.item_id = i.id AND s.user_id = ?
                WHERE i.id = ?
                """,
                (user_id, item_id)
            )
            row = cursor.fetchone()
            return StoredItem.from_row(row) if row else None
        finally:
            cursor.close()

    def list_feed_items(self, feed_id: int, limit: int = 50) -> List[StoredItem]:
        """Newest items of one feed, newest first."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"""
                SELECT {_ITEM_COLUMNS}, f.name AS feed_name
                FROM items i
                JOIN feeds f ON f.id = i.feed_id
                WHERE i.feed_id = ?
                ORDER BY i.publication_date DESC, i.id DESC
                LIMIT ?
                """,
                (feed_id, int(limit))
            )
            return [StoredItem.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()
