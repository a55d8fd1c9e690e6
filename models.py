#!/usr/bin/env python3
"""
Database models and operations for Feed Sentry.

All reads and writes go through a single asyncio worker that owns the SQLite
connection, so a duplicate check followed by an insert can never interleave
with another writer.
"""

from os import path, access, R_OK
from time import time
from dataclasses import dataclass, asdict
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import StorageError
from normalizer import is_duplicate
from telemetry import trace_span

logger = get_logger("models")

SCHEMA_FILE_SIZE_LIMIT = 1024 * 1024
SECONDS_PER_DAY = 24 * 60 * 60
DEFAULT_TITLE = "Untitled"
_WORKER_METHODS = frozenset({"start", "stop", "execute"})


@dataclass
class Article:
    id: int
    feed_id: int
    title: str
    link: Optional[str]
    content: Optional[str]
    pub_date: int
    image_url: Optional[str]
    is_read: bool
    is_saved: bool
    created_at: int

    @classmethod
    def from_row(cls, row: Row) -> "Article":
        return cls(
            id=row['id'],
            feed_id=row['feed_id'],
            title=row['title'],
            link=row['link'],
            content=row['content'],
            pub_date=row['pub_date'],
            image_url=row['image_url'],
            is_read=bool(row['is_read']),
            is_saved=bool(row['is_saved']),
            created_at=row['created_at'],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def initialize_database(conn) -> None:
    """Create tables from the schema file when the database is new."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
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
    if file_size > SCHEMA_FILE_SIZE_LIMIT:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {SCHEMA_FILE_SIZE_LIMIT} bytes)")
    with open(schema_path, 'r') as f:
        return f.read()


def _feed_from_row(row: Row) -> Dict[str, Any]:
    return {
        'id': row['id'],
        'slug': row['slug'],
        'url': row['url'],
        'title': row['title'],
        'last_synced': row['last_synced'] or 0,
        'error_count': row['error_count'] or 0,
        'last_error': row['last_error'],
    }


class DatabaseQueue:
    """A queue for database operations; one worker owns the connection.

    Usage:
        db = DatabaseQueue(config.DATABASE_PATH)
        await db.start()
        feed_id = await db.execute('register_feed', slug='hn', url='https://...')
        await db.stop()

    Operation failures are re-raised to the caller as StorageError.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()

    async def start(self) -> None:
        """Start the database worker and wait until the schema is ready."""
        if self.running:
            return
        self.running = True
        self._ready.clear()
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self.conn is None:
            self.running = False
            raise StorageError(f"Could not open database at {self.db_path}")
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker and close the connection."""
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

        # Release any callers still waiting on a result
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations in order."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        try:
            conn = connect(self.db_path)
            conn.row_factory = Row
            conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(conn)
            self.conn = conn
        except (Error, OSError, ValueError) as e:
            logger.error(f"Error initializing database {self.db_path}: {e}")
            self._ready.set()
            return
        self._ready.set()

        while self.running:
            try:
                operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
            except TimeoutError:
                continue
            except CancelledError:
                logger.debug("Database worker cancelled")
                break

            try:
                method = getattr(self, operation_name, None)
                if operation_name.startswith('_') or operation_name in _WORKER_METHODS or not callable(method):
                    self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                else:
                    self.results[operation_id] = {"result": method(**params)}
            except Exception as e:
                logger.error(f"Database operation error in {operation_name}: {e}")
                self.results[operation_id] = {"error": str(e)}
            finally:
                if operation_id in self.events:
                    self.events[operation_id].set()
                self.queue.task_done()

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {"db.operation": operation_name},
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Queue ``operation_name`` and wait for its result."""
        if not self.running:
            raise StorageError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, None)
            if result is None:
                raise StorageError(f"Database stopped before {operation_name} completed")
            if "error" in result:
                raise StorageError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    def _rollback(self) -> None:
        try:
            self.conn.rollback()
        except Error as e:
            logger.warning(f"Rollback failed: {e}")

    # Feed operations

    def register_feed(self, slug: str, url: str, title: Optional[str] = None) -> int:
        """Insert a feed (or refresh its URL) and return its id."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT id, url FROM feeds WHERE slug = ?", (slug,))
            row = cursor.fetchone()
            if row is not None:
                if row['url'] != url:
                    try:
                        cursor.execute("UPDATE feeds SET url = ? WHERE id = ?", (url, row['id']))
                        self.conn.commit()
                        logger.info(f"Updated URL for feed {slug}")
                    except IntegrityError:
                        self._rollback()
                        logger.warning(f"Feed {slug} not updated: {url} already belongs to another feed")
                return row['id']

            cursor.execute("SELECT id FROM feeds WHERE url = ?", (url,))
            row = cursor.fetchone()
            if row is not None:
                return row['id']

            cursor.execute(
                "INSERT INTO feeds (slug, url, title, created_at) VALUES (?, ?, ?, ?)",
                (slug, url, title, int(time()))
            )
            self.conn.commit()
            return cursor.lastrowid
        except Error as e:
            logger.error(f"Error registering feed {slug}: {e}")
            self._rollback()
            raise
        finally:
            cursor.close()

    def get_feed_id(self, slug: str) -> Optional[int]:
        """Get the ID of a feed by its slug."""
        row = self.conn.execute("SELECT id FROM feeds WHERE slug = ?", (slug,)).fetchone()
        return row['id'] if row else None

    def get_feed(self, feed_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        return _feed_from_row(row) if row else None

    def get_feed_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM feeds WHERE url = ?", (url,)).fetchone()
        return _feed_from_row(row) if row else None

    def list_feeds(self) -> List[Dict[str, Any]]:
        """List all feeds ordered by id."""
        rows = self.conn.execute("SELECT * FROM feeds ORDER BY id").fetchall()
        return [_feed_from_row(row) for row in rows]

    def update_feed_title(self, feed_id: int, title: str) -> bool:
        """Update the title of a feed."""
        cursor = self.conn.execute("UPDATE feeds SET title = ? WHERE id = ?", (title, feed_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def record_sync_success(self, feed_id: int) -> bool:
        """Reset error tracking and stamp last_synced."""
        cursor = self.conn.execute(
            "UPDATE feeds SET error_count = 0, last_error = NULL, last_synced = ? WHERE id = ?",
            (int(time()), feed_id)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def record_sync_error(self, feed_id: int, error: str) -> int:
        """Increment the feed's error counter; returns the new count."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE feeds SET error_count = COALESCE(error_count, 0) + 1, last_error = ?, last_synced = ? "
                "WHERE id = ?",
                (error, int(time()), feed_id)
            )
            self.conn.commit()
            cursor.execute("SELECT error_count FROM feeds WHERE id = ?", (feed_id,))
            row = cursor.fetchone()
            return row['error_count'] if row else 0
        finally:
            cursor.close()

    # Article operations

    def get_existing_articles(self, feed_id: int) -> List[Dict[str, Any]]:
        """Return id, title and link for every stored article of a feed."""
        rows = self.conn.execute(
            "SELECT id, title, link FROM articles WHERE feed_id = ?", (feed_id,)
        ).fetchall()
        return [{'id': r['id'], 'title': r['title'], 'link': r['link']} for r in rows]

    def insert_article(self, feed_id: int, title: str, link: Optional[str], content: Optional[str],
                       pub_date: Optional[int], image_url: Optional[str] = None) -> Optional[Article]:
        """Insert an article unless it duplicates one already stored for the same feed.

        An empty ``title`` takes part in the duplicate check as empty and is
        stored as DEFAULT_TITLE.

        Returns:
            The stored Article, or None when it was a duplicate.
        """
        candidate = {'title': title, 'link': link}
        if is_duplicate(candidate, self.get_existing_articles(feed_id)):
            return None

        now = int(time())
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO articles (feed_id, title, link, content, pub_date, image_url, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (feed_id, title or DEFAULT_TITLE, link, content, pub_date if pub_date is not None else now, image_url, now)
            )
            self.conn.commit()
            row = self.conn.execute("SELECT * FROM articles WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return Article.from_row(row)
        except Error as e:
            logger.error(f"Error inserting article {link} for feed ID {feed_id}: {e}")
            self._rollback()
            raise
        finally:
            cursor.close()

    def get_article(self, article_id: int) -> Optional[Article]:
        row = self.conn.execute("SELECT * FROM articles WHERE id = ?", (article_id,)).fetchone()
        return Article.from_row(row) if row else None

    def count_articles(self, feed_id: Optional[int] = None) -> int:
        """Count articles, optionally for a single feed."""
        if feed_id is None:
            row = self.conn.execute("SELECT COUNT(*) FROM articles").fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM articles WHERE feed_id = ?", (feed_id,)).fetchone()
        return int(row[0]) if row else 0

    def mark_article(self, article_id: int, is_read: Optional[bool] = None,
                     is_saved: Optional[bool] = None) -> bool:
        """Update read/saved flags; unspecified flags are left as they are."""
        updates = []
        values: List[Any] = []
        if is_read is not None:
            updates.append("is_read = ?")
            values.append(int(bool(is_read)))
        if is_saved is not None:
            updates.append("is_saved = ?")
            values.append(int(bool(is_saved)))
        if not updates:
            return False
        values.append(article_id)
        cursor = self.conn.execute(f"UPDATE articles SET {', '.join(updates)} WHERE id = ?", values)
        self.conn.commit()
        return cursor.rowcount > 0

    def cleanup_articles(self, keep_recent: Optional[int] = None, read_retention_days: Optional[int] = None,
                         unread_retention_days: Optional[int] = None, now: Optional[int] = None) -> int:
        """Delete old articles while bounding re-sync churn.

        Saved articles and the newest ``keep_recent`` articles of every feed
        are always kept. Of the rest, read articles older than
        ``read_retention_days`` and unread articles older than
        ``unread_retention_days`` are deleted.

        Returns:
            Number of articles deleted.
        """
        keep_recent = keep_recent if keep_recent is not None else config.KEEP_RECENT_PER_FEED
        read_days = read_retention_days if read_retention_days is not None else config.READ_RETENTION_DAYS
        unread_days = unread_retention_days if unread_retention_days is not None else config.UNREAD_RETENTION_DAYS
        now = int(now if now is not None else time())

        read_cutoff = now - read_days * SECONDS_PER_DAY
        unread_cutoff = now - unread_days * SECONDS_PER_DAY

        cursor = self.conn.cursor()
        try:
            cursor.execute("""
                DELETE FROM articles
                WHERE is_saved = 0
                  AND id NOT IN (
                      SELECT id FROM (
                          SELECT id, ROW_NUMBER() OVER (
                              PARTITION BY feed_id ORDER BY pub_date DESC, id DESC
                          ) AS rn
                          FROM articles
                      ) WHERE rn <= ?
                  )
                  AND ((is_read = 1 AND pub_date < ?) OR (is_read = 0 AND pub_date < ?))
            """, (keep_recent, read_cutoff, unread_cutoff))
            deleted = cursor.rowcount
            self.conn.commit()
            if deleted > 0:
                logger.info(f"Cleaned up {deleted} old articles")
            return deleted
        except Error as e:
            logger.error(f"Error during article cleanup: {e}")
            self._rollback()
            raise
        finally:
            cursor.close()
