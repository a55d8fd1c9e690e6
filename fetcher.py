#!/usr/bin/env python3
"""
Feed synchronization orchestrator.

Every feed is validated with the permissive SSRF policy, downloaded through
the guarded fetch path under its own timeout, parsed with feedparser and its
new items stored after same-feed de-duplication. Batches run concurrently and
stream one progress event per completed feed, in completion order, followed by
a final summary event.
"""

from time import time
from calendar import timegm
from asyncio import Semaphore, TimeoutError, as_completed, create_task, gather, get_running_loop, wait_for
from concurrent.futures import ThreadPoolExecutor
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from functools import partial
from hashlib import md5
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional
from urllib.parse import urlsplit
import re

import feedparser
from aiohttp import ClientSession
from bs4 import BeautifulSoup

from config import config, get_logger
from errors import BlockedURLError, FetchError, StorageError
from models import DatabaseQueue
import opml
from safe_http import fetch_guarded
from telemetry import trace_span
from url_validator import URLValidator, get_validator
from utils import clean_html_to_markdown
import youtube

logger = get_logger("fetcher")

FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5"

_IMG_SRC_RE = re.compile(r"<img[^>]+src=[\"']([^\"'>]+)[\"']", re.IGNORECASE)


@dataclass(frozen=True)
class FeedTarget:
    id: int
    url: str
    slug: Optional[str] = None
    title: Optional[str] = None

    @property
    def label(self) -> str:
        return self.slug or f"#{self.id}"


@dataclass
class SyncOutcome:
    feed_id: int
    ok: bool
    added: int = 0
    total: int = 0
    error: Optional[str] = None
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"feed_id": self.feed_id, "ok": self.ok}
        if self.ok:
            data.update(added=self.added, total=self.total)
        for key in ("error", "warning"):
            value = getattr(self, key)
            if value:
                data[key] = value
        return data


@dataclass
class BatchProgress:
    type: str
    synced: int
    failed: int
    total: int
    completed: Optional[int] = None

    @classmethod
    def progress(cls, synced: int, failed: int, total: int) -> "BatchProgress":
        return cls(type="progress", synced=synced, failed=failed, total=total, completed=synced + failed)

    @classmethod
    def complete(cls, synced: int, failed: int, total: int) -> "BatchProgress":
        return cls(type="complete", synced=synced, failed=failed, total=total)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "synced": self.synced, "failed": self.failed}
        if self.completed is not None:
            data["completed"] = self.completed
        data["total"] = self.total
        return data


@dataclass
class CandidateArticle:
    title: str
    link: Optional[str]
    content: str
    pub_date: int
    image_url: Optional[str] = None


@dataclass
class ParsedFeed:
    url: str
    title: Optional[str]
    entries: List[Any]
    warnings: List[str] = field(default_factory=list)


@dataclass
class SubscribeResult:
    ok: bool
    url: str
    feed_id: Optional[int] = None
    title: Optional[str] = None
    added: int = 0
    total: int = 0
    error: Optional[str] = None
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


def derive_slug(url: str) -> str:
    """Stable slug for a subscribed URL: hostname plus a short hash."""
    hostname = (urlsplit(url).hostname or "feed").lower()
    if hostname.startswith("www."):
        hostname = hostname[4:]
    base = re.sub(r"[^a-z0-9]+", "-", hostname).strip("-") or "feed"
    return f"{base}-{md5(url.encode('utf-8')).hexdigest()[:8]}"


class FeedFetcher:
    """Synchronizes feeds into storage.

    Args:
        db: A started DatabaseQueue; when omitted, initialize() opens one at
            config.DATABASE_PATH and close() stops it.
        validator: URL validator; defaults to the process-wide instance so the
            resolution cache is shared with the image proxy.
        fetch_timeout: Seconds allowed for one feed's download and parse.
        session: Shared aiohttp session; created lazily when omitted.
    """

    def __init__(self, db: Optional[DatabaseQueue] = None, validator: Optional[URLValidator] = None,
                 fetch_timeout: Optional[float] = None, session: Optional[ClientSession] = None) -> None:
        self.db = db
        self.validator = validator or get_validator()
        self.fetch_timeout = fetch_timeout if fetch_timeout is not None else config.FEED_FETCH_TIMEOUT
        self.executor = ThreadPoolExecutor(max_workers=4)
        self._session = session
        self._owns_session = session is None
        self._owns_db = db is None

    async def initialize(self) -> None:
        """Open the database when one was not supplied."""
        if self.db is None:
            self.db = DatabaseQueue(config.DATABASE_PATH)
            await self.db.start()
        logger.info("FeedFetcher initialized")

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session, thread pool and any database we opened."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self.executor.shutdown(wait=False)
        if self._owns_db and self.db is not None:
            await self.db.stop()
        logger.info("FeedFetcher closed")

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in the thread pool."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    # Fetching

    @trace_span(
        "fetch_feed_document",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"http.url": url},
    )
    async def fetch_feed_document(self, url: str) -> ParsedFeed:
        """Download ``url`` through the guarded path and parse it.

        Raises:
            BlockedURLError: The URL or a redirect hop failed the permissive check.
            FetchError: Download failure or a document that is not a feed.
        """
        resource = await fetch_guarded(
            self._get_session(),
            url,
            validate=self.validator.validate_for_feed,
            headers={"User-Agent": config.USER_AGENT, "Accept": FEED_ACCEPT},
            timeout=config.HTTP_TIMEOUT,
            max_redirects=config.MAX_REDIRECTS,
            max_bytes=config.MAX_FEED_BYTES,
        )

        # feedparser is not async and honours the charset in the headers
        response_headers = {"content-type": resource.headers.get("Content-Type", resource.content_type)}
        feed = await self.run_in_executor(
            lambda body: feedparser.parse(body, response_headers=response_headers, sanitize_html=True),
            resource.body,
        )
        if feed.bozo and not feed.entries and not feed.get("version"):
            logger.warning(f"Could not parse {url} as a feed: {feed.get('bozo_exception')}")
            raise FetchError("Invalid feed")
        if feed.bozo:
            logger.debug(f"Feed parsing warning for {url}: {feed.get('bozo_exception')}")

        title = (feed.feed.get("title") or "").strip() if "feed" in feed else ""
        return ParsedFeed(url=resource.url, title=title or None, entries=list(feed.entries),
                          warnings=resource.warnings)

    async def _fetch_page(self, url: str) -> str:
        """Fetch an HTML page chosen by a third party (strict policy)."""
        resource = await fetch_guarded(
            self._get_session(),
            url,
            validate=self.validator.validate_for_proxy,
            headers={"User-Agent": config.IMAGE_USER_AGENT},
            timeout=config.HTTP_TIMEOUT,
            max_redirects=config.MAX_REDIRECTS,
            max_bytes=config.MAX_FEED_BYTES,
        )
        return resource.body.decode("utf-8", errors="replace")

    # Item extraction

    def _get_entry_value(self, entry, field: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if not field or entry is None:
            return None
        getter = getattr(entry, "get", None)
        if callable(getter):
            return getter(field)
        return getattr(entry, field, None)

    def extract_items(self, entries: Iterable[Any]) -> List[CandidateArticle]:
        """Turn parsed entries into candidate articles, skipping Shorts unless enabled."""
        items = []
        skipped = 0
        for entry in entries:
            link = (self._get_entry_value(entry, "link") or "").strip() or None
            if youtube.is_short(link) and not config.INCLUDE_SHORTS:
                skipped += 1
                continue
            title = (self._get_entry_value(entry, "title") or "").strip()
            items.append(CandidateArticle(
                title=title,
                link=link,
                content=self.extract_content(entry, link),
                pub_date=self.parse_date_enhanced(entry),
                image_url=self.extract_image_url(entry, link),
            ))
        if skipped:
            logger.debug(f"Skipped {skipped} YouTube Shorts")
        return items

    def _raw_html(self, entry) -> str:
        content = self._get_entry_value(entry, "content")
        if content:
            for content_item in content:
                value = content_item.get("value") if hasattr(content_item, "get") else None
                if value:
                    return value
        return self._get_entry_value(entry, "summary") or self._get_entry_value(entry, "description") or ""

    def extract_content(self, entry, link: Optional[str] = None) -> str:
        """Article body as Markdown; cleaned plain description for YouTube items."""
        if youtube.is_youtube_link(link):
            media_description = self._get_entry_value(entry, "media_description")
            raw = media_description or self._get_entry_value(entry, "summary") or ""
            text = BeautifulSoup(raw, "html.parser").get_text("\n") if "<" in raw else raw
            return youtube.clean_youtube_description(text)

        html = self._raw_html(entry)
        if not html:
            return ""
        return clean_html_to_markdown(html, base_url=link)

    def extract_image_url(self, entry, link: Optional[str] = None) -> Optional[str]:
        """Pick a representative image for an entry.

        YouTube links always use the video thumbnail. Otherwise the first of
        media:thumbnail, media:content, an image enclosure or the first <img>
        in the content wins.
        """
        video_id = youtube.extract_video_id(link)
        if video_id:
            return youtube.thumbnail_url(video_id)

        for media_field in ("media_thumbnail", "media_content"):
            media = self._get_entry_value(entry, media_field) or []
            for item in media:
                url = item.get("url") if hasattr(item, "get") else None
                if url:
                    return url

        for enclosure in self._get_entry_value(entry, "enclosures") or []:
            enclosure_type = (enclosure.get("type") or "") if hasattr(enclosure, "get") else ""
            href = enclosure.get("href") or enclosure.get("url") if hasattr(enclosure, "get") else None
            if href and enclosure_type.startswith("image/"):
                return href

        match = _IMG_SRC_RE.search(self._raw_html(entry))
        if match:
            return match.group(1)
        return None

    def parse_date_enhanced(self, entry) -> int:
        """Publication date as a Unix timestamp, falling back to now."""
        for field in ("published", "updated", "created", "date", "pubDate", "issued"):
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, f"{field}_parsed"))
            if timestamp:
                return timestamp
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, field))
            if timestamp:
                return timestamp
        return int(time())

    def _date_value_to_timestamp(self, value: Any) -> Optional[int]:
        """Convert assorted date representations into a Unix timestamp."""
        if value in (None, ""):
            return None
        if isinstance(value, (int, float)):
            return int(value) if value > 0 else None
        if isinstance(value, datetime):
            dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        if isinstance(value, (list, tuple)):
            # feedparser structs are UTC
            try:
                return timegm(tuple(value))
            except (OverflowError, ValueError, TypeError):
                return None
        if isinstance(value, str):
            return self._parse_date_string(value)
        return None

    def _parse_date_string(self, date_str: str) -> Optional[int]:
        for parser in (self._parse_with_feedparser, self._parse_with_email_utils, self._parse_with_custom_formats):
            timestamp = parser(date_str)
            if timestamp is not None:
                return timestamp
        return None

    def _parse_with_feedparser(self, date_str: str) -> Optional[int]:
        try:
            time_struct = feedparser._parse_date(date_str)
        except (ValueError, TypeError, AttributeError, OverflowError):
            return None
        return timegm(time_struct) if time_struct else None

    def _parse_with_email_utils(self, date_str: str) -> Optional[int]:
        try:
            dt = parsedate_to_datetime(date_str)
        except (TypeError, ValueError, OverflowError, IndexError):
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    def _parse_with_custom_formats(self, date_str: str) -> Optional[int]:
        for fmt in ("%d %b %Y %H:%M:%S %z", "%d %b %Y %H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
            try:
                dt = datetime.strptime(date_str.strip(), fmt)
            except (ValueError, TypeError):
                continue
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        return None

    # Sync pipeline

    async def _store_items(self, feed_id: int, items: List[CandidateArticle]) -> int:
        added = 0
        for item in items:
            article = await self.db.execute(
                'insert_article',
                feed_id=feed_id,
                title=item.title,
                link=item.link,
                content=item.content,
                pub_date=item.pub_date,
                image_url=item.image_url,
            )
            if article is not None:
                added += 1
        return added

    async def _record_failure(self, target: FeedTarget, error: str) -> None:
        try:
            await self.db.execute('record_sync_error', feed_id=target.id, error=error)
        except StorageError as e:
            logger.error(f"Could not record sync error for feed {target.label}: {e}")

    @trace_span(
        "sync_one",
        tracer_name="fetcher",
        attr_from_args=lambda self, target: {"feed.id": target.id, "feed.slug": target.slug},
    )
    async def sync_one(self, target: FeedTarget) -> SyncOutcome:
        """Validate, fetch, de-duplicate and store one feed.

        Never raises for per-feed failures; they are logged, recorded on the
        feed row and reported through SyncOutcome.error.
        """
        verdict = await self.validator.validate_for_feed(target.url)
        if not verdict.safe:
            logger.warning(f"Skipping unsafe feed {target.label} ({target.url}): {verdict.reason}")
            await self._record_failure(target, f"Blocked URL ({verdict.reason})")
            return SyncOutcome(feed_id=target.id, ok=False, error="Blocked URL")
        warning = verdict.warning
        if warning:
            logger.warning(f"Feed {target.label} ({target.url}): {warning}")

        try:
            parsed = await wait_for(self.fetch_feed_document(target.url), timeout=self.fetch_timeout)
            items = self.extract_items(parsed.entries)
        except TimeoutError:
            logger.warning(f"Timed out syncing feed {target.label} after {self.fetch_timeout}s")
            await self._record_failure(target, "Timed out")
            return SyncOutcome(feed_id=target.id, ok=False, error="Timed out", warning=warning)
        except BlockedURLError as e:
            logger.warning(f"Feed {target.label} redirected to a blocked URL: {e.reason}")
            await self._record_failure(target, f"Blocked URL ({e.reason})")
            return SyncOutcome(feed_id=target.id, ok=False, error="Blocked URL", warning=warning)
        except FetchError as e:
            logger.warning(f"Error syncing feed {target.label}: {e.category}")
            await self._record_failure(target, e.category)
            return SyncOutcome(feed_id=target.id, ok=False, error=e.category, warning=warning)
        except Exception as e:
            logger.exception(f"Unexpected error syncing feed {target.label}: {e}")
            await self._record_failure(target, "Unexpected error")
            return SyncOutcome(feed_id=target.id, ok=False, error="Unexpected error", warning=warning)

        warning = warning or next(iter(parsed.warnings), None)
        try:
            added = await self._store_items(target.id, items)
            if parsed.title and not target.title:
                await self.db.execute('update_feed_title', feed_id=target.id, title=parsed.title)
            await self.db.execute('record_sync_success', feed_id=target.id)
        except StorageError as e:
            logger.error(f"Storage error syncing feed {target.label}: {e}")
            return SyncOutcome(feed_id=target.id, ok=False, error="Storage error", warning=warning)

        if added:
            logger.info(f"Feed {target.label}: {added} new of {len(parsed.entries)} items")
        return SyncOutcome(feed_id=target.id, ok=True, added=added, total=len(parsed.entries), warning=warning)

    async def _sync_guarded(self, target: FeedTarget, semaphore: Optional[Semaphore]) -> SyncOutcome:
        try:
            if semaphore is None:
                return await self.sync_one(target)
            async with semaphore:
                return await self.sync_one(target)
        except Exception as e:
            # A single feed must never take the batch down
            logger.exception(f"Unexpected error syncing feed {target.label}: {e}")
            return SyncOutcome(feed_id=target.id, ok=False, error="Unexpected error")

    async def sync_all(self, targets: Iterable[FeedTarget]) -> AsyncIterator[BatchProgress]:
        """Sync ``targets`` concurrently, yielding progress in completion order.

        Yields one ``progress`` event per finished feed and then a single
        ``complete`` event. An empty batch yields only the ``complete`` event.
        Closing the iterator early cancels the feeds still in flight.
        """
        targets = list(targets)
        total = len(targets)
        synced = failed = 0
        if not total:
            yield BatchProgress.complete(0, 0, 0)
            return

        logger.info(f"Syncing {total} feeds in parallel")
        semaphore = Semaphore(config.SYNC_CONCURRENCY) if config.SYNC_CONCURRENCY > 0 else None
        tasks = [create_task(self._sync_guarded(target, semaphore)) for target in targets]
        try:
            for next_done in as_completed(tasks):
                outcome = await next_done
                if outcome.ok:
                    synced += 1
                else:
                    failed += 1
                yield BatchProgress.progress(synced, failed, total)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await gather(*pending, return_exceptions=True)

        logger.info(f"Sync complete: {synced} succeeded, {failed} failed")
        yield BatchProgress.complete(synced, failed, total)

    async def sync_all_feeds(self, only_ids: Optional[Iterable[int]] = None) -> AsyncIterator[BatchProgress]:
        """Sync every stored feed (or only ``only_ids``)."""
        feeds = await self.db.execute('list_feeds')
        wanted = set(only_ids) if only_ids is not None else None
        targets = [
            FeedTarget(id=feed["id"], url=feed["url"], slug=feed["slug"], title=feed["title"])
            for feed in feeds
            if wanted is None or feed['id'] in wanted
        ]
        async with aclosing(self.sync_all(targets)) as events:
            async for event in events:
                yield event

    async def register_configured_feeds(self, sources: Optional[Dict[str, str]] = None) -> int:
        """Register the slug -> URL mapping from feeds.yaml; returns how many were processed."""
        sources = config.FEED_SOURCES if sources is None else sources
        for slug, url in sources.items():
            await self.db.execute('register_feed', slug=slug, url=url)
        return len(sources)

    # Subscription

    @trace_span(
        "subscribe",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, slug=None, title=None: {"http.url": url},
    )
    async def subscribe(self, url: str, slug: Optional[str] = None, title: Optional[str] = None) -> SubscribeResult:
        """Add a feed by URL and run its first sync.

        YouTube channel pages are converted to their feed URL first. The feed
        title comes from the document, then ``title``, then the URL's hostname.
        """
        url = (url or "").strip()
        if youtube.is_youtube_channel_url(url):
            try:
                url = await youtube.convert_youtube_url(url, self._fetch_page) or url
            except (BlockedURLError, FetchError) as e:
                return SubscribeResult(ok=False, url=url, error=f"Failed to convert YouTube URL to feed: {e}")

        verdict = await self.validator.validate_for_feed(url)
        if not verdict.safe:
            logger.warning(f"Refusing to subscribe to {url}: {verdict.reason}")
            return SubscribeResult(ok=False, url=url, error=f"Blocked URL ({verdict.reason})")

        existing = await self.db.execute('get_feed_by_url', url=url)
        if existing is not None:
            return SubscribeResult(ok=False, url=url, feed_id=existing['id'], title=existing['title'],
                                   error="Feed already exists")

        try:
            parsed = await wait_for(self.fetch_feed_document(url), timeout=self.fetch_timeout)
        except TimeoutError:
            return SubscribeResult(ok=False, url=url, error="Timed out", warning=verdict.warning)
        except BlockedURLError as e:
            return SubscribeResult(ok=False, url=url, error=f"Blocked URL ({e.reason})", warning=verdict.warning)
        except FetchError as e:
            return SubscribeResult(ok=False, url=url, error=e.category, warning=verdict.warning)

        title = parsed.title or title or urlsplit(url).hostname or url
        feed_id = await self.db.execute('register_feed', slug=slug or derive_slug(url), url=url, title=title)
        logger.info(f"Subscribed to {title} ({url}) as feed {feed_id}")

        outcome = await self.sync_one(FeedTarget(id=feed_id, url=url, slug=slug, title=title))
        return SubscribeResult(
            ok=outcome.ok,
            url=url,
            feed_id=feed_id,
            title=title,
            added=outcome.added,
            total=outcome.total,
            error=outcome.error,
            warning=verdict.warning or outcome.warning,
        )

    # OPML

    async def export_opml(self) -> str:
        feeds = await self.db.execute('list_feeds')
        return opml.export_opml(feeds)

    async def import_opml(self, document: str) -> Dict[str, int]:
        """Subscribe to every feed in an OPML document that is not stored yet.

        Returns:
            Counts: imported, skipped (already present), failed, total.
        """
        entries = opml.parse_opml(document)
        imported = skipped = failed = 0
        for entry in entries:
            if await self.db.execute('get_feed_by_url', url=entry.url) is not None:
                skipped += 1
                continue
            result = await self.subscribe(entry.url, title=entry.title)
            if result.feed_id is not None and result.error != "Feed already exists":
                imported += 1
            else:
                logger.error(f"Failed to import {entry.url}: {result.error}")
                failed += 1
        logger.info(f"OPML import: {imported} imported, {skipped} skipped, {failed} failed")
        return {"imported": imported, "skipped": skipped, "failed": failed, "total": len(entries)}
