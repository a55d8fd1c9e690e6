#!/usr/bin/env python3
"""
Feed Sentry command-line entry point.

Modes:
  sync                 Sync every feed, streaming JSON progress lines to stdout
  sync-one FEED_ID     Sync a single feed and print its outcome
  subscribe URL        Add a feed (YouTube channel pages are converted)
  check-url URL        Print the validation verdict for a URL
  proxy-image URL      Fetch an image through the strict proxy path
  status               Show feeds, article counts and sync errors
  cleanup              Run the article retention cleanup once
  scheduled            Run the maintenance scheduler until interrupted
  export-opml          Print the feed list as OPML
  import-opml FILE     Subscribe to every feed in an OPML file

Logs go to stderr; stdout carries only command output.
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from time import time
from typing import Any, Dict, Optional

from config import config, get_logger
from errors import FeedSentryError
from fetcher import FeedFetcher, FeedTarget
from image_proxy import ImageProxy
from models import DatabaseQueue
from scheduler import MaintenanceScheduler
from telemetry import init_telemetry, trace_span
from url_validator import get_validator
from utils import format_age

logger = get_logger("main")
init_telemetry("feed-sentry")


def emit(payload: Dict[str, Any]) -> None:
    """Write one JSON line to stdout."""
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


class FeedSentryApp:
    """Owns the database and fetcher for the lifetime of one command."""

    def __init__(self, db_path: Optional[str] = None):
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.validator = get_validator()
        self.fetcher = FeedFetcher(db=self.db, validator=self.validator)

    async def __aenter__(self) -> "FeedSentryApp":
        await self.db.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.fetcher.close()
        await self.db.stop()

    @trace_span("cli.sync", tracer_name="main")
    async def sync(self) -> bool:
        registered = await self.fetcher.register_configured_feeds()
        if registered:
            logger.info(f"Registered {registered} feeds from {config.FEEDS_CONFIG_PATH}")
        last: Dict[str, Any] = {}
        async for event in self.fetcher.sync_all_feeds():
            last = event.to_dict()
            emit(last)
        return last.get("failed", 0) == 0

    async def sync_one(self, feed_id: int) -> bool:
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        if feed is None:
            emit({"feed_id": feed_id, "ok": False, "error": "Feed not found"})
            return False
        outcome = await self.fetcher.sync_one(FeedTarget(id=feed["id"], url=feed["url"], slug=feed["slug"], title=feed["title"]))
        emit(outcome.to_dict())
        return outcome.ok

    async def subscribe(self, url: str, slug: Optional[str]) -> bool:
        result = await self.fetcher.subscribe(url, slug=slug)
        emit(result.to_dict())
        return result.ok

    async def cleanup(self) -> bool:
        deleted = await self.db.execute('cleanup_articles')
        emit({"deleted": deleted})
        return True

    async def status(self) -> Dict[str, Any]:
        feeds = await self.db.execute('list_feeds')
        now = int(time())
        feed_rows = []
        for feed in feeds:
            feed_rows.append({
                'id': feed['id'],
                'slug': feed['slug'],
                'title': feed['title'],
                'url': feed['url'],
                'articles': await self.db.execute('count_articles', feed_id=feed['id']),
                'last_synced': format_age(now - feed['last_synced']) if feed['last_synced'] else "never",
                'error_count': feed['error_count'],
                'last_error': feed['last_error'],
            })
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'total_articles': await self.db.execute('count_articles'),
            'resolution_cache_entries': len(self.validator.cache),
            'feeds': feed_rows,
            'config': config.get_config_summary(),
        }

    async def scheduled(self) -> None:
        await self.fetcher.register_configured_feeds()
        scheduler = MaintenanceScheduler(self.fetcher, validator=self.validator)
        await scheduler.run_forever()

    async def export_opml(self) -> bool:
        sys.stdout.write(await self.fetcher.export_opml())
        return True

    async def import_opml(self, path: str) -> bool:
        with open(path, 'r', encoding='utf-8') as f:
            document = f.read()
        counts = await self.fetcher.import_opml(document)
        emit(counts)
        return counts["failed"] == 0


def print_status(status: Dict[str, Any]) -> None:
    """Print formatted status information."""
    print("\nFeed Sentry Status")
    print(f"  Time: {status['timestamp']}")
    print(f"  Articles: {status['total_articles']}")
    print(f"  Feeds: {len(status['feeds'])}")
    for feed in status['feeds']:
        line = f"  [{feed['id']}] {feed['title'] or feed['slug']}: {feed['articles']} articles, synced {feed['last_synced']}"
        if feed['error_count']:
            line += f" ({feed['error_count']} errors, last: {feed['last_error']})"
        print(line)


async def check_url(url: str, policy: str) -> bool:
    validator = get_validator()
    if policy == 'proxy':
        verdict = await validator.validate_for_proxy(url)
    else:
        verdict = await validator.validate_for_feed(url)
    emit({"url": url, "policy": policy, **verdict.to_dict()})
    return verdict.safe


async def proxy_image(url: str, output: Optional[str]) -> bool:
    response = await ImageProxy(get_validator()).fetch(url)
    if response.status == 200 and output:
        with open(output, 'wb') as f:
            f.write(response.body)
    emit({
        "status": response.status,
        "content_type": response.content_type,
        "bytes": len(response.body),
        **({"message": response.body.decode('utf-8', errors='replace')} if response.status != 200 else {}),
    })
    return response.status == 200


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Sentry: SSRF-safe feed synchronization')
    sub = parser.add_subparsers(dest='mode', required=True)

    sub.add_parser('sync', help='Sync all feeds and stream JSON progress lines')
    p = sub.add_parser('sync-one', help='Sync a single feed')
    p.add_argument('feed_id', type=int)
    p = sub.add_parser('subscribe', help='Subscribe to a feed URL')
    p.add_argument('url')
    p.add_argument('--slug', help='Feed slug (default: derived from the URL)')
    p = sub.add_parser('check-url', help='Validate a URL against a policy')
    p.add_argument('url')
    p.add_argument('--policy', choices=['proxy', 'feed'], default='feed',
                   help='proxy = strict (third-party content), feed = permissive (user feeds)')
    p = sub.add_parser('proxy-image', help='Fetch an image through the image proxy path')
    p.add_argument('url')
    p.add_argument('--output', help='Write the image body to this file')
    sub.add_parser('status', help='Show feed and article status')
    sub.add_parser('cleanup', help='Run article retention cleanup')
    sub.add_parser('scheduled', help='Run maintenance jobs until interrupted')
    sub.add_parser('export-opml', help='Print the feed list as OPML')
    p = sub.add_parser('import-opml', help='Import feeds from an OPML file')
    p.add_argument('file')
    return parser


async def run(args: argparse.Namespace) -> bool:
    if args.mode == 'check-url':
        return await check_url(args.url, args.policy)
    if args.mode == 'proxy-image':
        return await proxy_image(args.url, args.output)

    async with FeedSentryApp() as app:
        if args.mode == 'sync':
            return await app.sync()
        if args.mode == 'sync-one':
            return await app.sync_one(args.feed_id)
        if args.mode == 'subscribe':
            return await app.subscribe(args.url, args.slug)
        if args.mode == 'cleanup':
            return await app.cleanup()
        if args.mode == 'status':
            print_status(await app.status())
            return True
        if args.mode == 'scheduled':
            await app.scheduled()
            return True
        if args.mode == 'export-opml':
            return await app.export_opml()
        if args.mode == 'import-opml':
            return await app.import_opml(args.file)
    raise ValueError(f"Unknown mode: {args.mode}")


def main(argv: Optional[list] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    try:
        success = asyncio.run(run(args))
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        logger.info("Feed Sentry shutting down")
    except (FeedSentryError, OSError) as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
