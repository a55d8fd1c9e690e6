#!/usr/bin/env python3
"""
OPML export and import of the feed list.
"""

from typing import Any, Dict, Iterable, List, NamedTuple, Optional
from xml.sax.saxutils import quoteattr

from bs4 import BeautifulSoup

from config import get_logger

logger = get_logger("opml")


class OutlineEntry(NamedTuple):
    url: str
    title: Optional[str]


def export_opml(feeds: Iterable[Dict[str, Any]], title: str = "RSS Feeds Export") -> str:
    """Render stored feeds (dicts with ``url`` and ``title``) as OPML 2.0."""
    outlines = []
    for feed in feeds:
        text = feed.get("title") or feed.get("slug") or feed["url"]
        outlines.append(
            f'    <outline type="rss" text={quoteattr(text)} title={quoteattr(text)} '
            f'xmlUrl={quoteattr(feed["url"])}/>'
        )
    body = "\n".join(outlines)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<opml version="2.0">\n'
        f'  <head>\n    <title>{title}</title>\n  </head>\n'
        f'  <body>\n{body}\n  </body>\n'
        '</opml>\n'
    )


def parse_opml(document: str) -> List[OutlineEntry]:
    """Extract feed outlines from an OPML document, nested folders included.

    Outlines without an ``xmlUrl`` (folders) are skipped and duplicate URLs
    are collapsed.
    """
    soup = BeautifulSoup(document or "", "html.parser")
    entries: List[OutlineEntry] = []
    seen = set()
    # html.parser lowercases attribute names
    for outline in soup.find_all("outline"):
        url = (outline.get("xmlurl") or "").strip()
        if not url or url in seen:
            continue
        seen.add(url)
        title = (outline.get("title") or outline.get("text") or "").strip() or None
        entries.append(OutlineEntry(url=url, title=title))
    logger.debug(f"Parsed {len(entries)} outlines from OPML")
    return entries
