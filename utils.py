#!/usr/bin/env python3
"""
Shared helpers: HTML sanitizing for article bodies and small formatting utilities.
"""

from typing import Optional
import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger

logger = get_logger("utils")

DANGEROUS_TAGS = [
    "script", "style", "iframe", "form", "object", "embed", "noscript",
    "frame", "frameset", "applet", "meta", "base", "link",
]

_TRACKING_IMG_RE = re.compile(r"(pixel|tracker|counter|spacer|blank|trans)", re.IGNORECASE)
_TINY_IMG_RE = re.compile(r"\.(gif|png)$", re.IGNORECASE)


def _absolute_url(value: str, attr: str, base_url: Optional[str]) -> Optional[str]:
    """Return an absolute http(s) URL for ``value`` or None when it cannot be made safe."""
    if not value:
        return None
    if attr == "href" and value.startswith("mailto:"):
        return value
    if value.startswith(("http://", "https://")):
        return value
    if base_url:
        try:
            resolved = urljoin(base_url, value)
        except ValueError:
            return None
        if resolved.startswith(("http://", "https://")):
            return resolved
    return None


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize article HTML and convert it to Markdown.

    - Drops active content (scripts, frames, forms, embeds)
    - Strips on* handlers and javascript: URLs
    - Removes tracking pixels
    - Resolves relative href/src against ``base_url``; links that cannot be
      resolved become ``#`` and such images are dropped
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, "html.parser")
    for tag in soup(DANGEROUS_TAGS):
        tag.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            name = attr.lower()
            if name.startswith("on"):
                del tag[attr]
            elif name in ("href", "src") and str(tag[attr]).lower().startswith("javascript:"):
                del tag[attr]

    for img in soup.find_all("img"):
        src = img.get("src", "")
        if _TRACKING_IMG_RE.search(src) or (_TINY_IMG_RE.search(src) and img.get("height") in ("0", "1")):
            img.decompose()

    for tag in soup.find_all(["a", "img"]):
        for attr in ("href", "src"):
            if not tag.has_attr(attr) or not tag[attr]:
                continue
            rewritten = _absolute_url(str(tag[attr]), attr, base_url)
            if rewritten:
                tag[attr] = rewritten
            elif attr == "href":
                tag[attr] = "#"
            else:
                del tag[attr]

    # wrap_width=0 keeps long URLs on one line
    return md(str(soup), heading_style="ATX", wrap_width=0).strip()


def format_age(seconds: Optional[float]) -> str:
    """Compact relative age such as '42s', '5m', '3h' or '2d'."""
    if seconds is None or seconds < 0:
        return "never"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"
