#!/usr/bin/env python3
"""
YouTube helpers: channel page to feed URL conversion, video ids and
description cleanup for video feed items.
"""

import re
from typing import Awaitable, Callable, Optional
from urllib.parse import parse_qs, urlsplit

from bs4 import BeautifulSoup

from config import get_logger
from errors import FetchError

logger = get_logger("youtube")

FEED_URL_TEMPLATE = "https://www.youtube.com/feeds/videos.xml?channel_id={channel_id}"
THUMBNAIL_TEMPLATE = "https://img.youtube.com/vi/{video_id}/hqdefault.jpg"
DESCRIPTION_LIMIT = 300

_CHANNEL_PAGE_RE = re.compile(r"^https?://(www\.)?youtube\.com/", re.IGNORECASE)
_CHANNEL_ID_PATH_RE = re.compile(r"/channel/([a-zA-Z0-9_-]{24})")
_CHANNEL_URL_RE = re.compile(r"^https://www\.youtube\.com/channel/([^\"/?#]+)")
_JSON_ID_PATTERNS = (
    re.compile(r'"channelId":"([^"]+)"'),
    re.compile(r'"externalId":"([^"]+)"'),
)

_URL_LINE_RE = re.compile(r"^https?://", re.IGNORECASE)
_INLINE_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
_PROMO_RE = re.compile(
    r"(?:follow|subscribe|check out|visit).{0,30}(?:twitter|instagram|facebook|tiktok|discord|patreon)",
    re.IGNORECASE,
)
_TRAILING_HANDLE_RE = re.compile(r"[@#]\w+\s*$")


def feed_url_for_channel(channel_id: str) -> str:
    return FEED_URL_TEMPLATE.format(channel_id=channel_id)


def is_youtube_link(url: Optional[str]) -> bool:
    """True for links pointing at youtube.com or youtu.be."""
    if not url:
        return False
    try:
        hostname = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return False
    return any(hostname == h or hostname.endswith("." + h) for h in ("youtube.com", "youtu.be"))


def is_youtube_channel_url(url: str) -> bool:
    """True for a youtube.com page that is not already a feed."""
    return bool(_CHANNEL_PAGE_RE.match(url or "")) and "/feeds/" not in url


def is_short(url: Optional[str]) -> bool:
    return bool(url) and "/shorts/" in url


def extract_video_id(url: Optional[str]) -> Optional[str]:
    """Return the video id of a watch or youtu.be link."""
    if not is_youtube_link(url):
        return None
    parts = urlsplit(url)
    hostname = (parts.hostname or "").lower()
    if hostname == "youtu.be" or hostname.endswith(".youtu.be"):
        video_id = parts.path.strip("/").split("/", 1)[0]
        return video_id or None
    if parts.path == "/watch":
        values = parse_qs(parts.query).get("v")
        return values[0] if values else None
    return None


def thumbnail_url(video_id: str) -> str:
    return THUMBNAIL_TEMPLATE.format(video_id=video_id)


def clean_youtube_description(text: Optional[str]) -> str:
    """Strip link lines, social promotion and trailing handles; cap at 300 chars."""
    if not text or not isinstance(text, str):
        return ""
    cleaned_lines = []
    for line in text.split("\n"):
        trimmed = line.strip()
        if _URL_LINE_RE.match(trimmed) or _PROMO_RE.search(trimmed):
            continue
        cleaned = _INLINE_URL_RE.sub("", trimmed)
        cleaned = _TRAILING_HANDLE_RE.sub("", cleaned).strip()
        if cleaned:
            cleaned_lines.append(cleaned)
        if len(" ".join(cleaned_lines)) > 250:
            break
    result = " ".join(cleaned_lines).strip()
    if len(result) > DESCRIPTION_LIMIT:
        return result[:DESCRIPTION_LIMIT].strip() + "..."
    return result


def extract_channel_id(html: str) -> Optional[str]:
    """Find the channel id in a YouTube channel page."""
    for pattern in _JSON_ID_PATTERNS:
        match = pattern.search(html)
        if match:
            return match.group(1)

    soup = BeautifulSoup(html, "html.parser")
    meta = soup.find("meta", attrs={"itemprop": "channelId"})
    if meta and meta.get("content"):
        return meta["content"]

    for tag, attrs, attr in (
        ("meta", {"property": "og:url"}, "content"),
        ("link", {"rel": "canonical"}, "href"),
    ):
        element = soup.find(tag, attrs=attrs)
        if element and element.get(attr):
            match = _CHANNEL_URL_RE.match(element[attr])
            if match:
                return match.group(1)
    return None


async def convert_youtube_url(url: str, fetch_page: Callable[[str], Awaitable[str]]) -> Optional[str]:
    """Turn a YouTube channel, handle, custom or user page URL into its feed URL.

    Args:
        url: Candidate URL.
        fetch_page: Coroutine returning the HTML of a page. Only called for
            handle/custom/user URLs, which embed the channel id in the page.

    Returns:
        The feed URL, or None when ``url`` is not a youtube.com URL.

    Raises:
        FetchError: The page could not be fetched or had no channel id.
    """
    if not _CHANNEL_PAGE_RE.match(url or ""):
        return None
    if "/feeds/videos.xml" in url:
        return url

    match = _CHANNEL_ID_PATH_RE.search(url)
    if match:
        return feed_url_for_channel(match.group(1))

    html = await fetch_page(url)
    channel_id = extract_channel_id(html or "")
    if not channel_id:
        logger.error(f"Failed to convert YouTube URL {url}: no channel id in page")
        raise FetchError("Could not extract YouTube channel ID")
    logger.info(f"Resolved YouTube channel {channel_id} from {url}")
    return feed_url_for_channel(channel_id)
