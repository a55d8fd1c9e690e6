#!/usr/bin/env python3
"""
Article identity normalization and same-feed duplicate detection.

Feeds frequently republish the same article with a different tracking query
string, a fragment or reflowed title whitespace. Both the link and the title
are reduced to a canonical form and an incoming article is a duplicate when
either canonical form matches an article already stored for the same feed.
"""

import re
from typing import Any, Iterable, Mapping, NamedTuple, Optional, Union
from urllib.parse import unquote_plus, urlsplit, urlunsplit

TRACKING_PARAMS = frozenset({
    "utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term",
    "ref", "source",
    "mc_cid", "mc_eid",        # Mailchimp
    "_hsenc", "_hsmi",         # HubSpot
    "fbclid", "gclid",
    "r", "s", "publication_id", "post_id",  # Substack
    "t",                       # Ghost
    "share", "doing_wp_cron",  # WordPress
    "feature",                 # YouTube
})

# Parameters that identify the content itself on video hosts
VIDEO_HOST_KEEP_PARAMS = frozenset({"v"})
VIDEO_HOSTS = ("youtube.com", "youtu.be")

_WHITESPACE_RE = re.compile(r"\s+")


class NormalizedKey(NamedTuple):
    link: str
    title: str


def _is_video_host(hostname: str) -> bool:
    return any(hostname == h or hostname.endswith("." + h) for h in VIDEO_HOSTS)


def _lower_host(netloc: str) -> str:
    userinfo, sep, hostport = netloc.rpartition("@")
    return f"{userinfo}{sep}{hostport.lower()}"


def _filter_query(query: str, removable: frozenset) -> str:
    kept = []
    for pair in query.split("&"):
        if not pair:
            continue
        key = unquote_plus(pair.split("=", 1)[0])
        if key in removable:
            continue
        kept.append(pair)
    return "&".join(kept)


def normalize_url(url: Optional[str]) -> str:
    """Strip tracking parameters and the fragment from ``url``.

    Remaining query parameters keep their original spelling and order, the
    host is lowercased and an empty query is dropped. Anything that does not
    parse as an absolute URL is returned unchanged.
    """
    if not url:
        return url or ""
    try:
        parts = urlsplit(url)
        hostname = parts.hostname or ""
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url

    removable = TRACKING_PARAMS
    if _is_video_host(hostname):
        removable = TRACKING_PARAMS - VIDEO_HOST_KEEP_PARAMS

    return urlunsplit((
        parts.scheme.lower(),
        _lower_host(parts.netloc),
        parts.path or "/",
        _filter_query(parts.query, removable),
        "",
    ))


def normalize_title(title: Optional[str]) -> str:
    """Trim, lowercase and collapse internal whitespace."""
    if not title:
        return ""
    return _WHITESPACE_RE.sub(" ", title.strip().lower())


ArticleLike = Union[Mapping[str, Any], Any]


def _field(article: ArticleLike, name: str) -> Optional[str]:
    if isinstance(article, Mapping):
        return article.get(name)
    return getattr(article, name, None)


def normalized_key(article: ArticleLike) -> NormalizedKey:
    """Build the comparison key for a candidate or stored article.

    Accepts mappings (database rows) as well as objects with ``link`` and
    ``title`` attributes.
    """
    return NormalizedKey(
        link=normalize_url(_field(article, "link")),
        title=normalize_title(_field(article, "title")),
    )


def is_duplicate(candidate: ArticleLike, existing_for_same_feed: Iterable[ArticleLike]) -> bool:
    """Return True when ``candidate`` matches any article by link or by title.

    Callers must only pass articles belonging to the candidate's feed; the
    same story in two different feeds is not a duplicate. Empty links and
    titles never match.
    """
    key = normalized_key(candidate)
    for existing in existing_for_same_feed:
        other = normalized_key(existing)
        if key.link and key.link == other.link:
            return True
        if key.title and key.title == other.title:
            return True
    return False
