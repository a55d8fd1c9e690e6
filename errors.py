#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FeedSentryError(Exception):
    """Base class for errors raised inside the fetch pipeline."""


class BlockedURLError(FeedSentryError):
    """Raised when a URL (or one of its redirect hops) fails a safety check.

    Attributes:
        url: The rejected URL.
        reason: The verdict reason, e.g. "Resolves to private IP".
    """

    def __init__(self, url: str, reason: Optional[str] = None):
        super().__init__(f"Blocked URL ({reason or 'unsafe'})")
        self.url = url
        self.reason = reason or "unsafe"


class FetchError(FeedSentryError):
    """Raised when an outbound fetch fails (HTTP status, network error, timeout).

    Attributes:
        category: Short, log-safe description such as "HTTP 404" or "Timed out".
        status: HTTP status when the server answered, else None.
    """

    def __init__(self, category: str, status: Optional[int] = None):
        super().__init__(category)
        self.category = category
        self.status = status


class ContentTypeError(FetchError):
    """Raised when a response carries a content type the caller refuses."""

    def __init__(self, content_type: Optional[str]):
        super().__init__("Unexpected content type")
        self.content_type = content_type


class StorageError(FeedSentryError):
    """Raised when a queued database operation fails."""


__all__ = ["FeedSentryError", "BlockedURLError", "FetchError", "ContentTypeError", "StorageError"]
