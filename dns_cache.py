#!/usr/bin/env python3
"""
Bounded, expiring cache of hostname -> resolved IP address.

Entries are promoted on every hit and the least recently used entry is
evicted once the cache grows past its maximum size. A periodic sweep
(clean_expired) drops entries older than the TTL regardless of recency,
so a quiet deployment that never reaches capacity still forgets stale
DNS answers.
"""

from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from time import time
from typing import Callable, Optional

from config import get_logger

logger = get_logger("dns_cache")

DEFAULT_MAX_SIZE = 1000


@dataclass(frozen=True)
class CacheEntry:
    hostname: str
    ip: str
    resolved_at: float


class ResolutionCache:
    """Thread-safe LRU cache of successful DNS resolutions.

    Failed resolutions are never stored; callers only ``set`` after a lookup
    succeeded.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE, clock: Callable[[], float] = time):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = Lock()

    def now(self) -> float:
        return self._clock()

    def get(self, hostname: str) -> Optional[CacheEntry]:
        """Return the entry for ``hostname`` and mark it most recently used."""
        with self._lock:
            entry = self._entries.get(hostname)
            if entry is None:
                return None
            self._entries.move_to_end(hostname)
            return entry

    def set(self, hostname: str, entry: CacheEntry) -> None:
        """Insert or refresh ``hostname``, evicting the LRU entry when full."""
        with self._lock:
            if hostname in self._entries:
                self._entries.move_to_end(hostname)
            self._entries[hostname] = entry
            if len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted {evicted} from resolution cache (max {self.max_size})")

    def clean_expired(self, ttl: float) -> int:
        """Drop every entry whose age is at least ``ttl`` seconds.

        Returns:
            Number of entries removed.
        """
        cutoff = self._clock() - ttl
        with self._lock:
            expired = [host for host, entry in self._entries.items() if entry.resolved_at <= cutoff]
            for host in expired:
                del self._entries[host]
        if expired:
            logger.info(f"Removed {len(expired)} expired entries from resolution cache")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, hostname: object) -> bool:
        with self._lock:
            return hostname in self._entries
