#!/usr/bin/env python3
"""
SSRF guard for server-side fetches.

Two policies share a single validation routine:

- STRICT_POLICY (validate_for_proxy) is used before fetching content chosen
  by remote feed authors, such as images passed through the image proxy.
  Private, loopback and link-local targets are rejected.
- PERMISSIVE_POLICY (validate_for_feed) is used for feed URLs a user adds
  for themselves. Self-hosted feeds on private addresses are allowed with a
  warning; loopback literals, localhost and cloud metadata endpoints stay
  blocked.

DNS failures never block: the fetch that follows fails on its own.
"""

import socket
from dataclasses import dataclass, asdict
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from urllib.parse import urlsplit

from aiohttp.resolver import ThreadedResolver

from config import config, get_logger
from dns_cache import CacheEntry, ResolutionCache
from ip_ranges import is_loopback_ip, is_private_ip, parse_ip_literal
from telemetry import trace_span

logger = get_logger("validator")

ALLOWED_SCHEMES = frozenset({"http", "https"})

CLOUD_METADATA_HOSTNAMES = frozenset({
    "169.254.169.254",           # AWS / Azure / OpenStack metadata
    "metadata.google.internal",  # GCP metadata
    "metadata.server",           # Azure metadata alias
})

CRITICAL_HOSTNAMES = frozenset({"localhost", "127.0.0.1", "0.0.0.0"}) | CLOUD_METADATA_HOSTNAMES

REASON_INVALID_URL = "Invalid URL"
REASON_INVALID_PROTOCOL = "Invalid protocol"
REASON_BLOCKED_HOSTNAME = "Blocked hostname"
REASON_BLOCKED_PATTERN = "Blocked hostname pattern"
REASON_PRIVATE_IP = "Private IP address"
REASON_RESOLVES_PRIVATE = "Resolves to private IP"
REASON_LOOPBACK = "Loopback address not allowed"


@dataclass(frozen=True)
class ValidationVerdict:
    safe: bool
    reason: Optional[str] = None
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class ValidationPolicy:
    """Knobs that distinguish the strict and permissive checks.

    Attributes:
        blocked_hostnames: Exact hostnames rejected as "Blocked hostname".
        blocked_prefixes: Hostname prefixes also rejected as "Blocked hostname".
        blocked_patterns: Suffixes/prefixes rejected as "Blocked hostname pattern".
        block_private_ips: Reject private targets; otherwise allow with a warning.
        block_loopback_literals: Reject loopback IP literals even when private
            targets are allowed.
    """
    name: str
    blocked_hostnames: FrozenSet[str]
    blocked_prefixes: Tuple[str, ...]
    blocked_patterns: Tuple[str, ...]
    block_private_ips: bool
    block_loopback_literals: bool


STRICT_POLICY = ValidationPolicy(
    name="strict",
    blocked_hostnames=CRITICAL_HOSTNAMES | {"::1"},
    blocked_prefixes=(),
    blocked_patterns=(".local", ".localhost", "metadata."),
    block_private_ips=True,
    block_loopback_literals=True,
)

PERMISSIVE_POLICY = ValidationPolicy(
    name="permissive",
    blocked_hostnames=CRITICAL_HOSTNAMES,
    blocked_prefixes=("metadata.",),
    blocked_patterns=(".local", ".localhost"),
    block_private_ips=False,
    block_loopback_literals=True,
)


def _matches_pattern(hostname: str, pattern: str) -> bool:
    return hostname == pattern or hostname.endswith(pattern) or hostname.startswith(pattern)


def extract_hostname(url: str) -> Tuple[Optional[str], Optional[str]]:
    """Split ``url`` into (scheme, hostname); (None, None) when unparseable."""
    try:
        parts = urlsplit(url.strip())
        # Accessing port validates the authority section
        _ = parts.port
    except (ValueError, TypeError, AttributeError):
        return None, None
    if not parts.scheme:
        return None, None
    hostname = (parts.hostname or "").lower()
    if hostname.endswith("."):
        hostname = hostname[:-1]
    return parts.scheme.lower(), hostname


class URLValidator:
    """Validates outbound URLs against a policy using a shared resolution cache."""

    def __init__(self, cache: Optional[ResolutionCache] = None, resolver=None,
                 cache_ttl: Optional[float] = None):
        self.cache = cache if cache is not None else ResolutionCache(config.DNS_CACHE_MAX_SIZE)
        self.cache_ttl = cache_ttl if cache_ttl is not None else config.DNS_CACHE_TTL_SECONDS
        self._resolver = resolver

    def _get_resolver(self):
        # ThreadedResolver binds to the running loop, so build it lazily
        if self._resolver is None:
            self._resolver = ThreadedResolver()
        return self._resolver

    async def _lookup(self, hostname: str) -> List[str]:
        results = await self._get_resolver().resolve(hostname, 0, family=socket.AF_UNSPEC)
        return [r["host"] for r in results if r.get("host")]

    async def resolve_ip(self, hostname: str) -> Optional[str]:
        """Resolve ``hostname`` through the cache, falling back to DNS.

        Returns None when resolution fails; failures are not cached.
        """
        cached = self.cache.get(hostname)
        if cached is not None and self.cache.now() - cached.resolved_at < self.cache_ttl:
            return cached.ip

        try:
            addresses = await self._lookup(hostname)
        except (OSError, ValueError, UnicodeError) as e:
            logger.debug(f"DNS resolution failed for {hostname}: {e}")
            return None
        if not addresses:
            logger.debug(f"DNS resolution returned no addresses for {hostname}")
            return None

        # Judge the worst answer so a mixed public/private record set cannot slip through
        ip = next((a for a in addresses if is_private_ip(a)), addresses[0])
        self.cache.set(hostname, CacheEntry(hostname=hostname, ip=ip, resolved_at=self.cache.now()))
        return ip

    @trace_span(
        "validate_url",
        tracer_name="validator",
        attr_from_args=lambda self, url, policy: {"validator.policy": policy.name},
    )
    async def validate(self, url: str, policy: ValidationPolicy) -> ValidationVerdict:
        """Check ``url`` against ``policy``; never raises for bad input."""
        if not isinstance(url, str):
            return ValidationVerdict(False, reason=REASON_INVALID_URL)

        scheme, hostname = extract_hostname(url)
        if scheme is None:
            return ValidationVerdict(False, reason=REASON_INVALID_URL)
        if scheme not in ALLOWED_SCHEMES:
            return ValidationVerdict(False, reason=REASON_INVALID_PROTOCOL)
        if not hostname:
            return ValidationVerdict(False, reason=REASON_INVALID_URL)

        if hostname in policy.blocked_hostnames:
            return ValidationVerdict(False, reason=REASON_BLOCKED_HOSTNAME)
        if any(hostname.startswith(prefix) for prefix in policy.blocked_prefixes):
            return ValidationVerdict(False, reason=REASON_BLOCKED_HOSTNAME)
        if any(_matches_pattern(hostname, pattern) for pattern in policy.blocked_patterns):
            return ValidationVerdict(False, reason=REASON_BLOCKED_PATTERN)

        literal = parse_ip_literal(hostname)
        if literal is not None:
            if literal in policy.blocked_hostnames:
                return ValidationVerdict(False, reason=REASON_BLOCKED_HOSTNAME)
            if policy.block_loopback_literals and not policy.block_private_ips and is_loopback_ip(literal):
                return ValidationVerdict(False, reason=REASON_LOOPBACK)
            if is_private_ip(literal):
                return self._private_verdict(policy, REASON_PRIVATE_IP)
            return ValidationVerdict(True)

        ip = await self.resolve_ip(hostname)
        if ip is None:
            return ValidationVerdict(True)
        if is_private_ip(ip):
            return self._private_verdict(policy, REASON_RESOLVES_PRIVATE)
        return ValidationVerdict(True)

    def _private_verdict(self, policy: ValidationPolicy, reason: str) -> ValidationVerdict:
        if policy.block_private_ips:
            return ValidationVerdict(False, reason=reason)
        return ValidationVerdict(True, warning=reason)

    async def validate_for_proxy(self, url: str) -> ValidationVerdict:
        """Strict check for proxied third-party content such as images."""
        return await self.validate(url, STRICT_POLICY)

    async def validate_for_feed(self, url: str) -> ValidationVerdict:
        """Permissive check for user-supplied feed URLs."""
        return await self.validate(url, PERMISSIVE_POLICY)

    def clean_cache(self) -> int:
        """Sweep resolution cache entries older than the TTL."""
        return self.cache.clean_expired(self.cache_ttl)


_default_validator: Optional[URLValidator] = None


def get_validator() -> URLValidator:
    """Return the process-wide validator that owns the shared resolution cache."""
    global _default_validator
    if _default_validator is None:
        _default_validator = URLValidator()
    return _default_validator


async def validate_for_proxy(url: str) -> ValidationVerdict:
    return await get_validator().validate_for_proxy(url)


async def validate_for_feed(url: str) -> ValidationVerdict:
    return await get_validator().validate_for_feed(url)


def clean_cache() -> int:
    return get_validator().clean_cache()
