#!/usr/bin/env python3
"""
Guarded HTTP GET for server-side fetches.

aiohttp would follow redirects on its own, which lets a public URL bounce the
server into a private address after validation. Redirects are followed by
hand here instead and every hop is validated before a connection is opened.

Validation resolves the hostname itself and aiohttp resolves it again when it
connects. A host whose DNS answer changes between the two lookups (DNS
rebinding) can still reach an address the validator would have refused. The
check narrows the attack surface but does not pin the connection to the
validated address.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional
from asyncio import TimeoutError
from urllib.parse import urljoin

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import get_logger
from errors import BlockedURLError, ContentTypeError, FetchError
from telemetry import trace_span

logger = get_logger("safe_http")

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
CHUNK_SIZE = 64 * 1024

Validator = Callable[[str], Awaitable]


@dataclass
class FetchedResource:
    url: str
    status: int
    content_type: str
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    # Permissive-policy warnings raised along the redirect chain
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def _media_type(header_value: Optional[str]) -> str:
    return (header_value or "").split(";", 1)[0].strip().lower()


async def _read_limited(response, max_bytes: int) -> bytes:
    declared = response.content_length
    if declared is not None and declared > max_bytes:
        raise FetchError("Response too large")
    chunks = []
    size = 0
    async for chunk in response.content.iter_chunked(CHUNK_SIZE):
        size += len(chunk)
        if size > max_bytes:
            raise FetchError("Response too large")
        chunks.append(chunk)
    return b"".join(chunks)


@trace_span(
    "fetch_guarded",
    tracer_name="safe_http",
    attr_from_args=lambda session, url, **kw: {"http.url": url},
)
async def fetch_guarded(
    session: ClientSession,
    url: str,
    *,
    validate: Validator,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 30,
    max_redirects: int = 5,
    max_bytes: int = 10 * 1024 * 1024,
    accept_content_type: Optional[Callable[[str], bool]] = None,
) -> FetchedResource:
    """GET ``url``, validating it and every redirect target with ``validate``.

    Args:
        session: Shared aiohttp session.
        url: Absolute http(s) URL.
        validate: Coroutine returning a ValidationVerdict for a URL.
        headers: Request headers sent on every hop.
        timeout: Total seconds allowed for each hop.
        max_redirects: Redirect hops allowed before giving up.
        max_bytes: Body size cap.
        accept_content_type: Predicate on the media type of the final
            response, checked before the body is read.

    Raises:
        BlockedURLError: A hop failed validation; nothing was sent to it.
        ContentTypeError: accept_content_type rejected the response.
        FetchError: Non-2xx status, network error, timeout, redirect loop
            or oversized body.
    """
    current = url
    warnings: List[str] = []
    client_timeout = ClientTimeout(total=timeout)

    for _hop in range(max_redirects + 1):
        verdict = await validate(current)
        if not verdict.safe:
            logger.warning(f"Blocked fetch of {current}: {verdict.reason}")
            raise BlockedURLError(current, verdict.reason)
        if verdict.warning:
            logger.warning(f"Fetching {current} despite: {verdict.warning}")
            warnings.append(verdict.warning)

        try:
            async with session.get(
                current,
                headers=headers,
                timeout=client_timeout,
                allow_redirects=False,
            ) as response:
                if response.status in REDIRECT_STATUSES:
                    location = (response.headers.get("Location") or "").strip()
                    if not location:
                        raise FetchError("Redirect without location", status=response.status)
                    current = urljoin(current, location)
                    logger.debug(f"Following redirect to {current}")
                    continue

                if not 200 <= response.status < 300:
                    raise FetchError(f"HTTP {response.status}", status=response.status)

                content_type = _media_type(response.headers.get("Content-Type"))
                if accept_content_type is not None and not accept_content_type(content_type):
                    raise ContentTypeError(content_type or None)

                body = await _read_limited(response, max_bytes)
                return FetchedResource(
                    url=current,
                    status=response.status,
                    content_type=content_type,
                    body=body,
                    headers=dict(response.headers),
                    warnings=warnings,
                )
        except TimeoutError as e:
            logger.debug(f"Timeout fetching {current}: {e}")
            raise FetchError("Timed out") from e
        except ClientError as e:
            logger.debug(f"Network error fetching {current}: {e.__class__.__name__} {e}")
            raise FetchError("Network error") from e

    raise FetchError("Too many redirects")
