#!/usr/bin/env python3
"""
Image proxy fetch path.

Article images are chosen by feed authors, so every image URL (and every
redirect it produces) goes through the strict validator before the server
touches it. The result is a plain ProxyResponse that any HTTP layer can
serialize.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import urlsplit

from aiohttp import ClientSession

from config import config, get_logger
from errors import BlockedURLError, ContentTypeError, FetchError
from safe_http import fetch_guarded
from telemetry import trace_span
from url_validator import URLValidator, get_validator

logger = get_logger("image_proxy")

CACHE_CONTROL = "public, max-age=86400"


@dataclass
class ProxyResponse:
    status: int
    body: bytes
    content_type: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def text(cls, status: int, message: str) -> "ProxyResponse":
        return cls(status=status, body=message.encode("utf-8"), content_type="text/plain; charset=utf-8")


def _is_image(content_type: str) -> bool:
    return content_type.startswith("image/")


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


class ImageProxy:
    """Fetches remote images on behalf of clients."""

    def __init__(self, validator: Optional[URLValidator] = None, session: Optional[ClientSession] = None,
                 timeout: Optional[float] = None, max_bytes: Optional[int] = None):
        self.validator = validator or get_validator()
        self.session = session
        self.timeout = timeout if timeout is not None else config.IMAGE_FETCH_TIMEOUT
        self.max_bytes = max_bytes if max_bytes is not None else config.MAX_IMAGE_BYTES

    @trace_span("image_proxy.fetch", tracer_name="image_proxy")
    async def fetch(self, url: Optional[str]) -> ProxyResponse:
        if not url:
            return ProxyResponse.text(400, "Missing url parameter")

        # Relative and protocol-relative image paths cannot be resolved here
        if not url.startswith(("http://", "https://")):
            return ProxyResponse.text(404, "Not found")

        verdict = await self.validator.validate_for_proxy(url)
        if not verdict.safe:
            logger.warning(f"Blocked image proxy request for {url}: {verdict.reason}")
            return ProxyResponse.text(403, "Forbidden")

        headers = {
            "User-Agent": config.IMAGE_USER_AGENT,
            "Referer": _origin(url),
        }
        try:
            if self.session is not None:
                resource = await self._fetch(self.session, url, headers)
            else:
                async with ClientSession() as session:
                    resource = await self._fetch(session, url, headers)
        except BlockedURLError as e:
            logger.warning(f"Blocked image redirect for {url}: {e.reason}")
            return ProxyResponse.text(403, "Forbidden")
        except ContentTypeError as e:
            logger.info(f"Refusing to proxy non-image content ({e.content_type}) from {url}")
            return ProxyResponse.text(403, "Forbidden: Not an image")
        except FetchError as e:
            if e.status is not None and e.status >= 400:
                return ProxyResponse.text(e.status, "Failed to fetch image")
            logger.debug(f"Image proxy failed for {url}: {e.category}")
            return ProxyResponse.text(500, "Failed to proxy image")

        return ProxyResponse(
            status=200,
            body=resource.body,
            content_type=resource.headers.get("Content-Type") or resource.content_type,
            headers={"Cache-Control": CACHE_CONTROL},
        )

    async def _fetch(self, session: ClientSession, url: str, headers: Dict[str, str]):
        return await fetch_guarded(
            session,
            url,
            validate=self.validator.validate_for_proxy,
            headers=headers,
            timeout=self.timeout,
            max_redirects=config.MAX_REDIRECTS,
            max_bytes=self.max_bytes,
            accept_content_type=_is_image,
        )
