import pytest
import pytest_asyncio
from aiohttp import ClientSession, web
from aiohttp import test_utils

from errors import BlockedURLError, ContentTypeError, FetchError
from image_proxy import CACHE_CONTROL, ImageProxy
from safe_http import fetch_guarded
from url_validator import ValidationVerdict

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class FakeValidator:
    """Treats the local test server as public, except paths containing 'internal'."""

    def __init__(self):
        self.checked = []

    async def validate_for_proxy(self, url):
        self.checked.append(url)
        if "internal" in url:
            return ValidationVerdict(False, reason="Resolves to private IP")
        return ValidationVerdict(True)

    async def validate_for_feed(self, url):
        return await self.validate_for_proxy(url)


def build_app():
    app = web.Application()
    seen_headers = {}

    async def image(request):
        seen_headers.update(request.headers)
        return web.Response(body=PNG, content_type="image/png")

    async def html(request):
        return web.Response(text="<html></html>", content_type="text/html")

    async def missing(request):
        return web.Response(status=404, text="nope")

    async def to_image(request):
        raise web.HTTPFound("/image.png")

    async def to_internal(request):
        raise web.HTTPFound("/internal/secret.png")

    async def loop(request):
        raise web.HTTPFound("/loop")

    async def big(request):
        return web.Response(body=b"x" * 4096, content_type="image/png")

    app.router.add_get("/image.png", image)
    app.router.add_get("/page.html", html)
    app.router.add_get("/missing.png", missing)
    app.router.add_get("/redirect", to_image)
    app.router.add_get("/bounce", to_internal)
    app.router.add_get("/loop", loop)
    app.router.add_get("/big.png", big)
    return app, seen_headers


@pytest_asyncio.fixture
async def server():
    app, seen_headers = build_app()
    test_server = test_utils.TestServer(app)
    test_server.seen_headers = seen_headers
    await test_server.start_server()
    yield test_server
    await test_server.close()


def url_for(server, path):
    return str(server.make_url(path))


@pytest.mark.asyncio
async def test_proxy_serves_images_with_cache_headers(server):
    proxy = ImageProxy(FakeValidator())
    response = await proxy.fetch(url_for(server, "/image.png"))

    assert response.status == 200
    assert response.body == PNG
    assert response.content_type.startswith("image/png")
    assert response.headers == {"Cache-Control": CACHE_CONTROL}

    seen = server.seen_headers
    assert seen["Referer"] == url_for(server, "/").rstrip("/")
    assert "Mozilla" in seen["User-Agent"]


@pytest.mark.asyncio
async def test_proxy_input_errors():
    proxy = ImageProxy(FakeValidator())
    assert (await proxy.fetch(None)).status == 400
    assert (await proxy.fetch("")).body == b"Missing url parameter"

    relative = await proxy.fetch("/images/a.png")
    assert relative.status == 404
    assert (await proxy.fetch("//cdn.example.com/a.png")).status == 404


@pytest.mark.asyncio
async def test_proxy_blocked_url_makes_no_request(server):
    validator = FakeValidator()
    proxy = ImageProxy(validator)
    response = await proxy.fetch(url_for(server, "/internal/secret.png"))

    assert response.status == 403
    assert response.body == b"Forbidden"
    assert not server.seen_headers


@pytest.mark.asyncio
async def test_proxy_blocks_redirect_to_internal(server):
    response = await ImageProxy(FakeValidator()).fetch(url_for(server, "/bounce"))
    assert response.status == 403
    assert response.body == b"Forbidden"


@pytest.mark.asyncio
async def test_proxy_follows_safe_redirects(server):
    validator = FakeValidator()
    response = await ImageProxy(validator).fetch(url_for(server, "/redirect"))
    assert response.status == 200
    assert validator.checked[-1] == url_for(server, "/image.png")


@pytest.mark.asyncio
async def test_proxy_rejects_non_images(server):
    response = await ImageProxy(FakeValidator()).fetch(url_for(server, "/page.html"))
    assert response.status == 403
    assert response.body == b"Forbidden: Not an image"


@pytest.mark.asyncio
async def test_proxy_passes_upstream_error_status(server):
    response = await ImageProxy(FakeValidator()).fetch(url_for(server, "/missing.png"))
    assert response.status == 404
    assert response.body == b"Failed to fetch image"


@pytest.mark.asyncio
async def test_proxy_network_error_is_500():
    # Port 9 on TEST-NET-1 is never reachable; keep the timeout short
    proxy = ImageProxy(FakeValidator(), timeout=0.5)
    response = await proxy.fetch("http://192.0.2.1:9/a.png")
    assert response.status == 500
    assert response.body == b"Failed to proxy image"


@pytest.mark.asyncio
async def test_fetch_guarded_redirect_limit(server):
    validator = FakeValidator()
    async with ClientSession() as session:
        with pytest.raises(FetchError) as excinfo:
            await fetch_guarded(session, url_for(server, "/loop"), validate=validator.validate_for_proxy,
                                max_redirects=3)
    assert excinfo.value.category == "Too many redirects"
    assert len(validator.checked) == 4


@pytest.mark.asyncio
async def test_fetch_guarded_errors(server):
    validator = FakeValidator()
    async with ClientSession() as session:
        with pytest.raises(BlockedURLError) as blocked:
            await fetch_guarded(session, url_for(server, "/bounce"), validate=validator.validate_for_proxy)
        assert blocked.value.reason == "Resolves to private IP"

        with pytest.raises(FetchError) as too_big:
            await fetch_guarded(session, url_for(server, "/big.png"), validate=validator.validate_for_proxy,
                                max_bytes=1024)
        assert too_big.value.category == "Response too large"

        with pytest.raises(ContentTypeError) as wrong_type:
            await fetch_guarded(session, url_for(server, "/page.html"), validate=validator.validate_for_proxy,
                                accept_content_type=lambda ct: ct.startswith("image/"))
        assert wrong_type.value.content_type == "text/html"

        resource = await fetch_guarded(session, url_for(server, "/redirect"), validate=validator.validate_for_proxy)
        assert resource.ok
        assert resource.url == url_for(server, "/image.png")
        assert resource.content_type == "image/png"
