import pytest

from dns_cache import ResolutionCache
from url_validator import (
    REASON_BLOCKED_HOSTNAME,
    REASON_BLOCKED_PATTERN,
    REASON_INVALID_PROTOCOL,
    REASON_INVALID_URL,
    REASON_LOOPBACK,
    REASON_PRIVATE_IP,
    REASON_RESOLVES_PRIVATE,
    URLValidator,
    extract_hostname,
)


class FakeResolver:
    """Stands in for aiohttp's ThreadedResolver."""

    def __init__(self, answers=None, fail=False):
        self.answers = answers or {}
        self.fail = fail
        self.calls = []

    async def resolve(self, host, port=0, family=0):
        self.calls.append(host)
        if self.fail or host not in self.answers:
            raise OSError(f"cannot resolve {host}")
        return [{"hostname": host, "host": ip, "port": port} for ip in self.answers[host]]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_validator(answers=None, fail=False, clock=None, ttl=300):
    resolver = FakeResolver(answers, fail)
    cache = ResolutionCache(max_size=100, clock=clock or FakeClock())
    return URLValidator(cache=cache, resolver=resolver, cache_ttl=ttl), resolver


@pytest.mark.asyncio
@pytest.mark.parametrize("url,reason", [
    ("ftp://example.com/file", REASON_INVALID_PROTOCOL),
    ("file:///etc/passwd", REASON_INVALID_PROTOCOL),
    ("not a url", REASON_INVALID_URL),
    ("http://", REASON_INVALID_URL),
    ("http://example.com:notaport/", REASON_INVALID_URL),
    ("http://localhost:8080/", REASON_BLOCKED_HOSTNAME),
    ("http://127.0.0.1/", REASON_BLOCKED_HOSTNAME),
    ("http://0.0.0.0/", REASON_BLOCKED_HOSTNAME),
    ("http://[::1]/", REASON_BLOCKED_HOSTNAME),
    ("http://169.254.169.254/latest/meta-data", REASON_BLOCKED_HOSTNAME),
    ("http://metadata.google.internal/", REASON_BLOCKED_HOSTNAME),
    ("http://printer.local/", REASON_BLOCKED_PATTERN),
    ("http://app.localhost/", REASON_BLOCKED_PATTERN),
    ("http://metadata.example.com/", REASON_BLOCKED_PATTERN),
    ("http://10.0.0.5/", REASON_PRIVATE_IP),
    ("http://192.168.1.10:8080/x", REASON_PRIVATE_IP),
    ("http://2130706433/", REASON_BLOCKED_HOSTNAME),
])
async def test_strict_policy_rejections(url, reason):
    validator, _ = make_validator()
    verdict = await validator.validate_for_proxy(url)
    assert verdict.safe is False
    assert verdict.reason == reason


@pytest.mark.asyncio
async def test_strict_policy_rejects_hostname_resolving_private():
    validator, _ = make_validator({"internal.example.com": ["10.0.0.7"]})
    verdict = await validator.validate_for_proxy("https://internal.example.com/a.png")
    assert verdict.safe is False
    assert verdict.reason == REASON_RESOLVES_PRIVATE


@pytest.mark.asyncio
async def test_strict_policy_accepts_public_host():
    validator, _ = make_validator({"cdn.example.com": ["93.184.216.34"]})
    verdict = await validator.validate_for_proxy("https://cdn.example.com/a.png")
    assert verdict.safe is True
    assert verdict.reason is None
    assert verdict.warning is None


@pytest.mark.asyncio
async def test_public_ip_literal_is_safe_without_dns():
    validator, resolver = make_validator()
    verdict = await validator.validate_for_proxy("http://93.184.216.34/img.png")
    assert verdict.safe is True
    assert resolver.calls == []


@pytest.mark.asyncio
async def test_dns_failure_is_treated_as_safe():
    validator, _ = make_validator(fail=True)
    assert (await validator.validate_for_proxy("https://nxdomain.example/")).safe is True
    assert (await validator.validate_for_feed("https://nxdomain.example/")).safe is True
    # Failures are not cached
    assert "nxdomain.example" not in validator.cache


@pytest.mark.asyncio
@pytest.mark.parametrize("url,reason", [
    ("gopher://example.com/", REASON_INVALID_PROTOCOL),
    ("http://localhost/", REASON_BLOCKED_HOSTNAME),
    ("http://127.0.0.1/feed", REASON_BLOCKED_HOSTNAME),
    ("http://169.254.169.254/", REASON_BLOCKED_HOSTNAME),
    ("http://metadata.internal.example/", REASON_BLOCKED_HOSTNAME),
    ("http://nas.local/rss", REASON_BLOCKED_PATTERN),
    ("http://127.0.0.2/rss", REASON_LOOPBACK),
    ("http://[::1]/rss", REASON_LOOPBACK),
])
async def test_permissive_policy_rejections(url, reason):
    validator, _ = make_validator()
    verdict = await validator.validate_for_feed(url)
    assert verdict.safe is False
    assert verdict.reason == reason


@pytest.mark.asyncio
async def test_permissive_policy_allows_private_literal_with_warning():
    validator, _ = make_validator()
    verdict = await validator.validate_for_feed("http://192.168.1.10:8080/rss")
    assert verdict.safe is True
    assert verdict.warning == REASON_PRIVATE_IP
    assert verdict.to_dict() == {"safe": True, "warning": REASON_PRIVATE_IP}


@pytest.mark.asyncio
async def test_permissive_policy_allows_private_resolution_with_warning():
    validator, _ = make_validator({"home.example.net": ["10.0.0.8"]})
    verdict = await validator.validate_for_feed("http://home.example.net/feed.xml")
    assert verdict.safe is True
    assert verdict.warning == REASON_RESOLVES_PRIVATE


@pytest.mark.asyncio
async def test_mixed_answers_are_judged_by_the_private_one():
    validator, _ = make_validator({"mixed.example.com": ["93.184.216.34", "10.0.0.1"]})
    verdict = await validator.validate_for_proxy("http://mixed.example.com/")
    assert verdict.safe is False
    assert validator.cache.get("mixed.example.com").ip == "10.0.0.1"


@pytest.mark.asyncio
async def test_resolution_is_cached_until_ttl():
    clock = FakeClock(1000.0)
    validator, resolver = make_validator({"example.com": ["93.184.216.34"]}, clock=clock, ttl=300)

    await validator.validate_for_proxy("https://example.com/a")
    await validator.validate_for_feed("https://example.com/b")
    assert resolver.calls == ["example.com"]

    clock.now = 1300.0
    await validator.validate_for_proxy("https://example.com/c")
    assert resolver.calls == ["example.com", "example.com"]


@pytest.mark.asyncio
async def test_clean_cache_sweeps_expired_entries():
    clock = FakeClock(1000.0)
    validator, _ = make_validator({"example.com": ["93.184.216.34"]}, clock=clock, ttl=300)
    await validator.validate_for_proxy("https://example.com/")
    assert len(validator.cache) == 1

    clock.now = 1400.0
    assert validator.clean_cache() == 1
    assert len(validator.cache) == 0


@pytest.mark.asyncio
async def test_non_string_input_is_invalid():
    validator, _ = make_validator()
    verdict = await validator.validate_for_proxy(None)
    assert verdict.safe is False
    assert verdict.reason == REASON_INVALID_URL


def test_extract_hostname_normalizes_case_and_trailing_dot():
    assert extract_hostname("HTTPS://Example.COM./path") == ("https", "example.com")
    assert extract_hostname("no scheme here") == (None, None)
