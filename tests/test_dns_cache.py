import pytest

from dns_cache import CacheEntry, ResolutionCache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _entry(host, ip="93.184.216.34", at=1000.0):
    return CacheEntry(hostname=host, ip=ip, resolved_at=at)


def test_get_set_roundtrip():
    cache = ResolutionCache(max_size=10)
    cache.set("example.com", _entry("example.com"))
    assert cache.get("example.com").ip == "93.184.216.34"
    assert cache.get("missing.example") is None
    assert "example.com" in cache
    assert len(cache) == 1


def test_set_same_host_keeps_single_entry():
    cache = ResolutionCache(max_size=10)
    cache.set("example.com", _entry("example.com", ip="1.1.1.1"))
    cache.set("example.com", _entry("example.com", ip="8.8.8.8"))
    assert len(cache) == 1
    assert cache.get("example.com").ip == "8.8.8.8"


def test_inserting_past_capacity_evicts_least_recently_used():
    cache = ResolutionCache(max_size=1000)
    for i in range(1001):
        cache.set(f"host{i}.example", _entry(f"host{i}.example"))
    assert len(cache) == 1000
    assert "host0.example" not in cache
    assert "host1000.example" in cache


def test_get_promotes_entry():
    cache = ResolutionCache(max_size=2)
    cache.set("a.example", _entry("a.example"))
    cache.set("b.example", _entry("b.example"))
    cache.get("a.example")
    cache.set("c.example", _entry("c.example"))
    assert "a.example" in cache
    assert "b.example" not in cache


def test_clean_expired_uses_age_not_recency():
    clock = FakeClock(now=1000.0)
    cache = ResolutionCache(max_size=10, clock=clock)
    cache.set("old.example", _entry("old.example", at=1000.0))
    cache.set("new.example", _entry("new.example", at=1200.0))

    clock.now = 1300.0
    # A recent hit does not protect an entry from the sweep
    cache.get("old.example")
    removed = cache.clean_expired(300)

    assert removed == 1
    assert "old.example" not in cache
    assert "new.example" in cache


def test_clean_expired_on_empty_cache():
    cache = ResolutionCache()
    assert cache.clean_expired(300) == 0


def test_clear():
    cache = ResolutionCache()
    cache.set("a.example", _entry("a.example"))
    cache.clear()
    assert len(cache) == 0


def test_max_size_must_be_positive():
    with pytest.raises(ValueError):
        ResolutionCache(max_size=0)
