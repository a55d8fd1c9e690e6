import pytest

from telemetry import init_telemetry, trace_span


@trace_span("test.add", attr_from_args=lambda a, b: {"a": a, "b": b})
def add(a, b):
    """Adds."""
    return a + b


@trace_span("test.fail")
async def fail():
    raise ValueError("boom")


@trace_span("test.gen")
async def numbers():
    yield 1
    yield 2


def test_sync_wrapper_keeps_metadata_and_result():
    assert add(2, 3) == 5
    assert add.__name__ == "add"
    assert add.__doc__ == "Adds."
    assert add.__wrapped__(1, 1) == 2


@pytest.mark.asyncio
async def test_async_wrapper_reraises():
    with pytest.raises(ValueError, match="boom"):
        await fail()


@pytest.mark.asyncio
async def test_async_generators_are_left_alone():
    assert [n async for n in numbers()] == [1, 2]
    assert numbers.__qualname__ == "numbers"


def test_init_is_noop_when_disabled(monkeypatch):
    monkeypatch.setenv("DISABLE_TELEMETRY", "true")
    init_telemetry("feed-sentry-test")

    import telemetry
    assert telemetry._provider is None
