import pytest

from errors import FetchError
import youtube

CHANNEL_ID = "UC" + "a" * 22


async def never_called(url):
    raise AssertionError(f"unexpected fetch of {url}")


@pytest.mark.asyncio
async def test_feed_urls_pass_through():
    url = f"https://www.youtube.com/feeds/videos.xml?channel_id={CHANNEL_ID}"
    assert await youtube.convert_youtube_url(url, never_called) == url


@pytest.mark.asyncio
async def test_channel_path_maps_without_fetch():
    result = await youtube.convert_youtube_url(f"https://youtube.com/channel/{CHANNEL_ID}/videos", never_called)
    assert result == youtube.feed_url_for_channel(CHANNEL_ID)


@pytest.mark.asyncio
async def test_non_youtube_url_is_ignored():
    assert await youtube.convert_youtube_url("https://vimeo.com/channel/x", never_called) is None


@pytest.mark.asyncio
async def test_handle_page_is_scraped():
    async def fetch_page(url):
        assert url == "https://www.youtube.com/@someone"
        return '<script>var ytInitialData = {"externalId":"%s"};</script>' % CHANNEL_ID

    result = await youtube.convert_youtube_url("https://www.youtube.com/@someone", fetch_page)
    assert result == youtube.feed_url_for_channel(CHANNEL_ID)


@pytest.mark.asyncio
async def test_handle_page_without_id_raises():
    async def fetch_page(url):
        return "<html><head><title>nothing</title></head></html>"

    with pytest.raises(FetchError):
        await youtube.convert_youtube_url("https://www.youtube.com/c/custom", fetch_page)


def test_extract_channel_id_from_markup():
    meta = f'<html><head><meta itemprop="channelId" content="{CHANNEL_ID}"></head></html>'
    assert youtube.extract_channel_id(meta) == CHANNEL_ID

    canonical = f'<html><head><link rel="canonical" href="https://www.youtube.com/channel/{CHANNEL_ID}"></head></html>'
    assert youtube.extract_channel_id(canonical) == CHANNEL_ID

    assert youtube.extract_channel_id("<html></html>") is None


def test_video_helpers():
    assert youtube.extract_video_id("https://www.youtube.com/watch?v=abc123&t=5") == "abc123"
    assert youtube.extract_video_id("https://youtu.be/xyz789") == "xyz789"
    assert youtube.extract_video_id("https://example.com/watch?v=abc123") is None
    assert youtube.is_short("https://www.youtube.com/shorts/abc")
    assert not youtube.is_short(None)
    assert youtube.is_youtube_channel_url("https://www.youtube.com/@someone")
    assert not youtube.is_youtube_channel_url("https://www.youtube.com/feeds/videos.xml?channel_id=x")


def test_clean_description_caps_length():
    text = "word " * 200
    cleaned = youtube.clean_youtube_description(text)
    assert len(cleaned) <= youtube.DESCRIPTION_LIMIT + 3
    assert youtube.clean_youtube_description(None) == ""
    assert youtube.clean_youtube_description("Great talk @handle") == "Great talk"
