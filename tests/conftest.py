"""Pytest configuration and shared fixtures."""

import asyncio

import httpx
import pytest

from feedline.ingestion.fetcher import FeedFetcher
from feedline.storage import MemoryStore
from feedline.sync import FeedRefresher

FEED_URL = "https://example.com/feed.xml"

RSS_NAMESPACES = (
    'xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd" '
    'xmlns:content="http://purl.org/rss/1.0/modules/content/" '
    'xmlns:podcast="https://podcastindex.org/namespace/1.0"'
)


def rss_item(i: int) -> str:
    return f"""
    <item>
      <title>Episode {i}</title>
      <guid isPermaLink="false">guid-{i}</guid>
      <description>&lt;p&gt;Show notes for episode {i}&lt;/p&gt;</description>
      <pubDate>Mon, {i % 28 + 1:02d} Jan 2024 10:00:00 +0000</pubDate>
      <enclosure url="https://example.com/audio/ep{i}.mp3" type="audio/mpeg" length="{1000 + i}"/>
      <itunes:duration>00:30:{i % 60:02d}</itunes:duration>
    </item>"""


def build_rss(
    episodes: int = 3,
    title: str = "Test Podcast",
    first: int = 1,
    channel_extra: str = "",
    items: str | None = None,
) -> bytes:
    """Build an RSS podcast feed with numbered episodes."""
    body = items if items is not None else "".join(rss_item(i) for i in range(first, first + episodes))
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" {RSS_NAMESPACES}>
  <channel>
    <title>{title}</title>
    <link>https://example.com</link>
    <description>A show about testing.</description>
    <itunes:author>Test Author</itunes:author>
    <itunes:image href="https://example.com/art.jpg"/>
    <language>en-us</language>{channel_extra}{body}
  </channel>
</rss>""".encode()


class FakeFeedServer:
    """In-process HTTP server for feeds, honoring If-None-Match."""

    def __init__(self, delay: float = 0.0) -> None:
        self.feeds: dict[str, tuple[bytes, str | None]] = {}
        self.statuses: dict[str, int] = {}
        self.requests: list[httpx.Request] = []
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    def publish(self, url: str, body: bytes, etag: str | None = None) -> None:
        self.feeds[url] = (body, etag)
        self.statuses.pop(url, None)

    def fail(self, url: str, status: int = 500) -> None:
        self.statuses[url] = status

    def request_count(self, url: str) -> int:
        return sum(1 for r in self.requests if str(r.url) == url)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            url = str(request.url)
            if url in self.statuses:
                return httpx.Response(self.statuses[url])
            if url not in self.feeds:
                return httpx.Response(404)
            body, etag = self.feeds[url]
            headers = {"ETag": etag} if etag else {}
            if etag and request.headers.get("If-None-Match") == etag:
                return httpx.Response(304, headers=headers)
            return httpx.Response(200, content=body, headers=headers)
        finally:
            self.in_flight -= 1


@pytest.fixture
def server() -> FakeFeedServer:
    return FakeFeedServer()


@pytest.fixture
def fetcher(server: FakeFeedServer) -> FeedFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    return FeedFetcher(client=client, max_attempts=1)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def refresher(store: MemoryStore, fetcher: FeedFetcher) -> FeedRefresher:
    return FeedRefresher(store, fetcher=fetcher, initial_episode_limit=3, batch_size=50)
