"""Tests for the feed refresh protocol."""

import asyncio
from unittest.mock import patch

import pytest
from conftest import FEED_URL, FakeFeedServer, build_rss

from feedline.errors import (
    AlreadySubscribed,
    FeedError,
    InvalidURL,
    MalformedXML,
    MergeFailed,
    NetworkError,
    StorageError,
)
from feedline.ingestion.feed_parser import FeedParser
from feedline.ingestion.fetcher import FeedFetcher
from feedline.models import FeedSource, RefreshStatus
from feedline.storage import MemoryStore
from feedline.sync import FeedRefresher
from feedline.sync.refresher import prioritize


class CountingParser(FeedParser):
    """FeedParser that records the limit of every call."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[int | None] = []
        self.fail_full_parse = False

    def parse(self, data, max_episodes=None):
        self.calls.append(max_episodes)
        if self.fail_full_parse and max_episodes is None:
            raise MalformedXML("simulated backlog failure")
        return super().parse(data, max_episodes)


class RecordingTagger:
    def __init__(self) -> None:
        self.batches: list[list[int]] = []

    async def notify_new_episodes(self, episode_ids) -> None:
        self.batches.append(list(episode_ids))


class FailingTagger:
    async def notify_new_episodes(self, episode_ids) -> None:
        raise RuntimeError("tagging is down")


@pytest.fixture
def parser() -> CountingParser:
    return CountingParser()


@pytest.fixture
def tagger() -> RecordingTagger:
    return RecordingTagger()


@pytest.fixture
def counted(store: MemoryStore, fetcher: FeedFetcher, parser: CountingParser, tagger) -> FeedRefresher:
    return FeedRefresher(store, fetcher=fetcher, parser=parser, tagger=tagger, batch_size=4)


async def _stored_feed(store: MemoryStore, url: str = FEED_URL) -> FeedSource:
    async with store.read_transaction() as tx:
        return tx.get_feed_by_url(url)


class TestSubscribe:
    """Tests for subscribe and the two-phase first load."""

    @pytest.mark.asyncio
    async def test_small_feed_loads_fully(self, refresher, server: FakeFeedServer, store) -> None:
        server.publish(FEED_URL, build_rss(2))

        feed = await refresher.subscribe(FEED_URL)

        assert feed.id is not None
        assert feed.title == "Test Podcast"
        assert feed.is_fully_loaded is True
        assert store.episode_count == 2
        assert refresher.background_tasks == 0

    @pytest.mark.asyncio
    async def test_two_phase_load(self, refresher, server: FakeFeedServer, store) -> None:
        server.publish(FEED_URL, build_rss(10))

        feed = await refresher.subscribe(FEED_URL)

        # Only the first episodes are in before the backlog task runs
        assert store.episode_count == 3
        assert feed.is_fully_loaded is False

        await refresher.wait_for_background()

        assert store.episode_count == 10
        stored = await _stored_feed(store)
        assert stored.is_fully_loaded is True
        # The backlog reuses the first response
        assert server.request_count(FEED_URL) == 1

    @pytest.mark.asyncio
    async def test_backlog_inserted_in_batches(self, counted, server, tagger, store) -> None:
        server.publish(FEED_URL, build_rss(10))

        await counted.subscribe(FEED_URL)
        await counted.wait_for_background()

        # 3 up front, then the remaining 7 in batches of 4
        assert sorted(len(b) for b in tagger.batches) == [3, 3, 4]
        all_ids = [i for batch in tagger.batches for i in batch]
        assert len(set(all_ids)) == 10
        assert store.episode_count == 10

    @pytest.mark.asyncio
    async def test_backlog_failure_is_retried_by_refresh(self, counted, server, parser, store) -> None:
        server.publish(FEED_URL, build_rss(10), etag='"v1"')
        parser.fail_full_parse = True

        await counted.subscribe(FEED_URL)
        await counted.wait_for_background()

        feed = await _stored_feed(store)
        assert feed.is_fully_loaded is False
        assert store.episode_count == 3

        parser.fail_full_parse = False
        outcome = await counted.refresh_one(feed)

        assert outcome.status == RefreshStatus.UPDATED
        assert outcome.new_episode_count == 7
        # Partially loaded feeds are fetched without cache validators
        assert "If-None-Match" not in server.requests[-1].headers
        assert (await _stored_feed(store)).is_fully_loaded is True

    @pytest.mark.asyncio
    async def test_already_subscribed(self, refresher, server) -> None:
        server.publish(FEED_URL, build_rss(1))
        await refresher.subscribe(FEED_URL)

        with pytest.raises(AlreadySubscribed):
            await refresher.subscribe(FEED_URL)

    @pytest.mark.asyncio
    async def test_invalid_url(self, refresher, store) -> None:
        with pytest.raises(InvalidURL):
            await refresher.subscribe("feed.xml")
        assert store.feed_count == 0

    @pytest.mark.asyncio
    async def test_failed_fetch_adds_nothing(self, refresher, server, store) -> None:
        server.fail(FEED_URL, 500)
        with pytest.raises(NetworkError):
            await refresher.subscribe(FEED_URL)
        assert store.feed_count == 0

    @pytest.mark.asyncio
    async def test_priority_flag_kept(self, refresher, server) -> None:
        server.publish(FEED_URL, build_rss(1))
        feed = await refresher.subscribe(FEED_URL, is_priority=True)
        assert feed.is_priority is True


class TestRefreshOne:
    """Tests for refreshing a single catalog feed."""

    @pytest.mark.asyncio
    async def test_not_modified_skips_parse(self, counted, server, parser) -> None:
        server.publish(FEED_URL, build_rss(2), etag='"v1"')
        feed = await counted.subscribe(FEED_URL)
        parser.calls.clear()

        outcome = await counted.refresh_one(feed)

        assert outcome.status == RefreshStatus.NOT_MODIFIED
        assert outcome.new_episode_count == 0
        assert parser.calls == []
        assert server.requests[-1].headers["If-None-Match"] == '"v1"'

    @pytest.mark.asyncio
    async def test_same_body_skips_parse(self, counted, server, parser, store) -> None:
        server.publish(FEED_URL, build_rss(2))
        feed = await counted.subscribe(FEED_URL)
        parser.calls.clear()

        outcome = await counted.refresh_one(feed)

        assert outcome.status == RefreshStatus.UNCHANGED
        assert parser.calls == []
        assert store.episode_count == 2
        assert (await _stored_feed(store)).last_refresh_at >= feed.last_refresh_at

    @pytest.mark.asyncio
    async def test_new_episodes_added(self, refresher, server, store) -> None:
        server.publish(FEED_URL, build_rss(2))
        feed = await refresher.subscribe(FEED_URL)

        server.publish(FEED_URL, build_rss(4))
        outcome = await refresher.refresh_one(feed)

        assert outcome.status == RefreshStatus.UPDATED
        assert outcome.new_episode_count == 2
        assert store.episode_count == 4

    @pytest.mark.asyncio
    async def test_refresh_is_idempotent(self, refresher, server, store) -> None:
        server.publish(FEED_URL, build_rss(2))
        feed = await refresher.subscribe(FEED_URL)

        # Same episodes, different bytes
        server.publish(FEED_URL, build_rss(2, title="Renamed Podcast"))
        first = await refresher.refresh_one(feed)
        server.publish(FEED_URL, build_rss(2, title="Renamed Again"))
        second = await refresher.refresh_one(feed)

        assert first.new_episode_count == 0
        assert second.new_episode_count == 0
        assert store.episode_count == 2
        assert (await _stored_feed(store)).title == "Renamed Again"

    @pytest.mark.asyncio
    async def test_etag_updated_from_response(self, refresher, server, store) -> None:
        server.publish(FEED_URL, build_rss(1), etag='"v1"')
        feed = await refresher.subscribe(FEED_URL)
        server.publish(FEED_URL, build_rss(2), etag='"v2"')

        await refresher.refresh_one(feed)

        assert (await _stored_feed(store)).etag == '"v2"'

    @pytest.mark.asyncio
    async def test_parse_failure_leaves_catalog_untouched(self, refresher, server, store) -> None:
        server.publish(FEED_URL, build_rss(2))
        feed = await refresher.subscribe(FEED_URL)

        server.publish(FEED_URL, b"<rss><channel><title>Broken")
        with pytest.raises(MalformedXML) as exc_info:
            await refresher.refresh_one(feed)

        assert exc_info.value.url == FEED_URL
        stored = await _stored_feed(store)
        assert stored.content_hash == feed.content_hash
        assert stored.title == "Test Podcast"
        assert store.episode_count == 2

    @pytest.mark.asyncio
    async def test_unsaved_feed_rejected(self, refresher) -> None:
        with pytest.raises(FeedError, match="not in the catalog"):
            await refresher.refresh_one(FeedSource(url=FEED_URL))

    @pytest.mark.asyncio
    async def test_tagger_failure_does_not_fail_refresh(self, store, fetcher, server) -> None:
        refresher = FeedRefresher(store, fetcher=fetcher, tagger=FailingTagger())
        server.publish(FEED_URL, build_rss(2))

        feed = await refresher.subscribe(FEED_URL)
        await refresher.wait_for_background()

        assert feed.id is not None
        assert store.episode_count == 2

    @pytest.mark.asyncio
    async def test_failed_commit_adds_nothing(self, fetcher, server, tagger, tmp_path) -> None:
        store = MemoryStore(tmp_path / "catalog.json")
        refresher = FeedRefresher(store, fetcher=fetcher, tagger=tagger)
        server.publish(FEED_URL, build_rss(2))
        feed = await refresher.subscribe(FEED_URL)
        await refresher.wait_for_background()
        tagger.batches.clear()

        server.publish(FEED_URL, build_rss(4))
        with patch.object(store, "_save_state", side_effect=StorageError("disk full")):
            with pytest.raises(MergeFailed):
                await refresher.refresh_one(feed)
        await refresher.wait_for_background()

        assert store.episode_count == 2
        assert (await _stored_feed(store)).content_hash == feed.content_hash
        assert tagger.batches == []

        # The next refresh picks the new episodes up
        outcome = await refresher.refresh_one(feed)
        assert outcome.new_episode_count == 2


class TestRefreshAll:
    """Tests for refreshing many feeds."""

    async def _subscribe_many(self, refresher: FeedRefresher, server: FakeFeedServer, count: int) -> list[str]:
        urls = [f"https://feeds.example.com/{i}.xml" for i in range(count)]
        for url in urls:
            server.publish(url, build_rss(2, title=url))
            await refresher.subscribe(url)
        return urls

    @pytest.mark.asyncio
    async def test_partial_failure_counts_successes(self, refresher, server) -> None:
        urls = await self._subscribe_many(refresher, server, 3)
        server.publish(urls[0], build_rss(3, title="a"))
        server.fail(urls[1], 500)
        server.publish(urls[2], build_rss(4, title="c"))

        total = await refresher.refresh_all()

        assert total == 3
        assert refresher.is_refreshing is False

    @pytest.mark.asyncio
    async def test_bounded_concurrency(self, refresher, server) -> None:
        await self._subscribe_many(refresher, server, 6)
        server.delay = 0.02
        server.max_in_flight = 0

        await refresher.refresh_all(concurrency=2)

        assert server.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_max_feeds(self, refresher, server) -> None:
        urls = await self._subscribe_many(refresher, server, 4)
        before = len(server.requests)

        await refresher.refresh_all(max_feeds=2)

        refreshed = {str(r.url) for r in server.requests[before:]}
        assert refreshed == set(urls[:2])

    @pytest.mark.asyncio
    async def test_single_flight(self, refresher, server) -> None:
        await self._subscribe_many(refresher, server, 2)
        server.delay = 0.05

        running = asyncio.create_task(refresher.refresh_all())
        await asyncio.sleep(0.01)

        assert refresher.is_refreshing is True
        assert await refresher.refresh_all() == 0
        await running
        assert refresher.is_refreshing is False

    @pytest.mark.asyncio
    async def test_empty_catalog(self, refresher) -> None:
        assert await refresher.refresh_all() == 0

    @pytest.mark.asyncio
    async def test_cancel_merges_nothing(self, refresher, server, store) -> None:
        urls = await self._subscribe_many(refresher, server, 3)
        async with store.read_transaction() as tx:
            before = {feed.url: feed for feed in tx.list_feeds()}
        for url in urls:
            server.publish(url, build_rss(5, title="updated"))
        server.delay = 10

        running = asyncio.create_task(refresher.refresh_all(concurrency=2))
        await asyncio.sleep(0.05)
        assert server.in_flight == 2

        running.cancel()
        with pytest.raises(asyncio.CancelledError):
            await running

        assert refresher.is_refreshing is False
        assert server.in_flight == 0
        assert store.episode_count == 6
        async with store.read_transaction() as tx:
            for feed in tx.list_feeds():
                assert feed.content_hash == before[feed.url].content_hash
                assert feed.title == before[feed.url].title
                assert feed.last_refresh_at == before[feed.url].last_refresh_at


class TestPrioritize:
    """Tests for refresh ordering."""

    def test_priority_feeds_first(self) -> None:
        feeds = [
            FeedSource(url="https://example.com/a"),
            FeedSource(url="https://example.com/b", is_priority=True),
            FeedSource(url="https://example.com/c"),
            FeedSource(url="https://example.com/d", is_priority=True),
        ]
        assert [f.url[-1] for f in prioritize(feeds)] == ["b", "d", "a", "c"]
