"""Per-feed refresh protocol.

A refresh is fetch -> parse -> merge for one feed. Conditional requests
and a body digest skip parsing when nothing changed, merges only ever add
episodes, and first loads are split in two: a few episodes in the
foreground, the backlog in a background task reusing the same bytes.
"""

import asyncio
from collections.abc import Iterable, Sequence

import structlog

from feedline.errors import (
    AlreadySubscribed,
    FeedError,
    MergeFailed,
    StorageError,
)
from feedline.ingestion.feed_parser import FeedParser
from feedline.ingestion.fetcher import FeedFetcher, FetchResult, content_hash, validate_feed_url
from feedline.models import (
    FeedSource,
    ParsedEpisode,
    ParsedFeed,
    ParseResult,
    RefreshOutcome,
    RefreshStatus,
    utcnow,
)
from feedline.storage.base import CatalogStore
from feedline.sync.pool import PoolResult, run_bounded
from feedline.tagging import EpisodeTagger, notify_in_background

logger = structlog.get_logger(__name__)


def prioritize(feeds: Iterable[FeedSource]) -> list[FeedSource]:
    """Priority feeds first, otherwise keeping the given order."""
    feeds = list(feeds)
    return [f for f in feeds if f.is_priority] + [f for f in feeds if not f.is_priority]


def _batches(episodes: Sequence[ParsedEpisode], size: int) -> Iterable[Sequence[ParsedEpisode]]:
    for start in range(0, len(episodes), size):
        yield episodes[start : start + size]


class FeedRefresher:
    """Keeps catalog feeds in sync with their remote documents."""

    def __init__(
        self,
        store: CatalogStore,
        fetcher: FeedFetcher | None = None,
        parser: FeedParser | None = None,
        tagger: EpisodeTagger | None = None,
        initial_episode_limit: int = 3,
        batch_size: int = 50,
        concurrency: int = 4,
    ) -> None:
        """Initialize the refresher.

        Args:
            store: Catalog store holding feeds and episodes.
            fetcher: HTTP fetcher; a default one is created when omitted.
            parser: Feed parser; a default one is created when omitted.
            tagger: Receives ids of newly inserted episodes.
            initial_episode_limit: Episodes merged in the foreground on first load.
            batch_size: Episodes per write transaction when loading a backlog.
            concurrency: Default parallelism for ``refresh_all``.
        """
        self.store = store
        self.fetcher = fetcher or FeedFetcher()
        self.parser = parser or FeedParser()
        self.tagger = tagger
        self.initial_episode_limit = initial_episode_limit
        self.batch_size = batch_size
        self.concurrency = concurrency
        self._refreshing = False
        self._background: set[asyncio.Task] = set()
        self.logger = logger.bind(component="feed_refresher")

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    @property
    def background_tasks(self) -> int:
        return len(self._background)

    # -- single feed ---------------------------------------------------------

    async def refresh_one(self, feed: FeedSource) -> RefreshOutcome:
        """Refresh one catalog feed.

        Feeds whose backlog never finished loading are fetched without cache
        validators and always re-merged, so the missing episodes get retried.

        Raises:
            InvalidURL: If the feed URL cannot be fetched.
            NetworkError: On transport failure or an unexpected status.
            ParseError: If the body is not a usable feed. Storage is untouched.
            MergeFailed: If storage rejects the merge.
        """
        feed_id = self._require_id(feed)
        log = self.logger.bind(feed_id=feed_id, url=feed.url)
        conditional = feed.is_fully_loaded

        fetched = await self.fetcher.fetch(
            feed.url,
            etag=feed.etag if conditional else None,
            last_modified=feed.last_modified if conditional else None,
        )
        if fetched.not_modified:
            await self._touch(feed_id)
            log.debug("Feed not modified")
            return RefreshOutcome(feed_id=feed_id, feed_url=feed.url, status=RefreshStatus.NOT_MODIFIED)

        digest = content_hash(fetched.body)
        if conditional and feed.content_hash == digest:
            await self._touch(feed_id)
            log.debug("Feed content unchanged", content_hash=digest)
            return RefreshOutcome(feed_id=feed_id, feed_url=feed.url, status=RefreshStatus.UNCHANGED)

        result = await self._parse(fetched.body, url=feed.url)
        stored, new_ids = await self._merge(
            feed, fetched, digest, result.feed, result.feed.episodes, fully_loaded=True
        )
        self._notify(new_ids)

        log.info("Feed refreshed", title=stored.title, new_episodes=len(new_ids))
        return RefreshOutcome(feed_id=feed_id, feed_url=feed.url, new_episode_ids=new_ids)

    # -- two-phase loads -----------------------------------------------------

    async def subscribe(self, url: str, is_priority: bool = False) -> FeedSource:
        """Add a feed to the catalog with its first few episodes.

        The rest of the backlog loads in the background from the same bytes.

        Raises:
            InvalidURL: If the URL cannot be fetched.
            AlreadySubscribed: If the URL is already in the catalog.
            NetworkError, ParseError, MergeFailed: As for ``refresh_one``.
        """
        url = validate_feed_url(url)
        async with self.store.read_transaction() as tx:
            if tx.get_feed_by_url(url) is not None:
                raise AlreadySubscribed(f"Already subscribed to {url}", url=url)

        feed = FeedSource(url=url, is_priority=is_priority)
        stored, _ = await self._load_initial(feed)
        return stored

    async def refresh_for_import(self, feed: FeedSource) -> RefreshOutcome:
        """Two-phase load of a feed that is in the catalog but not yet fetched."""
        self._require_id(feed)
        _, outcome = await self._load_initial(feed)
        return outcome

    async def _load_initial(self, feed: FeedSource) -> tuple[FeedSource, RefreshOutcome]:
        """Phase one: fetch, parse a short prefix, merge it, schedule phase two."""
        fetched = await self.fetcher.fetch(feed.url)
        digest = content_hash(fetched.body)
        result = await self._parse(
            fetched.body, url=feed.url, max_episodes=self.initial_episode_limit
        )
        stored, new_ids = await self._merge(
            feed,
            fetched,
            digest,
            result.feed,
            result.feed.episodes,
            fully_loaded=not result.has_more_episodes,
        )
        self._notify(new_ids)

        self.logger.info(
            "Initial episodes loaded",
            feed_id=stored.id,
            url=stored.url,
            title=stored.title,
            new_episodes=len(new_ids),
            has_more_episodes=result.has_more_episodes,
        )
        if result.has_more_episodes:
            self._track(asyncio.create_task(self._complete_backlog(stored, fetched.body)))

        outcome = RefreshOutcome(
            feed_id=stored.id,
            feed_url=stored.url,
            new_episode_ids=new_ids,
            has_more_episodes=result.has_more_episodes,
        )
        return stored, outcome

    async def load_backlog(self, feed: FeedSource, body: bytes) -> int:
        """Phase two: merge every episode of an already-fetched body.

        Inserts in batches of ``batch_size``, re-checking existence inside
        each batch, then marks the feed fully loaded.

        Returns:
            Number of episodes inserted.
        """
        feed_id = self._require_id(feed)
        result = await self._parse(body, url=feed.url)

        async with self.store.read_transaction() as tx:
            known = tx.episode_guids(feed_id)
        remaining = [e for e in result.feed.episodes if e.guid not in known]

        inserted = 0
        for batch in _batches(remaining, self.batch_size):
            new_ids = await self._insert_batch(feed_id, batch, url=feed.url)
            inserted += len(new_ids)
            self._notify(new_ids)

        try:
            async with self.store.write_transaction() as tx:
                stored = tx.get_feed(feed_id)
                if stored is None:
                    raise MergeFailed("Feed disappeared during backlog load", url=feed.url)
                stored.is_fully_loaded = True
                tx.update_feed(stored)
        except StorageError as e:
            raise MergeFailed(f"Failed to mark feed loaded: {e}", url=feed.url) from e

        self.logger.info(
            "Backlog loaded", feed_id=feed_id, url=feed.url, additional_episodes=inserted
        )
        return inserted

    async def _complete_backlog(self, feed: FeedSource, body: bytes) -> None:
        try:
            await self.load_backlog(feed, body)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The feed stays partially loaded; the next refresh retries.
            self.logger.error(
                "Backlog load failed", feed_id=feed.id, url=feed.url, error=str(e)
            )

    async def _insert_batch(
        self, feed_id: int, batch: Sequence[ParsedEpisode], url: str
    ) -> list[int]:
        new_ids: list[int] = []
        try:
            async with self.store.write_transaction() as tx:
                for episode in batch:
                    if tx.episode_exists(feed_id, episode.guid):
                        continue
                    new_ids.append(tx.insert_episode(feed_id, episode).id)
        except StorageError as e:
            raise MergeFailed(f"Failed to insert episodes: {e}", url=url) from e
        return new_ids

    # -- many feeds ----------------------------------------------------------

    async def refresh_all(
        self,
        feeds: Sequence[FeedSource] | None = None,
        max_feeds: int | None = None,
        concurrency: int | None = None,
    ) -> int:
        """Refresh many feeds with bounded parallelism.

        Priority feeds go first. A failing feed is logged and skipped; it
        never aborts the batch. A call made while another is running
        returns 0 without doing anything.

        Args:
            feeds: Feeds to refresh; every catalog feed when None.
            max_feeds: Refresh at most this many feeds.
            concurrency: Maximum refreshes in flight.

        Returns:
            Total number of new episodes.
        """
        if self._refreshing:
            self.logger.warning("Refresh already in progress, skipping")
            return 0

        self._refreshing = True
        try:
            if feeds is None:
                async with self.store.read_transaction() as tx:
                    feeds = tx.list_feeds()
            ordered = prioritize(feeds)
            if max_feeds is not None:
                ordered = ordered[:max_feeds]

            self.logger.info("Refreshing feeds", count=len(ordered))
            results = await run_bounded(
                ordered,
                self.refresh_one,
                concurrency or self.concurrency,
                on_result=self._log_failure,
            )
        finally:
            self._refreshing = False

        total = sum(r.value.new_episode_count for r in results if r.ok)
        failed = sum(1 for r in results if not r.ok)
        self.logger.info(
            "Refresh complete", feeds=len(results), failed=failed, new_episodes=total
        )
        return total

    def _log_failure(self, result: PoolResult[FeedSource, RefreshOutcome]) -> None:
        if result.ok:
            return
        self.logger.warning(
            "Failed to refresh feed",
            url=result.item.url,
            error=str(result.error),
            error_type=type(result.error).__name__,
        )

    # -- lifecycle -----------------------------------------------------------

    async def wait_for_background(self) -> None:
        """Wait for pending backlog loads and tagging notifications."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel background work and release the fetcher."""
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.fetcher.aclose()

    # -- helpers -------------------------------------------------------------

    def _require_id(self, feed: FeedSource) -> int:
        if feed.id is None:
            raise FeedError("Feed is not in the catalog", url=feed.url)
        return feed.id

    def _track(self, task: asyncio.Task | None) -> None:
        if task is None:
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _notify(self, episode_ids: list[int]) -> None:
        self._track(notify_in_background(self.tagger, episode_ids))

    async def _parse(
        self, body: bytes, url: str, max_episodes: int | None = None
    ) -> ParseResult:
        """Parse off the event loop; attach the URL to parser errors."""
        try:
            return await asyncio.to_thread(self.parser.parse, body, max_episodes)
        except FeedError as e:
            e.url = e.url or url
            raise

    async def _touch(self, feed_id: int) -> None:
        try:
            async with self.store.write_transaction() as tx:
                stored = tx.get_feed(feed_id)
                if stored is None:
                    return
                stored.last_refresh_at = utcnow()
                tx.update_feed(stored)
        except StorageError as e:
            raise MergeFailed(f"Failed to update refresh time: {e}") from e

    async def _merge(
        self,
        feed: FeedSource,
        fetched: FetchResult,
        digest: str,
        parsed: ParsedFeed,
        episodes: Sequence[ParsedEpisode],
        fully_loaded: bool,
    ) -> tuple[FeedSource, list[int]]:
        """Write feed metadata and any unseen episodes in one transaction.

        Inserts the feed first when it has no id yet.
        """
        new_ids: list[int] = []
        try:
            async with self.store.write_transaction() as tx:
                if feed.id is None:
                    if tx.get_feed_by_url(feed.url) is not None:
                        raise AlreadySubscribed(f"Already subscribed to {feed.url}", url=feed.url)
                    stored = tx.insert_feed(feed)
                else:
                    stored = tx.get_feed(feed.id)
                    if stored is None:
                        raise MergeFailed("Feed is no longer in the catalog", url=feed.url)

                stored.apply_parsed(parsed)
                stored.etag = fetched.etag
                stored.last_modified = fetched.last_modified
                stored.content_hash = digest
                stored.last_refresh_at = utcnow()
                stored.is_fully_loaded = fully_loaded

                for episode in episodes:
                    if tx.episode_exists(stored.id, episode.guid):
                        continue
                    new_ids.append(tx.insert_episode(stored.id, episode).id)
                tx.update_feed(stored)
        except StorageError as e:
            raise MergeFailed(f"Failed to merge feed: {e}", url=feed.url) from e
        return stored, new_ids
