"""Bulk import of newly subscribed feeds.

Runs two-phase loads for a batch of feeds through a fixed-size worker
pool and exposes live progress that callers can poll while it runs.
"""

import time
from collections.abc import Sequence

import structlog

from feedline.ingestion.opml import parse_opml
from feedline.models import FeedSource, ImportProgress, RefreshOutcome
from feedline.sync.pool import PoolResult, run_bounded
from feedline.sync.refresher import FeedRefresher

logger = structlog.get_logger(__name__)

MAX_CONCURRENT_IMPORTS = 5


class ImportCoordinator:
    """Imports one batch of feeds at a time with bounded concurrency."""

    def __init__(self, refresher: FeedRefresher, max_concurrent: int = MAX_CONCURRENT_IMPORTS) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.refresher = refresher
        self.max_concurrent = max_concurrent
        self._progress: ImportProgress | None = None
        self._importing = False
        self.logger = logger.bind(component="import_coordinator")

    @property
    def is_importing(self) -> bool:
        return self._importing

    @property
    def progress(self) -> ImportProgress | None:
        """Snapshot of the running batch, or None when idle."""
        if self._progress is None:
            return None
        return self._progress.model_copy()

    async def import_feeds(self, feeds: Sequence[FeedSource]) -> ImportProgress | None:
        """Load a batch of catalog feeds.

        Starts up to ``max_concurrent`` loads and begins the next queued feed
        as each one finishes. Failures are counted, never raised. A call made
        while a batch is running returns None immediately.

        Returns:
            Final counters for the batch, or None if the call was skipped.
        """
        if self._importing:
            self.logger.warning("Import already in progress, skipping", requested=len(feeds))
            return None

        self._importing = True
        self._progress = ImportProgress(total=len(feeds))
        self.logger.info(
            "Starting import", total=len(feeds), max_concurrent=self.max_concurrent
        )
        started = time.monotonic()
        try:
            await run_bounded(
                list(feeds),
                self.refresher.refresh_for_import,
                self.max_concurrent,
                on_start=self._on_start,
                on_finish=self._on_finish,
                on_result=self._on_result,
            )
            final = self._progress.model_copy()
        finally:
            self._importing = False
            self._progress = None

        self.logger.info(
            "Import complete",
            completed=final.completed,
            failed=final.failed,
            duration_seconds=round(time.monotonic() - started, 1),
        )
        return final

    async def import_opml(self, data: bytes) -> ImportProgress | None:
        """Add every unknown feed from an OPML document and import them.

        Raises:
            MalformedXML: If the OPML is not well formed.
            EmptyFeed: If it lists no feeds.
        """
        if self._importing:
            self.logger.warning("Import already in progress, skipping OPML")
            return None

        document = parse_opml(data)
        added: list[FeedSource] = []
        async with self.refresher.store.write_transaction() as tx:
            for entry in document.feeds:
                if tx.get_feed_by_url(entry.feed_url) is not None:
                    continue
                added.append(
                    tx.insert_feed(
                        FeedSource(
                            url=entry.feed_url,
                            title=entry.title or "",
                            homepage_url=entry.homepage_url,
                            is_fully_loaded=False,
                        )
                    )
                )

        self.logger.info(
            "OPML read", listed=len(document.feeds), new=len(added), title=document.title
        )
        return await self.import_feeds(added)

    def _on_start(self, feed: FeedSource) -> None:
        self._progress.currently_active += 1
        self._progress.current_feed = feed.url

    def _on_finish(self, feed: FeedSource) -> None:
        self._progress.currently_active -= 1

    def _on_result(self, result: PoolResult[FeedSource, RefreshOutcome]) -> None:
        progress = self._progress
        if result.ok:
            progress.completed += 1
            self.logger.info(
                "Imported feed",
                url=result.item.url,
                new_episodes=result.value.new_episode_count,
                done=progress.completed + progress.failed,
                total=progress.total,
            )
        else:
            progress.failed += 1
            self.logger.warning(
                "Failed to import feed",
                url=result.item.url,
                error=str(result.error),
                error_type=type(result.error).__name__,
            )
