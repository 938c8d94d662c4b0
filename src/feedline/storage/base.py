"""Catalog storage interface.

The refresher only talks to storage through short read/write
transactions. Operations inside a transaction are synchronous; opening
and committing one is the suspension point.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager

from feedline.models import EpisodeRecord, FeedSource, ParsedEpisode


class CatalogTransaction(ABC):
    """Operations available inside a read or write transaction."""

    @abstractmethod
    def get_feed(self, feed_id: int) -> FeedSource | None:
        """Fetch a feed by id."""

    @abstractmethod
    def get_feed_by_url(self, url: str) -> FeedSource | None:
        """Fetch a feed by its unique URL."""

    @abstractmethod
    def list_feeds(self) -> list[FeedSource]:
        """All feeds, in insertion order."""

    @abstractmethod
    def insert_feed(self, feed: FeedSource) -> FeedSource:
        """Insert a new feed and return it with its assigned id."""

    @abstractmethod
    def update_feed(self, feed: FeedSource) -> None:
        """Replace the stored copy of an existing feed."""

    @abstractmethod
    def episode_exists(self, feed_id: int, guid: str) -> bool:
        """Whether (feed_id, guid) is already in the catalog."""

    @abstractmethod
    def insert_episode(self, feed_id: int, episode: ParsedEpisode) -> EpisodeRecord:
        """Insert an episode. Raises DuplicateEpisode if (feed_id, guid) exists."""

    @abstractmethod
    def list_episodes(self, feed_id: int) -> list[EpisodeRecord]:
        """Episodes of a feed, newest publish date first."""

    def episode_guids(self, feed_id: int) -> set[str]:
        return {episode.guid for episode in self.list_episodes(feed_id)}


class CatalogStore(ABC):
    """A feed/episode record store."""

    @abstractmethod
    def read_transaction(self) -> AbstractAsyncContextManager[CatalogTransaction]:
        """Open a read-only transaction."""

    @abstractmethod
    def write_transaction(self) -> AbstractAsyncContextManager[CatalogTransaction]:
        """Open a write transaction, committed only if the block succeeds."""
