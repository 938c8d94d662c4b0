"""In-memory catalog store with optional JSON snapshot persistence."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, ValidationError

from feedline.errors import DuplicateEpisode, StorageError
from feedline.models import EpisodeRecord, FeedSource, ParsedEpisode
from feedline.storage.base import CatalogStore, CatalogTransaction

logger = structlog.get_logger(__name__)


class CatalogSnapshot(BaseModel):
    """On-disk representation of the whole catalog."""

    feeds: list[FeedSource] = Field(default_factory=list)
    episodes: list[EpisodeRecord] = Field(default_factory=list)


@dataclass
class _CatalogState:
    feeds: dict[int, FeedSource] = field(default_factory=dict)
    episodes: dict[int, EpisodeRecord] = field(default_factory=dict)
    episode_keys: dict[tuple[int, str], int] = field(default_factory=dict)
    next_feed_id: int = 1
    next_episode_id: int = 1

    def copy(self) -> "_CatalogState":
        # Records are never mutated in place, so copying the indexes is enough.
        return _CatalogState(
            feeds=dict(self.feeds),
            episodes=dict(self.episodes),
            episode_keys=dict(self.episode_keys),
            next_feed_id=self.next_feed_id,
            next_episode_id=self.next_episode_id,
        )

    @classmethod
    def from_snapshot(cls, snapshot: CatalogSnapshot) -> "_CatalogState":
        state = cls()
        for feed in snapshot.feeds:
            state.feeds[feed.id] = feed
        for episode in snapshot.episodes:
            state.episodes[episode.id] = episode
            state.episode_keys[(episode.feed_id, episode.guid)] = episode.id
        state.next_feed_id = max(state.feeds, default=0) + 1
        state.next_episode_id = max(state.episodes, default=0) + 1
        return state

    def to_snapshot(self) -> CatalogSnapshot:
        return CatalogSnapshot(feeds=list(self.feeds.values()), episodes=list(self.episodes.values()))


def _publish_sort_key(episode: EpisodeRecord) -> tuple[bool, datetime | None, int]:
    return (episode.published_at is not None, episode.published_at, episode.id)


class _MemoryTransaction(CatalogTransaction):
    def __init__(self, state: _CatalogState, writable: bool) -> None:
        self._state = state
        self._writable = writable

    def _require_writable(self) -> None:
        if not self._writable:
            raise StorageError("Cannot write inside a read transaction")

    def get_feed(self, feed_id: int) -> FeedSource | None:
        feed = self._state.feeds.get(feed_id)
        return feed.model_copy(deep=True) if feed else None

    def get_feed_by_url(self, url: str) -> FeedSource | None:
        for feed in self._state.feeds.values():
            if feed.url == url:
                return feed.model_copy(deep=True)
        return None

    def list_feeds(self) -> list[FeedSource]:
        return [feed.model_copy(deep=True) for feed in self._state.feeds.values()]

    def insert_feed(self, feed: FeedSource) -> FeedSource:
        self._require_writable()
        if any(existing.url == feed.url for existing in self._state.feeds.values()):
            raise StorageError(f"Feed already exists: {feed.url}")
        stored = feed.model_copy(deep=True, update={"id": self._state.next_feed_id})
        self._state.next_feed_id += 1
        self._state.feeds[stored.id] = stored
        return stored.model_copy(deep=True)

    def update_feed(self, feed: FeedSource) -> None:
        self._require_writable()
        if feed.id is None or feed.id not in self._state.feeds:
            raise StorageError(f"Unknown feed: {feed.url}")
        self._state.feeds[feed.id] = feed.model_copy(deep=True)

    def episode_exists(self, feed_id: int, guid: str) -> bool:
        return (feed_id, guid) in self._state.episode_keys

    def insert_episode(self, feed_id: int, episode: ParsedEpisode) -> EpisodeRecord:
        self._require_writable()
        if feed_id not in self._state.feeds:
            raise StorageError(f"Unknown feed id: {feed_id}")
        key = (feed_id, episode.guid)
        if key in self._state.episode_keys:
            raise DuplicateEpisode(f"Episode {episode.guid!r} already exists for feed {feed_id}")
        record = EpisodeRecord.from_parsed(self._state.next_episode_id, feed_id, episode)
        self._state.next_episode_id += 1
        self._state.episodes[record.id] = record
        self._state.episode_keys[key] = record.id
        return record

    def list_episodes(self, feed_id: int) -> list[EpisodeRecord]:
        episodes = [e for e in self._state.episodes.values() if e.feed_id == feed_id]
        return sorted(episodes, key=_publish_sort_key, reverse=True)

    def episode_guids(self, feed_id: int) -> set[str]:
        return {guid for (owner, guid) in self._state.episode_keys if owner == feed_id}


class MemoryStore(CatalogStore):
    """Catalog held in memory, optionally mirrored to a JSON file.

    Writes are serialized with a lock and applied to a working copy that is
    only swapped in once the transaction block finishes without error and
    the snapshot, if any, has been written.
    Readers see the last committed state and never block.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path else None
        self._state = _CatalogState()
        self._write_lock = asyncio.Lock()
        self.logger = logger.bind(component="memory_store")
        if self.path and self.path.exists():
            self._state = self._load(self.path)

    def _load(self, path: Path) -> _CatalogState:
        try:
            snapshot = CatalogSnapshot.model_validate_json(path.read_bytes())
        except (OSError, ValidationError) as e:
            raise StorageError(f"Failed to load catalog from {path}: {e}") from e
        self.logger.info(
            "Loaded catalog",
            path=str(path),
            feeds=len(snapshot.feeds),
            episodes=len(snapshot.episodes),
        )
        return _CatalogState.from_snapshot(snapshot)

    def _save_state(self, state: _CatalogState) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp_path.write_text(state.to_snapshot().model_dump_json(indent=2))
            tmp_path.replace(self.path)
        except OSError as e:
            raise StorageError(f"Failed to save catalog to {self.path}: {e}") from e

    @asynccontextmanager
    async def read_transaction(self) -> AsyncIterator[CatalogTransaction]:
        yield _MemoryTransaction(self._state, writable=False)

    @asynccontextmanager
    async def write_transaction(self) -> AsyncIterator[CatalogTransaction]:
        async with self._write_lock:
            working = self._state.copy()
            yield _MemoryTransaction(working, writable=True)
            if self.path is not None:
                await asyncio.to_thread(self._save_state, working)
            self._state = working

    @property
    def feed_count(self) -> int:
        return len(self._state.feeds)

    @property
    def episode_count(self) -> int:
        return len(self._state.episodes)
