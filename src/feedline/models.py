"""Data models shared by the parser, refresher and catalog stores.

Parsed* models are transient parser output. FeedSource and EpisodeRecord
are the persisted catalog records owned by the storage collaborator.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, computed_field

UNTITLED_EPISODE = "Untitled Episode"


def utcnow() -> datetime:
    return datetime.now(UTC)


class Transcript(BaseModel):
    """A transcript link attached to an episode."""

    url: str | None = None
    type: str | None = None
    language: str | None = None


class ParsedEpisode(BaseModel):
    """A single episode as read from a feed."""

    guid: str = Field(description="Feed GUID, or the audio URL when the feed has none")
    title: str = Field(default=UNTITLED_EPISODE, description="Episode title")
    description: str | None = Field(default=None, description="Plain-text description")
    content_html: str | None = Field(default=None, description="Original HTML show notes")
    audio_url: str = Field(description="URL of the audio enclosure")
    mime_type: str | None = Field(default=None, description="Enclosure MIME type")
    file_size: int | None = Field(default=None, description="Enclosure size in bytes")
    duration_seconds: int | None = Field(default=None, description="Episode duration in seconds")
    published_at: datetime | None = Field(default=None, description="Publication date")
    image_url: str | None = Field(default=None, description="Episode artwork URL")
    episode_number: int | None = None
    season_number: int | None = None
    episode_type: str | None = None
    link: str | None = None
    explicit: bool | None = None
    subtitle: str | None = None
    author: str | None = None
    chapters_url: str | None = None
    transcripts: list[Transcript] = Field(default_factory=list)


class ParsedFeed(BaseModel):
    """A podcast feed as read from raw bytes."""

    title: str = Field(description="Podcast title")
    author: str | None = None
    description: str | None = Field(default=None, description="Plain-text description")
    html_description: str | None = Field(default=None, description="Original HTML description")
    artwork_url: str | None = None
    homepage_url: str | None = None
    language: str | None = None
    show_type: str | None = Field(default=None, description="episodic or serial")
    copyright: str | None = None
    owner_name: str | None = None
    owner_email: str | None = None
    explicit: bool | None = None
    subtitle: str | None = None
    funding_url: str | None = None
    categories: list[str] = Field(default_factory=list)
    episodes: list[ParsedEpisode] = Field(default_factory=list)


class ParseResult(BaseModel):
    """Parser output: the feed plus whether the episode limit cut it short."""

    feed: ParsedFeed
    has_more_episodes: bool = False


class FeedSource(BaseModel):
    """A subscribed feed and its refresh cache state."""

    id: int | None = Field(default=None, description="Assigned by the store on insert")
    url: str = Field(description="Feed URL, unique per catalog")
    title: str = Field(default="", description="Podcast title")
    author: str | None = None
    description: str | None = None
    html_description: str | None = None
    artwork_url: str | None = None
    homepage_url: str | None = None
    language: str | None = None
    show_type: str | None = None
    copyright: str | None = None
    owner_name: str | None = None
    owner_email: str | None = None
    explicit: bool | None = None
    subtitle: str | None = None
    funding_url: str | None = None
    categories: list[str] = Field(default_factory=list)

    etag: str | None = Field(default=None, description="Last ETag response header")
    last_modified: str | None = Field(default=None, description="Last Last-Modified header")
    content_hash: str | None = Field(default=None, description="Digest of the last body")
    last_refresh_at: datetime | None = None
    is_fully_loaded: bool = Field(default=True, description="Whole backlog is in the catalog")
    is_priority: bool = Field(default=False, description="Refreshed ahead of other feeds")
    added_at: datetime = Field(default_factory=utcnow)

    def apply_parsed(self, parsed: ParsedFeed) -> None:
        """Copy feed-level metadata from a successful parse."""
        self.title = parsed.title
        self.author = parsed.author
        self.description = parsed.description
        self.html_description = parsed.html_description
        self.artwork_url = parsed.artwork_url
        self.homepage_url = parsed.homepage_url
        self.language = parsed.language
        self.show_type = parsed.show_type
        self.copyright = parsed.copyright
        self.owner_name = parsed.owner_name
        self.owner_email = parsed.owner_email
        self.explicit = parsed.explicit
        self.subtitle = parsed.subtitle
        self.funding_url = parsed.funding_url
        self.categories = list(parsed.categories)


class EpisodeRecord(ParsedEpisode):
    """A catalog episode. Identity is (feed_id, guid)."""

    id: int = Field(description="Catalog-assigned episode id")
    feed_id: int = Field(description="Owning FeedSource id")
    added_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_parsed(cls, episode_id: int, feed_id: int, parsed: ParsedEpisode) -> "EpisodeRecord":
        return cls(id=episode_id, feed_id=feed_id, **parsed.model_dump())


class RefreshStatus(str, Enum):
    UPDATED = "updated"
    NOT_MODIFIED = "not_modified"
    UNCHANGED = "unchanged"


class RefreshOutcome(BaseModel):
    """Result of refreshing one feed."""

    feed_id: int
    feed_url: str
    status: RefreshStatus = RefreshStatus.UPDATED
    new_episode_ids: list[int] = Field(default_factory=list)
    has_more_episodes: bool = False

    @computed_field
    @property
    def new_episode_count(self) -> int:
        return len(self.new_episode_ids)


class ImportProgress(BaseModel):
    """Live counters for one import batch."""

    total: int
    completed: int = 0
    failed: int = 0
    currently_active: int = 0
    current_feed: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.completed + self.failed >= self.total

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.completed / self.total
