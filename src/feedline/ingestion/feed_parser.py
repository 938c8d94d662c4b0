"""Streaming RSS/Atom parser for podcast feeds.

Walks the XML event stream once, routing element text into either the
current item's scratch fields or the feed-level fields. RSS and Atom
vocabularies feed the same slots. Parsing can stop after the first N
playable episodes so large backlogs can be peeked cheaply.
"""

import html
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from io import BytesIO

import structlog
from lxml import etree

from feedline.errors import EmptyFeed, MalformedXML, NotAFeed
from feedline.models import (
    UNTITLED_EPISODE,
    ParsedEpisode,
    ParsedFeed,
    ParseResult,
    Transcript,
)

logger = structlog.get_logger(__name__)

# Canonical prefixes for well-known namespaces, whatever prefix the document declares.
# Atom maps to no prefix so its elements share the RSS names.
NAMESPACE_PREFIXES = {
    "http://www.itunes.com/dtds/podcast-1.0.dtd": "itunes",
    "http://www.itunes.com/dtds/podcast-1.0.dtd/": "itunes",
    "https://podcastindex.org/namespace/1.0": "podcast",
    "http://podcastindex.org/namespace/1.0": "podcast",
    "https://github.com/Podcastindex-org/podcast-namespace/blob/main/docs/1.0.md": "podcast",
    "http://search.yahoo.com/mrss/": "media",
    "http://purl.org/rss/1.0/modules/content/": "content",
    "http://purl.org/dc/elements/1.1/": "dc",
    "http://www.w3.org/2005/Atom": "",
    "http://purl.org/atom/ns#": "",
}

ITEM_ELEMENTS = frozenset({"item", "entry"})

DATE_FORMATS = (
    "%a, %d %b %Y %H:%M:%S %z",
    None,  # RFC-822 with a zone name, handled by email.utils
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
)

_BLOCK_TAG_RE = re.compile(r"<\s*/?\s*(?:br|p|div|li|ul|ol|h[1-6]|tr|blockquote)\b[^>]*>", re.I)
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


def clean_html(text: str | None) -> str | None:
    """Strip tags and entities from HTML, normalizing whitespace."""
    if not text:
        return text
    clean = _BLOCK_TAG_RE.sub(" ", text)
    clean = _TAG_RE.sub("", clean)
    clean = html.unescape(clean)
    return _WHITESPACE_RE.sub(" ", clean).strip()


def parse_duration(text: str | None) -> int | None:
    """Parse an iTunes duration (SS, MM:SS or HH:MM:SS) into seconds."""
    if not text:
        return None
    parts = text.strip().split(":")
    if len(parts) > 3:
        return None
    try:
        values = [int(p) for p in parts[:-1]] + [int(float(parts[-1]))]
    except (ValueError, OverflowError):
        return None
    if any(v < 0 for v in values):
        return None

    total = 0
    for value in values:
        total = total * 60 + value
    return total


def parse_date(text: str | None) -> datetime | None:
    """Parse a feed date, trying each known format in order."""
    if not text:
        return None
    text = text.strip()
    for fmt in DATE_FORMATS:
        try:
            if fmt is None:
                parsed = parsedate_to_datetime(text)
            else:
                parsed = datetime.strptime(text, fmt)
        except (TypeError, ValueError, IndexError):
            continue
        if parsed is None:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
    return None


def parse_explicit(text: str | None) -> bool | None:
    value = (text or "").strip().lower()
    if value in ("true", "yes", "explicit"):
        return True
    if value in ("false", "no", "clean"):
        return False
    return None


def _safe_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def _element_name(elem: etree._Element) -> str | None:
    """Lowercase ``prefix:local`` name for an element, or None for non-elements."""
    tag = elem.tag
    if not isinstance(tag, str):
        return None
    qname = etree.QName(tag)
    local = qname.localname.lower()
    if qname.namespace is None:
        return local
    prefix = NAMESPACE_PREFIXES.get(qname.namespace)
    if prefix is None:
        prefix = (elem.prefix or "").lower()
    return f"{prefix}:{local}" if prefix else local


def _text(elem: etree._Element) -> str:
    return "".join(elem.itertext()).strip()


def _inner_markup(elem: etree._Element) -> str:
    """Element content with any embedded markup preserved."""
    if len(elem) == 0:
        return (elem.text or "").strip()
    parts = [elem.text or ""]
    parts.extend(etree.tostring(child, encoding="unicode") for child in elem)
    return "".join(parts).strip()


def _is_audio(mime_type: str | None) -> bool:
    return bool(mime_type) and mime_type.lower().startswith("audio/")


@dataclass
class _ItemScratch:
    guid: str | None = None
    title: str | None = None
    description: str | None = None
    content_html: str | None = None
    audio_url: str | None = None
    mime_type: str | None = None
    file_size: int | None = None
    duration_seconds: int | None = None
    published_at: datetime | None = None
    image_url: str | None = None
    episode_number: int | None = None
    season_number: int | None = None
    episode_type: str | None = None
    link: str | None = None
    explicit: bool | None = None
    subtitle: str | None = None
    author: str | None = None
    chapters_url: str | None = None
    transcripts: list[Transcript] = field(default_factory=list)

    def to_episode(self) -> ParsedEpisode:
        return ParsedEpisode(
            guid=self.guid or self.audio_url,
            title=self.title or UNTITLED_EPISODE,
            description=self.description,
            content_html=self.content_html,
            audio_url=self.audio_url,
            mime_type=self.mime_type,
            file_size=self.file_size,
            duration_seconds=self.duration_seconds,
            published_at=self.published_at,
            image_url=self.image_url,
            episode_number=self.episode_number,
            season_number=self.season_number,
            episode_type=self.episode_type,
            link=self.link,
            explicit=self.explicit,
            subtitle=self.subtitle,
            author=self.author,
            chapters_url=self.chapters_url,
            transcripts=self.transcripts,
        )


@dataclass
class _FeedScratch:
    title: str | None = None
    author: str | None = None
    description: str | None = None
    html_description: str | None = None
    artwork_url: str | None = None
    image_url: str | None = None
    logo_url: str | None = None
    homepage_url: str | None = None
    language: str | None = None
    show_type: str | None = None
    copyright: str | None = None
    owner_name: str | None = None
    owner_email: str | None = None
    explicit: bool | None = None
    subtitle: str | None = None
    funding_url: str | None = None
    categories: list[str] = field(default_factory=list)


def _set_once(target: object, attr: str, value: object) -> None:
    """First non-empty value wins."""
    if getattr(target, attr) is None and value not in (None, ""):
        setattr(target, attr, value)


@dataclass
class _ParseState:
    """Mutable state owned by a single parse call."""

    max_episodes: int | None = None
    inside_item: bool = False
    item: _ItemScratch = field(default_factory=_ItemScratch)
    feed: _FeedScratch = field(default_factory=_FeedScratch)
    episodes: list[ParsedEpisode] = field(default_factory=list)
    skipped_items: int = 0
    in_image: bool = False
    in_owner: bool = False
    in_author: bool = False
    owner_name: str | None = None
    owner_email: str | None = None

    @property
    def limit_reached(self) -> bool:
        return self.max_episodes is not None and len(self.episodes) >= self.max_episodes

    # -- start events ------------------------------------------------------

    def start(self, name: str, attrs: etree._Attrib) -> None:
        if name in ITEM_ELEMENTS:
            self.inside_item = True
            self.item = _ItemScratch()
            return
        if name == "author":
            self.in_author = True
        if self.inside_item:
            self._start_item_element(name, attrs)
        else:
            self._start_feed_element(name, attrs)

    def _start_item_element(self, name: str, attrs: etree._Attrib) -> None:
        item = self.item
        if name == "enclosure":
            url = (attrs.get("url") or "").strip()
            if url:
                item.audio_url = url
                item.mime_type = attrs.get("type")
                item.file_size = _safe_int(attrs.get("length"))
        elif name == "media:content":
            mime_type = attrs.get("type")
            url = (attrs.get("url") or "").strip()
            if item.audio_url is None and url and _is_audio(mime_type):
                item.audio_url = url
                item.mime_type = mime_type
                item.file_size = _safe_int(attrs.get("filesize"))
        elif name == "link":
            href = (attrs.get("href") or "").strip()
            rel = attrs.get("rel", "alternate")
            if not href:
                return
            if rel == "enclosure":
                if item.audio_url is None and _is_audio(attrs.get("type")):
                    item.audio_url = href
                    item.mime_type = attrs.get("type")
                    item.file_size = _safe_int(attrs.get("length"))
            elif rel == "alternate":
                _set_once(item, "link", href)
        elif name == "itunes:image":
            _set_once(item, "image_url", (attrs.get("href") or "").strip())
        elif name == "podcast:transcript":
            transcript = Transcript(
                url=attrs.get("url"), type=attrs.get("type"), language=attrs.get("language")
            )
            if transcript.url or transcript.type or transcript.language:
                item.transcripts.append(transcript)
        elif name == "podcast:chapters":
            _set_once(item, "chapters_url", (attrs.get("url") or "").strip())

    def _start_feed_element(self, name: str, attrs: etree._Attrib) -> None:
        feed = self.feed
        if name == "image":
            self.in_image = True
        elif name == "itunes:image":
            _set_once(feed, "artwork_url", (attrs.get("href") or "").strip())
        elif name == "itunes:owner":
            self.in_owner = True
            self.owner_name = None
            self.owner_email = None
        elif name == "itunes:category":
            text = (attrs.get("text") or "").strip()
            if text and text not in feed.categories:
                feed.categories.append(text)
        elif name == "podcast:funding":
            _set_once(feed, "funding_url", (attrs.get("url") or "").strip())
        elif name == "link":
            href = (attrs.get("href") or "").strip()
            if href and attrs.get("rel", "alternate") == "alternate":
                _set_once(feed, "homepage_url", href)

    # -- end events --------------------------------------------------------

    def end(self, name: str, elem: etree._Element) -> bool:
        """Handle an element close. Returns True when parsing should stop."""
        if name == "author":
            self.in_author = False
        if self.inside_item:
            if name in ITEM_ELEMENTS:
                return self._finish_item()
            self._end_item_element(name, elem)
        else:
            self._end_feed_element(name, elem)
        return False

    def _finish_item(self) -> bool:
        self.inside_item = False
        if not self.item.audio_url:
            self.skipped_items += 1
            return False
        self.episodes.append(self.item.to_episode())
        return self.limit_reached

    def _end_item_element(self, name: str, elem: etree._Element) -> None:
        item = self.item
        text = _text(elem)
        if name in ("guid", "id"):
            if text:
                item.guid = text
        elif name == "title":
            _set_once(item, "title", text)
        elif name in ("description", "summary", "itunes:summary"):
            _set_once(item, "description", clean_html(text))
        elif name in ("content:encoded", "content"):
            markup = _inner_markup(elem)
            if markup and (item.content_html is None or len(markup) > len(item.content_html)):
                item.content_html = markup
            stripped = clean_html(markup)
            if stripped and (item.description is None or len(stripped) > len(item.description)):
                item.description = stripped
        elif name in ("pubdate", "published", "dc:date", "updated"):
            if item.published_at is None:
                item.published_at = parse_date(text)
        elif name == "itunes:duration":
            item.duration_seconds = parse_duration(text)
        elif name == "itunes:episode":
            item.episode_number = _safe_int(text)
        elif name == "itunes:season":
            item.season_number = _safe_int(text)
        elif name == "itunes:episodetype":
            _set_once(item, "episode_type", text)
        elif name == "link":
            if len(elem) == 0 and elem.get("href") is None:
                _set_once(item, "link", text)
        elif name == "itunes:explicit":
            item.explicit = parse_explicit(text)
        elif name == "itunes:subtitle":
            _set_once(item, "subtitle", text)
        elif name in ("itunes:author", "author", "dc:creator"):
            if len(elem) == 0:
                _set_once(item, "author", text)
        elif name == "name" and self.in_author:
            _set_once(item, "author", text)

    def _end_feed_element(self, name: str, elem: etree._Element) -> None:
        feed = self.feed
        if self.in_image:
            if name == "image":
                self.in_image = False
            elif name == "url":
                _set_once(feed, "image_url", _text(elem))
            return

        text = _text(elem)
        if name == "title":
            _set_once(feed, "title", text)
        elif name in ("itunes:author", "author", "dc:creator"):
            if len(elem) == 0:
                _set_once(feed, "author", text)
        elif name == "name" and self.in_author:
            _set_once(feed, "author", text)
        elif name in ("description", "itunes:summary", "subtitle"):
            _set_once(feed, "description", clean_html(text))
        elif name == "content:encoded":
            markup = _inner_markup(elem)
            _set_once(feed, "html_description", markup)
            _set_once(feed, "description", clean_html(markup))
        elif name == "itunes:subtitle":
            _set_once(feed, "subtitle", text)
        elif name == "link":
            if len(elem) == 0 and elem.get("href") is None:
                _set_once(feed, "homepage_url", text)
        elif name == "language":
            _set_once(feed, "language", text)
        elif name in ("copyright", "rights"):
            _set_once(feed, "copyright", text)
        elif name == "itunes:type":
            _set_once(feed, "show_type", text)
        elif name == "itunes:explicit":
            if feed.explicit is None:
                feed.explicit = parse_explicit(text)
        elif name in ("logo", "icon"):
            _set_once(feed, "logo_url", text)
        elif name == "itunes:name" and self.in_owner:
            self.owner_name = text or None
        elif name == "itunes:email" and self.in_owner:
            self.owner_email = text or None
        elif name == "itunes:owner":
            self.in_owner = False
            if feed.owner_name is None and feed.owner_email is None:
                feed.owner_name = self.owner_name
                feed.owner_email = self.owner_email

    def build_feed(self) -> ParsedFeed:
        feed = self.feed
        return ParsedFeed(
            title=feed.title or "",
            author=feed.author,
            description=feed.description,
            html_description=feed.html_description,
            artwork_url=feed.artwork_url or feed.image_url or feed.logo_url,
            homepage_url=feed.homepage_url,
            language=feed.language,
            show_type=feed.show_type,
            copyright=feed.copyright,
            owner_name=feed.owner_name,
            owner_email=feed.owner_email,
            explicit=feed.explicit,
            subtitle=feed.subtitle,
            funding_url=feed.funding_url,
            categories=feed.categories,
            episodes=self.episodes,
        )


class FeedParser:
    """Parses podcast feed bytes into a ParsedFeed.

    Stateless between calls; every ``parse`` owns its own state, so one
    instance can be shared across tasks and threads.
    """

    def __init__(self) -> None:
        self.logger = logger.bind(component="feed_parser")

    def parse(self, data: bytes, max_episodes: int | None = None) -> ParseResult:
        """Parse a feed document.

        Args:
            data: Raw feed bytes.
            max_episodes: Stop after this many playable episodes.

        Returns:
            ParseResult: The feed and whether the episode limit was hit.

        Raises:
            EmptyFeed: If the document is empty.
            MalformedXML: If the XML is broken before parsing stopped.
            NotAFeed: If no feed title was found.
        """
        if not data or not data.strip():
            raise EmptyFeed("Feed document is empty")
        if max_episodes is not None and max_episodes < 1:
            raise ValueError("max_episodes must be at least 1")

        state = _ParseState(max_episodes=max_episodes)
        has_more = False
        events = etree.iterparse(
            BytesIO(data),
            events=("start", "end"),
            resolve_entities=False,
            no_network=True,
            huge_tree=True,
        )

        try:
            for event, elem in events:
                name = _element_name(elem)
                if name is None:
                    continue
                if event == "start":
                    state.start(name, elem.attrib)
                    continue

                stop = state.end(name, elem)
                if name in ITEM_ELEMENTS:
                    _release(elem)
                if stop:
                    has_more = True
                    break
        except etree.XMLSyntaxError as e:
            raise MalformedXML(f"Failed to parse feed XML: {e}") from e

        feed = state.build_feed()
        if not feed.title:
            raise NotAFeed("Document has no feed title")

        self.logger.debug(
            "Parsed feed",
            title=feed.title,
            episode_count=len(feed.episodes),
            skipped_items=state.skipped_items,
            has_more_episodes=has_more,
        )
        return ParseResult(feed=feed, has_more_episodes=has_more)


def _release(elem: etree._Element) -> None:
    """Free a finished item and its already-processed siblings."""
    elem.clear(keep_tail=True)
    parent = elem.getparent()
    if parent is None:
        return
    while elem.getprevious() is not None:
        del parent[0]
