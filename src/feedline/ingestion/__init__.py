"""Feed ingestion: fetching, feed parsing and OPML reading."""

from feedline.ingestion.feed_parser import FeedParser
from feedline.ingestion.fetcher import FeedFetcher, FetchResult, content_hash
from feedline.ingestion.opml import OPMLDocument, OPMLFeed, parse_opml

__all__ = [
    "FeedParser",
    "FeedFetcher",
    "FetchResult",
    "content_hash",
    "OPMLDocument",
    "OPMLFeed",
    "parse_opml",
]
