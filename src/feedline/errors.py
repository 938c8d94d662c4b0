"""Exception hierarchy for feed ingestion.

Feed-level errors carry the offending URL so batch callers can log and
count them per feed without losing context.
"""


class FeedlineError(Exception):
    """Base class for all Feedline errors."""


class FeedError(FeedlineError):
    """A problem with one specific feed."""

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class InvalidURL(FeedError):
    """The feed URL cannot be used for fetching."""


class ParseError(FeedError):
    """The feed content could not be turned into a podcast."""


class NotAFeed(ParseError):
    """The document parsed but has no feed title."""


class MalformedXML(ParseError):
    """The underlying XML is not well formed."""


class EmptyFeed(ParseError):
    """The document is empty."""


class NetworkError(FeedError):
    """Transport failure or an HTTP status other than 200/304."""

    def __init__(
        self, message: str, url: str | None = None, status_code: int | None = None
    ) -> None:
        super().__init__(message, url=url)
        self.status_code = status_code


class MergeFailed(FeedError):
    """Storage rejected the merge of a parsed feed."""


class AlreadySubscribed(FeedError):
    """A feed with this URL is already in the catalog."""


class StorageError(FeedlineError):
    """Raised by catalog stores."""


class DuplicateEpisode(StorageError):
    """An episode with the same (feed_id, guid) already exists."""
