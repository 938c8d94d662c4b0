"""Conditional HTTP fetching of feed documents.

Sends the stored cache validators so unchanged feeds come back as 304,
retries transient transport failures and maps everything else onto
NetworkError.
"""

import hashlib
from urllib.parse import urlparse

import httpx
import structlog
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from feedline import __version__
from feedline.errors import InvalidURL, NetworkError

logger = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = f"Feedline/{__version__}"

RETRYABLE_ERRORS = (httpx.TransportError,)


def content_hash(body: bytes) -> str:
    """Fast 64-bit digest of a feed body, used only for change detection."""
    return hashlib.blake2b(body, digest_size=8).hexdigest()


def validate_feed_url(url: str) -> str:
    """Return the stripped URL, or raise InvalidURL if it cannot be fetched."""
    candidate = (url or "").strip()
    parsed = urlparse(candidate)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidURL(f"Not a fetchable feed URL: {url!r}", url=url)
    return candidate


class FetchResult(BaseModel):
    """Outcome of a successful (200 or 304) fetch."""

    url: str
    status_code: int
    body: bytes = b""
    etag: str | None = None
    last_modified: str | None = None

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304


class FeedFetcher:
    """Fetches feed documents with conditional GET."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        max_attempts: int = 3,
    ) -> None:
        """Initialize the fetcher.

        Args:
            client: Shared async client; one is created lazily when omitted.
            timeout_seconds: HTTP request timeout.
            user_agent: User-Agent header sent with every request.
            max_attempts: Attempts per fetch for transient transport errors.
        """
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout_seconds
        self.user_agent = user_agent
        self.max_attempts = max_attempts
        self.logger = logger.bind(component="feed_fetcher")

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "FeedFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def fetch(
        self,
        url: str,
        etag: str | None = None,
        last_modified: str | None = None,
    ) -> FetchResult:
        """Fetch a feed, sending cache validators when known.

        Args:
            url: Feed URL.
            etag: Stored ETag, sent as If-None-Match.
            last_modified: Stored Last-Modified, sent as If-Modified-Since.

        Returns:
            FetchResult: Body and response validators (empty body on 304).

        Raises:
            InvalidURL: If the URL is not an absolute http(s) URL.
            NetworkError: On transport failure or any status besides 200/304.
        """
        url = validate_feed_url(url)
        headers = {"User-Agent": self.user_agent}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified

        try:
            response = await self._get_with_retry(url, headers)
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to fetch {url}: {e}", url=url) from e

        if response.status_code == 304:
            self.logger.debug("Feed not modified", url=url)
            return FetchResult(
                url=url,
                status_code=304,
                etag=response.headers.get("ETag", etag),
                last_modified=response.headers.get("Last-Modified", last_modified),
            )

        if response.status_code != 200:
            raise NetworkError(
                f"Unexpected HTTP status {response.status_code} for {url}",
                url=url,
                status_code=response.status_code,
            )

        self.logger.debug("Fetched feed", url=url, size_bytes=len(response.content))
        return FetchResult(
            url=url,
            status_code=200,
            body=response.content,
            etag=response.headers.get("ETag"),
            last_modified=response.headers.get("Last-Modified"),
        )

    async def _get_with_retry(self, url: str, headers: dict[str, str]) -> httpx.Response:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.client.get(url, headers=headers)
        raise AssertionError("unreachable")
