"""Command-line interface for Feedline.

Provides commands for parsing feeds and keeping a local JSON catalog in sync.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from feedline.config import Settings, get_settings
from feedline.errors import FeedlineError
from feedline.ingestion import FeedFetcher, FeedParser
from feedline.logging import setup_logging
from feedline.storage import MemoryStore
from feedline.sync import FeedRefresher, ImportCoordinator
from feedline.tagging import LoggingTagger


def _format_duration(seconds: int | None) -> str:
    return f"{seconds // 60}m" if seconds else "N/A"


def _build_refresher(settings: Settings, store: MemoryStore) -> FeedRefresher:
    fetcher = FeedFetcher(
        timeout_seconds=settings.http.timeout_seconds,
        user_agent=settings.http.user_agent,
        max_attempts=settings.http.max_retries,
    )
    return FeedRefresher(
        store,
        fetcher=fetcher,
        parser=FeedParser(),
        tagger=LoggingTagger(),
        initial_episode_limit=settings.refresh.initial_episode_limit,
        batch_size=settings.refresh.batch_size,
        concurrency=settings.refresh.concurrency,
    )


def _open_store(settings: Settings) -> MemoryStore:
    return MemoryStore(settings.storage.catalog_path)


async def _read_source(source: str, settings: Settings) -> bytes:
    path = Path(source)
    if path.exists():
        return path.read_bytes()
    async with FeedFetcher(
        timeout_seconds=settings.http.timeout_seconds,
        user_agent=settings.http.user_agent,
        max_attempts=settings.http.max_retries,
    ) as fetcher:
        result = await fetcher.fetch(source)
    return result.body


def cmd_parse_feed(args: argparse.Namespace) -> int:
    """Parse a feed URL or file and display episode information."""
    settings = get_settings()
    setup_logging(log_level=settings.log_level, json_format=settings.json_logs)

    data = asyncio.run(_read_source(args.source, settings))
    result = FeedParser().parse(data, max_episodes=args.max_episodes)
    feed = result.feed

    print(f"\nPodcast: {feed.title}")
    print(f"Author: {feed.author or 'N/A'}")
    more = " (more available)" if result.has_more_episodes else ""
    print(f"Episodes found: {len(feed.episodes)}{more}\n")

    for i, ep in enumerate(feed.episodes, 1):
        print(f"{i}. {ep.title}")
        print(f"   Published: {ep.published_at or 'N/A'}")
        print(f"   Duration: {_format_duration(ep.duration_seconds)}")
        print(f"   Audio: {ep.audio_url}")
        print()

    if args.output:
        output_path = Path(args.output)
        output_path.write_text(json.dumps(feed.model_dump(mode="json"), indent=2))
        print(f"Saved feed data to: {output_path}")

    return 0


def cmd_subscribe(args: argparse.Namespace) -> int:
    """Subscribe to a feed and load its episodes into the catalog."""
    settings = get_settings()
    setup_logging(log_level=settings.log_level, json_format=settings.json_logs)

    async def run() -> int:
        store = _open_store(settings)
        refresher = _build_refresher(settings, store)
        try:
            feed = await refresher.subscribe(args.feed_url, is_priority=args.priority)
            await refresher.wait_for_background()
            async with store.read_transaction() as tx:
                count = len(tx.list_episodes(feed.id))
        finally:
            await refresher.aclose()
        print(f"\nSubscribed: {feed.title}")
        print(f"Episodes: {count}")
        return 0

    return asyncio.run(run())


def cmd_refresh(args: argparse.Namespace) -> int:
    """Refresh every feed in the catalog."""
    settings = get_settings()
    setup_logging(log_level=settings.log_level, json_format=settings.json_logs)

    async def run() -> int:
        store = _open_store(settings)
        refresher = _build_refresher(settings, store)
        try:
            total = await refresher.refresh_all(
                max_feeds=args.max_feeds or settings.refresh.max_feeds,
                concurrency=args.concurrency,
            )
            await refresher.wait_for_background()
        finally:
            await refresher.aclose()
        print(f"\nNew episodes: {total}")
        return 0

    return asyncio.run(run())


def cmd_import_opml(args: argparse.Namespace) -> int:
    """Import subscriptions from an OPML file."""
    settings = get_settings()
    setup_logging(log_level=settings.log_level, json_format=settings.json_logs)

    opml_path = Path(args.opml_file)
    if not opml_path.exists():
        print(f"Error: File not found: {opml_path}")
        return 1

    async def run() -> int:
        store = _open_store(settings)
        refresher = _build_refresher(settings, store)
        coordinator = ImportCoordinator(refresher, max_concurrent=settings.imports.max_concurrent)
        try:
            summary = await coordinator.import_opml(opml_path.read_bytes())
            await refresher.wait_for_background()
        finally:
            await refresher.aclose()
        if summary is None:
            return 1
        print(f"\nImported: {summary.completed}")
        print(f"Failed: {summary.failed}")
        return 0 if summary.failed == 0 else 2

    return asyncio.run(run())


def cmd_feeds(args: argparse.Namespace) -> int:
    """List feeds in the catalog."""
    settings = get_settings()
    setup_logging(log_level="WARNING")

    async def run() -> int:
        store = _open_store(settings)
        async with store.read_transaction() as tx:
            feeds = tx.list_feeds()
            counts = {feed.id: len(tx.episode_guids(feed.id)) for feed in feeds}

        if not feeds:
            print("\nNo feeds in the catalog.")
            print("Run: feedline subscribe <feed_url>")
            return 0

        print(f"\n{'=' * 60}")
        print(f"  FEEDS ({len(feeds)})")
        print(f"{'=' * 60}")
        for feed in feeds:
            loaded = "" if feed.is_fully_loaded else "  (backlog pending)"
            print(f"\n  {feed.title or feed.url}{loaded}")
            print(f"  URL:        {feed.url}")
            print(f"  Episodes:   {counts[feed.id]}")
            print(f"  Refreshed:  {feed.last_refresh_at or 'never'}")
        return 0

    return asyncio.run(run())


def cmd_episodes(args: argparse.Namespace) -> int:
    """List the newest episodes of one feed."""
    settings = get_settings()
    setup_logging(log_level="WARNING")

    async def run() -> int:
        store = _open_store(settings)
        async with store.read_transaction() as tx:
            feed = tx.get_feed_by_url(args.feed_url)
            episodes = tx.list_episodes(feed.id) if feed else []

        if feed is None:
            print(f"\nFeed not found: {args.feed_url}")
            return 1

        print(f"\n{feed.title} ({len(episodes)} episodes)\n")
        for ep in episodes[: args.limit]:
            date = ep.published_at.date() if ep.published_at else "N/A"
            print(f"  [{date}] {ep.title} ({_format_duration(ep.duration_seconds)})")
        return 0

    return asyncio.run(run())


def main() -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="feedline",
        description="Podcast feed ingestion - keep a local episode catalog in sync",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # parse-feed command
    parse_parser = subparsers.add_parser("parse-feed", help="Parse a feed URL or file")
    parse_parser.add_argument("source", help="Feed URL or local file path")
    parse_parser.add_argument(
        "--max-episodes", "-n", type=int, default=None, help="Stop after this many episodes"
    )
    parse_parser.add_argument("--output", "-o", help="Output JSON file path")
    parse_parser.set_defaults(func=cmd_parse_feed)

    # subscribe command
    sub_parser = subparsers.add_parser("subscribe", help="Subscribe to a feed")
    sub_parser.add_argument("feed_url", help="Feed URL")
    sub_parser.add_argument(
        "--priority", action="store_true", help="Refresh this feed ahead of others"
    )
    sub_parser.set_defaults(func=cmd_subscribe)

    # refresh command
    rf_parser = subparsers.add_parser("refresh", help="Refresh all subscribed feeds")
    rf_parser.add_argument("--max-feeds", type=int, default=None, help="Refresh at most N feeds")
    rf_parser.add_argument(
        "--concurrency", "-c", type=int, default=None, help="Max feeds refreshed in parallel"
    )
    rf_parser.set_defaults(func=cmd_refresh)

    # import-opml command
    im_parser = subparsers.add_parser("import-opml", help="Import feeds from an OPML file")
    im_parser.add_argument("opml_file", help="Path to OPML file")
    im_parser.set_defaults(func=cmd_import_opml)

    # feeds command
    feeds_parser = subparsers.add_parser("feeds", help="List subscribed feeds")
    feeds_parser.set_defaults(func=cmd_feeds)

    # episodes command
    ep_parser = subparsers.add_parser("episodes", help="List episodes of a feed")
    ep_parser.add_argument("feed_url", help="Feed URL")
    ep_parser.add_argument("--limit", "-l", type=int, default=20, help="Max episodes to show")
    ep_parser.set_defaults(func=cmd_episodes)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except FeedlineError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
