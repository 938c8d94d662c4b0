"""Hand-off of newly inserted episodes to the tagging subsystem.

Tagging is a downstream consumer: it is told about new episode ids and
nothing it does may slow down or fail a refresh.
"""

import asyncio
from collections.abc import Sequence
from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)


class EpisodeTagger(Protocol):
    """Anything that wants to hear about new episodes."""

    async def notify_new_episodes(self, episode_ids: Sequence[int]) -> None: ...


class LoggingTagger:
    """Tagger that only records what it was told."""

    def __init__(self) -> None:
        self.logger = logger.bind(component="tagger")

    async def notify_new_episodes(self, episode_ids: Sequence[int]) -> None:
        self.logger.info("Episodes queued for tagging", count=len(episode_ids))


async def _deliver(tagger: EpisodeTagger, episode_ids: list[int]) -> None:
    try:
        await tagger.notify_new_episodes(episode_ids)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning("Tagging notification failed", count=len(episode_ids), error=str(e))


def notify_in_background(tagger: EpisodeTagger | None, episode_ids: Sequence[int]) -> asyncio.Task | None:
    """Fire-and-forget delivery of new episode ids to a tagger.

    Must be called from a running event loop. The caller owns the returned
    task and must keep a reference to it until it finishes.
    """
    if tagger is None or not episode_ids:
        return None
    return asyncio.get_running_loop().create_task(_deliver(tagger, list(episode_ids)))
