"""Feed refresh and bulk import orchestration."""

from feedline.sync.coordinator import ImportCoordinator
from feedline.sync.pool import PoolResult, run_bounded
from feedline.sync.refresher import FeedRefresher

__all__ = ["FeedRefresher", "ImportCoordinator", "PoolResult", "run_bounded"]
