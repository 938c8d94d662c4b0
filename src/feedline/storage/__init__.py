"""Catalog storage: the transaction interface and the in-memory store."""

from feedline.storage.base import CatalogStore, CatalogTransaction
from feedline.storage.memory import CatalogSnapshot, MemoryStore

__all__ = ["CatalogStore", "CatalogTransaction", "CatalogSnapshot", "MemoryStore"]
