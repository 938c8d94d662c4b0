"""Feedline - Podcast feed ingestion and catalog sync.

Streams RSS/Atom feeds into a local episode catalog with conditional
fetching, two-phase backlog loading and bounded-concurrency bulk import.
"""

__version__ = "0.1.0"
