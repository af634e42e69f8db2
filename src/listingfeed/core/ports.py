"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for sources, the listing store and the
image store so that the core can be reused with different backends.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Protocol, Tuple

from listingfeed.core.models import (
    ListingRecord,
    PendingNotice,
    RawPost,
    SourceTag,
    WriteMode,
)


class SourceAdapter(Protocol):
    """A producer of ``RawPost`` items for a channel.

    ``counters`` tallies per-channel skips the adapter decides on itself
    (``too_old``, ``skipped``, ``errors``); the orchestrator clears it before
    each channel.
    """

    name: str
    write_mode: WriteMode
    counters: Counter

    def fetch(
        self,
        channel: str,
        *,
        limit: Optional[int] = None,
        before_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> AsyncIterator[RawPost]:
        ...

    async def fetch_photo(self, post: RawPost) -> Optional[bytes]:
        ...


class ListingStorePort(Protocol):
    """Listing store operations required by the core pipeline."""

    def category_ids(self) -> Dict[str, int]:
        ...

    def insert_listing(self, record: ListingRecord) -> Optional[int]:
        """Insert a row; return None when ``(channel, message_id)`` already exists."""
        ...

    def upsert_listing(self, record: ListingRecord) -> Tuple[int, bool]:
        """Insert or update by ``(channel, message_id)``; return ``(id, created)``."""
        ...

    def find_listing_id(self, channel: str, message_id: int) -> Optional[int]:
        ...

    def find_by_source(self, channel: str, message_id: int) -> Optional[int]:
        """Return the listing that carries this origin as a merged source tag."""
        ...

    def get_sources(self, listing_id: int) -> List[SourceTag]:
        """Return every origin of a listing, its own first."""
        ...

    def set_sources(self, listing_id: int, sources: Iterable[SourceTag]) -> None:
        ...

    def author_counts(self, channel: str) -> Dict[str, int]:
        ...

    def active_count(self, channel: str) -> int:
        ...

    def mark_verified(self, channel: str, authors: Optional[Iterable[str]] = None) -> int:
        ...

    def pending_notifications(self, channel: Optional[str] = None) -> List[PendingNotice]:
        ...

    def mark_notified(self, listing_id: int) -> None:
        ...


class ImageStorePort(Protocol):
    """Image persistence capability; returns a public URL or None."""

    def upload(self, path: str, data: bytes, content_type: str) -> Optional[str]:
        ...
