"""
Base class for listing source adapters.

Every source (MTProto API, HTML export, public web preview, Bot API webhook)
implements this interface so the orchestrator treats them uniformly.

Each adapter is responsible for:
    1. Reading its source for one channel at a time
    2. Converting source-specific items to RawPost objects with plain text
    3. Skipping (and counting) single malformed items without aborting
    4. Resolving its own photo references on demand
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from typing import AsyncIterator, Optional

from listingfeed.core.models import RawPost, WriteMode


class BaseSource(ABC):
    """
    Shared plumbing for source adapters.

    Attributes:
        name: Short identifier used in logs and reports (e.g. "export")
        write_mode: INSERT sources skip rows that already exist, UPSERT
            sources refresh them
        counters: Per-channel tallies of "too_old", "skipped" and "errors"
    """

    name: str = "source"
    write_mode: WriteMode = WriteMode.INSERT

    def __init__(self) -> None:
        self.counters: Counter = Counter()

    @abstractmethod
    def fetch(
        self,
        channel: str,
        *,
        limit: Optional[int] = None,
        before_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> AsyncIterator[RawPost]:
        """
        Yield posts for a channel.

        Args:
            channel: Channel username without the leading "@"
            limit: Upper bound on posts (or pages, for paged sources)
            before_id: Resume strictly below this message id
            since: Ignore posts older than this timestamp
        """

    async def fetch_photo(self, post: RawPost) -> Optional[bytes]:
        """Return photo bytes for a post, or None; never raises."""

        return None
