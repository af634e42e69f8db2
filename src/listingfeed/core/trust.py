"""Author trust scoring (core domain).

Runs after ingestion over aggregate counts in the listing store and only
ever sets the verified flag, so repeated runs converge to the same state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import List

from listingfeed.core.config import TrustConfig
from listingfeed.core.ports import ListingStorePort

LOGGER = logging.getLogger(__name__)

AUTHOR_ID_PREFIX = "id:"


def author_identity(username: "str | None", author_id: "int | None") -> "str | None":
    """Prefer a stable handle and fall back to the numeric author id."""

    if username:
        return username
    if author_id is not None:
        return f"{AUTHOR_ID_PREFIX}{author_id}"
    return None


@dataclass
class TrustResult:
    channel: str
    verified_authors: List[str] = field(default_factory=list)
    channel_verified: bool = False
    rows_flagged: int = 0


class AuthorTrustScorer:
    """Marks prolific authors, or whole busy unsigned channels, as verified."""

    def __init__(self, store: ListingStorePort, config: TrustConfig = TrustConfig()) -> None:
        self._store = store
        self._config = config

    def score(self, channel: str) -> TrustResult:
        result = TrustResult(channel=channel)
        counts = self._store.author_counts(channel)

        if not counts:
            # Unsigned broadcast channel: trust the channel once it is busy enough.
            total = self._store.active_count(channel)
            if total >= self._config.channel_threshold:
                result.channel_verified = True
                result.rows_flagged = self._store.mark_verified(channel)
                LOGGER.info("@%s verified as a channel (%s listings)", channel, total)
            return result

        result.verified_authors = sorted(
            author for author, count in counts.items() if count >= self._config.author_threshold
        )
        if result.verified_authors:
            result.rows_flagged = self._store.mark_verified(channel, result.verified_authors)
            LOGGER.info(
                "@%s verified %s author(s): %s",
                channel,
                len(result.verified_authors),
                ", ".join(result.verified_authors),
            )
        else:
            LOGGER.debug("@%s has no authors at the verification threshold", channel)
        return result
