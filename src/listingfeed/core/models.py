"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any Telegram or storage-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class WriteMode(str, Enum):
    """How a source's posts are written to the listing store."""

    INSERT = "insert"
    UPSERT = "upsert"


@dataclass(frozen=True)
class RawPost:
    """One unit of source content, before any parsing."""

    source_channel: str
    source_message_id: int
    raw_text: str
    posted_at: datetime
    photo_ref: Optional[str] = None
    author_display_name: Optional[str] = None
    author_id: Optional[int] = None


@dataclass(frozen=True)
class ParsedListing:
    """Normalized, classified and priced content unit."""

    title: str
    description: str
    category_slug: str
    price: Optional[Decimal]
    currency: str
    content_fingerprint: str


@dataclass(frozen=True)
class SourceTag:
    """An additional origin merged onto an existing listing."""

    channel: str
    message_id: int

    def to_dict(self) -> dict:
        return {"channel": self.channel, "message_id": self.message_id}

    @classmethod
    def from_dict(cls, raw: dict) -> "SourceTag":
        return cls(channel=str(raw["channel"]), message_id=int(raw["message_id"]))


@dataclass(frozen=True)
class ListingRecord:
    """Row shape the pipeline writes through the listing store."""

    source_channel: str
    source_message_id: int
    title: str
    description: str
    price: Optional[Decimal]
    currency: str
    category_id: Optional[int]
    created_at: datetime
    status: str = "active"
    images: List[str] = field(default_factory=list)
    author_username: Optional[str] = None
    author_id: Optional[int] = None


@dataclass(frozen=True)
class PendingNotice:
    """Imported listing whose original author has not been told yet."""

    listing_id: int
    title: str
    source_channel: str
    source_message_id: int
