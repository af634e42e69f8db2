"""Telethon source adapter.

Reads channel history through an authenticated MTProto session and maps
Telethon messages to core RawPost objects, keeping Telethon-specific details
out of the core pipeline.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import AsyncIterator, Dict, Optional, Tuple

from telethon import errors
from telethon.tl.custom import Message
from telethon.tl.types import PeerUser

from listingfeed.adapters.base import BaseSource
from listingfeed.core.models import EPOCH, RawPost, WriteMode

LOGGER = logging.getLogger(__name__)


def author_id_from_message(message: Message) -> Optional[int]:
    """Return the sender's user id for signed posts, if Telegram exposes one."""

    from_id = getattr(message, "from_id", None)
    if isinstance(from_id, PeerUser):
        return int(from_id.user_id)
    return None


def raw_post_from_message(message: Message, channel: str) -> Optional[RawPost]:
    """Build a RawPost from a Telethon Message; None for text-less posts."""

    text = message.raw_text or ""
    if not text.strip():
        return None

    photo_ref = None
    if getattr(message, "photo", None) is not None:
        photo_ref = f"tg://{channel}/{message.id}"

    return RawPost(
        source_channel=channel,
        source_message_id=int(message.id),
        raw_text=text,
        posted_at=message.date or EPOCH,
        photo_ref=photo_ref,
        author_display_name=getattr(message, "post_author", None) or None,
        author_id=author_id_from_message(message),
    )


class TelethonSource(BaseSource):
    """Authenticated-session source: newest-first history with on-demand photos."""

    name = "api"
    write_mode = WriteMode.INSERT

    def __init__(self, client, default_limit: int = 200, photo_timeout: float = 30.0) -> None:
        super().__init__()
        self._client = client
        self._default_limit = default_limit
        self._photo_timeout = photo_timeout
        self._photo_messages: Dict[Tuple[str, int], Message] = {}

    async def fetch(
        self,
        channel: str,
        *,
        limit: Optional[int] = None,
        before_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> AsyncIterator[RawPost]:
        self._photo_messages.clear()
        try:
            async for message in self._client.iter_messages(
                channel,
                limit=limit or self._default_limit,
                offset_id=before_id or 0,
            ):
                if since is not None and message.date is not None and message.date < since:
                    break
                try:
                    post = raw_post_from_message(message, channel)
                except (AttributeError, TypeError, ValueError):
                    self.counters["errors"] += 1
                    LOGGER.warning("@%s: cannot map message %s", channel, getattr(message, "id", "?"), exc_info=True)
                    continue
                if post is None:
                    self.counters["skipped"] += 1
                    continue
                if post.photo_ref:
                    self._photo_messages[(channel, post.source_message_id)] = message
                yield post
        except (errors.RPCError, OSError, ValueError):
            # Unknown channel, flood wait or a dropped connection: keep what we have.
            self.counters["errors"] += 1
            LOGGER.exception("@%s: reading history failed", channel)

    async def fetch_photo(self, post: RawPost) -> Optional[bytes]:
        message = self._photo_messages.pop((post.source_channel, post.source_message_id), None)
        if message is None:
            return None
        try:
            data = await asyncio.wait_for(
                self._client.download_media(message, file=bytes),
                timeout=self._photo_timeout,
            )
        except (asyncio.TimeoutError, errors.RPCError, OSError, ValueError):
            LOGGER.warning("Photo download failed for %s/%s", post.source_channel, post.source_message_id)
            return None
        return data or None
