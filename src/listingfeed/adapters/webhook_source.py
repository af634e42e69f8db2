"""Bot API webhook source adapter.

Telegram pushes ``channel_post`` updates for channels where the bot is an
admin. ``receive`` filters and converts an update, queues the post, and the
orchestrator then drains the queue through ``fetch`` like any other source.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from datetime import datetime, timezone
import logging
from typing import AsyncIterator, Deque, Dict, Iterable, Optional

from listingfeed.adapters.base import BaseSource
from listingfeed.adapters.telegram_bot_api import BotApiClient, BotApiError
from listingfeed.core.models import RawPost, WriteMode

LOGGER = logging.getLogger(__name__)

DEFAULT_MONITORED_CHANNELS = ("belgrad_serbia", "avito_serbia", "beograd_oglasi", "vizitkars")


def _largest_photo_id(photo_sizes) -> Optional[str]:
    # Telegram lists sizes smallest to largest.
    if not photo_sizes:
        return None
    largest = photo_sizes[-1]
    if isinstance(largest, dict):
        return largest.get("file_id") or None
    return None


def _post_date(value) -> datetime:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.now(timezone.utc)


class WebhookSource(BaseSource):
    """Queue of accepted channel posts from webhook pushes."""

    name = "webhook"
    write_mode = WriteMode.INSERT

    def __init__(
        self,
        monitored_channels: Iterable[str] = DEFAULT_MONITORED_CHANNELS,
        bot: Optional[BotApiClient] = None,
    ) -> None:
        super().__init__()
        self._monitored = {channel.lower() for channel in monitored_channels}
        self._bot = bot
        self._queues: Dict[str, Deque[RawPost]] = defaultdict(deque)

    def is_monitored(self, channel: str) -> bool:
        return channel.lower() in self._monitored

    def receive(self, update: dict) -> Optional[RawPost]:
        """Accept a Bot API update; return the queued post or None if skipped."""

        post = update.get("channel_post") if isinstance(update, dict) else None
        if not isinstance(post, dict):
            return None

        chat = post.get("chat") or {}
        channel = chat.get("username") or ""
        if not channel or not self.is_monitored(channel):
            LOGGER.debug("Ignoring post from unmonitored chat %r", channel or chat.get("id"))
            return None

        text = (post.get("text") or post.get("caption") or "").strip()
        if not text:
            LOGGER.debug("@%s: ignoring post %s without text", channel, post.get("message_id"))
            return None

        try:
            message_id = int(post["message_id"])
        except (KeyError, TypeError, ValueError):
            LOGGER.warning("@%s: channel_post without a usable message_id", channel)
            return None

        raw = RawPost(
            source_channel=channel,
            source_message_id=message_id,
            raw_text=text,
            posted_at=_post_date(post.get("date")),
            photo_ref=_largest_photo_id(post.get("photo")),
            author_display_name=post.get("author_signature") or None,
        )
        self._queues[channel.lower()].append(raw)
        LOGGER.info("@%s: queued post %s", channel, message_id)
        return raw

    def pending(self, channel: str) -> int:
        return len(self._queues.get(channel.lower(), ()))

    async def fetch(
        self,
        channel: str,
        *,
        limit: Optional[int] = None,
        before_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> AsyncIterator[RawPost]:
        queue = self._queues.get(channel.lower())
        yielded = 0
        while queue:
            if limit is not None and yielded >= limit:
                break
            post = queue.popleft()
            if before_id is not None and post.source_message_id >= before_id:
                continue
            if since is not None and post.posted_at < since:
                self.counters["too_old"] += 1
                continue
            yielded += 1
            yield post

    async def fetch_photo(self, post: RawPost) -> Optional[bytes]:
        if not post.photo_ref or self._bot is None:
            return None
        try:
            data = await asyncio.to_thread(self._bot.download_file, post.photo_ref)
        except (BotApiError, OSError, ValueError):
            LOGGER.warning("Photo download failed for %s/%s", post.source_channel, post.source_message_id)
            return None
        return data or None
