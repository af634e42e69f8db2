"""Author notification adapter.

Replies under each imported channel post with a link to its listing. The
bot must be an admin with "Post Messages" rights in the channel.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Awaitable, Callable, List, Optional

from listingfeed.adapters.notification_formatting import format_author_notice
from listingfeed.adapters.telegram_bot_api import BotApiClient, BotApiError
from listingfeed.core.models import PendingNotice
from listingfeed.core.ports import ListingStorePort

LOGGER = logging.getLogger(__name__)


@dataclass
class NotifyReport:
    sent: int = 0
    failed: int = 0
    planned: List[PendingNotice] = field(default_factory=list)


class AuthorNotifier:
    """Sends one reply per imported listing and stamps ``notified_at``."""

    def __init__(
        self,
        bot: BotApiClient,
        store: ListingStorePort,
        app_url: str,
        pause_seconds: float = 0.3,
        dry_run: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._bot = bot
        self._store = store
        self._app_url = app_url
        self._pause = pause_seconds
        self._dry_run = dry_run
        self._sleep = sleep

    async def send(self, notice: PendingNotice) -> None:
        """Post the reply for one notice; raises BotApiError/OSError on failure."""

        text, reply_markup = format_author_notice(notice, self._app_url)
        await asyncio.to_thread(
            self._bot.send_message,
            f"@{notice.source_channel}",
            text,
            reply_to_message_id=notice.source_message_id,
            reply_markup=reply_markup,
        )

    async def run(self, channel: Optional[str] = None) -> NotifyReport:
        report = NotifyReport()
        notices = self._store.pending_notifications(channel)
        if not notices:
            LOGGER.info("Nothing to notify; every imported listing is already notified")
            return report

        LOGGER.info("Found %s listing(s) to notify", len(notices))
        for position, notice in enumerate(notices):
            LOGGER.info("[%s/%s] %s", notice.source_channel, notice.source_message_id, notice.title[:60])
            if self._dry_run:
                report.planned.append(notice)
                continue

            if position:
                # Telegram throttles bursts of messages into the same chat.
                await self._sleep(self._pause)
            try:
                await self.send(notice)
            except (BotApiError, OSError) as e:
                report.failed += 1
                LOGGER.warning("Reply to %s/%s failed: %s", notice.source_channel, notice.source_message_id, e)
                continue
            self._store.mark_notified(notice.listing_id)
            report.sent += 1

        return report
