"""Telegram Desktop HTML export source adapter.

Layout expected on disk::

    <base_dir>/<channel>/messages.html
    <base_dir>/<channel>/messages2.html
    <base_dir>/<channel>/photos/photo_1@01-02-2025_10-00-00.jpg

Every page is parsed, posts are merged by message id (pages can overlap),
sorted newest-first and filtered by age before they leave the adapter.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
import logging
import os
import re
from typing import AsyncIterator, Dict, List, Optional

from bs4 import BeautifulSoup

from listingfeed.adapters.base import BaseSource
from listingfeed.core.models import EPOCH, RawPost, WriteMode
from listingfeed.core.text import strip_html

LOGGER = logging.getLogger(__name__)

MESSAGE_FILE_RE = re.compile(r"^messages(\d*)\.html$")
MESSAGE_ID_RE = re.compile(r"^message(\d+)$")
PHOTO_REF_RE = re.compile(r"^photos/[^\"]+\.(?:jpg|jpeg|png|webp)$", re.IGNORECASE)
# title="DD.MM.YYYY HH:MM:SS" with an optional " UTC+01:00" suffix.
DATE_TITLE_RE = re.compile(
    r"(\d{2})\.(\d{2})\.(\d{4}) (\d{2}):(\d{2}):(\d{2})(?: UTC([+-]\d{2}):(\d{2}))?"
)


def list_message_files(channel_dir: str) -> List[str]:
    """Return export pages ordered by page number (messages.html is page 1)."""

    pages = []
    for name in os.listdir(channel_dir):
        match = MESSAGE_FILE_RE.match(name)
        if match:
            pages.append((int(match.group(1) or 1), name))
    return [name for _, name in sorted(pages)]


def parse_export_date(title: str) -> Optional[datetime]:
    match = DATE_TITLE_RE.search(title or "")
    if not match:
        return None
    day, month, year, hour, minute, second = (int(part) for part in match.groups()[:6])
    tz = timezone.utc
    if match.group(7):
        offset_hours = int(match.group(7))
        offset_minutes = int(match.group(8)) * (1 if offset_hours >= 0 else -1)
        tz = timezone(timedelta(hours=offset_hours, minutes=offset_minutes))
    try:
        return datetime(year, month, day, hour, minute, second, tzinfo=tz).astimezone(timezone.utc)
    except ValueError:
        return None


def parse_export_html(
    markup: str,
    channel: str,
    channel_dir: str,
    counters: Optional[Counter] = None,
) -> List[RawPost]:
    """Parse one export page into posts that carry text or a photo."""

    posts: List[RawPost] = []
    soup = BeautifulSoup(markup, "html.parser")
    for block in soup.select("div.message"):
        id_match = MESSAGE_ID_RE.match(block.get("id", ""))
        if not id_match or "service" in (block.get("class") or []):
            continue
        message_id = int(id_match.group(1))
        try:
            text_node = block.select_one("div.text")
            text = strip_html(text_node.decode_contents()) if text_node else ""

            photo_node = block.find("a", href=PHOTO_REF_RE) or block.find("img", src=PHOTO_REF_RE)
            photo_ref = None
            if photo_node is not None:
                relative = photo_node.get("href") or photo_node.get("src")
                photo_ref = os.path.join(channel_dir, relative)

            date_node = block.find(attrs={"title": DATE_TITLE_RE})
            posted_at = parse_export_date(date_node["title"]) if date_node else None
            if posted_at is None:
                # Epoch sorts last and is always older than the cutoff; say so
                # instead of silently losing the post.
                LOGGER.warning("@%s: message %s has no parseable date; treating it as too old", channel, message_id)
                posted_at = EPOCH

            author_node = block.select_one("div.from_name")
            author = author_node.get_text(strip=True) if author_node else ""
        except (AttributeError, KeyError, TypeError, ValueError):
            if counters is not None:
                counters["errors"] += 1
            LOGGER.warning("@%s: cannot parse export message %s", channel, message_id, exc_info=True)
            continue

        if text.strip() or photo_ref:
            posts.append(
                RawPost(
                    source_channel=channel,
                    source_message_id=message_id,
                    raw_text=text,
                    posted_at=posted_at,
                    photo_ref=photo_ref,
                    author_display_name=author or None,
                )
            )
    return posts


def months_ago(now: datetime, months: int) -> datetime:
    """Step back whole calendar months, clamping the day to the target month."""

    month_index = now.year * 12 + (now.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    next_month = datetime(year + (month // 12), month % 12 + 1, 1, tzinfo=now.tzinfo)
    last_day = (next_month - timedelta(days=1)).day
    return now.replace(year=year, month=month, day=min(now.day, last_day))


class ExportSource(BaseSource):
    """Offline source over a directory of per-channel HTML exports."""

    name = "export"
    write_mode = WriteMode.UPSERT

    def __init__(self, base_dir: str, min_text_chars: int = 10) -> None:
        super().__init__()
        base_dir = os.path.expanduser(base_dir)
        if not os.path.isdir(base_dir):
            raise FileNotFoundError(f"Export directory not found: {base_dir}")
        self._base_dir = base_dir
        self._min_text_chars = min_text_chars

    def channels(self) -> List[str]:
        """Channel names are the export's sub-directory names."""

        return sorted(
            entry.name for entry in os.scandir(self._base_dir) if entry.is_dir()
        )

    def _channel_dir(self, channel: str) -> Optional[str]:
        for name in self.channels():
            if name.lower() == channel.lower():
                return os.path.join(self._base_dir, name)
        return None

    def load_posts(self, channel: str) -> List[RawPost]:
        """Parse every page of a channel, merged by id and sorted newest-first."""

        channel_dir = self._channel_dir(channel)
        if channel_dir is None:
            LOGGER.warning("@%s: no export folder in %s", channel, self._base_dir)
            return []

        files = list_message_files(channel_dir)
        if not files:
            LOGGER.warning("@%s: no messages*.html files found", channel)
            return []

        by_id: Dict[int, RawPost] = {}
        for name in files:
            path = os.path.join(channel_dir, name)
            try:
                with open(path, "r", encoding="utf-8") as handle:
                    markup = handle.read()
            except (OSError, UnicodeDecodeError):
                self.counters["errors"] += 1
                LOGGER.exception("@%s: cannot read %s", channel, path)
                continue
            for post in parse_export_html(markup, channel, channel_dir, self.counters):
                by_id.setdefault(post.source_message_id, post)

        return sorted(by_id.values(), key=lambda post: post.posted_at, reverse=True)

    async def fetch(
        self,
        channel: str,
        *,
        limit: Optional[int] = None,
        before_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> AsyncIterator[RawPost]:
        posts = await asyncio.to_thread(self.load_posts, channel)
        LOGGER.info("@%s: %s posts in export", channel, len(posts))

        yielded = 0
        for post in posts:
            if before_id is not None and post.source_message_id >= before_id:
                continue
            if since is not None and post.posted_at < since:
                self.counters["too_old"] += 1
                continue
            if len(post.raw_text.strip()) < self._min_text_chars:
                self.counters["skipped"] += 1
                continue
            if limit is not None and yielded >= limit:
                break
            yielded += 1
            yield post

    async def fetch_photo(self, post: RawPost) -> Optional[bytes]:
        if not post.photo_ref or not os.path.isfile(post.photo_ref):
            return None

        def _read() -> bytes:
            with open(post.photo_ref, "rb") as handle:
                return handle.read()

        try:
            return await asyncio.to_thread(_read)
        except OSError:
            LOGGER.warning("Cannot read photo %s", post.photo_ref, exc_info=True)
            return None
