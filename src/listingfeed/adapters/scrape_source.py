"""Public web-preview source adapter (``https://t.me/s/<channel>``).

No credentials are needed, but only public channels are reachable and each
page carries roughly 20 posts. Pages are walked backwards with the
``before=<id>`` cursor until the page budget runs out or a page comes back
empty.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
import math
import re
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from bs4 import BeautifulSoup

from listingfeed.adapters.base import BaseSource
from listingfeed.adapters.http import BROWSER_HEADERS, DEFAULT_TIMEOUT, http_request
from listingfeed.core.models import RawPost, WriteMode
from listingfeed.core.text import strip_html

LOGGER = logging.getLogger(__name__)

PREVIEW_URL = "https://t.me/s/{channel}"
POSTS_PER_PAGE = 20
DEFAULT_PAGES = 10

# Markup markers of the web preview. Telegram changes these occasionally;
# keep them in one place.
MESSAGE_CLASS = "tgme_widget_message"
POST_ATTR = "data-post"
TEXT_CLASS = "tgme_widget_message_text"
PHOTO_CLASS = "tgme_widget_message_photo_wrap"
AUTHOR_CLASS = "tgme_widget_message_from_author"
BACKGROUND_URL_RE = re.compile(r"background-image:\s*url\(['\"]?([^'\")]+)['\"]?\)")
AVATAR_HINTS = ("userpic", "avatar")

PageFetcher = Callable[[str], bytes]


def page_url(channel: str, before_id: Optional[int] = None) -> str:
    url = PREVIEW_URL.format(channel=channel)
    if before_id:
        url += f"?before={before_id}"
    return url


def _photo_url(block) -> Optional[str]:
    wrap = block.find(class_=PHOTO_CLASS)
    if wrap is not None:
        match = BACKGROUND_URL_RE.search(wrap.get("style", ""))
        if match:
            return match.group(1)
    for img in block.find_all("img", src=True):
        if not any(hint in img["src"] for hint in AVATAR_HINTS):
            return img["src"]
    return None


def _post_date(block) -> Optional[datetime]:
    node = block.find("time", attrs={"datetime": True})
    if node is None:
        return None
    try:
        value = datetime.fromisoformat(node["datetime"])
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def parse_preview_page(markup: str, channel: str) -> List[RawPost]:
    """Parse a preview page into posts, newest first.

    Posts without a date get the ingestion time. Posts with neither text
    nor a photo are dropped.
    """

    posts: List[RawPost] = []
    soup = BeautifulSoup(markup, "html.parser")
    for block in soup.find_all(attrs={POST_ATTR: True}):
        if MESSAGE_CLASS not in (block.get("class") or []):
            continue
        try:
            message_id = int(block[POST_ATTR].rsplit("/", 1)[-1])
        except ValueError:
            LOGGER.debug("Skipping block with data-post=%r", block.get(POST_ATTR))
            continue

        text_node = block.find(class_=TEXT_CLASS)
        text = strip_html(text_node.decode_contents()) if text_node else ""
        photo_url = _photo_url(block)
        if not text.strip() and not photo_url:
            continue

        author_node = block.find(class_=AUTHOR_CLASS)
        author = author_node.get_text(strip=True) if author_node else ""
        posts.append(
            RawPost(
                source_channel=channel,
                source_message_id=message_id,
                raw_text=text,
                posted_at=_post_date(block) or datetime.now(timezone.utc),
                photo_ref=photo_url,
                author_display_name=author or None,
            )
        )

    posts.sort(key=lambda post: post.source_message_id, reverse=True)
    return posts


class ScrapeSource(BaseSource):
    """Reads the public web preview page by page."""

    name = "scrape"
    write_mode = WriteMode.INSERT

    def __init__(
        self,
        fetcher: Optional[PageFetcher] = None,
        page_delay_seconds: float = 0.8,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__()
        self._timeout = timeout
        self._fetcher = fetcher or self._http_fetch
        self._page_delay = page_delay_seconds
        self._sleep = sleep

    def _http_fetch(self, url: str) -> bytes:
        return http_request(url, headers=BROWSER_HEADERS, timeout=self._timeout)

    async def fetch(
        self,
        channel: str,
        *,
        limit: Optional[int] = None,
        before_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> AsyncIterator[RawPost]:
        pages = math.ceil(limit / POSTS_PER_PAGE) if limit else DEFAULT_PAGES
        cursor = before_id

        for page in range(pages):
            if page:
                await self._sleep(self._page_delay)
            url = page_url(channel, cursor)
            LOGGER.debug("GET %s", url)
            try:
                markup = await asyncio.to_thread(self._fetcher, url)
            except OSError:
                self.counters["errors"] += 1
                LOGGER.exception("@%s: fetching %s failed", channel, url)
                return

            posts = parse_preview_page(markup.decode("utf-8", errors="replace"), channel)
            if not posts:
                if page == 0:
                    LOGGER.warning("@%s: no posts found; the channel may be private or misspelled", channel)
                return

            reached_cutoff = False
            for post in posts:
                if since is not None and post.posted_at < since:
                    self.counters["too_old"] += 1
                    reached_cutoff = True
                    continue
                yield post

            cursor = posts[-1].source_message_id
            if reached_cutoff or cursor <= 1:
                return

    async def fetch_photo(self, post: RawPost) -> Optional[bytes]:
        if not post.photo_ref:
            return None
        try:
            data = await asyncio.to_thread(self._fetcher, post.photo_ref)
        except OSError:
            LOGGER.warning("Photo download failed for %s/%s", post.source_channel, post.source_message_id)
            return None
        return data or None
