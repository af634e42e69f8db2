"""Core listing processing pipeline.

This module is integration-agnostic. It only relies on ports for sources,
listing storage and images, enabling new adapters without changes here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import itertools
import logging
from typing import Dict, Iterable, List, Optional

from listingfeed.core.config import DedupConfig
from listingfeed.core.dedup import FingerprintIndex, text_prefix
from listingfeed.core.models import (
    ListingRecord,
    ParsedListing,
    RawPost,
    SourceTag,
    WriteMode,
)
from listingfeed.core.ports import ImageStorePort, ListingStorePort, SourceAdapter
from listingfeed.core.pricing import DEFAULT_PRICE_PATTERNS, PricePattern, extract_price
from listingfeed.core.rules_engine import DEFAULT_RULES, MISC_SLUG, CategoryRule, classify
from listingfeed.core.text import Normalized, normalize

LOGGER = logging.getLogger(__name__)


class Outcome(str, Enum):
    IMPORTED = "imported"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    CROSS_DUPE = "cross_dupe"
    PREVIEW = "preview"


@dataclass(frozen=True)
class ProcessResult:
    outcome: Outcome
    parsed: ParsedListing
    listing_id: Optional[int] = None


def classify_post(
    post: RawPost,
    normalized: Normalized,
    rules: Iterable[CategoryRule] = DEFAULT_RULES,
    price_patterns: Iterable[PricePattern] = DEFAULT_PRICE_PATTERNS,
    dedup_config: DedupConfig = DedupConfig(),
) -> ParsedListing:
    """Attach category, price and fingerprint to an already normalized post."""

    price = extract_price(post.raw_text, price_patterns)
    return ParsedListing(
        title=normalized.title,
        description=normalized.description,
        category_slug=classify(post.raw_text, rules),
        price=price.amount,
        currency=price.currency,
        content_fingerprint=text_prefix(
            post.raw_text,
            dedup_config.fingerprint_chars,
            dedup_config.min_fingerprint_chars,
        ),
    )


def parse_post(
    post: RawPost,
    rules: Iterable[CategoryRule] = DEFAULT_RULES,
    price_patterns: Iterable[PricePattern] = DEFAULT_PRICE_PATTERNS,
    dedup_config: DedupConfig = DedupConfig(),
) -> ParsedListing:
    """Run the normalizer, classifier and price extractor over one post."""

    return classify_post(post, normalize(post.raw_text), rules, price_patterns, dedup_config)


def _image_path(post: RawPost) -> tuple[str, str]:
    ref = (post.photo_ref or "").lower()
    ext = "png" if ".png" in ref else "jpg"
    return f"tg-import/{post.source_channel.lower()}/{post.source_message_id}.{ext}", f"image/{ext}"


class ListingProcessor:
    """Turns raw posts into persisted listings, one post at a time."""

    def __init__(
        self,
        store: ListingStorePort,
        images: Optional[ImageStorePort],
        index: FingerprintIndex,
        rules: Iterable[CategoryRule] = DEFAULT_RULES,
        price_patterns: Iterable[PricePattern] = DEFAULT_PRICE_PATTERNS,
        dedup_config: DedupConfig = DedupConfig(),
        dry_run: bool = False,
    ) -> None:
        self._store = store
        self._images = images
        self._index = index
        self._rules = list(rules)
        self._price_patterns = list(price_patterns)
        self._dedup = dedup_config
        self._dry_run = dry_run
        self._category_ids: Optional[Dict[str, int]] = None
        # Dry runs never touch the store, so primaries get placeholder ids.
        self._preview_ids = itertools.count(-1, -1)

    def parse(self, post: RawPost) -> ParsedListing:
        return parse_post(post, self._rules, self._price_patterns, self._dedup)

    def classify(self, post: RawPost, normalized: Normalized) -> ParsedListing:
        return classify_post(post, normalized, self._rules, self._price_patterns, self._dedup)

    def _category_id(self, slug: str) -> Optional[int]:
        if self._category_ids is None:
            self._category_ids = self._store.category_ids()
        return self._category_ids.get(slug, self._category_ids.get(MISC_SLUG))

    async def _upload_images(self, post: RawPost, source: SourceAdapter) -> List[str]:
        if not post.photo_ref or self._images is None:
            return []
        data = await source.fetch_photo(post)
        if not data:
            return []
        path, content_type = _image_path(post)
        try:
            url = self._images.upload(path, data, content_type)
        except (OSError, ValueError):
            LOGGER.warning("Image upload failed for %s/%s", post.source_channel, post.source_message_id, exc_info=True)
            return []
        return [url] if url else []

    def _merge_source(self, listing_id: int, post: RawPost) -> None:
        """Tag an existing primary with this post's origin, once per channel."""

        if listing_id < 0:
            return
        sources = self._store.get_sources(listing_id)
        channel = post.source_channel.lower()
        if any(tag.channel.lower() == channel for tag in sources):
            return
        sources.append(SourceTag(post.source_channel, post.source_message_id))
        self._store.set_sources(listing_id, sources)
        LOGGER.info(
            "Cross-channel duplicate %s/%s tagged onto listing %s",
            post.source_channel,
            post.source_message_id,
            listing_id,
        )

    def _record(self, post: RawPost, parsed: ParsedListing, images: List[str]) -> ListingRecord:
        return ListingRecord(
            source_channel=post.source_channel,
            source_message_id=post.source_message_id,
            title=parsed.title,
            description=parsed.description,
            price=parsed.price,
            currency=parsed.currency,
            category_id=self._category_id(parsed.category_slug),
            created_at=post.posted_at,
            images=images,
            author_username=post.author_display_name,
            author_id=post.author_id,
        )

    async def handle(
        self,
        post: RawPost,
        source: SourceAdapter,
        parsed: Optional[ParsedListing] = None,
    ) -> ProcessResult:
        """Process one raw post through classification, dedup and persistence."""

        if parsed is None:
            parsed = self.parse(post)
        fingerprint = parsed.content_fingerprint

        primary_id = self._index.get(fingerprint)
        if primary_id is not None:
            self._merge_source(primary_id, post)
            return ProcessResult(Outcome.CROSS_DUPE, parsed, primary_id)

        if self._dry_run:
            self._index.register(fingerprint, next(self._preview_ids))
            return ProcessResult(Outcome.PREVIEW, parsed)

        if source.write_mode is WriteMode.INSERT:
            # Already imported on an earlier run: skip before downloading photos.
            existing_id = self._store.find_listing_id(post.source_channel, post.source_message_id)
            if existing_id is not None:
                self._index.register(fingerprint, existing_id)
                return ProcessResult(Outcome.DUPLICATE, parsed, existing_id)

        # Merged on an earlier run whose index is gone; the primary keeps it.
        tagged_id = self._store.find_by_source(post.source_channel, post.source_message_id)
        if tagged_id is not None:
            self._index.register(fingerprint, tagged_id)
            return ProcessResult(Outcome.CROSS_DUPE, parsed, tagged_id)

        record = self._record(post, parsed, await self._upload_images(post, source))
        created = True

        def persist() -> Optional[int]:
            nonlocal created
            if source.write_mode is WriteMode.UPSERT:
                listing_id, created = self._store.upsert_listing(record)
                return listing_id
            return self._store.insert_listing(record)

        listing_id, claimed = self._index.claim(fingerprint, persist)
        if not claimed:
            self._merge_source(listing_id, post)
            return ProcessResult(Outcome.CROSS_DUPE, parsed, listing_id)

        if listing_id is None:
            # Uniqueness violation on insert: another writer got there first.
            listing_id = self._store.find_listing_id(post.source_channel, post.source_message_id)
            if listing_id is not None:
                self._index.register(fingerprint, listing_id)
            return ProcessResult(Outcome.DUPLICATE, parsed, listing_id)

        outcome = Outcome.IMPORTED if created else Outcome.UPDATED
        LOGGER.info("%s [%s/%s] %s", outcome.value, post.source_channel, post.source_message_id, parsed.title[:60])
        return ProcessResult(outcome, parsed, listing_id)
