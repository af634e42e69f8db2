"""Ingestion orchestration across channels.

The orchestrator enforces a strict order per channel:
1) Fetch raw posts from the source adapter (newest-first or as the source
   delivers them)
2) Drop intra-batch reposts by short text prefix
3) Normalize, classify and price the post
4) Cross-channel dedup and persistence through the processor
5) Report per-channel and total counts

Channels are processed one at a time with a cooldown in between, and a stop
request is honoured between channels. Persistence is idempotent per post, so
stopping never leaves a half-written channel that a rerun cannot repair.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, fields
from datetime import datetime
from decimal import Decimal
from enum import Enum
import logging
from typing import Awaitable, Callable, Iterable, List, Optional

from listingfeed.core.config import DedupConfig, IngestConfig
from listingfeed.core.dedup import BatchDeduplicator
from listingfeed.core.ports import SourceAdapter
from listingfeed.core.processor import ListingProcessor, Outcome
from listingfeed.core.text import normalize
from listingfeed.core.trust import AuthorTrustScorer, TrustResult

LOGGER = logging.getLogger(__name__)


class ChannelStage(str, Enum):
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    CLASSIFYING = "classifying"
    DEDUPLICATING = "deduplicating"
    PERSISTING = "persisting"
    REPORTING = "reporting"


@dataclass(frozen=True)
class PreviewItem:
    """What a dry run would have written for one post."""

    message_id: int
    category_slug: str
    title: str
    price: Optional[Decimal]
    currency: str


@dataclass
class ChannelReport:
    channel: str
    imported: int = 0
    updated: int = 0
    duplicates: int = 0
    cross_dupes: int = 0
    too_old: int = 0
    skipped: int = 0
    errors: int = 0
    previewed: int = 0
    preview: List[PreviewItem] = field(default_factory=list)
    stage: ChannelStage = ChannelStage.FETCHING


_COUNT_FIELDS = tuple(
    f.name for f in fields(ChannelReport) if f.name not in {"channel", "preview", "stage"}
)


@dataclass
class RunReport:
    channels: List[ChannelReport] = field(default_factory=list)
    trust: List[TrustResult] = field(default_factory=list)
    stopped: bool = False

    def total(self) -> ChannelReport:
        total = ChannelReport(channel="total", stage=ChannelStage.REPORTING)
        for report in self.channels:
            for name in _COUNT_FIELDS:
                setattr(total, name, getattr(total, name) + getattr(report, name))
        return total


class IngestionOrchestrator:
    """Runs source adapters through the processor channel by channel."""

    def __init__(
        self,
        processor: ListingProcessor,
        config: IngestConfig = IngestConfig(),
        dedup_config: DedupConfig = DedupConfig(),
        scorer: Optional[AuthorTrustScorer] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._processor = processor
        self._config = config
        self._dedup = dedup_config
        self._scorer = scorer
        self._sleep = sleep
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        """Stop before the next channel; the current channel finishes."""

        LOGGER.warning("Stop requested; finishing the current channel")
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def _record(self, report: ChannelReport, post_id: int, outcome: Outcome, parsed) -> None:
        if outcome is Outcome.IMPORTED:
            report.imported += 1
        elif outcome is Outcome.UPDATED:
            report.updated += 1
        elif outcome is Outcome.DUPLICATE:
            report.duplicates += 1
        elif outcome is Outcome.CROSS_DUPE:
            report.cross_dupes += 1
        elif outcome is Outcome.PREVIEW:
            report.previewed += 1
            if len(report.preview) < self._config.preview_limit:
                report.preview.append(
                    PreviewItem(
                        message_id=post_id,
                        category_slug=parsed.category_slug,
                        title=parsed.title,
                        price=parsed.price,
                        currency=parsed.currency,
                    )
                )

    async def ingest_channel(
        self,
        source: SourceAdapter,
        channel: str,
        *,
        limit: Optional[int] = None,
        before_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> ChannelReport:
        """Drain one channel from the source and return its report."""

        report = ChannelReport(channel=channel)
        batch = BatchDeduplicator(self._dedup.batch_prefix_chars)
        source.counters.clear()
        LOGGER.info("@%s: reading from %s", channel, source.name)

        stream = source.fetch(channel, limit=limit, before_id=before_id, since=since)
        try:
            async for post in stream:
                try:
                    report.stage = ChannelStage.NORMALIZING
                    normalized = normalize(post.raw_text)
                    report.stage = ChannelStage.CLASSIFYING
                    parsed = self._processor.classify(post, normalized)
                    report.stage = ChannelStage.DEDUPLICATING
                    if batch.is_duplicate(post.raw_text):
                        report.duplicates += 1
                        continue
                    report.stage = ChannelStage.PERSISTING
                    result = await self._processor.handle(post, source, parsed)
                    self._record(report, post.source_message_id, result.outcome, parsed)
                except Exception:
                    report.errors += 1
                    LOGGER.exception(
                        "@%s: failed on message %s while %s",
                        channel,
                        post.source_message_id,
                        report.stage.value,
                    )
                finally:
                    report.stage = ChannelStage.FETCHING
        except Exception:
            # Posts handled so far are already persisted; move on to the next channel.
            report.errors += 1
            LOGGER.exception("@%s: source %s failed mid-stream", channel, source.name)

        report.stage = ChannelStage.REPORTING
        report.too_old += source.counters.get("too_old", 0)
        report.skipped += source.counters.get("skipped", 0)
        report.errors += source.counters.get("errors", 0)
        LOGGER.info(
            "@%s: imported=%s updated=%s duplicates=%s cross_dupes=%s too_old=%s skipped=%s errors=%s",
            channel,
            report.imported,
            report.updated,
            report.duplicates,
            report.cross_dupes,
            report.too_old,
            report.skipped,
            report.errors,
        )
        return report

    async def run(
        self,
        source: SourceAdapter,
        channels: Iterable[str],
        *,
        limit: Optional[int] = None,
        before_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> RunReport:
        """Ingest every channel in order, then run the trust pass."""

        run_report = RunReport()
        for position, channel in enumerate(channels):
            if position and self._config.cooldown_seconds > 0:
                # Upstream rate limits apply per account, not per channel.
                await self._sleep(self._config.cooldown_seconds)
            if self._stop.is_set():
                run_report.stopped = True
                LOGGER.warning("Ingestion stopped before @%s", channel)
                break
            run_report.channels.append(
                await self.ingest_channel(
                    source,
                    channel,
                    limit=limit,
                    before_id=before_id,
                    since=since,
                )
            )

        if self._scorer is not None and not self._config.dry_run:
            for report in run_report.channels:
                try:
                    run_report.trust.append(self._scorer.score(report.channel))
                except Exception:
                    LOGGER.exception("Trust scoring failed for @%s", report.channel)
        return run_report
