from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from listingfeed.adapters.base import BaseSource
from listingfeed.adapters.image_store import LocalImageStore
from listingfeed.adapters.sqlite_storage import SQLiteListingStore
from listingfeed.core.config import DedupConfig, IngestConfig
from listingfeed.core.dedup import FingerprintIndex
from listingfeed.core.models import RawPost, SourceTag, WriteMode
from listingfeed.core.orchestrator import ChannelStage, IngestionOrchestrator
from listingfeed.core.processor import ListingProcessor
from listingfeed.core.trust import AuthorTrustScorer

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

RENT_AD = (
    "Аренда квартиры Нови Београд 450€\n"
    "Двухкомнатная квартира, 60 м2, мебель, техника, парковка во дворе. "
    "Свободна с первого числа, собственник."
)


class FakeSource(BaseSource):
    def __init__(self, posts: dict, write_mode: WriteMode = WriteMode.INSERT, photo: Optional[bytes] = None) -> None:
        super().__init__()
        self._posts = posts
        self.write_mode = write_mode
        self._photo = photo
        self.photo_requests = 0

    async def fetch(self, channel, *, limit=None, before_id=None, since=None):
        for post in self._posts.get(channel, []):
            yield post

    async def fetch_photo(self, post: RawPost) -> Optional[bytes]:
        self.photo_requests += 1
        return self._photo


class BrokenSource(FakeSource):
    async def fetch(self, channel, *, limit=None, before_id=None, since=None):
        for post in self._posts.get(channel, []):
            yield post
        raise ConnectionError("upstream went away")


async def _no_sleep(_: float) -> None:
    return None


def _post(channel: str, message_id: int, text: str, **kwargs) -> RawPost:
    return RawPost(
        source_channel=channel,
        source_message_id=message_id,
        raw_text=text,
        posted_at=kwargs.pop("posted_at", NOW - timedelta(minutes=message_id)),
        **kwargs,
    )


def _store(tmp_path) -> SQLiteListingStore:
    store = SQLiteListingStore(str(tmp_path / "listings.db"))
    store.init_db()
    return store


def _orchestrator(store, tmp_path, *, dry_run: bool = False, index: Optional[FingerprintIndex] = None):
    processor = ListingProcessor(
        store=store,
        images=LocalImageStore(str(tmp_path / "images"), "https://cdn.example/images"),
        index=index or FingerprintIndex(),
        dry_run=dry_run,
    )
    return IngestionOrchestrator(
        processor,
        config=IngestConfig(cooldown_seconds=0, dry_run=dry_run),
        dedup_config=DedupConfig(),
        sleep=_no_sleep,
    )


def test_first_run_persists_parsed_listing(tmp_path) -> None:
    store = _store(tmp_path)
    source = FakeSource({"market": [_post("market", 1, "Продам диван IKEA, 150 EUR, почти новый")]})

    report = asyncio.run(_orchestrator(store, tmp_path).run(source, ["market"]))

    assert report.total().imported == 1
    listing = store.get_listing(store.find_listing_id("market", 1))
    assert listing["title"] == "Продам диван IKEA, 150 EUR, почти новый"
    assert listing["price"] == Decimal("150")
    assert listing["currency"] == "EUR"
    assert listing["category_id"] == store.category_ids()["stuff"]
    assert listing["sources"] == [SourceTag("market", 1)]


def test_rerun_is_idempotent(tmp_path) -> None:
    store = _store(tmp_path)
    posts = {
        "market": [
            _post("market", 1, "Продам диван IKEA, 150 EUR, почти новый"),
            _post("market", 2, "Сдаю комнату в центре, 300€"),
        ]
    }

    first = asyncio.run(_orchestrator(store, tmp_path).run(FakeSource(posts), ["market"]))
    before = [store.get_listing(i) for i in (1, 2)]
    second = asyncio.run(_orchestrator(store, tmp_path).run(FakeSource(posts), ["market"]))

    assert first.total().imported == 2
    assert second.total().imported == 0
    assert second.total().duplicates == 2
    assert store.count_listings() == 2
    assert [store.get_listing(i) for i in (1, 2)] == before


def test_insert_mode_skips_photo_download_for_known_rows(tmp_path) -> None:
    store = _store(tmp_path)
    posts = {"market": [_post("market", 5, "Продам велосипед, 80 EUR", photo_ref="photo.jpg")]}

    first_source = FakeSource(posts, photo=b"\xff\xd8jpeg")
    asyncio.run(_orchestrator(store, tmp_path).run(first_source, ["market"]))
    second_source = FakeSource(posts, photo=b"\xff\xd8jpeg")
    asyncio.run(_orchestrator(store, tmp_path).run(second_source, ["market"]))

    assert first_source.photo_requests == 1
    assert second_source.photo_requests == 0
    listing = store.get_listing(store.find_listing_id("market", 5))
    assert listing["images"] == ["https://cdn.example/images/tg-import/market/5.jpg"]
    assert (tmp_path / "images" / "tg-import" / "market" / "5.jpg").read_bytes() == b"\xff\xd8jpeg"


def test_failed_photo_degrades_to_no_images(tmp_path) -> None:
    store = _store(tmp_path)
    source = FakeSource({"market": [_post("market", 6, "Продам стол, 20 EUR", photo_ref="x.jpg")]}, photo=None)

    report = asyncio.run(_orchestrator(store, tmp_path).run(source, ["market"]))

    assert report.total().imported == 1
    assert store.get_listing(1)["images"] == []


class RejectingImageStore:
    def upload(self, path: str, data: bytes, content_type: str):
        raise ValueError(f"Image path escapes the store root: {path}")


def test_rejected_image_path_degrades_to_no_images(tmp_path) -> None:
    store = _store(tmp_path)
    processor = ListingProcessor(store=store, images=RejectingImageStore(), index=FingerprintIndex())
    orchestrator = IngestionOrchestrator(processor, config=IngestConfig(cooldown_seconds=0), sleep=_no_sleep)
    source = FakeSource({"market": [_post("market", 7, "Продам лампу, 15 EUR", photo_ref="x.jpg")]}, photo=b"jpeg")

    report = asyncio.run(orchestrator.run(source, ["market"]))

    assert report.total().imported == 1
    assert report.total().errors == 0
    assert store.get_listing(1)["images"] == []


def test_cross_channel_duplicate_becomes_source_tag(tmp_path) -> None:
    store = _store(tmp_path)
    source = FakeSource(
        {
            "A": [_post("A", 10, RENT_AD)],
            "B": [_post("B", 77, RENT_AD + "\nПишите в личку")],
        }
    )

    report = asyncio.run(_orchestrator(store, tmp_path).run(source, ["A", "B"]))

    assert store.count_listings() == 1
    assert report.channels[0].imported == 1
    assert report.channels[1].cross_dupes == 1
    assert report.channels[1].imported == 0
    listing = store.get_listing(1)
    assert listing["sources"] == [SourceTag("A", 10), SourceTag("B", 77)]


def test_cross_channel_tag_is_added_once_per_channel(tmp_path) -> None:
    store = _store(tmp_path)
    index = FingerprintIndex()
    source = FakeSource({"A": [_post("A", 10, RENT_AD)], "B": [_post("B", 77, RENT_AD)]})

    asyncio.run(_orchestrator(store, tmp_path, index=index).run(source, ["A", "B"]))
    asyncio.run(_orchestrator(store, tmp_path, index=index).run(source, ["B"]))

    assert store.get_sources(1) == [SourceTag("A", 10), SourceTag("B", 77)]


def test_merged_post_stays_merged_on_a_later_single_channel_run(tmp_path) -> None:
    store = _store(tmp_path)
    source = FakeSource({"A": [_post("A", 10, RENT_AD)], "B": [_post("B", 77, RENT_AD)]})

    asyncio.run(_orchestrator(store, tmp_path).run(source, ["A", "B"]))
    report = asyncio.run(_orchestrator(store, tmp_path).run(source, ["B"]))

    assert store.count_listings() == 1
    assert report.channels[0].imported == 0
    assert report.channels[0].cross_dupes == 1
    assert store.get_sources(1) == [SourceTag("A", 10), SourceTag("B", 77)]


def test_merged_export_post_is_not_upserted_as_new_row(tmp_path) -> None:
    store = _store(tmp_path)
    posts = {"A": [_post("A", 10, RENT_AD)], "B": [_post("B", 77, RENT_AD)]}

    asyncio.run(_orchestrator(store, tmp_path).run(FakeSource(posts, WriteMode.UPSERT), ["A", "B"]))
    asyncio.run(_orchestrator(store, tmp_path).run(FakeSource(posts, WriteMode.UPSERT), ["B"]))

    assert store.count_listings() == 1


def test_short_texts_never_merge_across_channels(tmp_path) -> None:
    store = _store(tmp_path)
    source = FakeSource({"A": [_post("A", 1, "Продам")], "B": [_post("B", 1, "Продам")]})

    report = asyncio.run(_orchestrator(store, tmp_path).run(source, ["A", "B"]))

    assert report.total().imported == 2
    assert report.total().cross_dupes == 0


def test_batch_reposts_are_counted_as_duplicates(tmp_path) -> None:
    store = _store(tmp_path)
    source = FakeSource(
        {
            "market": [
                _post("market", 3, RENT_AD),
                _post("market", 2, RENT_AD),
                _post("market", 1, "Продам стол, 20 EUR"),
            ]
        }
    )

    report = asyncio.run(_orchestrator(store, tmp_path).run(source, ["market"]))

    assert report.channels[0].imported == 2
    assert report.channels[0].duplicates == 1
    assert store.find_listing_id("market", 2) is None


def test_upsert_mode_refreshes_content_and_keeps_tags(tmp_path) -> None:
    store = _store(tmp_path)
    index = FingerprintIndex()
    first = FakeSource({"A": [_post("A", 10, RENT_AD)], "B": [_post("B", 77, RENT_AD)]}, write_mode=WriteMode.UPSERT)
    asyncio.run(_orchestrator(store, tmp_path, index=index).run(first, ["A", "B"]))
    store.mark_verified("A")

    edited = FakeSource(
        {"A": [_post("A", 10, "Сдаю квартиру Нови Београд, 500€, цена обновлена")]},
        write_mode=WriteMode.UPSERT,
    )
    report = asyncio.run(_orchestrator(store, tmp_path).run(edited, ["A"]))

    assert report.total().updated == 1
    listing = store.get_listing(1)
    assert listing["price"] == Decimal("500")
    assert listing["title"] == "Сдаю квартиру Нови Београд, 500€, цена обновлена"
    assert listing["sources"] == [SourceTag("A", 10), SourceTag("B", 77)]
    assert listing["author_verified"] is True


def test_dry_run_writes_nothing_and_previews(tmp_path) -> None:
    store = _store(tmp_path)
    posts = [_post("market", i, f"Продам вещь номер {i}: цена {i * 10} EUR") for i in range(1, 11)]
    source = FakeSource({"market": posts}, photo=b"img")

    report = asyncio.run(_orchestrator(store, tmp_path, dry_run=True).run(source, ["market"]))

    channel = report.channels[0]
    assert store.count_listings() == 0
    assert source.photo_requests == 0
    assert channel.previewed == 10
    assert len(channel.preview) == 8
    assert channel.preview[0].price == Decimal("10")
    assert report.trust == []


def test_dry_run_still_reports_cross_channel_duplicates(tmp_path) -> None:
    store = _store(tmp_path)
    source = FakeSource({"A": [_post("A", 10, RENT_AD)], "B": [_post("B", 77, RENT_AD)]})

    report = asyncio.run(_orchestrator(store, tmp_path, dry_run=True).run(source, ["A", "B"]))

    assert report.channels[1].cross_dupes == 1
    assert store.count_listings() == 0


def test_source_failure_keeps_posts_already_stored(tmp_path) -> None:
    store = _store(tmp_path)
    source = BrokenSource({"market": [_post("market", 1, "Продам стол, 20 EUR")], "other": []})

    report = asyncio.run(_orchestrator(store, tmp_path).run(source, ["market", "other"]))

    assert report.channels[0].imported == 1
    assert report.channels[0].errors == 1
    assert len(report.channels) == 2
    assert store.count_listings() == 1


def test_stop_request_is_honoured_between_channels(tmp_path) -> None:
    store = _store(tmp_path)
    orchestrator = _orchestrator(store, tmp_path)

    class StoppingSource(FakeSource):
        async def fetch(self, channel, *, limit=None, before_id=None, since=None):
            orchestrator.request_stop()
            async for post in super().fetch(channel):
                yield post

    source = StoppingSource({"A": [_post("A", 1, "Продам стол, 20 EUR")], "B": [_post("B", 1, "Сдаю комнату")]})
    report = asyncio.run(orchestrator.run(source, ["A", "B"]))

    assert report.stopped is True
    assert [channel.channel for channel in report.channels] == ["A"]
    assert report.channels[0].imported == 1


def test_trust_pass_runs_after_ingestion(tmp_path) -> None:
    store = _store(tmp_path)
    posts = [
        _post("market", i, f"Объявление номер {i} от одного автора", author_display_name="seller")
        for i in range(1, 4)
    ]
    processor = ListingProcessor(store=store, images=None, index=FingerprintIndex())
    orchestrator = IngestionOrchestrator(
        processor,
        config=IngestConfig(cooldown_seconds=0),
        scorer=AuthorTrustScorer(store),
        sleep=_no_sleep,
    )
    report = asyncio.run(orchestrator.run(FakeSource({"market": posts}), ["market"]))

    assert report.trust[0].verified_authors == ["seller"]
    assert all(store.get_listing(i)["author_verified"] for i in (1, 2, 3))


def test_cooldown_between_channels(tmp_path) -> None:
    store = _store(tmp_path)
    pauses = []

    async def record_sleep(seconds: float) -> None:
        pauses.append(seconds)

    processor = ListingProcessor(store=store, images=None, index=FingerprintIndex())
    orchestrator = IngestionOrchestrator(processor, config=IngestConfig(cooldown_seconds=1.5), sleep=record_sleep)
    asyncio.run(orchestrator.run(FakeSource({}), ["A", "B", "C"]))

    assert pauses == [1.5, 1.5]


def test_channel_stages_follow_processing_order() -> None:
    assert [stage.value for stage in ChannelStage] == [
        "fetching",
        "normalizing",
        "classifying",
        "deduplicating",
        "persisting",
        "reporting",
    ]


def test_failure_log_names_the_failing_stage(tmp_path, monkeypatch, caplog) -> None:
    store = _store(tmp_path)
    orchestrator = _orchestrator(store, tmp_path)
    source = FakeSource({"market": [_post("market", 1, "Продам диван IKEA, 150 EUR, почти новый")]})

    def broken_classify(post, normalized):
        raise RuntimeError("bad rule")

    monkeypatch.setattr(orchestrator._processor, "classify", broken_classify)
    with caplog.at_level("ERROR"):
        report = asyncio.run(orchestrator.run(source, ["market"]))

    assert report.total().errors == 1
    assert "while classifying" in caplog.text
    assert store.count_listings() == 0
