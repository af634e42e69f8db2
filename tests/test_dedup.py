from __future__ import annotations

import threading

from listingfeed.core.dedup import BatchDeduplicator, FingerprintIndex, text_prefix


def test_text_prefix_normalizes_whitespace_and_case() -> None:
    assert text_prefix("  Продам   ДИВАН\n\nIKEA ", 100) == "продам диван ikea"
    assert text_prefix("abcdef", 3) == "abc"


def test_short_text_has_no_prefix() -> None:
    assert text_prefix("коротко", 100, min_length=10) == ""


def test_batch_dedup_drops_later_reposts() -> None:
    batch = BatchDeduplicator(prefix_chars=10)

    assert batch.is_duplicate("Продам велосипед, синий") is False
    assert batch.is_duplicate("продам велосипед, КРАСНЫЙ") is True
    assert batch.is_duplicate("Сдам квартиру") is False


def test_batch_dedup_ignores_empty_text() -> None:
    batch = BatchDeduplicator()

    assert batch.is_duplicate("") is False
    assert batch.is_duplicate("   ") is False


def test_claim_creates_once_per_fingerprint() -> None:
    index = FingerprintIndex()
    calls = []

    def create() -> int:
        calls.append(1)
        return 41 + len(calls)

    assert index.claim("same text", create) == (42, True)
    assert index.claim("same text", create) == (42, False)
    assert len(calls) == 1
    assert index.get("same text") == 42


def test_claim_without_id_does_not_register() -> None:
    index = FingerprintIndex()

    assert index.claim("dup", lambda: None) == (None, True)
    assert index.get("dup") is None
    assert len(index) == 0


def test_empty_fingerprint_always_creates() -> None:
    index = FingerprintIndex()

    assert index.claim("", lambda: 1) == (1, True)
    assert index.claim("", lambda: 2) == (2, True)
    index.register("", 3)
    assert len(index) == 0


def test_concurrent_claims_create_a_single_primary() -> None:
    index = FingerprintIndex()
    created = []
    lock = threading.Lock()

    def create() -> int:
        with lock:
            created.append(1)
            return len(created)

    threads = [threading.Thread(target=index.claim, args=("ad", create)) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert created == [1]
    assert index.get("ad") == 1


def test_bounded_index_evicts_least_recently_used() -> None:
    index = FingerprintIndex(max_entries=2)
    index.register("first ad", 1)
    index.register("second ad", 2)

    assert index.get("first ad") == 1
    index.claim("third ad", lambda: 3)

    assert len(index) == 2
    assert index.get("second ad") is None
    assert index.get("first ad") == 1
    assert index.get("third ad") == 3


def test_register_keeps_the_first_primary() -> None:
    index = FingerprintIndex()
    index.register("same text", 5)
    index.register("same text", 9)

    assert index.get("same text") == 5
