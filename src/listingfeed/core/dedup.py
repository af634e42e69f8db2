"""Deduplication helpers (core domain).

Three layers keep one listing per piece of content:

1. ``BatchDeduplicator`` drops reposts inside one adapter run using a short
   text prefix.
2. ``FingerprintIndex`` maps a longer prefix to the primary listing id for
   the whole orchestrator invocation, so the same ad seen in another channel
   becomes a source tag instead of a new row.
3. The listing store's ``(channel, message_id)`` uniqueness makes reruns
   idempotent; that layer lives in the store adapter.
"""

from __future__ import annotations

from collections import OrderedDict
import re
import threading
from typing import Callable, Optional, Set, Tuple

_WHITESPACE_RE = re.compile(r"\s+")


def _collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_for_fingerprint(text: str) -> str:
    """Normalize text for deterministic fingerprinting."""

    return _collapse_whitespace(text).lower()


def text_prefix(text: str, length: int, min_length: int = 1) -> str:
    """Return the normalized prefix used as a dedup key.

    Texts shorter than ``min_length`` after normalization have no key and
    return an empty string, which callers must never dedupe on.
    """

    normalized = normalize_for_fingerprint(text or "")
    if len(normalized) < min_length:
        return ""
    return normalized[:length].strip()


class BatchDeduplicator:
    """Intra-batch dedup for one adapter run."""

    def __init__(self, prefix_chars: int = 80) -> None:
        self._prefix_chars = prefix_chars
        self._seen: Set[str] = set()

    def is_duplicate(self, text: str) -> bool:
        """Record the text and report whether an earlier post had the same prefix."""

        key = text_prefix(text, self._prefix_chars)
        if not key:
            return False
        if key in self._seen:
            return True
        self._seen.add(key)
        return False


class FingerprintIndex:
    """Cross-channel map from content fingerprint to the primary listing id.

    One instance lives for one orchestrator invocation and is passed in
    explicitly. ``claim`` does the lookup and the registration under one lock
    so two workers can never both create a primary for the same content.

    ``max_entries`` bounds a long-lived index (the webhook server keeps one
    for the whole process); the least recently used fingerprints are evicted
    first. Evicted content is still caught by the store's source tags.
    """

    def __init__(self, max_entries: Optional[int] = None) -> None:
        self._primary: "OrderedDict[str, int]" = OrderedDict()
        self._max_entries = max_entries
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._primary)

    def _remember(self, fingerprint: str, listing_id: int) -> None:
        self._primary[fingerprint] = listing_id
        self._primary.move_to_end(fingerprint)
        if self._max_entries is not None:
            while len(self._primary) > self._max_entries:
                self._primary.popitem(last=False)

    def get(self, fingerprint: str) -> Optional[int]:
        if not fingerprint:
            return None
        with self._lock:
            listing_id = self._primary.get(fingerprint)
            if listing_id is not None:
                self._primary.move_to_end(fingerprint)
            return listing_id

    def register(self, fingerprint: str, listing_id: int) -> None:
        if not fingerprint:
            return
        with self._lock:
            self._remember(fingerprint, self._primary.get(fingerprint, listing_id))

    def claim(
        self,
        fingerprint: str,
        create: Callable[[], Optional[int]],
    ) -> Tuple[Optional[int], bool]:
        """Return ``(listing_id, created)`` for a fingerprint.

        When the fingerprint is known the existing primary id is returned and
        ``create`` is not called. Otherwise ``create`` persists the listing
        and its id, if any, becomes the primary.
        """

        if not fingerprint:
            return create(), True
        with self._lock:
            existing = self._primary.get(fingerprint)
            if existing is not None:
                self._primary.move_to_end(fingerprint)
                return existing, False
            listing_id = create()
            if listing_id is not None:
                self._remember(fingerprint, listing_id)
            return listing_id, True
