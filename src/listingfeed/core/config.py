"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DedupConfig:
    """Deduplication settings for the core pipeline."""

    batch_prefix_chars: int = 80
    fingerprint_chars: int = 100
    min_fingerprint_chars: int = 10
    # Bound for the long-lived index kept by the webhook server.
    index_max_entries: int = 50_000


@dataclass(frozen=True)
class TrustConfig:
    """Thresholds used by the author trust pass."""

    author_threshold: int = 3
    channel_threshold: int = 10


@dataclass(frozen=True)
class IngestConfig:
    """Orchestrator behaviour for one ingestion run."""

    cooldown_seconds: float = 1.5
    preview_limit: int = 8
    dry_run: bool = False
