"""Static configuration for listingfeed.

All user-editable settings (channels, dedup, trust thresholds, category
overrides, logging) live in a single JSON file for quick edits without
touching Python. Secrets come from the environment (.env), never from here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import os
from typing import Optional, Tuple

from listingfeed.core.config import DedupConfig, IngestConfig, TrustConfig
from listingfeed.core.rules_engine import CategoryRule, DEFAULT_RULES, build_rules

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))

CONFIG_PATH = os.path.join(PROJECT_ROOT, "config.json")

DEFAULT_CHANNELS = (
    "belgrad_serbia",
    "avito_serbia",
    "beograd_oglasi",
    "vizitkars",
)


@dataclass(frozen=True)
class IngestSettings:
    """Run-level knobs shared by the importers."""

    cooldown_seconds: float = 1.5
    page_delay_seconds: float = 0.8
    preview_limit: int = 8
    months_back: int = 3
    default_limit: int = 200
    http_timeout: float = 15.0

    def to_config(self, dry_run: bool = False) -> IngestConfig:
        return IngestConfig(
            cooldown_seconds=self.cooldown_seconds,
            preview_limit=self.preview_limit,
            dry_run=dry_run,
        )


@dataclass(frozen=True)
class Settings:
    channels: Tuple[str, ...] = DEFAULT_CHANNELS
    monitored_channels: Tuple[str, ...] = DEFAULT_CHANNELS
    db_path: str = os.path.join(PROJECT_ROOT, "listingfeed.db")
    images_dir: str = os.path.join(PROJECT_ROOT, "images")
    images_base_url: str = "/images"
    dedup: DedupConfig = DedupConfig()
    trust: TrustConfig = TrustConfig()
    ingest: IngestSettings = IngestSettings()
    rules: Tuple[CategoryRule, ...] = DEFAULT_RULES
    logging: dict = field(default_factory=dict)


def _load_json_config(path: str) -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a JSON object")
    return data


def _channel_list(raw, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Accept plain names or {"name": ..., "enabled": ...} entries; strip "@"."""

    if raw is None:
        return default
    channels = []
    for entry in raw:
        if isinstance(entry, dict):
            if not entry.get("enabled", True):
                continue
            entry = entry.get("name", "")
        name = str(entry).strip().lstrip("@")
        if name and name not in channels:
            channels.append(name)
    return tuple(channels)


def _resolve_path(value: Optional[str], default: str) -> str:
    if not value:
        return default
    value = os.path.expanduser(value)
    if os.path.isabs(value):
        return value
    return os.path.join(PROJECT_ROOT, value)


def load_settings(path: Optional[str] = None) -> Settings:
    """Build Settings from config.json; unknown keys in sections fail loudly."""

    path = path or CONFIG_PATH
    raw = _load_json_config(path)

    try:
        dedup = DedupConfig(**raw.get("dedup", {}))
        trust = TrustConfig(**raw.get("trust", {}))
        ingest = IngestSettings(**raw.get("ingest", {}))
    except TypeError as e:
        raise ValueError(f"{path}: {e}") from e

    categories = raw.get("categories")
    try:
        rules = tuple(build_rules(categories)) if categories else DEFAULT_RULES
    except KeyError as e:
        raise ValueError(f"{path}: category rule is missing {e}") from e

    storage = raw.get("storage", {})
    return Settings(
        channels=_channel_list(raw.get("channels"), DEFAULT_CHANNELS),
        monitored_channels=_channel_list(raw.get("monitored_channels"), DEFAULT_CHANNELS),
        db_path=_resolve_path(storage.get("db_path"), Settings.db_path),
        images_dir=_resolve_path(storage.get("images_dir"), Settings.images_dir),
        images_base_url=storage.get("images_base_url", Settings.images_base_url),
        dedup=dedup,
        trust=trust,
        ingest=ingest,
        rules=rules,
        logging=raw.get("logging", {}),
    )
