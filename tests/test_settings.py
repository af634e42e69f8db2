from __future__ import annotations

import json
import os

import pytest

from listingfeed.core.rules_engine import DEFAULT_RULES
from listingfeed.settings import PROJECT_ROOT, load_settings


def _write(tmp_path, payload: dict) -> str:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


def test_minimal_config_uses_defaults(tmp_path) -> None:
    cfg = load_settings(_write(tmp_path, {}))

    assert cfg.channels == ("belgrad_serbia", "avito_serbia", "beograd_oglasi", "vizitkars")
    assert cfg.dedup.fingerprint_chars == 100
    assert cfg.trust.author_threshold == 3
    assert cfg.ingest.cooldown_seconds == 1.5
    assert cfg.rules == DEFAULT_RULES


def test_sections_and_channels_are_parsed(tmp_path) -> None:
    cfg = load_settings(
        _write(
            tmp_path,
            {
                "channels": ["@market", {"name": "flea", "enabled": False}, {"name": "rent"}, "market"],
                "storage": {"db_path": "data/feed.db", "images_dir": "/srv/images"},
                "dedup": {"batch_prefix_chars": 60},
                "ingest": {"months_back": 6},
                "categories": [{"slug": "stuff", "regex": "продам"}],
            },
        )
    )

    assert cfg.channels == ("market", "rent")
    assert cfg.db_path == os.path.join(PROJECT_ROOT, "data/feed.db")
    assert cfg.images_dir == "/srv/images"
    assert cfg.dedup.batch_prefix_chars == 60
    assert cfg.ingest.months_back == 6
    assert [rule.slug for rule in cfg.rules] == ["stuff"]
    assert cfg.ingest.to_config(dry_run=True).dry_run is True


def test_unknown_section_key_fails(tmp_path) -> None:
    with pytest.raises(ValueError):
        load_settings(_write(tmp_path, {"trust": {"author_treshold": 3}}))


def test_category_outside_closed_set_fails(tmp_path) -> None:
    with pytest.raises(ValueError):
        load_settings(_write(tmp_path, {"categories": [{"slug": "pets", "regex": "кот"}]}))


def test_missing_file_fails(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_settings(str(tmp_path / "absent.json"))


def test_shipped_config_loads() -> None:
    cfg = load_settings()

    assert cfg.monitored_channels
    assert cfg.logging["enabled"] is True
