from __future__ import annotations

import pytest

from listingfeed.adapters.image_store import LocalImageStore


def test_upload_writes_file_and_returns_public_url(tmp_path) -> None:
    images = LocalImageStore(str(tmp_path), "https://cdn.example/images/")

    url = images.upload("tg-import/market/5.jpg", b"data", "image/jpeg")

    assert url == "https://cdn.example/images/tg-import/market/5.jpg"
    assert (tmp_path / "tg-import" / "market" / "5.jpg").read_bytes() == b"data"


def test_upload_overwrites_same_path(tmp_path) -> None:
    images = LocalImageStore(str(tmp_path), "/images")
    images.upload("a/1.jpg", b"old", "image/jpeg")
    images.upload("a/1.jpg", b"new", "image/jpeg")

    assert (tmp_path / "a" / "1.jpg").read_bytes() == b"new"


def test_paths_outside_root_are_refused(tmp_path) -> None:
    images = LocalImageStore(str(tmp_path / "root"), "/images")

    with pytest.raises(ValueError):
        images.upload("../escape.jpg", b"x", "image/jpeg")
