"""Local-directory image store adapter.

Writes uploaded photos under a root directory and returns their public URL
under the configured base URL. Re-uploading the same path overwrites it.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

LOGGER = logging.getLogger(__name__)


class LocalImageStore:
    """ImageStorePort backed by the local filesystem."""

    def __init__(self, root_dir: str, base_url: str) -> None:
        self._root_dir = root_dir
        self._base_url = base_url.rstrip("/")

    def upload(self, path: str, data: bytes, content_type: str) -> Optional[str]:
        relative = os.path.normpath(path).lstrip(os.sep)
        if relative.startswith(".."):
            raise ValueError(f"Image path escapes the store root: {path}")

        target = os.path.join(self._root_dir, relative)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "wb") as handle:
            handle.write(data)
        LOGGER.debug("Stored %s (%s, %s bytes)", relative, content_type, len(data))
        return f"{self._base_url}/{relative.replace(os.sep, '/')}"
