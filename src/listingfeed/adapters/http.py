"""Small blocking HTTP helpers shared by the web-facing adapters.

Calls are plain urllib with an explicit timeout; async callers run them via
``asyncio.to_thread`` so a slow upstream never blocks the event loop.
"""

from __future__ import annotations

import urllib.error
import urllib.request
from typing import Optional

DEFAULT_TIMEOUT = 15.0

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "ru-RU,ru;q=0.9,en;q=0.8",
    "Cache-Control": "no-cache",
}


class HttpStatusError(OSError):
    """Raised for non-2xx responses so callers can treat it like a network error."""

    def __init__(self, url: str, status: int, body: str = "") -> None:
        super().__init__(f"HTTP {status} for {url}")
        self.url = url
        self.status = status
        self.body = body


def http_request(
    url: str,
    *,
    data: Optional[bytes] = None,
    headers: Optional[dict] = None,
    method: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> bytes:
    """Perform one request and return the body; raise OSError on failure."""

    request = urllib.request.Request(url, data=data, method=method)
    for key, value in (headers or {}).items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return response.read()
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        raise HttpStatusError(url, e.code, body) from e
