"""Telegram Bot API adapter.

Used for webhook registration, downloading photos referenced by file id in
webhook pushes, and replying under channel posts.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from listingfeed.adapters.http import HttpStatusError, http_request

API_ROOT = "https://api.telegram.org"


class BotApiError(RuntimeError):
    """The Bot API answered with ok=false or an HTTP error."""


class BotApiClient:
    """Minimal synchronous Bot API client with bounded timeouts."""

    def __init__(self, bot_token: str, timeout: float = 10.0) -> None:
        self._bot_token = bot_token
        self._timeout = timeout

    def _endpoint(self, method: str) -> str:
        # The Bot API endpoint is deterministic and derived from the token.
        return f"{API_ROOT}/bot{self._bot_token}/{method}"

    def call(self, method: str, payload: Optional[dict] = None) -> Any:
        """Call a Bot API method and return its ``result`` field."""

        data = json.dumps(payload or {}).encode("utf-8")
        try:
            raw = http_request(
                self._endpoint(method),
                data=data,
                headers={"Content-Type": "application/json"},
                method="POST",
                timeout=self._timeout,
            )
        except HttpStatusError as e:
            raise BotApiError(f"Bot API error {e.status}: {e.body}") from e
        body = json.loads(raw.decode("utf-8"))
        if not body.get("ok"):
            raise BotApiError(f"Bot API {method} failed: {body.get('description')}")
        return body.get("result")

    def download_file(self, file_id: str) -> bytes:
        """Resolve a file id with getFile and download the content."""

        result = self.call("getFile", {"file_id": file_id})
        file_path = (result or {}).get("file_path")
        if not file_path:
            raise BotApiError(f"getFile returned no path for {file_id}")
        try:
            return http_request(
                f"{API_ROOT}/file/bot{self._bot_token}/{file_path}",
                timeout=self._timeout,
            )
        except HttpStatusError as e:
            raise BotApiError(f"File download failed with {e.status}") from e

    def set_webhook(self, url: str) -> Any:
        return self.call(
            "setWebhook",
            {"url": url, "allowed_updates": ["message", "channel_post"]},
        )

    def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        reply_to_message_id: Optional[int] = None,
        reply_markup: Optional[dict] = None,
    ) -> Any:
        payload: dict = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if reply_to_message_id is not None:
            payload["reply_to_message_id"] = reply_to_message_id
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        return self.call("sendMessage", payload)
