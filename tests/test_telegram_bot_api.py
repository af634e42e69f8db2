from __future__ import annotations

import json

import pytest

from listingfeed.adapters import telegram_bot_api
from listingfeed.adapters.http import HttpStatusError
from listingfeed.adapters.telegram_bot_api import BotApiClient, BotApiError


class RecordingTransport:
    def __init__(self, responses: list) -> None:
        self.responses = responses
        self.requests: list[dict] = []

    def __call__(self, url, *, data=None, headers=None, method=None, timeout=None):
        self.requests.append(
            {"url": url, "payload": json.loads(data) if data else None, "timeout": timeout}
        )
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _ok(result) -> bytes:
    return json.dumps({"ok": True, "result": result}).encode("utf-8")


def test_send_message_payload(monkeypatch) -> None:
    transport = RecordingTransport([_ok({"message_id": 9})])
    monkeypatch.setattr(telegram_bot_api, "http_request", transport)
    bot = BotApiClient("123:abc", timeout=5.0)

    result = bot.send_message("@market", "<b>hi</b>", reply_to_message_id=501, reply_markup={"inline_keyboard": []})

    assert result == {"message_id": 9}
    request = transport.requests[0]
    assert request["url"] == "https://api.telegram.org/bot123:abc/sendMessage"
    assert request["timeout"] == 5.0
    assert request["payload"] == {
        "chat_id": "@market",
        "text": "<b>hi</b>",
        "parse_mode": "HTML",
        "disable_web_page_preview": True,
        "reply_to_message_id": 501,
        "reply_markup": {"inline_keyboard": []},
    }


def test_download_file_resolves_path(monkeypatch) -> None:
    transport = RecordingTransport([_ok({"file_path": "photos/file_1.jpg"}), b"jpeg"])
    monkeypatch.setattr(telegram_bot_api, "http_request", transport)

    assert BotApiClient("123:abc").download_file("large") == b"jpeg"
    assert transport.requests[1]["url"] == "https://api.telegram.org/file/bot123:abc/photos/file_1.jpg"


def test_set_webhook_subscribes_to_channel_posts(monkeypatch) -> None:
    transport = RecordingTransport([_ok(True)])
    monkeypatch.setattr(telegram_bot_api, "http_request", transport)

    assert BotApiClient("t").set_webhook("https://board.example/api/bot") is True
    assert transport.requests[0]["payload"]["allowed_updates"] == ["message", "channel_post"]


def test_api_errors_raise(monkeypatch) -> None:
    transport = RecordingTransport(
        [
            json.dumps({"ok": False, "description": "chat not found"}).encode("utf-8"),
            HttpStatusError("https://api.telegram.org/bott/sendMessage", 403, "Forbidden"),
        ]
    )
    monkeypatch.setattr(telegram_bot_api, "http_request", transport)
    bot = BotApiClient("t")

    with pytest.raises(BotApiError, match="chat not found"):
        bot.send_message("@x", "hi")
    with pytest.raises(BotApiError, match="403"):
        bot.send_message("@x", "hi")
