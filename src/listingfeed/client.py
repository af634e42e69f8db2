"""Telegram client factory for listingfeed.

We explicitly manage the client's lifecycle (connect/disconnect) in the
callers so it is obvious when the session is used and when it ends.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from telethon import TelegramClient
from telethon.sessions import StringSession


def read_api_credentials() -> tuple[int, str]:
    """Return (api_id, api_hash) from the environment or fail fast."""

    load_dotenv()
    api_id = os.getenv("TELEGRAM_API_ID")
    api_hash = os.getenv("TELEGRAM_API_HASH")

    # Fail fast on missing credentials to avoid an ambiguous login prompt.
    if not api_id or not api_hash:
        raise RuntimeError("Missing TELEGRAM_API_ID or TELEGRAM_API_HASH in environment")
    try:
        return int(api_id), api_hash
    except ValueError as e:
        raise RuntimeError("TELEGRAM_API_ID must be numeric") from e


def build_client(require_session: bool = True) -> TelegramClient:
    """Create a Telethon client from environment variables.

    The session is a portable ``StringSession`` kept in TELEGRAM_SESSION,
    produced once by ``listingfeed session``. Importers require it; the
    session generator starts from an empty one.
    """

    api_id, api_hash = read_api_credentials()
    session = os.getenv("TELEGRAM_SESSION", "")
    if require_session and not session:
        raise RuntimeError("TELEGRAM_SESSION is empty. Run `listingfeed session` first.")

    logging.getLogger(__name__).info("Initializing Telegram client")

    return TelegramClient(StringSession(session), api_id, api_hash, connection_retries=3)
