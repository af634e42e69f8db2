"""FastAPI app for Telegram Bot API webhook pushes.

POST /api/bot        receive an update and ingest accepted channel posts
GET  /api/bot/setup  register ``<APP_URL>/api/bot`` as the bot's webhook
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from listingfeed.adapters.telegram_bot_api import BotApiClient, BotApiError
from listingfeed.adapters.webhook_source import WebhookSource
from listingfeed.core.orchestrator import IngestionOrchestrator

LOGGER = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/bot"


def webhook_url_for(app_url: Optional[str]) -> str:
    """Return the public webhook URL or raise ValueError for unusable bases."""

    if not app_url or "localhost" in app_url or "127.0.0.1" in app_url:
        raise ValueError("APP_URL must be a public HTTPS URL, not localhost")
    return f"{app_url.rstrip('/')}{WEBHOOK_PATH}"


def build_app(
    source: WebhookSource,
    orchestrator: IngestionOrchestrator,
    bot: Optional[BotApiClient] = None,
    app_url: Optional[str] = None,
) -> FastAPI:
    router = APIRouter()
    ingest_lock = asyncio.Lock()

    @router.post(WEBHOOK_PATH)
    async def receive_update(request: Request):
        body = await request.body()
        try:
            update = json.loads(body or b"null")
        except ValueError:
            raise HTTPException(status_code=400, detail="Malformed JSON")
        if not isinstance(update, dict):
            raise HTTPException(status_code=400, detail="Update must be a JSON object")

        message = update.get("message") or {}
        if isinstance(message, dict) and str(message.get("text", "")).startswith("/start"):
            return {"ok": True}

        # Queue and drain under one lock so each delivery ingests only its own
        # post and answers for that post alone.
        async with ingest_lock:
            post = source.receive(update)
            if post is None:
                return {"ok": True}
            report = await orchestrator.ingest_channel(source, post.source_channel)
        if report.errors:
            # Telegram retries non-2xx deliveries; inserts are idempotent.
            LOGGER.error("@%s: webhook post %s was not stored", post.source_channel, post.source_message_id)
            raise HTTPException(status_code=503, detail="Store unavailable")
        return {"ok": True}

    @router.get(f"{WEBHOOK_PATH}/setup")
    async def setup_webhook():
        try:
            url = webhook_url_for(app_url)
        except ValueError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})
        if bot is None:
            raise HTTPException(status_code=503, detail="TELEGRAM_BOT_TOKEN is not configured")
        try:
            result = await asyncio.to_thread(bot.set_webhook, url)
        except (BotApiError, OSError) as e:
            LOGGER.exception("setWebhook failed")
            raise HTTPException(status_code=502, detail=str(e))
        return {"webhook_url": url, "telegram": result}

    app = FastAPI(title="listingfeed webhook")
    app.include_router(router)
    return app
