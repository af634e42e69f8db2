"""Application entry point for the listingfeed importers."""

from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
import logging
import os
import signal
from logging.handlers import RotatingFileHandler
from typing import Iterable, List, Optional

from art import tprint
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from listingfeed import settings as settings_module
from listingfeed.adapters.author_notifier import AuthorNotifier
from listingfeed.adapters.export_source import ExportSource, months_ago
from listingfeed.adapters.image_store import LocalImageStore
from listingfeed.adapters.scrape_source import ScrapeSource
from listingfeed.adapters.sqlite_storage import SQLiteListingStore
from listingfeed.adapters.telegram_bot_api import BotApiClient, BotApiError
from listingfeed.adapters.telegram_mapper import TelethonSource
from listingfeed.adapters.webhook_server import build_app, webhook_url_for
from listingfeed.adapters.webhook_source import WebhookSource
from listingfeed.client import build_client
from listingfeed.core.dedup import FingerprintIndex
from listingfeed.core.orchestrator import IngestionOrchestrator, RunReport
from listingfeed.core.processor import ListingProcessor
from listingfeed.core.trust import AuthorTrustScorer
from listingfeed.settings import Settings

NAME = "LISTINGFEED"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging(config: dict, verbose: bool = False) -> None:
    config = config or {}
    if not config.get("enabled", False) and not verbose:
        return

    load_dotenv()
    level_name = "DEBUG" if verbose else str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    formatter = _RedactingFormatter(_collect_redaction_values(config), fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True) or verbose:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/listingfeed.log")
        if not os.path.isabs(path):
            path = os.path.join(settings_module.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        file_handler = RotatingFileHandler(
            path,
            maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
            backupCount=int(file_cfg.get("backup_count", 5)),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers, force=True)
    # Telethon is chatty at DEBUG; keep it at INFO unless something breaks.
    logging.getLogger("telethon").setLevel(max(level, logging.INFO))


def _open_store(cfg: Settings, dry_run: bool = False) -> SQLiteListingStore:
    store = SQLiteListingStore(cfg.db_path)
    if dry_run:
        # Dry runs never write, so a missing database stays missing.
        return store
    directory = os.path.dirname(cfg.db_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    store.init_db()
    return store


def _build_orchestrator(
    cfg: Settings,
    store: SQLiteListingStore,
    dry_run: bool,
    index_max_entries: Optional[int] = None,
) -> IngestionOrchestrator:
    processor = ListingProcessor(
        store=store,
        images=LocalImageStore(cfg.images_dir, cfg.images_base_url),
        index=FingerprintIndex(index_max_entries),
        rules=cfg.rules,
        dedup_config=cfg.dedup,
        dry_run=dry_run,
    )
    return IngestionOrchestrator(
        processor,
        config=cfg.ingest.to_config(dry_run=dry_run),
        dedup_config=cfg.dedup,
        scorer=AuthorTrustScorer(store, cfg.trust),
    )


def _pick_channels(args: argparse.Namespace, default: Iterable[str]) -> List[str]:
    if args.channel:
        return [name.lstrip("@") for name in args.channel]
    return list(default)


def _since(months: Optional[int]) -> Optional[datetime]:
    if months is None:
        return None
    return months_ago(datetime.now(timezone.utc), months)


async def _run_with_stop(orchestrator: IngestionOrchestrator, coro) -> RunReport:
    """Run an ingestion coroutine; Ctrl+C stops after the current channel."""

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.request_stop)
    except (NotImplementedError, RuntimeError):
        LOGGER.debug("SIGINT handler not supported on this platform")
    try:
        return await coro
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _print_report(report: RunReport, dry_run: bool) -> None:
    console = Console()
    table = Table(title="Dry run" if dry_run else "Import summary")
    columns = ("imported", "updated", "duplicates", "cross_dupes", "too_old", "skipped", "errors")
    if dry_run:
        columns = ("previewed", "duplicates", "cross_dupes", "too_old", "skipped", "errors")
    table.add_column("channel")
    for column in columns:
        table.add_column(column, justify="right")

    for row in report.channels:
        table.add_row(f"@{row.channel}", *(str(getattr(row, c)) for c in columns))
    total = report.total()
    table.add_row("total", *(str(getattr(total, c)) for c in columns), style="bold")
    console.print(table)

    if dry_run:
        for channel in report.channels:
            if not channel.preview:
                continue
            preview = Table(title=f"@{channel.channel}: first {len(channel.preview)} posts")
            for column in ("id", "category", "price", "title"):
                preview.add_column(column)
            for item in channel.preview:
                price = f"{item.price} {item.currency}" if item.price is not None else "-"
                preview.add_row(str(item.message_id), item.category_slug, price, item.title[:50])
            console.print(preview)

    for trust in report.trust:
        if trust.rows_flagged:
            console.print(f"@{trust.channel}: {trust.rows_flagged} listing(s) flagged as verified")
    if report.stopped:
        console.print("[yellow]Stopped early; rerun to pick up the remaining channels.[/yellow]")


def _cmd_api(args: argparse.Namespace, cfg: Settings) -> None:
    client = build_client()
    store = _open_store(cfg, args.dry_run)

    async def _run() -> RunReport:
        await client.connect()
        try:
            if not await client.is_user_authorized():
                raise RuntimeError("TELEGRAM_SESSION is not authorized. Run `listingfeed session` again.")
            source = TelethonSource(client, default_limit=cfg.ingest.default_limit)
            orchestrator = _build_orchestrator(cfg, store, args.dry_run)
            return await _run_with_stop(
                orchestrator,
                orchestrator.run(
                    source,
                    _pick_channels(args, cfg.channels),
                    limit=args.limit or cfg.ingest.default_limit,
                    since=_since(args.months),
                ),
            )
        finally:
            await client.disconnect()

    _print_report(asyncio.run(_run()), args.dry_run)


def _cmd_export(args: argparse.Namespace, cfg: Settings) -> None:
    source = ExportSource(args.dir)
    channels = _pick_channels(args, source.channels())
    if not channels:
        raise RuntimeError(f"No channel folders found in {args.dir}")
    store = _open_store(cfg, args.dry_run)
    months = args.months if args.months is not None else cfg.ingest.months_back

    async def _run() -> RunReport:
        orchestrator = _build_orchestrator(cfg, store, args.dry_run)
        return await _run_with_stop(
            orchestrator,
            orchestrator.run(source, channels, limit=args.limit, since=_since(months)),
        )

    _print_report(asyncio.run(_run()), args.dry_run)


def _cmd_scrape(args: argparse.Namespace, cfg: Settings) -> None:
    source = ScrapeSource(
        page_delay_seconds=cfg.ingest.page_delay_seconds,
        timeout=cfg.ingest.http_timeout,
    )
    store = _open_store(cfg, args.dry_run)

    async def _run() -> RunReport:
        orchestrator = _build_orchestrator(cfg, store, args.dry_run)
        return await _run_with_stop(
            orchestrator,
            orchestrator.run(
                source,
                _pick_channels(args, cfg.channels),
                limit=args.limit,
                since=_since(args.months),
            ),
        )

    _print_report(asyncio.run(_run()), args.dry_run)


def _bot_from_env(cfg: Settings, required: bool = True) -> Optional[BotApiClient]:
    load_dotenv()
    token = os.getenv("TELEGRAM_BOT_TOKEN")
    if not token:
        if required:
            raise RuntimeError("TELEGRAM_BOT_TOKEN is required in .env")
        return None
    return BotApiClient(token, timeout=cfg.ingest.http_timeout)


def _cmd_serve(args: argparse.Namespace, cfg: Settings) -> None:
    import uvicorn

    store = _open_store(cfg)
    bot = _bot_from_env(cfg, required=False)
    if bot is None:
        LOGGER.warning("TELEGRAM_BOT_TOKEN is not set; photos and webhook setup are disabled")
    source = WebhookSource(cfg.monitored_channels, bot=bot)
    orchestrator = _build_orchestrator(
        cfg, store, dry_run=False, index_max_entries=cfg.dedup.index_max_entries
    )
    app = build_app(source, orchestrator, bot=bot, app_url=os.getenv("APP_URL"))
    LOGGER.info("Monitoring %s channel(s) via webhook", len(cfg.monitored_channels))
    uvicorn.run(app, host=args.host, port=args.port)


def _cmd_score(args: argparse.Namespace, cfg: Settings) -> None:
    store = _open_store(cfg)
    scorer = AuthorTrustScorer(store, cfg.trust)
    console = Console()
    table = Table(title="Author trust")
    for column in ("channel", "verified authors", "channel verified", "rows flagged"):
        table.add_column(column)
    for channel in _pick_channels(args, cfg.channels):
        result = scorer.score(channel)
        table.add_row(
            f"@{channel}",
            str(len(result.verified_authors)),
            "yes" if result.channel_verified else "no",
            str(result.rows_flagged),
        )
    console.print(table)


def _cmd_notify(args: argparse.Namespace, cfg: Settings) -> None:
    bot = _bot_from_env(cfg)
    app_url = os.getenv("APP_URL")
    if not app_url:
        raise RuntimeError("APP_URL is required to build listing links")
    store = _open_store(cfg)
    notifier = AuthorNotifier(bot, store, app_url, dry_run=args.dry_run)
    channel = args.channel[0].lstrip("@") if args.channel else None
    report = asyncio.run(notifier.run(channel))

    console = Console()
    if args.dry_run:
        for notice in report.planned:
            console.print(f"would reply to @{notice.source_channel} msg {notice.source_message_id}: {notice.title[:60]}")
        console.print("Run without --dry-run to actually send the notifications.")
    else:
        console.print(f"sent: {report.sent} | failed: {report.failed}")


def _cmd_session(args: argparse.Namespace, cfg: Settings) -> None:
    from listingfeed.get_session import main as session_main

    asyncio.run(session_main())


def _cmd_setup_webhook(args: argparse.Namespace, cfg: Settings) -> None:
    bot = _bot_from_env(cfg)
    url = webhook_url_for(os.getenv("APP_URL"))
    result = bot.set_webhook(url)
    Console().print(f"Webhook set to {url}: {result}")


COMMANDS = {
    "api": _cmd_api,
    "export": _cmd_export,
    "scrape": _cmd_scrape,
    "serve": _cmd_serve,
    "score": _cmd_score,
    "notify": _cmd_notify,
    "session": _cmd_session,
    "setup-webhook": _cmd_setup_webhook,
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Path to config.json")
    common.add_argument("--verbose", "--debug", action="store_true", dest="verbose", help="Force DEBUG logging")

    channels = argparse.ArgumentParser(add_help=False)
    channels.add_argument("--channel", action="append", help="Only this channel (repeatable)")

    ingest = argparse.ArgumentParser(add_help=False, parents=[channels])
    ingest.add_argument("--limit", type=int, help="Max posts per channel")
    ingest.add_argument("--months", type=int, help="Ignore posts older than this many months")
    ingest.add_argument("--dry-run", action="store_true", help="Parse and report without writing")

    parser = argparse.ArgumentParser(prog="listingfeed")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("api", parents=[common, ingest], help="Import via an authenticated session")
    export = subparsers.add_parser("export", parents=[common, ingest], help="Import Telegram Desktop HTML exports")
    export.add_argument("--dir", default="./tg-export", help="Export root with one folder per channel")
    subparsers.add_parser("scrape", parents=[common, ingest], help="Import from public t.me/s pages")

    serve = subparsers.add_parser("serve", parents=[common], help="Run the Bot API webhook server")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    subparsers.add_parser("score", parents=[common, channels], help="Re-run the author trust pass")
    notify = subparsers.add_parser("notify", parents=[common, channels], help="Reply to authors with listing links")
    notify.add_argument("--dry-run", action="store_true", help="List the replies without sending")
    subparsers.add_parser("session", parents=[common], help="Log in once and print TELEGRAM_SESSION")
    subparsers.add_parser("setup-webhook", parents=[common], help="Register APP_URL/api/bot with Telegram")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    load_dotenv()
    _print_banner()

    try:
        cfg = settings_module.load_settings(args.config)
        _configure_logging(cfg.logging, verbose=args.verbose)
        if getattr(args, "dry_run", False):
            LOGGER.warning("DRY RUN: nothing will be written")
        COMMANDS[args.command](args, cfg)
    except (RuntimeError, FileNotFoundError, ValueError, BotApiError) as e:
        LOGGER.error("%s", e)
        Console(stderr=True).print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
