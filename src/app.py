"""Application entry point for catalog-miner."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from art import tprint
from dotenv import load_dotenv

import settings
from adapters.green_api_mapper import map_webhook
from adapters.media import HttpMediaFetcher, LocalObjectStore
from adapters.sqlite_storage import SQLiteStorage
from adapters.telegram_mapper import build_record, download_photo
from client import authorize, build_client, build_enrichment
from miner.assembly import AssemblyPipeline
from miner.coordinator import RunCoordinator
from miner.dedup import DeduplicationGuard
from miner.errors import MalformedMessageError, SetupError
from miner.grouping import LlmGroupingStrategy, RuleBasedGrouper
from miner.ingest import MessageIngestor
from miner.models import Category, RunStatus, RunTrigger, SourceFamily
from miner.runner import BatchRunner, RunOptions

NAME = "CATALOG MINER"
FONT = "tarty-1"

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_SETUP = 2

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
    values = [os.getenv(name) for name in redact_cfg.get("patterns", [])]
    return sorted({value for value in values if value}, key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
    formatter = _RedactingFormatter(
        _collect_redaction_values(config),
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers: list[logging.Handler] = []
    if config.get("console", True):
        handlers.append(logging.StreamHandler())

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/catalog-miner.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                path,
                maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
                backupCount=int(file_cfg.get("backup_count", 5)),
                encoding="utf-8",
            )
        )

    if not handlers:
        return
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=handlers)


def _open_storage() -> SQLiteStorage:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    return storage


def _seed_categories(storage: SQLiteStorage) -> int:
    count = 0
    for entry in settings.CATEGORIES:
        if not entry.get("id") or not entry.get("name"):
            continue
        storage.upsert_category(
            Category(id=str(entry["id"]), name=entry["name"], is_active=bool(entry.get("active", True)))
        )
        count += 1
    return count


def _install_signal_handlers(runner: BatchRunner) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.request_stop)
        except (NotImplementedError, RuntimeError):
            # Event loops without signal support (Windows) use the plain handler.
            signal.signal(sig, lambda *_: runner.request_stop())


def _run(args: argparse.Namespace) -> int:
    trigger = RunTrigger(args.trigger)
    source = SourceFamily(args.source)
    try:
        enrichment = build_enrichment(settings.RETRY)
    except SetupError as exc:
        LOGGER.error("Setup failed: %s", exc)
        return EXIT_SETUP

    storage = _open_storage()
    _seed_categories(storage)
    coordinator = RunCoordinator(storage, settings.COORDINATOR)
    assembler = AssemblyPipeline(
        messages=storage,
        products=storage,
        enrichment=enrichment,
        media=HttpMediaFetcher(settings.RETRY),
        object_store=LocalObjectStore(settings.OBJECT_STORE_DIR, settings.OBJECT_STORE_BASE_URL),
        config=settings.ASSEMBLY,
        dedup=DeduplicationGuard(storage, storage),
    )
    grouping_mode = args.grouping or settings.GROUPING_MODE
    if grouping_mode == "llm":
        grouper: Any = LlmGroupingStrategy(enrichment, settings.GROUPING)
    else:
        grouper = RuleBasedGrouper(settings.GROUPING)
    runner = BatchRunner(coordinator, storage, grouper, assembler, settings.BATCH)

    options = RunOptions(
        trigger=trigger,
        source=source,
        chat_id=args.chat,
        page_size=args.page_size,
        lookback_hours=args.lookback_hours,
        reason=f"{trigger.value} run from CLI",
    )

    async def _main() -> Any:
        _install_signal_handlers(runner)
        return await runner.run(options)

    report = asyncio.run(_main())
    if not report.accepted:
        if trigger == RunTrigger.CRON:
            LOGGER.info("Cron run skipped: %s", report.reason)
            return EXIT_OK
        LOGGER.error("Run not started: %s", report.reason)
        return EXIT_SETUP

    counters = report.counters
    print(
        f"Run {report.run_id} {report.status.value}: "
        f"{counters.messages_read} messages, {counters.groups_formed} groups, "
        f"{counters.products_created} created, {counters.products_deleted} deleted"
    )
    return EXIT_OK if report.status == RunStatus.COMPLETED else EXIT_RUN_FAILED


def _ingest_webhook(args: argparse.Namespace) -> int:
    with open(args.file, "r", encoding="utf-8") as handle:
        payload = json.load(handle)
    payloads = payload if isinstance(payload, list) else [payload]

    ingestor = MessageIngestor(_open_storage())
    allowed = settings.WHATSAPP_CHATS or None
    inserted = skipped = ignored = 0
    for item in payloads:
        try:
            record = map_webhook(item, allowed)
            if record is None:
                ignored += 1
                continue
            if ingestor.ingest(record):
                inserted += 1
        except MalformedMessageError as exc:
            skipped += 1
            LOGGER.warning("Skipping malformed webhook: %s", exc)

    print(f"Webhooks: {inserted} stored, {skipped} malformed, {ignored} ignored")
    return EXIT_OK


async def _ingest_telegram_sources(client, ingestor: MessageIngestor) -> tuple[int, int]:
    inserted = skipped = 0
    await client.connect()
    try:
        await authorize(client)
        for source in settings.TELEGRAM_SOURCES:
            source_key = source.get("source_key")
            if not source_key:
                continue
            try:
                if source_key.startswith("@"):
                    entity = await client.get_entity(source_key)
                else:
                    entity = await client.get_entity(int(source_key.split("chat_id:", 1)[1]))
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to resolve Telegram source %s", source_key)
                continue

            messages = []
            async for message in client.iter_messages(entity, limit=settings.TELEGRAM_MESSAGES_PER_SOURCE):
                messages.append(message)

            for message in reversed(messages):
                media_ref = await download_photo(message, settings.MEDIA_DIR)
                try:
                    if ingestor.ingest(build_record(message, media_ref)):
                        inserted += 1
                except MalformedMessageError as exc:
                    skipped += 1
                    LOGGER.warning("Skipping Telegram message %s: %s", message.id, exc)
    finally:
        await client.disconnect()
    return inserted, skipped


def _ingest_telegram(args: argparse.Namespace) -> int:
    try:
        client = build_client()
    except SetupError as exc:
        LOGGER.error("Setup failed: %s", exc)
        return EXIT_SETUP

    ingestor = MessageIngestor(_open_storage())
    inserted, skipped = client.loop.run_until_complete(_ingest_telegram_sources(client, ingestor))
    print(f"Telegram: {inserted} stored, {skipped} malformed")
    return EXIT_OK


def _status(args: argparse.Namespace) -> int:
    storage = _open_storage()
    report = RunCoordinator(storage, settings.COORDINATOR).status()

    if not report.is_running:
        print("No runs in progress.")
    for run in report.running:
        minutes = report.durations[run.id] / 60
        print(
            f"RUNNING {run.id} {run.triggered_by.value}/{run.source_family.value} "
            f"for {minutes:.1f} min ({run.counters.messages_read} messages read)"
        )

    counts = storage.message_counts()
    print(f"Messages: {counts['total']} total, {counts['unprocessed']} unprocessed")
    for run in storage.list_runs(limit=args.limit):
        finished = run.completed_at.isoformat() if run.completed_at else "-"
        line = (
            f"{run.started_at.isoformat()} {run.status.value:<9} {run.triggered_by.value:<8} "
            f"{run.source_family.value:<8} created={run.counters.products_created} "
            f"deleted={run.counters.products_deleted} finished={finished}"
        )
        if run.error_message:
            line += f" error={run.error_message}"
        print(line)
    return EXIT_OK


def _dedup(args: argparse.Namespace) -> int:
    storage = _open_storage()
    guard = DeduplicationGuard(storage, storage)
    duplicates = guard.find_duplicate_products()
    for duplicate_set in duplicates:
        ids = ", ".join(product.id for product in duplicate_set.products)
        print(f"{duplicate_set.fingerprint[:12]}: {len(duplicate_set.products)} products ({ids})")
    if args.dry_run or not duplicates:
        print(f"{len(duplicates)} duplicate sets found")
        return EXIT_OK

    cleanup = guard.cleanup_duplicate_products()
    print(f"Deleted {cleanup.deleted_count} duplicate products")
    return EXIT_OK


def _init_db(args: argparse.Namespace) -> int:
    storage = _open_storage()
    seeded = _seed_categories(storage)
    print(f"Database ready at {settings.DB_PATH} ({seeded} categories)")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="catalog-miner")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Process unconsumed messages into products")
    run.add_argument("--page-size", type=int, default=None)
    run.add_argument("--lookback-hours", type=int, default=None)
    run.add_argument("--chat", default=None, help="Only process one chat id")
    run.add_argument("--source", choices=[s.value for s in SourceFamily], default=SourceFamily.WHATSAPP.value)
    run.add_argument("--trigger", choices=[t.value for t in RunTrigger], default=RunTrigger.MANUAL.value)
    run.add_argument("--grouping", choices=["rule", "llm"], default=None)

    subparsers.add_parser("ingest-telegram", help="Fetch recent messages from configured Telegram chats")
    webhook = subparsers.add_parser("ingest-webhook", help="Store Green API webhook payloads from a JSON file")
    webhook.add_argument("file")

    status = subparsers.add_parser("status", help="Show running and recent runs")
    status.add_argument("--limit", type=int, default=10)

    dedup = subparsers.add_parser("dedup", help="Delete products built from identical message sets")
    dedup.add_argument("--dry-run", action="store_true")

    subparsers.add_parser("init-db", help="Create tables and seed categories")
    return parser


COMMANDS = {
    "run": _run,
    "ingest-telegram": _ingest_telegram,
    "ingest-webhook": _ingest_webhook,
    "status": _status,
    "dedup": _dedup,
    "init-db": _init_db,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_SETUP

    _print_banner()
    _configure_logging()
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    raise SystemExit(main())
