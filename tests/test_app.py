from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

import app
import settings
from adapters.sqlite_storage import SQLiteStorage
from miner.coordinator import RunCoordinator
from miner.errors import SetupError
from miner.ingest import MessageIngestor
from miner.models import (
    ChatMessage,
    ImageAttributes,
    MessageKind,
    RunStatus,
    RunTrigger,
    SizeEntry,
    SourceFamily,
    TextAttributes,
)


class FakeEnrichment:
    async def group_messages(self, messages):
        return []

    async def analyze_text(self, text, image_refs):
        return TextAttributes(name="Coat", price=4500.0, sizes=(SizeEntry("44"),))

    async def analyze_image(self, image_ref, text, categories):
        return ImageAttributes(image_ref=image_ref, color="red", category_id="outerwear")


@pytest.fixture()
def workspace(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DB_PATH", str(tmp_path / "catalog.db"))
    monkeypatch.setattr(settings, "OBJECT_STORE_DIR", str(tmp_path / "products"))
    monkeypatch.setattr(settings, "OBJECT_STORE_BASE_URL", None)
    monkeypatch.setattr(settings, "LOGGING", {})
    monkeypatch.setattr(settings, "WHATSAPP_CHATS", [])
    monkeypatch.setattr(app, "build_enrichment", lambda retry: FakeEnrichment())
    return tmp_path


def _storage() -> SQLiteStorage:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    return storage


def _seed_messages(tmp_path) -> None:
    photo = tmp_path / "photo.jpg"
    photo.write_bytes(b"\xff\xd8jpeg")
    now = datetime.now(timezone.utc) - timedelta(minutes=10)
    storage = _storage()
    storage.insert_message(
        ChatMessage("m1", "chat-1", "alice", now, MessageKind.IMAGE, media_ref=str(photo))
    )
    storage.insert_message(
        ChatMessage("m2", "chat-1", "alice", now + timedelta(seconds=5), MessageKind.TEXT, text="Coat 4500, 44")
    )


def test_no_command_prints_help() -> None:
    assert app.main([]) == app.EXIT_SETUP


def test_init_db_seeds_categories(workspace) -> None:
    assert app.main(["init-db"]) == app.EXIT_OK

    ids = {category.id for category in _storage().list_active_categories()}
    assert {"uncategorized", "outerwear"} <= ids


def test_ingest_webhook_file(workspace) -> None:
    payloads = [
        {
            "typeWebhook": "incomingMessageReceived",
            "idMessage": "A1",
            "timestamp": 1714557600,
            "senderData": {"chatId": "120363@g.us", "sender": "79001234567@c.us"},
            "messageData": {"typeMessage": "textMessage", "textMessageData": {"textMessage": "hi"}},
        },
        {"typeWebhook": "outgoingMessageStatus"},
        {"typeWebhook": "incomingMessageReceived", "idMessage": "A2"},
    ]
    path = workspace / "webhooks.json"
    path.write_text(json.dumps(payloads), encoding="utf-8")

    assert app.main(["ingest-webhook", str(path)]) == app.EXIT_OK
    assert _storage().message_counts()["total"] == 1


def test_run_creates_product(workspace, capsys) -> None:
    _seed_messages(workspace)

    assert app.main(["run", "--grouping", "rule"]) == app.EXIT_OK

    [product] = _storage().list_products()
    assert product.is_active
    assert product.category_id == "outerwear"
    assert product.images[0].url.startswith("file://")
    assert "1 created" in capsys.readouterr().out


def test_run_exit_codes_when_rejected(workspace) -> None:
    coordinator = RunCoordinator(_storage(), settings.COORDINATOR)
    assert coordinator.admit(RunTrigger.MANUAL, SourceFamily.WHATSAPP).accepted

    assert app.main(["run", "--trigger", "cron"]) == app.EXIT_OK
    assert app.main(["run"]) == app.EXIT_SETUP


def test_run_setup_error(workspace, monkeypatch) -> None:
    def broken(retry):
        raise SetupError("Missing ENRICHMENT_API_KEY in environment")

    monkeypatch.setattr(app, "build_enrichment", broken)

    assert app.main(["run"]) == app.EXIT_SETUP
    assert _storage().list_runs() == []


def test_status_and_dedup(workspace, capsys) -> None:
    _seed_messages(workspace)
    app.main(["run"])
    capsys.readouterr()

    assert app.main(["status"]) == app.EXIT_OK
    out = capsys.readouterr().out
    assert "No runs in progress." in out
    assert RunStatus.COMPLETED.value in out

    assert app.main(["dedup", "--dry-run"]) == app.EXIT_OK
    assert "0 duplicate sets found" in capsys.readouterr().out


class DroppingTelegramClient:
    def __init__(self) -> None:
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def is_user_authorized(self) -> bool:
        return True

    async def get_entity(self, source):
        return source

    async def iter_messages(self, entity, limit=None):
        raise ConnectionError("connection dropped")
        yield


def test_telegram_client_disconnects_when_polling_fails(workspace, monkeypatch) -> None:
    monkeypatch.setattr(settings, "TELEGRAM_SOURCES", [{"source_key": "@shop"}])
    telegram = DroppingTelegramClient()

    with pytest.raises(ConnectionError):
        asyncio.run(app._ingest_telegram_sources(telegram, MessageIngestor(_storage())))

    assert not telegram.connected
