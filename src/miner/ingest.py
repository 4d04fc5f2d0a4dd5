"""Ingestion boundary for normalized chat records.

Provider adapters map their payloads to a plain record with the keys
``id, chat_id, sender_id, timestamp, kind`` and optionally ``text``,
``media_ref``, ``source`` and ``sender_name``. Records are validated here and
inserted idempotently by message id.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from miner.errors import MalformedMessageError
from miner.models import ChatMessage, MessageKind, SourceFamily
from miner.ports import MessageStore

LOGGER = logging.getLogger(__name__)

REQUIRED_FIELDS = ("id", "chat_id", "sender_id", "timestamp", "kind")


def parse_timestamp(value: Any) -> datetime:
    """Accept aware/naive datetimes, epoch seconds, or ISO-8601 strings; return UTC."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise MalformedMessageError(f"invalid timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedMessageError(f"invalid timestamp: {value!r}") from exc
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError as exc:
            raise MalformedMessageError(f"invalid timestamp: {value!r}") from exc
    else:
        raise MalformedMessageError(f"invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_enum(enum_cls, value: Any, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as exc:
        raise MalformedMessageError(f"unknown {field_name}: {value!r}") from exc


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def message_from_record(record: Mapping[str, Any]) -> ChatMessage:
    """Validate one normalized record and build a ChatMessage."""

    missing = [name for name in REQUIRED_FIELDS if record.get(name) in (None, "")]
    if missing:
        raise MalformedMessageError(f"missing fields: {', '.join(missing)}")

    kind = _parse_enum(MessageKind, record["kind"], "kind")
    source = _parse_enum(SourceFamily, record.get("source") or SourceFamily.WHATSAPP, "source")
    media_ref = _optional_text(record.get("media_ref")) or None

    return ChatMessage(
        id=str(record["id"]),
        chat_id=str(record["chat_id"]),
        sender_id=str(record["sender_id"]),
        timestamp=parse_timestamp(record["timestamp"]),
        kind=kind,
        text=_optional_text(record.get("text")),
        media_ref=media_ref,
        source=source,
        sender_name=_optional_text(record.get("sender_name")),
    )


class MessageIngestor:
    """Validates and stores inbound records."""

    def __init__(self, store: MessageStore) -> None:
        self._store = store

    def ingest(self, record: Mapping[str, Any]) -> bool:
        """Insert one record. Returns False when the id was already stored.

        Raises MalformedMessageError for records that cannot be normalized.
        """

        message = message_from_record(record)
        inserted = self._store.insert_message(message)
        if inserted:
            LOGGER.debug("Stored %s message %s from %s", message.kind.value, message.id, message.sender_id)
        return inserted

    def ingest_message(self, message: ChatMessage) -> bool:
        return self._store.insert_message(message)

    def ingest_many(self, records: Iterable[Mapping[str, Any]]) -> tuple[int, int]:
        """Insert records, skipping malformed ones. Returns (inserted, skipped)."""

        inserted = 0
        skipped = 0
        for record in records:
            try:
                if self.ingest(record):
                    inserted += 1
            except MalformedMessageError as exc:
                skipped += 1
                LOGGER.warning("Skipping malformed message %s: %s", record.get("id"), exc)
        return inserted, skipped
