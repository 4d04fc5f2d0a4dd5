"""Telegram-to-core message mapping adapter.

This keeps Telethon-specific details out of the core pipeline.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from telethon.tl.custom import Message
from telethon.tl.types import MessageMediaWebPage

from miner.models import MessageKind, SourceFamily

LOGGER = logging.getLogger(__name__)


def source_key_from_message(message: Message) -> str:
    """Normalize a source key using a single rule enforced across the app."""

    chat = getattr(message, "chat", None)
    username = getattr(chat, "username", None)

    if isinstance(username, str) and username:
        return f"@{username.lower()}"

    # Fallback: always stable and universal
    return f"chat_id:{message.chat_id}"


def message_id_for(message: Message) -> str:
    # Telegram ids are only unique within one chat.
    return f"tg:{message.chat_id}:{message.id}"


def message_kind(message: Message) -> MessageKind:
    if getattr(message, "photo", None):
        return MessageKind.IMAGE
    media = getattr(message, "media", None)
    if media is None or isinstance(media, MessageMediaWebPage):
        return MessageKind.TEXT
    # Captions on documents and videos still carry prices and sizes.
    if getattr(message, "raw_text", None):
        return MessageKind.TEXT
    return MessageKind.OTHER


async def download_photo(message: Message, media_dir: str) -> Optional[str]:
    """Save a message photo under ``media_dir`` and return its path."""

    if not getattr(message, "photo", None):
        return None
    os.makedirs(media_dir, exist_ok=True)
    target = os.path.join(media_dir, f"{message.chat_id}_{message.id}.jpg")
    if os.path.exists(target):
        return target
    try:
        path = await message.download_media(file=target)
    except Exception:  # noqa: BLE001
        LOGGER.exception("Failed to download photo for message %s", message_id_for(message))
        return None
    return str(path) if path else None


def build_record(message: Message, media_ref: Optional[str] = None) -> Dict[str, Any]:
    """Build the normalized ingestion record for a Telethon Message."""

    sender = getattr(message, "sender", None)
    sender_name = getattr(sender, "username", None) or getattr(sender, "first_name", None)
    sender_id = getattr(message, "sender_id", None) or message.chat_id

    return {
        "id": message_id_for(message),
        "chat_id": source_key_from_message(message),
        "sender_id": str(sender_id),
        "sender_name": sender_name,
        "timestamp": message.date,
        "kind": message_kind(message).value,
        "text": message.raw_text or None,
        "media_ref": media_ref,
        "source": SourceFamily.TELEGRAM.value,
    }
