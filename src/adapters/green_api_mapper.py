"""Green API (WhatsApp) webhook mapper.

Converts an ``incomingMessageReceived`` webhook body into the normalized
record accepted by ``MessageIngestor``.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, Mapping, Optional

from miner.errors import MalformedMessageError
from miner.models import MessageKind, SourceFamily

INCOMING_WEBHOOKS = {"incomingMessageReceived"}
TEXT_TYPES = {"textMessage", "extendedTextMessage", "quotedMessage"}
IMAGE_TYPES = {"imageMessage"}


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """``"79001234567@c.us"`` -> ``"79001234567"``; other ids pass through trimmed."""

    if not raw:
        return None
    local = raw.split("@", 1)[0]
    digits = re.sub(r"\D", "", local)
    return digits or local.strip() or None


def _extract_text(message_data: Mapping[str, Any]) -> Optional[str]:
    text_data = message_data.get("textMessageData") or {}
    extended = message_data.get("extendedTextMessage") or {}
    extended_data = message_data.get("extendedTextMessageData") or {}
    return (
        message_data.get("textMessage")
        or text_data.get("textMessage")
        or extended.get("text")
        or extended_data.get("text")
        or None
    )


def _extract_media(message_data: Mapping[str, Any]) -> tuple[Optional[str], Optional[str]]:
    if message_data.get("downloadUrl"):
        return message_data["downloadUrl"], message_data.get("caption") or None
    file_data = message_data.get("fileMessageData") or {}
    return file_data.get("downloadUrl") or None, file_data.get("caption") or None


def map_webhook(
    payload: Mapping[str, Any], allowed_chats: Optional[Iterable[str]] = None
) -> Optional[Dict[str, Any]]:
    """Return a normalized record, or None for webhooks that carry no inbound message.

    Raises MalformedMessageError when an inbound message lacks required fields.
    """

    if payload.get("typeWebhook") not in INCOMING_WEBHOOKS:
        return None

    message_data = payload.get("messageData")
    sender_data = payload.get("senderData") or {}
    message_id = payload.get("idMessage")
    if not isinstance(message_data, Mapping) or not message_id:
        raise MalformedMessageError("webhook without messageData or idMessage")

    chat_id = sender_data.get("chatId") or payload.get("chatId")
    if not chat_id:
        raise MalformedMessageError(f"message {message_id} has no chatId")
    if allowed_chats is not None and chat_id not in set(allowed_chats):
        return None

    sender_id = normalize_phone(sender_data.get("sender")) or chat_id
    type_message = message_data.get("typeMessage") or ""
    media_url, caption = _extract_media(message_data)
    text = _extract_text(message_data)

    if type_message in IMAGE_TYPES:
        kind = MessageKind.IMAGE
        text = caption or text
    elif type_message in TEXT_TYPES:
        kind = MessageKind.TEXT
    else:
        kind = MessageKind.OTHER
        text = text or caption

    return {
        "id": str(message_id),
        "chat_id": str(chat_id),
        "sender_id": sender_id,
        "sender_name": sender_data.get("senderName") or None,
        "timestamp": payload.get("timestamp"),
        "kind": kind.value,
        "text": text,
        "media_ref": media_url,
        "source": SourceFamily.WHATSAPP.value,
    }
