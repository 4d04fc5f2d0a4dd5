from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from miner.models import ChatMessage, MessageKind, SourceFamily

BASE_TIME = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return BASE_TIME + timedelta(seconds=seconds)


def text(
    message_id: str,
    seconds: float,
    body: Optional[str] = "Dress, price 1500, sizes S M L",
    sender: str = "alice",
    chat: str = "chat-1",
) -> ChatMessage:
    return ChatMessage(
        id=message_id,
        chat_id=chat,
        sender_id=sender,
        timestamp=at(seconds),
        kind=MessageKind.TEXT,
        text=body,
        source=SourceFamily.WHATSAPP,
    )


def image(
    message_id: str,
    seconds: float,
    caption: Optional[str] = None,
    sender: str = "alice",
    chat: str = "chat-1",
    media_ref: Optional[str] = "https://media.example/img.jpg",
) -> ChatMessage:
    return ChatMessage(
        id=message_id,
        chat_id=chat,
        sender_id=sender,
        timestamp=at(seconds),
        kind=MessageKind.IMAGE,
        text=caption,
        media_ref=media_ref if media_ref is None else f"{media_ref}?id={message_id}",
        source=SourceFamily.WHATSAPP,
    )


def other(message_id: str, seconds: float, sender: str = "alice", chat: str = "chat-1") -> ChatMessage:
    return ChatMessage(
        id=message_id,
        chat_id=chat,
        sender_id=sender,
        timestamp=at(seconds),
        kind=MessageKind.OTHER,
    )
