"""Per-message sequence tags used by the grouper (core domain).

Two notions are kept apart on purpose:
- a message is *text-eligible* when its kind is a text type, even if the
  payload is empty; only such messages satisfy a group's "needs text" rule
- a message carries *descriptive text* when it has any non-blank text,
  including an image caption; that only matters once a group exists
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, List

from miner.models import ChatMessage, MessageKind


class SequenceTag(str, Enum):
    TEXT = "T"
    IMAGE = "I"
    BOTH = "B"
    NEITHER = "N"


IMAGE_TAGS = frozenset({SequenceTag.IMAGE, SequenceTag.BOTH})
TEXT_TAGS = frozenset({SequenceTag.TEXT})


def _has_caption(message: ChatMessage) -> bool:
    return bool(message.text and message.text.strip())


def is_text_eligible(message: ChatMessage) -> bool:
    return message.kind == MessageKind.TEXT


def is_image_eligible(message: ChatMessage) -> bool:
    return message.kind == MessageKind.IMAGE and bool(message.media_ref)


def has_descriptive_text(message: ChatMessage) -> bool:
    return _has_caption(message)


def classify_message(message: ChatMessage) -> SequenceTag:
    """Return the sequence tag for one message."""

    if is_image_eligible(message):
        # A captioned image is still an image for sequencing purposes.
        return SequenceTag.BOTH if _has_caption(message) else SequenceTag.IMAGE
    if is_text_eligible(message):
        return SequenceTag.TEXT
    return SequenceTag.NEITHER


def classify_sequence(messages: Iterable[ChatMessage]) -> List[SequenceTag]:
    """Tag an ordered message list. Pure: same input, same tags."""

    return [classify_message(message) for message in messages]


def has_valid_composition(messages: Iterable[ChatMessage]) -> bool:
    """True when the messages contain a text-eligible and an image-eligible member."""

    tags = set(classify_sequence(messages))
    return bool(tags & TEXT_TAGS) and bool(tags & IMAGE_TAGS)
