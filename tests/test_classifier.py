from __future__ import annotations

from factories import image, other, text
from miner.classifier import (
    SequenceTag,
    classify_message,
    classify_sequence,
    has_descriptive_text,
    has_valid_composition,
)


def test_tags_for_each_kind() -> None:
    assert classify_message(text("t", 0)) == SequenceTag.TEXT
    assert classify_message(image("i", 0)) == SequenceTag.IMAGE
    assert classify_message(image("b", 0, caption="red coat")) == SequenceTag.BOTH
    assert classify_message(other("o", 0)) == SequenceTag.NEITHER


def test_image_without_media_is_neither() -> None:
    assert classify_message(image("i", 0, media_ref=None)) == SequenceTag.NEITHER


def test_empty_text_message_is_still_text_eligible() -> None:
    message = text("t", 0, body="")
    assert classify_message(message) == SequenceTag.TEXT
    assert not has_descriptive_text(message)


def test_blank_caption_is_plain_image() -> None:
    assert classify_message(image("i", 0, caption="   ")) == SequenceTag.IMAGE


def test_classify_sequence_is_deterministic() -> None:
    messages = [image("i1", 0), image("i2", 1, caption="x"), text("t1", 2), other("o", 3)]
    first = classify_sequence(messages)
    assert first == classify_sequence(list(messages))
    assert first == [SequenceTag.IMAGE, SequenceTag.BOTH, SequenceTag.TEXT, SequenceTag.NEITHER]


def test_caption_does_not_satisfy_text_requirement() -> None:
    assert not has_valid_composition([image("i1", 0, caption="coat 2000"), image("i2", 1)])
    assert has_valid_composition([image("i1", 0, caption="coat 2000"), text("t1", 2)])
    assert not has_valid_composition([text("t1", 0), text("t2", 1)])
