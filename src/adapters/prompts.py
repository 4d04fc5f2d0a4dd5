"""Prompt templates for the chat-completions enrichment adapter."""

from __future__ import annotations

import json
from typing import Sequence

from miner.models import Category, ChatMessage

GROUPING_SYSTEM_PROMPT = """You group supplier chat messages into product listings.

Rules:
1. A group contains messages from ONE sender only.
2. A group is one continuous sequence: images followed by their text.
3. If the gap between consecutive messages is more than 60 seconds, they belong to different products.
4. Every group MUST contain at least one message with "has_image": true AND at least one with "kind": "text".
5. If the images+text pattern repeats, create separate groups.
6. A message belongs to at most one group. Skip messages you cannot place.

Reply with JSON only:
{"groups": [{"groupId": "string", "messageIds": ["..."], "productContext": "string", "confidence": 0.0}]}"""


def grouping_user_prompt(messages: Sequence[ChatMessage]) -> str:
    records = [
        {
            "id": message.id,
            "sender_id": message.sender_id,
            "timestamp": message.timestamp.isoformat(),
            "kind": message.kind.value,
            "has_image": bool(message.media_ref),
            "text": (message.text or "")[:500],
        }
        for message in messages
    ]
    return "Group these messages by product:\n" + json.dumps(records, ensure_ascii=False, indent=2)


TEXT_ANALYSIS_SYSTEM_PROMPT = """You extract product data from a supplier's description of clothing or footwear.

Reply with JSON only:
{
  "name": "short product name or null",
  "description": "cleaned-up description or null",
  "price": number or null,
  "sizes": [{"size": "string", "count": integer}],
  "material": "string or null",
  "gender": "MALE" | "FEMALE" | "UNISEX" | null,
  "season": "SPRING" | "SUMMER" | "AUTUMN" | "WINTER" | null
}

Use the wholesale price per item. Never invent a price or sizes: use null or [] when the text does not state them."""


def text_analysis_user_prompt(text: str, image_refs: Sequence[str]) -> str:
    return (
        f"Product text:\n{text}\n\n"
        f"The listing has {len(image_refs)} photos.\n"
        "Extract the product data."
    )


IMAGE_ANALYSIS_SYSTEM_PROMPT = """You describe one product photo for an online catalog.

Reply with JSON only:
{
  "color": "main color of the item or null",
  "categoryId": "id of the best matching category from the list or null",
  "name": "short product name or null",
  "description": "one or two sentences or null",
  "gender": "MALE" | "FEMALE" | "UNISEX" | null,
  "season": "SPRING" | "SUMMER" | "AUTUMN" | "WINTER" | null
}

Only use category ids from the provided list."""


def image_analysis_user_prompt(text: str, categories: Sequence[Category]) -> str:
    tree = [{"id": category.id, "name": category.name} for category in categories]
    return (
        f"Supplier text:\n{text}\n\n"
        f"Categories:\n{json.dumps(tree, ensure_ascii=False)}\n\n"
        "Describe the product in the photo."
    )
