"""Enrichment adapter for OpenAI-compatible chat-completions APIs.

Every answer is parsed defensively into the core's attribute types; anything
the core cannot use becomes an EnrichmentError. The core re-validates groups
and required fields on top of this.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import httpx

from adapters import prompts
from adapters.retry import is_transient, retry_async
from miner.config import RetryConfig
from miner.errors import EnrichmentError
from miner.models import (
    Category,
    ChatMessage,
    Gender,
    GroupProvenance,
    ImageAttributes,
    MessageGroup,
    Season,
    SizeEntry,
    TextAttributes,
)

LOGGER = logging.getLogger(__name__)


def _clean_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    if not cleaned or cleaned.lower() in {"null", "none", "n/a"}:
        return None
    return cleaned


def parse_price(value: Any) -> Optional[float]:
    """Accept numbers and strings like ``"1 500"`` or ``"1500 руб"``."""

    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        price = float(value)
    elif isinstance(value, str):
        digits = re.sub(r"[^\d.,]", "", value).replace(",", ".")
        if not digits:
            return None
        try:
            price = float(digits)
        except ValueError:
            return None
    else:
        return None
    return price if price > 0 else None


def parse_sizes(value: Any) -> tuple[SizeEntry, ...]:
    if not isinstance(value, list):
        return ()
    sizes: List[SizeEntry] = []
    for item in value:
        if isinstance(item, dict):
            size = _clean_text(str(item.get("size"))) if item.get("size") is not None else None
            try:
                count = int(item.get("count", 1))
            except (TypeError, ValueError):
                count = 1
        elif isinstance(item, (str, int, float)) and not isinstance(item, bool):
            size = _clean_text(str(item))
            count = 1
        else:
            continue
        if size:
            sizes.append(SizeEntry(size=size, count=max(1, count)))
    return tuple(sizes)


def _parse_enum(enum_cls, value: Any):
    if not isinstance(value, str):
        return None
    try:
        return enum_cls(value.strip().upper())
    except ValueError:
        return None


def parse_text_attributes(data: Dict[str, Any]) -> TextAttributes:
    return TextAttributes(
        name=_clean_text(data.get("name")),
        description=_clean_text(data.get("description")),
        price=parse_price(data.get("price")),
        sizes=parse_sizes(data.get("sizes")),
        material=_clean_text(data.get("material")),
        gender=_parse_enum(Gender, data.get("gender")),
        season=_parse_enum(Season, data.get("season")),
    )


def parse_image_attributes(image_ref: str, data: Dict[str, Any]) -> ImageAttributes:
    category = data.get("categoryId", data.get("category_id"))
    return ImageAttributes(
        image_ref=image_ref,
        color=_clean_text(data.get("color")),
        category_id=str(category) if category not in (None, "") else None,
        name=_clean_text(data.get("name")),
        description=_clean_text(data.get("description")),
        gender=_parse_enum(Gender, data.get("gender")),
        season=_parse_enum(Season, data.get("season")),
    )


def parse_groups(data: Dict[str, Any], messages: Sequence[ChatMessage]) -> List[MessageGroup]:
    """Turn the ``groups`` array into MessageGroups; malformed entries are dropped."""

    raw_groups = data.get("groups")
    if not isinstance(raw_groups, list):
        raise EnrichmentError("grouping response has no groups array")

    senders = {message.id: message.sender_id for message in messages}
    groups: List[MessageGroup] = []
    for index, raw in enumerate(raw_groups):
        if not isinstance(raw, dict):
            continue
        ids = raw.get("messageIds") or raw.get("message_ids")
        if not isinstance(ids, list) or not ids:
            continue
        message_ids = tuple(str(message_id) for message_id in ids)
        try:
            confidence = float(raw.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        groups.append(
            MessageGroup(
                group_id=str(raw.get("groupId") or f"llm-{index}"),
                message_ids=message_ids,
                sender_id=senders.get(message_ids[0], ""),
                provenance=GroupProvenance.LLM,
                confidence=confidence,
                product_context=_clean_text(raw.get("productContext")) or "",
            )
        )
    return groups


class HttpEnrichmentAdapter:
    """Thin OpenAI-compatible client that satisfies the EnrichmentPort."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        text_model: str,
        vision_model: str,
        grouping_model: Optional[str] = None,
        retry: Optional[RetryConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        temperature: float = 0.1,
    ) -> None:
        self._base = base_url.rstrip("/")
        self._api_key = api_key
        self._text_model = text_model
        self._vision_model = vision_model
        self._grouping_model = grouping_model or text_model
        self._retry = retry or RetryConfig()
        self._client = client
        self._temperature = temperature

    async def group_messages(self, messages: Sequence[ChatMessage]) -> List[MessageGroup]:
        data = await self._complete(
            self._grouping_model,
            [
                {"role": "system", "content": prompts.GROUPING_SYSTEM_PROMPT},
                {"role": "user", "content": prompts.grouping_user_prompt(messages)},
            ],
            label="grouping",
        )
        return parse_groups(data, messages)

    async def analyze_text(self, text: str, image_refs: Sequence[str]) -> TextAttributes:
        data = await self._complete(
            self._text_model,
            [
                {"role": "system", "content": prompts.TEXT_ANALYSIS_SYSTEM_PROMPT},
                {"role": "user", "content": prompts.text_analysis_user_prompt(text, image_refs)},
            ],
            label="text analysis",
        )
        return parse_text_attributes(data)

    async def analyze_image(
        self, image_ref: str, text: str, categories: Sequence[Category]
    ) -> ImageAttributes:
        data = await self._complete(
            self._vision_model,
            [
                {"role": "system", "content": prompts.IMAGE_ANALYSIS_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompts.image_analysis_user_prompt(text, categories)},
                        {"type": "image_url", "image_url": {"url": image_ref}},
                    ],
                },
            ],
            label="image analysis",
        )
        return parse_image_attributes(image_ref, data)

    async def _complete(self, model: str, messages: List[Dict[str, Any]], label: str) -> Dict[str, Any]:
        payload = {
            "model": model,
            "messages": messages,
            "temperature": self._temperature,
            "response_format": {"type": "json_object"},
        }
        try:
            data = await retry_async(self._post, payload, config=self._retry, label=label)
        except httpx.HTTPStatusError as exc:
            raise EnrichmentError(
                f"{label}: HTTP {exc.response.status_code}", retryable=is_transient(exc)
            ) from exc
        except httpx.HTTPError as exc:
            raise EnrichmentError(f"{label}: {exc.__class__.__name__}", retryable=is_transient(exc)) from exc
        except ValueError as exc:
            raise EnrichmentError(f"{label}: response body is not JSON") from exc

        try:
            content = data["choices"][0]["message"]["content"]
            parsed = json.loads(content)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise EnrichmentError(f"{label}: malformed response") from exc
        if not isinstance(parsed, dict):
            raise EnrichmentError(f"{label}: response is not a JSON object")
        return parsed

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        url = f"{self._base}/chat/completions"
        if self._client is not None:
            response = await self._client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()

        async with httpx.AsyncClient(timeout=self._retry.timeout_seconds) as client:
            response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
