"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for storage, enrichment, and media
adapters so that the core can be reused with different backends.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, List, Optional, Protocol, Sequence, Tuple

from miner.models import (
    Category,
    ChatMessage,
    ImageAttributes,
    MessageGroup,
    Product,
    RunCounters,
    RunRecord,
    RunStatus,
    SourceFamily,
    TextAttributes,
)


class MessageStore(Protocol):
    """Message operations required by the pipeline."""

    def insert_message(self, message: ChatMessage) -> bool:
        ...

    def get_messages(self, message_ids: Iterable[str]) -> List[ChatMessage]:
        ...

    def list_walk_page(
        self,
        *,
        since: datetime,
        offset: int,
        limit: int,
        chat_id: Optional[str] = None,
        source: Optional[SourceFamily] = None,
        run_id: Optional[str] = None,
    ) -> List[ChatMessage]:
        ...

    def list_unprocessed_after(
        self, *, chat_id: str, sender_id: str, after: datetime, after_id: str = ""
    ) -> List[ChatMessage]:
        ...

    def find_processed(self, message_ids: Iterable[str]) -> set[str]:
        ...

    def claim_messages(
        self, message_ids: Iterable[str], group_id: Optional[str], run_id: Optional[str]
    ) -> set[str]:
        ...

    def release_messages(self, message_ids: Iterable[str]) -> int:
        ...


class ProductStore(Protocol):
    """Product and category operations required by the pipeline."""

    def create_draft(self, product: Product) -> Product:
        ...

    def get_product(self, product_id: str) -> Optional[Product]:
        ...

    def save_product(self, product: Product) -> None:
        ...

    def activate_product(self, product_id: str) -> bool:
        ...

    def delete_product(self, product_id: str) -> bool:
        ...

    def find_by_fingerprint(self, fingerprint: str) -> List[Product]:
        ...

    def list_products(self) -> List[Product]:
        ...

    def list_active_categories(self) -> List[Category]:
        ...


ConflictCheck = Callable[[List[RunRecord]], Optional[str]]


class RunStore(Protocol):
    """Run record operations required by the coordinator."""

    def list_running_runs(self) -> List[RunRecord]:
        ...

    def fail_stale_runs(self, started_before: datetime, now: datetime) -> List[RunRecord]:
        ...

    def start_run(self, candidate: RunRecord, find_conflict: ConflictCheck) -> Tuple[Optional[str], List[RunRecord]]:
        ...

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        ...

    def update_run_counters(self, run_id: str, counters: RunCounters) -> None:
        ...

    def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        completed_at: datetime,
        counters: RunCounters,
        error_message: Optional[str] = None,
    ) -> None:
        ...


class EnrichmentPort(Protocol):
    """LLM-backed enrichment boundary. Responses are untrusted."""

    async def group_messages(self, messages: Sequence[ChatMessage]) -> List[MessageGroup]:
        ...

    async def analyze_text(self, text: str, image_refs: Sequence[str]) -> TextAttributes:
        ...

    async def analyze_image(
        self, image_ref: str, text: str, categories: Sequence[Category]
    ) -> ImageAttributes:
        ...


class MediaFetcherPort(Protocol):
    async def fetch(self, media_ref: str) -> Tuple[bytes, str]:
        ...


class ObjectStorePort(Protocol):
    async def put(self, key: str, data: bytes, content_type: str) -> str:
        ...

    async def get(self, url: str) -> bytes:
        ...

    async def delete(self, key: str) -> None:
        ...
