"""Deduplication helpers (core domain).

Products are identified by the exact set of chat messages they were built
from. Both checks below compare sorted message-id sets, never content.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from miner.models import Product
from miner.ports import MessageStore, ProductStore

LOGGER = logging.getLogger(__name__)


def normalize_message_ids(message_ids: Iterable[str]) -> Tuple[str, ...]:
    """Return the sorted, de-duplicated id tuple used as provenance."""

    return tuple(sorted(set(message_ids)))


def compute_fingerprint(message_ids: Iterable[str]) -> str:
    """Return a deterministic hash of a message-id set."""

    payload = "\n".join(normalize_message_ids(message_ids))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class DedupResult:
    is_duplicate: bool
    existing_product_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class DuplicateSet:
    """Products sharing one fingerprint, oldest first."""

    fingerprint: str
    message_ids: Tuple[str, ...]
    products: Tuple[Product, ...]


@dataclass(frozen=True)
class CleanupReport:
    deleted_count: int
    kept_product_ids: Tuple[str, ...]
    deleted_product_ids: Tuple[str, ...]


class DeduplicationGuard:
    """Detects already-materialized products and already-consumed messages."""

    def __init__(self, messages: MessageStore, products: ProductStore) -> None:
        self._messages = messages
        self._products = products

    def check_duplicate_product(self, message_ids: Iterable[str]) -> DedupResult:
        """Check whether a product with the identical message-id set exists."""

        ids = normalize_message_ids(message_ids)
        if not ids:
            return DedupResult(is_duplicate=False)

        existing = self._products.find_by_fingerprint(compute_fingerprint(ids))
        for product in existing:
            # Guard against hash collisions by comparing the actual sets.
            if product.source_message_ids == ids:
                return DedupResult(
                    is_duplicate=True,
                    existing_product_id=product.id,
                    reason=f"Product {product.id} already built from the same messages",
                )
        return DedupResult(is_duplicate=False)

    def check_already_processed(self, message_ids: Iterable[str]) -> DedupResult:
        """Cheaper check: is any candidate message already consumed?"""

        ids = normalize_message_ids(message_ids)
        if not ids:
            return DedupResult(is_duplicate=False)

        processed = self._messages.find_processed(ids)
        if processed:
            return DedupResult(
                is_duplicate=True,
                reason=f"Messages already processed: {', '.join(sorted(processed))}",
            )
        return DedupResult(is_duplicate=False)

    def find_duplicate_products(self) -> List[DuplicateSet]:
        """Group all products by fingerprint and return sets with more than one."""

        by_fingerprint: dict[str, list[Product]] = {}
        for product in self._products.list_products():
            by_fingerprint.setdefault(product.fingerprint, []).append(product)

        duplicates: List[DuplicateSet] = []
        for fingerprint, products in by_fingerprint.items():
            if len(products) < 2:
                continue
            ordered = sorted(products, key=lambda p: (p.created_at, p.id))
            duplicates.append(
                DuplicateSet(
                    fingerprint=fingerprint,
                    message_ids=ordered[0].source_message_ids,
                    products=tuple(ordered),
                )
            )
        return duplicates

    def cleanup_duplicate_products(self) -> CleanupReport:
        """Keep the earliest product per fingerprint and delete the rest."""

        kept: list[str] = []
        deleted: list[str] = []
        for duplicate_set in self.find_duplicate_products():
            keeper, *extras = duplicate_set.products
            kept.append(keeper.id)
            for product in extras:
                self._products.delete_product(product.id)
                deleted.append(product.id)
                LOGGER.info("Deleted duplicate product %s (kept %s)", product.id, keeper.id)

        return CleanupReport(
            deleted_count=len(deleted),
            kept_product_ids=tuple(kept),
            deleted_product_ids=tuple(deleted),
        )
