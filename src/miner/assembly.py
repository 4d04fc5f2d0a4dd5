"""Product assembly pipeline (core domain).

One message group becomes one catalog product through sequential stages:

0. dedup guard
1. inactive draft + conditional claim of the source messages
2. text enrichment (price and sizes are mandatory)
3. media download and upload to object storage
4. per-image enrichment (colors, category, missing attributes)
5. re-validation and activation

Any failure after the draft exists deletes the product with its stored
images and returns its messages to the pool, so a message is never left
consumed without an active product built from it.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from miner.batching import Clock, utc_now
from miner.classifier import has_descriptive_text, is_image_eligible
from miner.config import AssemblyConfig
from miner.dedup import DeduplicationGuard, compute_fingerprint, normalize_message_ids
from miner.errors import EnrichmentError, MediaError
from miner.models import (
    Category,
    ChatMessage,
    ImageAttributes,
    MessageGroup,
    Product,
    ProductImage,
    TextAttributes,
)
from miner.patch import ProductPatch
from miner.ports import EnrichmentPort, MediaFetcherPort, MessageStore, ObjectStorePort, ProductStore

LOGGER = logging.getLogger(__name__)


class AssemblyStatus(str, Enum):
    ACTIVATED = "activated"
    DELETED = "deleted"
    DUPLICATE = "duplicate"
    ALREADY_CONSUMED = "already_consumed"
    FAILED = "failed"


@dataclass(frozen=True)
class AssemblyOutcome:
    status: AssemblyStatus
    product_id: Optional[str] = None
    reason: Optional[str] = None


# Canonical color names keyed by the spellings suppliers and models use.
COLOR_ALIASES: Dict[str, str] = {
    "black": "black",
    "черный": "black",
    "чёрный": "black",
    "white": "white",
    "белый": "white",
    "grey": "gray",
    "gray": "gray",
    "серый": "gray",
    "red": "red",
    "красный": "red",
    "blue": "blue",
    "синий": "blue",
    "navy": "navy",
    "темно-синий": "navy",
    "light blue": "light blue",
    "голубой": "light blue",
    "green": "green",
    "зеленый": "green",
    "зелёный": "green",
    "beige": "beige",
    "бежевый": "beige",
    "brown": "brown",
    "коричневый": "brown",
    "pink": "pink",
    "розовый": "pink",
    "yellow": "yellow",
    "желтый": "yellow",
    "жёлтый": "yellow",
    "purple": "purple",
    "фиолетовый": "purple",
    "orange": "orange",
    "оранжевый": "orange",
}


def normalize_color(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = " ".join(value.strip().lower().split())
    if not cleaned:
        return None
    return COLOR_ALIASES.get(cleaned, cleaned)


def missing_required_fields(product: Product, require_images: bool = True) -> List[str]:
    """Return the names of required fields an activatable product lacks."""

    missing: List[str] = []
    if product.price is None or product.price <= 0:
        missing.append("price")
    if not product.sizes:
        missing.append("sizes")
    if require_images and not product.images:
        missing.append("images")
    return missing


def text_patch(attributes: TextAttributes) -> ProductPatch:
    return ProductPatch(
        name=attributes.name,
        description=attributes.description,
        price=attributes.price,
        sizes=tuple(attributes.sizes),
        material=attributes.material,
        gender=attributes.gender,
        season=attributes.season,
    )


def image_patch(attributes: ImageAttributes) -> ProductPatch:
    return ProductPatch(
        name=attributes.name,
        description=attributes.description,
        gender=attributes.gender,
        season=attributes.season,
    )


def _extension_for(content_type: str) -> str:
    return mimetypes.guess_extension(content_type.split(";")[0].strip()) or ".bin"


class _StageFailure(Exception):
    def __init__(self, status: "AssemblyStatus", reason: str) -> None:
        super().__init__(reason)
        self.status = status
        self.reason = reason


class AssemblyPipeline:
    """Turns one message group into an active product or leaves no trace."""

    def __init__(
        self,
        messages: MessageStore,
        products: ProductStore,
        enrichment: EnrichmentPort,
        media: MediaFetcherPort,
        object_store: ObjectStorePort,
        config: Optional[AssemblyConfig] = None,
        dedup: Optional[DeduplicationGuard] = None,
        clock: Optional[Clock] = None,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._messages = messages
        self._products = products
        self._enrichment = enrichment
        self._media = media
        self._object_store = object_store
        self._config = config or AssemblyConfig()
        self._dedup = dedup or DeduplicationGuard(messages, products)
        self._clock = clock or utc_now
        self._id_factory = id_factory

    async def assemble(self, group: MessageGroup, run_id: Optional[str] = None) -> AssemblyOutcome:
        """Run every stage for ``group``. Never raises."""

        message_ids = normalize_message_ids(group.message_ids)

        try:
            outcome = self._check_duplicates(group, message_ids, run_id)
            if outcome:
                return outcome
            members = self._load_members(group)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Assembly precheck failed for group %s", group.group_id)
            return AssemblyOutcome(AssemblyStatus.FAILED, reason=str(exc))
        if members is None:
            return AssemblyOutcome(AssemblyStatus.FAILED, reason="group references unknown messages")

        try:
            draft = self._products.create_draft(
                Product(
                    id=self._id_factory(),
                    source_message_ids=message_ids,
                    fingerprint=compute_fingerprint(message_ids),
                    sender_id=group.sender_id,
                    created_at=self._clock(),
                    provenance=group.provenance,
                    confidence=group.confidence,
                )
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Could not create draft for group %s", group.group_id)
            return AssemblyOutcome(AssemblyStatus.FAILED, reason=str(exc))

        claimed: set[str] = set()
        stored_keys: List[str] = []
        try:
            claimed = set(self._messages.claim_messages(message_ids, group.group_id, run_id))
            if len(claimed) != len(message_ids):
                raise _StageFailure(
                    AssemblyStatus.ALREADY_CONSUMED,
                    f"only {len(claimed)} of {len(message_ids)} messages could be claimed",
                )
            product = await self._run_stages(draft, members, stored_keys)
        except _StageFailure as failure:
            await self._compensate(draft.id, claimed, stored_keys)
            LOGGER.info("Product %s not created (%s): %s", draft.id, failure.status.value, failure.reason)
            return AssemblyOutcome(failure.status, product_id=draft.id, reason=failure.reason)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Assembly failed for group %s", group.group_id)
            await self._compensate(draft.id, claimed, stored_keys)
            return AssemblyOutcome(AssemblyStatus.FAILED, product_id=draft.id, reason=str(exc))

        LOGGER.info(
            "Activated product %s from %s messages (%s images)",
            product.id,
            len(message_ids),
            len(product.images),
        )
        return AssemblyOutcome(AssemblyStatus.ACTIVATED, product_id=product.id)

    def _check_duplicates(
        self, group: MessageGroup, message_ids: Tuple[str, ...], run_id: Optional[str]
    ) -> Optional[AssemblyOutcome]:
        consumed = self._dedup.check_already_processed(message_ids)
        if consumed.is_duplicate:
            return AssemblyOutcome(AssemblyStatus.ALREADY_CONSUMED, reason=consumed.reason)
        existing = self._dedup.check_duplicate_product(message_ids)
        if existing.is_duplicate:
            product = self._products.get_product(existing.existing_product_id)
            if product is not None and product.is_active:
                # Already backed by an active product.
                claimed = self._messages.claim_messages(message_ids, group.group_id, run_id)
                LOGGER.info(
                    "Group %s duplicates product %s; consumed %s messages",
                    group.group_id,
                    product.id,
                    len(claimed),
                )
            return AssemblyOutcome(
                AssemblyStatus.DUPLICATE,
                product_id=existing.existing_product_id,
                reason=existing.reason,
            )
        return None

    def _load_members(self, group: MessageGroup) -> Optional[List[ChatMessage]]:
        members = self._messages.get_messages(group.message_ids)
        if len(members) != len(set(group.message_ids)):
            return None
        return sorted(members, key=lambda m: (m.timestamp, m.id))

    async def _run_stages(
        self, draft: Product, members: Sequence[ChatMessage], stored_keys: List[str]
    ) -> Product:
        image_members = [member for member in members if is_image_eligible(member)]
        text = "\n".join(member.text.strip() for member in members if has_descriptive_text(member))

        # Stage 2: text enrichment decides whether the product is worth building.
        try:
            attributes = await self._enrichment.analyze_text(text, [m.media_ref for m in image_members])
        except EnrichmentError as exc:
            raise _StageFailure(AssemblyStatus.DELETED, f"text analysis failed: {exc}") from exc

        patch = text_patch(attributes)
        product = patch.apply(draft)
        missing = missing_required_fields(product, require_images=False)
        if missing:
            raise _StageFailure(AssemblyStatus.DELETED, f"missing {', '.join(missing)}")

        # Stage 3: media.
        stored = await self._store_images(product.id, image_members, stored_keys)

        # Stage 4: per-image enrichment.
        categories = self._products.list_active_categories()
        results = await self._analyze_images(stored, text, categories)
        images = tuple(
            ProductImage(
                url=url,
                key=key,
                sort=index,
                is_primary=index == 0,
                color=normalize_color(results[url].color) if url in results else None,
            )
            for index, (url, key) in enumerate(stored)
        )
        first = next((results[url] for url, _ in stored if url in results), None)
        if first is not None:
            patch = patch.fill_missing(image_patch(first))
        category_id = self._pick_category(list(results.values()), categories)
        patch = patch.merge(ProductPatch(images=images, category_id=category_id))
        product = patch.apply(draft)

        # Stage 5: activation.
        missing = missing_required_fields(product)
        if missing:
            raise _StageFailure(AssemblyStatus.DELETED, f"missing {', '.join(missing)}")

        self._products.save_product(product)
        if not self._products.activate_product(product.id):
            raise _StageFailure(AssemblyStatus.DUPLICATE, "an active product with the same messages exists")
        return replace(product, is_active=True)

    async def _store_images(
        self, product_id: str, members: Sequence[ChatMessage], stored_keys: List[str]
    ) -> List[Tuple[str, str]]:
        stored: List[Tuple[str, str]] = []
        for member in members:
            try:
                data, content_type = await self._media.fetch(member.media_ref)
                key = f"products/{product_id}/{len(stored)}{_extension_for(content_type)}"
                url = await self._object_store.put(key, data, content_type)
            except MediaError as exc:
                LOGGER.warning("Skipping image from message %s: %s", member.id, exc)
                continue
            stored_keys.append(key)
            stored.append((url, key))
        return stored

    async def _analyze_images(
        self, stored: Sequence[Tuple[str, str]], text: str, categories: Sequence[Category]
    ) -> Dict[str, ImageAttributes]:
        if not stored:
            return {}
        semaphore = asyncio.Semaphore(max(1, self._config.image_concurrency))

        async def analyze(url: str) -> Optional[ImageAttributes]:
            async with semaphore:
                try:
                    return await self._enrichment.analyze_image(url, text, categories)
                except EnrichmentError as exc:
                    LOGGER.warning("Image analysis failed for %s: %s", url, exc)
                    return None

        answers = await asyncio.gather(*(analyze(url) for url, _ in stored))
        return {url: answer for (url, _), answer in zip(stored, answers) if answer is not None}

    def _pick_category(
        self, results: Sequence[ImageAttributes], categories: Sequence[Category]
    ) -> Optional[str]:
        active = active_category_ids(categories)
        for attributes in results:
            if attributes.category_id and attributes.category_id in active:
                return attributes.category_id
            if attributes.category_id:
                LOGGER.info("Ignoring unknown category %s", attributes.category_id)
        return self._config.default_category_id

    async def _compensate(self, product_id: str, claimed: set[str], stored_keys: Sequence[str] = ()) -> None:
        try:
            self._products.delete_product(product_id)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Could not delete product %s during rollback", product_id)
        for key in stored_keys:
            try:
                await self._object_store.delete(key)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Could not delete stored image %s during rollback", key)
        if not claimed:
            return
        try:
            self._messages.release_messages(claimed)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Could not release %s messages during rollback", len(claimed))


def active_category_ids(categories: Sequence[Category]) -> set[str]:
    return {category.id for category in categories if category.is_active}
