from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence

from adapters.sqlite_storage import SQLiteStorage
from factories import BASE_TIME, image, text
from miner.assembly import AssemblyPipeline, AssemblyStatus, missing_required_fields, normalize_color
from miner.config import AssemblyConfig
from miner.dedup import compute_fingerprint
from miner.errors import EnrichmentError, MediaError
from miner.models import (
    Category,
    GroupProvenance,
    ImageAttributes,
    MessageGroup,
    Product,
    SizeEntry,
    TextAttributes,
)

GROUP = MessageGroup("g1", ("i1", "i2", "t1"), "alice", GroupProvenance.RULE_BASED, 0.9)


class FakeEnrichment:
    def __init__(
        self,
        text_result: TextAttributes | Exception | None = None,
        image_result: ImageAttributes | None = None,
    ) -> None:
        self._text = text_result or TextAttributes(
            name="Dress", price=1500.0, sizes=(SizeEntry("S"), SizeEntry("M"))
        )
        self._image = image_result
        self.text_calls: List[str] = []
        self.image_calls: List[str] = []
        self.categories_seen: List[Sequence[Category]] = []

    async def group_messages(self, messages):
        return []

    async def analyze_text(self, text: str, image_refs: Sequence[str]) -> TextAttributes:
        self.text_calls.append(text)
        if isinstance(self._text, Exception):
            raise self._text
        return self._text

    async def analyze_image(self, image_ref: str, text: str, categories: Sequence[Category]) -> ImageAttributes:
        self.image_calls.append(image_ref)
        self.categories_seen.append(categories)
        if self._image is None:
            return ImageAttributes(image_ref=image_ref, color="Чёрный", category_id="dresses", description="Silk")
        return self._image


class FakeMedia:
    def __init__(self, failing: Sequence[str] = ()) -> None:
        self._failing = set(failing)
        self.calls: List[str] = []

    async def fetch(self, media_ref: str):
        self.calls.append(media_ref)
        if any(media_ref.endswith(f"id={message_id}") for message_id in self._failing):
            raise MediaError(f"cannot download {media_ref}")
        return b"\xff\xd8jpeg", "image/jpeg"


class FakeObjectStore:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        self.objects[key] = data
        return f"https://cdn.example/{key}"

    async def get(self, url: str) -> bytes:
        return self.objects[url.removeprefix("https://cdn.example/")]

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)


class ActivationRaceStorage(SQLiteStorage):
    def activate_product(self, product_id: str) -> bool:
        return False


class ClaimRaceStorage(SQLiteStorage):
    def claim_messages(self, message_ids, group_id, run_id):
        # Another worker consumes t1 between the precheck and our claim.
        super().claim_messages(["t1"], "other-group", "other-run")
        return super().claim_messages(message_ids, group_id, run_id)


def _storage(tmp_path, cls=SQLiteStorage) -> SQLiteStorage:
    storage = cls(str(tmp_path / "catalog.db"))
    storage.init_db()
    for message in (image("i1", 0), image("i2", 10), text("t1", 20)):
        storage.insert_message(message)
    storage.upsert_category(Category("dresses", "Dresses"))
    return storage


def _pipeline(storage, enrichment=None, media=None, config=None, object_store=None):
    ids = iter(f"p{n}" for n in range(1, 100))
    return AssemblyPipeline(
        storage,
        storage,
        enrichment or FakeEnrichment(),
        media or FakeMedia(),
        object_store or FakeObjectStore(),
        config=config or AssemblyConfig(default_category_id="uncategorized"),
        id_factory=lambda: next(ids),
    )


def _assert_rolled_back(storage: SQLiteStorage, product_id: Optional[str]) -> None:
    if product_id:
        assert storage.get_product(product_id) is None
    assert storage.find_processed(["i1", "i2"]) == set()


def test_group_becomes_active_product(tmp_path) -> None:
    storage = _storage(tmp_path)
    enrichment = FakeEnrichment()
    object_store = FakeObjectStore()

    outcome = asyncio.run(_pipeline(storage, enrichment, object_store=object_store).assemble(GROUP, "run-1"))

    assert outcome.status == AssemblyStatus.ACTIVATED
    product = storage.get_product(outcome.product_id)
    assert product.is_active
    assert product.source_message_ids == ("i1", "i2", "t1")
    assert product.fingerprint == compute_fingerprint(["t1", "i2", "i1"])
    assert product.price == 1500.0
    assert product.category_id == "dresses"
    assert product.description == "Silk"
    assert [img.is_primary for img in product.images] == [True, False]
    assert {img.color for img in product.images} == {"black"}
    assert all(img.key.startswith(f"products/{product.id}/") for img in product.images)
    assert len(object_store.objects) == 2
    assert [category.id for category in enrichment.categories_seen[0]] == ["dresses"]

    messages = storage.get_messages(GROUP.message_ids)
    assert all(message.processed and message.assigned_group_id == "g1" for message in messages)


def test_missing_price_deletes_product_before_media_stages(tmp_path) -> None:
    storage = _storage(tmp_path)
    enrichment = FakeEnrichment(TextAttributes(name="Dress", price=0.0, sizes=(SizeEntry("S"),)))
    media = FakeMedia()

    outcome = asyncio.run(_pipeline(storage, enrichment, media).assemble(GROUP))

    assert outcome.status == AssemblyStatus.DELETED
    assert "price" in outcome.reason
    assert media.calls == []
    assert enrichment.image_calls == []
    _assert_rolled_back(storage, outcome.product_id)
    assert storage.find_processed(["t1"]) == set()


def test_text_enrichment_error_deletes_product(tmp_path) -> None:
    storage = _storage(tmp_path)
    enrichment = FakeEnrichment(EnrichmentError("rate limited", retryable=True))

    outcome = asyncio.run(_pipeline(storage, enrichment).assemble(GROUP))

    assert outcome.status == AssemblyStatus.DELETED
    _assert_rolled_back(storage, outcome.product_id)


def test_unexpected_error_fails_and_compensates(tmp_path) -> None:
    storage = _storage(tmp_path)
    enrichment = FakeEnrichment(RuntimeError("bug"))

    outcome = asyncio.run(_pipeline(storage, enrichment).assemble(GROUP))

    assert outcome.status == AssemblyStatus.FAILED
    assert outcome.product_id == "p1"
    _assert_rolled_back(storage, "p1")
    assert storage.list_products() == []


def test_failed_image_is_skipped(tmp_path) -> None:
    storage = _storage(tmp_path)
    enrichment = FakeEnrichment()

    outcome = asyncio.run(_pipeline(storage, enrichment, FakeMedia(failing=["i2"])).assemble(GROUP))

    assert outcome.status == AssemblyStatus.ACTIVATED
    product = storage.get_product(outcome.product_id)
    assert len(product.images) == 1
    assert len(enrichment.image_calls) == 1


def test_all_images_failing_deletes_product(tmp_path) -> None:
    storage = _storage(tmp_path)
    object_store = FakeObjectStore()

    outcome = asyncio.run(
        _pipeline(storage, media=FakeMedia(failing=["i1", "i2"]), object_store=object_store).assemble(GROUP)
    )

    assert outcome.status == AssemblyStatus.DELETED
    assert "images" in outcome.reason
    _assert_rolled_back(storage, outcome.product_id)
    assert object_store.objects == {}


def test_rollback_after_upload_removes_stored_images(tmp_path) -> None:
    storage = _storage(tmp_path)
    object_store = FakeObjectStore()
    enrichment = FakeEnrichment()

    async def broken_analysis(image_ref, text, categories):
        raise RuntimeError("vision model crashed")

    enrichment.analyze_image = broken_analysis

    outcome = asyncio.run(_pipeline(storage, enrichment, object_store=object_store).assemble(GROUP))

    assert outcome.status == AssemblyStatus.FAILED
    _assert_rolled_back(storage, outcome.product_id)
    assert object_store.objects == {}


def test_unknown_category_falls_back_to_default(tmp_path) -> None:
    storage = _storage(tmp_path)
    enrichment = FakeEnrichment(image_result=ImageAttributes(image_ref="x", category_id="spaceships"))

    outcome = asyncio.run(_pipeline(storage, enrichment).assemble(GROUP))

    assert storage.get_product(outcome.product_id).category_id == "uncategorized"


def test_already_consumed_messages_are_not_reassembled(tmp_path) -> None:
    storage = _storage(tmp_path)
    storage.claim_messages(["i2"], "earlier", "run-0")

    outcome = asyncio.run(_pipeline(storage).assemble(GROUP))

    assert outcome.status == AssemblyStatus.ALREADY_CONSUMED
    assert outcome.product_id is None
    assert storage.list_products() == []


def test_existing_product_is_reported_as_duplicate(tmp_path) -> None:
    storage = _storage(tmp_path)
    storage.create_draft(
        Product(
            id="existing",
            source_message_ids=("i1", "i2", "t1"),
            fingerprint=compute_fingerprint(GROUP.message_ids),
            sender_id="alice",
            created_at=BASE_TIME,
        )
    )

    outcome = asyncio.run(_pipeline(storage).assemble(GROUP))

    assert outcome.status == AssemblyStatus.DUPLICATE
    assert outcome.product_id == "existing"
    assert storage.find_processed(GROUP.message_ids) == set()


def test_active_duplicate_consumes_the_group(tmp_path) -> None:
    storage = _storage(tmp_path)
    storage.create_draft(
        Product(
            id="existing",
            source_message_ids=("i1", "i2", "t1"),
            fingerprint=compute_fingerprint(GROUP.message_ids),
            sender_id="alice",
            created_at=BASE_TIME,
        )
    )
    assert storage.activate_product("existing")
    enrichment = FakeEnrichment()

    outcome = asyncio.run(_pipeline(storage, enrichment).assemble(GROUP, "run-2"))

    assert outcome.status == AssemblyStatus.DUPLICATE
    assert outcome.product_id == "existing"
    assert enrichment.text_calls == []
    messages = storage.get_messages(GROUP.message_ids)
    assert all(message.processed and message.assigned_group_id == "g1" for message in messages)


def test_partial_claim_releases_only_own_claims(tmp_path) -> None:
    storage = _storage(tmp_path, ClaimRaceStorage)

    outcome = asyncio.run(_pipeline(storage).assemble(GROUP))

    assert outcome.status == AssemblyStatus.ALREADY_CONSUMED
    _assert_rolled_back(storage, outcome.product_id)
    [t1] = storage.get_messages(["t1"])
    assert t1.processed
    assert t1.assigned_group_id == "other-group"


def test_lost_activation_race_is_duplicate(tmp_path) -> None:
    storage = _storage(tmp_path, ActivationRaceStorage)
    object_store = FakeObjectStore()

    outcome = asyncio.run(_pipeline(storage, object_store=object_store).assemble(GROUP))

    assert outcome.status == AssemblyStatus.DUPLICATE
    _assert_rolled_back(storage, outcome.product_id)
    assert object_store.objects == {}


def test_normalize_color_and_required_fields() -> None:
    assert normalize_color("  Темно-синий ") == "navy"
    assert normalize_color("Серый") == "gray"
    assert normalize_color("  ") is None

    draft = Product("p", ("a",), "f", "alice", BASE_TIME)
    assert missing_required_fields(draft) == ["price", "sizes", "images"]
    assert missing_required_fields(draft, require_images=False) == ["price", "sizes"]
