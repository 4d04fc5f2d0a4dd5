"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any chat-provider or storage-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


class SourceFamily(str, Enum):
    """Chat provider a message came from; also the cron exclusion key."""

    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    OTHER = "other"


@dataclass(frozen=True)
class ChatMessage:
    """Normalized inbound chat message.

    Only ``processed`` and ``assigned_group_id`` change after ingestion, and
    only through the message store.
    """

    id: str
    chat_id: str
    sender_id: str
    timestamp: datetime
    kind: MessageKind
    text: Optional[str] = None
    media_ref: Optional[str] = None
    source: SourceFamily = SourceFamily.WHATSAPP
    sender_name: Optional[str] = None
    processed: bool = False
    assigned_group_id: Optional[str] = None


class GroupProvenance(str, Enum):
    RULE_BASED = "rule_based"
    LLM = "llm"
    # Rule-based groups found among messages an LLM answer left uncovered.
    RECOVERED = "recovered"


@dataclass(frozen=True)
class MessageGroup:
    """Ordered set of messages believed to describe one product."""

    group_id: str
    message_ids: Tuple[str, ...]
    sender_id: str
    provenance: GroupProvenance
    confidence: float
    product_context: str = ""


@dataclass(frozen=True)
class GroupingResult:
    """Groups plus the three disjoint leftover id sets of one grouping pass."""

    groups: Tuple[MessageGroup, ...] = ()
    grouped_ids: frozenset = frozenset()
    skipped_ids: frozenset = frozenset()
    ungrouped_tail_ids: frozenset = frozenset()


class Gender(str, Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    UNISEX = "UNISEX"


class Season(str, Enum):
    SPRING = "SPRING"
    SUMMER = "SUMMER"
    AUTUMN = "AUTUMN"
    WINTER = "WINTER"


@dataclass(frozen=True)
class SizeEntry:
    size: str
    count: int = 1


@dataclass(frozen=True)
class ProductImage:
    url: str
    key: str
    sort: int
    is_primary: bool = False
    color: Optional[str] = None


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    is_active: bool = True


@dataclass(frozen=True)
class Product:
    """Durable catalog product materialized from one message group."""

    id: str
    source_message_ids: Tuple[str, ...]
    fingerprint: str
    sender_id: str
    created_at: datetime
    is_active: bool = False
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    sizes: Tuple[SizeEntry, ...] = ()
    material: Optional[str] = None
    gender: Optional[Gender] = None
    season: Optional[Season] = None
    category_id: Optional[str] = None
    images: Tuple[ProductImage, ...] = ()
    provenance: GroupProvenance = GroupProvenance.RULE_BASED
    confidence: float = 0.0


@dataclass(frozen=True)
class TextAttributes:
    """Validated structured attributes extracted from a group's text."""

    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    sizes: Tuple[SizeEntry, ...] = ()
    material: Optional[str] = None
    gender: Optional[Gender] = None
    season: Optional[Season] = None


@dataclass(frozen=True)
class ImageAttributes:
    """Validated attributes extracted from a single product image."""

    image_ref: str
    color: Optional[str] = None
    category_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    gender: Optional[Gender] = None
    season: Optional[Season] = None


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunTrigger(str, Enum):
    MANUAL = "manual"
    CRON = "cron"
    BACKFILL = "backfill"


@dataclass
class RunCounters:
    """Mutable per-run counters reported on the run record."""

    messages_read: int = 0
    groups_formed: int = 0
    products_created: int = 0
    products_deleted: int = 0


@dataclass(frozen=True)
class RunRecord:
    """Persisted mutual-exclusion token for one pipeline run."""

    id: str
    status: RunStatus
    started_at: datetime
    triggered_by: RunTrigger
    source_family: SourceFamily
    reason: Optional[str] = None
    source_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    counters: RunCounters = field(default_factory=RunCounters)
    error_message: Optional[str] = None
