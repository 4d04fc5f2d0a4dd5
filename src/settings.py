"""Static configuration for catalog-miner.

All user-editable settings (paging, grouping thresholds, enrichment models,
storage paths, logging) live in a single JSON file for quick edits without
touching Python. Secrets stay in the environment.
"""

import json
import os

from miner.config import AssemblyConfig, BatchConfig, CoordinatorConfig, GroupingConfig, RetryConfig

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_PATH = os.environ.get("CATALOG_MINER_CONFIG") or os.path.join(PROJECT_ROOT, "config.json")


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _project_path(path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

_storage = _CONFIG.get("storage", {})
DB_PATH = _project_path(_storage.get("db_path", "catalog.db"))
MEDIA_DIR = _project_path(_storage.get("media_dir", "media/incoming"))
OBJECT_STORE_DIR = _project_path(_storage.get("object_store_dir", "media/products"))
# Public URL under which OBJECT_STORE_DIR is served; file:// URIs otherwise.
OBJECT_STORE_BASE_URL = _storage.get("object_store_base_url")

_batch = _CONFIG.get("batch", {})
BATCH = BatchConfig(
    page_size=int(_batch.get("page_size", 50)),
    lookback_hours=int(_batch.get("lookback_hours", 24)),
    extension_gap_seconds=int(_batch.get("extension_gap_seconds", 300)),
)

_grouping = _CONFIG.get("grouping", {})
# "rule" or "llm"; llm mode is always re-validated by the rule-based grouper.
GROUPING_MODE = _grouping.get("mode", "rule")
GROUPING = GroupingConfig(
    text_window_seconds=int(_grouping.get("text_window_seconds", 60)),
    rule_confidence=float(_grouping.get("rule_confidence", 0.9)),
    max_grouping_messages=int(_grouping.get("max_grouping_messages", 80)),
)

_coordinator = _CONFIG.get("coordinator", {})
COORDINATOR = CoordinatorConfig(
    stuck_timeout_seconds=int(_coordinator.get("stuck_timeout_seconds", 3600)),
)

_assembly = _CONFIG.get("assembly", {})
ASSEMBLY = AssemblyConfig(
    image_concurrency=int(_assembly.get("image_concurrency", 3)),
    default_category_id=_assembly.get("default_category_id"),
)

_retry = _CONFIG.get("retry", {})
RETRY = RetryConfig(
    max_retries=int(_retry.get("max_retries", 3)),
    base_delay_seconds=float(_retry.get("base_delay_seconds", 2.0)),
    max_delay_seconds=float(_retry.get("max_delay_seconds", 30.0)),
    timeout_seconds=float(_retry.get("timeout_seconds", 120.0)),
)

ENRICHMENT = _CONFIG.get("enrichment", {})

# Categories seeded by init-db; products may only reference active ones.
CATEGORIES = _CONFIG.get("categories", [])

# WhatsApp chats accepted from Green API webhooks; empty means all.
WHATSAPP_CHATS = [chat for chat in _CONFIG.get("whatsapp", {}).get("chats", []) if chat]

# Telegram chats polled by ingest-telegram.
_telegram = _CONFIG.get("telegram", {})
TELEGRAM_SOURCES = [entry for entry in _telegram.get("sources", []) if entry.get("enabled", True)]
TELEGRAM_MESSAGES_PER_SOURCE = int(_telegram.get("messages_per_source", 200))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
