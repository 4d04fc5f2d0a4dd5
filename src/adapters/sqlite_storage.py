"""SQLite storage adapter.

Implements the core MessageStore, ProductStore and RunStore ports using a
single SQLite database.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from miner.models import (
    Category,
    ChatMessage,
    Gender,
    GroupProvenance,
    MessageKind,
    Product,
    ProductImage,
    RunCounters,
    RunRecord,
    RunStatus,
    RunTrigger,
    Season,
    SizeEntry,
    SourceFamily,
)
from miner.ports import ConflictCheck

LOGGER = logging.getLogger(__name__)


def _ts(value: datetime) -> str:
    # Fixed-width UTC strings so lexical order matches chronological order.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _placeholders(values: Sequence[object]) -> str:
    return ", ".join("?" for _ in values)


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the message, product and run ports."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self, isolation_level: Optional[str] = "") -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30, isolation_level=isolation_level)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - messages: normalized chat messages and their consumption state
        - products / product_images: catalog products built from message groups
        - categories: category tree leaves products may be assigned to
        - runs: one row per pipeline run, used as the cross-process lock
        """

        with self._connect() as conn:
            # consumed_by_run keeps a message at its walk position after the
            # run that consumed it flips processed.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    sender_name TEXT,
                    source TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    text TEXT,
                    media_ref TEXT,
                    processed INTEGER NOT NULL DEFAULT 0,
                    assigned_group_id TEXT,
                    consumed_by_run TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS ix_messages_walk ON messages (processed, timestamp, id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS ix_messages_sender ON messages (chat_id, sender_id, timestamp)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS products (
                    id TEXT PRIMARY KEY,
                    fingerprint TEXT NOT NULL,
                    source_message_ids TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 0,
                    name TEXT,
                    description TEXT,
                    price REAL,
                    sizes TEXT NOT NULL DEFAULT '[]',
                    material TEXT,
                    gender TEXT,
                    season TEXT,
                    category_id TEXT,
                    provenance TEXT NOT NULL,
                    confidence REAL NOT NULL DEFAULT 0
                )
                """
            )
            # At most one active product per message-id set.
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS ux_products_active_fingerprint
                ON products (fingerprint) WHERE is_active = 1
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS ix_products_fingerprint ON products (fingerprint)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS product_images (
                    product_id TEXT NOT NULL,
                    sort INTEGER NOT NULL,
                    url TEXT NOT NULL,
                    key TEXT NOT NULL,
                    is_primary INTEGER NOT NULL DEFAULT 0,
                    color TEXT,
                    PRIMARY KEY (product_id, sort)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS categories (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    triggered_by TEXT NOT NULL,
                    source_family TEXT NOT NULL,
                    reason TEXT,
                    source_id TEXT,
                    messages_read INTEGER NOT NULL DEFAULT 0,
                    groups_formed INTEGER NOT NULL DEFAULT 0,
                    products_created INTEGER NOT NULL DEFAULT 0,
                    products_deleted INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT
                )
                """
            )
            # Backstops for the admission rule: one running cron run per
            # family, one running manual/backfill run overall.
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS ux_runs_running_cron_family
                ON runs (source_family) WHERE status = 'running' AND triggered_by = 'cron'
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS ux_runs_running_exclusive
                ON runs (status) WHERE status = 'running' AND triggered_by IN ('manual', 'backfill')
                """
            )

    # Messages

    def insert_message(self, message: ChatMessage) -> bool:
        """Insert a message unless its id exists. Returns True when inserted."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO messages (
                    id, chat_id, sender_id, sender_name, source, timestamp,
                    kind, text, media_ref, processed, assigned_group_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.chat_id,
                    message.sender_id,
                    message.sender_name,
                    message.source.value,
                    _ts(message.timestamp),
                    message.kind.value,
                    message.text,
                    message.media_ref,
                    int(message.processed),
                    message.assigned_group_id,
                ),
            )
            return cur.rowcount == 1

    def get_messages(self, message_ids: Iterable[str]) -> List[ChatMessage]:
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM messages WHERE id IN ({_placeholders(ids)}) ORDER BY timestamp, id",
                ids,
            ).fetchall()
        return self._rows_to_messages(rows)

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
        """Return one page of the run's walk in (timestamp, id) order."""

        clauses = ["timestamp >= ?", "(processed = 0 OR consumed_by_run = ?)"]
        params: list[object] = [_ts(since), run_id]
        if chat_id is not None:
            clauses.append("chat_id = ?")
            params.append(chat_id)
        if source is not None:
            clauses.append("source = ?")
            params.append(source.value)
        params.extend([limit, offset])

        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM messages
                WHERE {' AND '.join(clauses)}
                ORDER BY timestamp, id
                LIMIT ? OFFSET ?
                """,
                params,
            ).fetchall()
        return self._rows_to_messages(rows)

    def list_unprocessed_after(
        self, *, chat_id: str, sender_id: str, after: datetime, after_id: str = "", limit: int = 200
    ) -> List[ChatMessage]:
        stamp = _ts(after)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE chat_id = ? AND sender_id = ? AND processed = 0
                  AND (timestamp > ? OR (timestamp = ? AND id > ?))
                ORDER BY timestamp, id
                LIMIT ?
                """,
                (chat_id, sender_id, stamp, stamp, after_id, limit),
            ).fetchall()
        return self._rows_to_messages(rows)

    def find_processed(self, message_ids: Iterable[str]) -> set[str]:
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return set()
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT id FROM messages WHERE processed = 1 AND id IN ({_placeholders(ids)})",
                ids,
            ).fetchall()
        return {row["id"] for row in rows}

    def claim_messages(
        self, message_ids: Iterable[str], group_id: Optional[str], run_id: Optional[str]
    ) -> set[str]:
        """Flip processed 0 -> 1 for each id; return the ids this call flipped."""

        claimed: set[str] = set()
        with self._connect() as conn:
            for message_id in dict.fromkeys(message_ids):
                cur = conn.execute(
                    """
                    UPDATE messages
                    SET processed = 1, assigned_group_id = ?, consumed_by_run = ?
                    WHERE id = ? AND processed = 0
                    """,
                    (group_id, run_id, message_id),
                )
                if cur.rowcount == 1:
                    claimed.add(message_id)
        return claimed

    def release_messages(self, message_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE messages
                SET processed = 0, assigned_group_id = NULL, consumed_by_run = NULL
                WHERE id IN ({_placeholders(ids)})
                """,
                ids,
            )
            return cur.rowcount

    def message_counts(self) -> dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total, COALESCE(SUM(processed), 0) AS processed
                FROM messages
                """
            ).fetchone()
        total = int(row["total"])
        processed = int(row["processed"])
        return {"total": total, "processed": processed, "unprocessed": total - processed}

    def _rows_to_messages(self, rows: Iterable[sqlite3.Row]) -> List[ChatMessage]:
        messages: List[ChatMessage] = []
        for row in rows:
            try:
                messages.append(
                    ChatMessage(
                        id=row["id"],
                        chat_id=row["chat_id"],
                        sender_id=row["sender_id"],
                        timestamp=datetime.fromisoformat(row["timestamp"]),
                        kind=MessageKind(row["kind"]),
                        text=row["text"],
                        media_ref=row["media_ref"],
                        source=SourceFamily(row["source"]),
                        sender_name=row["sender_name"],
                        processed=bool(row["processed"]),
                        assigned_group_id=row["assigned_group_id"],
                    )
                )
            except (TypeError, ValueError) as exc:
                LOGGER.warning("Skipping malformed message row %s: %s", row["id"], exc)
        return messages

    # Products

    def create_draft(self, product: Product) -> Product:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO products (
                    id, fingerprint, source_message_ids, sender_id, created_at,
                    is_active, provenance, confidence
                ) VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    product.id,
                    product.fingerprint,
                    json.dumps(list(product.source_message_ids)),
                    product.sender_id,
                    _ts(product.created_at),
                    product.provenance.value,
                    product.confidence,
                ),
            )
        return product

    def save_product(self, product: Product) -> None:
        """Write attributes and images of an existing product (activation is separate)."""

        with self._connect() as conn:
            conn.execute(
                """
                UPDATE products
                SET name = ?, description = ?, price = ?, sizes = ?, material = ?,
                    gender = ?, season = ?, category_id = ?
                WHERE id = ?
                """,
                (
                    product.name,
                    product.description,
                    product.price,
                    json.dumps([{"size": s.size, "count": s.count} for s in product.sizes]),
                    product.material,
                    product.gender.value if product.gender else None,
                    product.season.value if product.season else None,
                    product.category_id,
                    product.id,
                ),
            )
            conn.execute("DELETE FROM product_images WHERE product_id = ?", (product.id,))
            conn.executemany(
                """
                INSERT INTO product_images (product_id, sort, url, key, is_primary, color)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (product.id, image.sort, image.url, image.key, int(image.is_primary), image.color)
                    for image in product.images
                ],
            )

    def activate_product(self, product_id: str) -> bool:
        """Set is_active; False when another active product has the same fingerprint."""

        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "UPDATE products SET is_active = 1 WHERE id = ? AND is_active = 0",
                    (product_id,),
                )
                return cur.rowcount == 1
        except sqlite3.IntegrityError:
            LOGGER.info("Activation of %s hit the fingerprint index", product_id)
            return False

    def delete_product(self, product_id: str) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM product_images WHERE product_id = ?", (product_id,))
            cur = conn.execute("DELETE FROM products WHERE id = ?", (product_id,))
            return cur.rowcount == 1

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
            if row is None:
                return None
            products = self._rows_to_products(conn, [row])
        return products[0] if products else None

    def find_by_fingerprint(self, fingerprint: str) -> List[Product]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM products WHERE fingerprint = ? ORDER BY created_at, id",
                (fingerprint,),
            ).fetchall()
            return self._rows_to_products(conn, rows)

    def list_products(self) -> List[Product]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM products ORDER BY created_at, id").fetchall()
            return self._rows_to_products(conn, rows)

    def _rows_to_products(self, conn: sqlite3.Connection, rows: Iterable[sqlite3.Row]) -> List[Product]:
        products: List[Product] = []
        for row in rows:
            try:
                images = tuple(
                    ProductImage(
                        url=image["url"],
                        key=image["key"],
                        sort=image["sort"],
                        is_primary=bool(image["is_primary"]),
                        color=image["color"],
                    )
                    for image in conn.execute(
                        "SELECT * FROM product_images WHERE product_id = ? ORDER BY sort",
                        (row["id"],),
                    )
                )
                products.append(
                    Product(
                        id=row["id"],
                        source_message_ids=tuple(json.loads(row["source_message_ids"])),
                        fingerprint=row["fingerprint"],
                        sender_id=row["sender_id"],
                        created_at=datetime.fromisoformat(row["created_at"]),
                        is_active=bool(row["is_active"]),
                        name=row["name"],
                        description=row["description"],
                        price=row["price"],
                        sizes=tuple(
                            SizeEntry(size=item["size"], count=item.get("count", 1))
                            for item in json.loads(row["sizes"] or "[]")
                        ),
                        material=row["material"],
                        gender=Gender(row["gender"]) if row["gender"] else None,
                        season=Season(row["season"]) if row["season"] else None,
                        category_id=row["category_id"],
                        images=images,
                        provenance=GroupProvenance(row["provenance"]),
                        confidence=row["confidence"],
                    )
                )
            except (TypeError, ValueError, KeyError) as exc:
                LOGGER.warning("Skipping malformed product row %s: %s", row["id"], exc)
        return products

    # Categories

    def upsert_category(self, category: Category) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO categories (id, name, is_active) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET name = excluded.name, is_active = excluded.is_active
                """,
                (category.id, category.name, int(category.is_active)),
            )

    def list_active_categories(self) -> List[Category]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM categories WHERE is_active = 1 ORDER BY name").fetchall()
        return [Category(id=row["id"], name=row["name"], is_active=True) for row in rows]

    # Runs

    def list_running_runs(self) -> List[RunRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM runs WHERE status = ? ORDER BY started_at",
                (RunStatus.RUNNING.value,),
            ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def list_runs(self, limit: int = 20) -> List[RunRecord]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM runs ORDER BY started_at DESC LIMIT ?", (limit,)).fetchall()
        return [self._row_to_run(row) for row in rows]

    def fail_stale_runs(self, started_before: datetime, now: datetime) -> List[RunRecord]:
        """Mark RUNNING runs started before the cutoff as FAILED and return them."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM runs WHERE status = ? AND started_at < ?",
                (RunStatus.RUNNING.value, _ts(started_before)),
            ).fetchall()
            stale = [self._row_to_run(row) for row in rows]
            for run in stale:
                conn.execute(
                    """
                    UPDATE runs SET status = ?, completed_at = ?, error_message = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        RunStatus.FAILED.value,
                        _ts(now),
                        f"timed out: still running at {_ts(now)}, reclaimed as stuck",
                        run.id,
                        RunStatus.RUNNING.value,
                    ),
                )
        return stale

    def start_run(
        self, candidate: RunRecord, find_conflict: ConflictCheck
    ) -> Tuple[Optional[str], List[RunRecord]]:
        """Check for conflicts and insert ``candidate`` in one write transaction."""

        conn = self._connect(isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(
                "SELECT * FROM runs WHERE status = ? ORDER BY started_at",
                (RunStatus.RUNNING.value,),
            ).fetchall()
            running = [self._row_to_run(row) for row in rows]
            conflict = find_conflict(running)
            if conflict:
                conn.execute("ROLLBACK")
                return conflict, running
            try:
                conn.execute(
                    """
                    INSERT INTO runs (
                        id, status, started_at, triggered_by, source_family, reason, source_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        candidate.id,
                        candidate.status.value,
                        _ts(candidate.started_at),
                        candidate.triggered_by.value,
                        candidate.source_family.value,
                        candidate.reason,
                        candidate.source_id,
                    ),
                )
            except sqlite3.IntegrityError:
                conn.execute("ROLLBACK")
                return "another run holds the lock", running
            conn.execute("COMMIT")
            return None, running
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_run(row) if row else None

    def update_run_counters(self, run_id: str, counters: RunCounters) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE runs
                SET messages_read = ?, groups_formed = ?, products_created = ?, products_deleted = ?
                WHERE id = ?
                """,
                (
                    counters.messages_read,
                    counters.groups_formed,
                    counters.products_created,
                    counters.products_deleted,
                    run_id,
                ),
            )

    def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        completed_at: datetime,
        counters: RunCounters,
        error_message: Optional[str] = None,
    ) -> None:
        """Finalize a RUNNING record; a run already reclaimed as stuck stays FAILED."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE runs
                SET status = ?, completed_at = ?, error_message = ?,
                    messages_read = ?, groups_formed = ?, products_created = ?, products_deleted = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status.value,
                    _ts(completed_at),
                    error_message,
                    counters.messages_read,
                    counters.groups_formed,
                    counters.products_created,
                    counters.products_deleted,
                    run_id,
                    RunStatus.RUNNING.value,
                ),
            )
            if cur.rowcount == 0:
                LOGGER.warning("Run %s was no longer running when finalized", run_id)

    def _row_to_run(self, row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            id=row["id"],
            status=RunStatus(row["status"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            triggered_by=RunTrigger(row["triggered_by"]),
            source_family=SourceFamily(row["source_family"]),
            reason=row["reason"],
            source_id=row["source_id"],
            counters=RunCounters(
                messages_read=row["messages_read"],
                groups_formed=row["groups_formed"],
                products_created=row["products_created"],
                products_deleted=row["products_deleted"],
            ),
            error_message=row["error_message"],
        )
