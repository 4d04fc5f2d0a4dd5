"""Offset-based batch walk with same-sender extension (core domain).

A page is a fixed number of eligible messages. When a page ends in the
middle of a sender's burst, the page is extended with that sender's next
messages so one product's images and captions are grouped together. The
offset still advances by the page size only; extension ids handed out
earlier in the walk are filtered from later pages.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from miner.config import BatchConfig
from miner.models import ChatMessage, SourceFamily
from miner.ports import MessageStore

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExtendedBatch:
    """One page of the walk plus its same-sender extension."""

    messages: Tuple[ChatMessage, ...]
    next_offset: int
    page_count: int
    extended_count: int
    exhausted: bool

    @property
    def message_ids(self) -> Tuple[str, ...]:
        return tuple(message.id for message in self.messages)


class BatchOffsetExtender:
    """Walks the unprocessed backlog of one run, one page at a time.

    A walk starts with ``offset=0``: the lookback cutoff is fixed then and the
    set of ids handed out so far is reset. Pages are read in (timestamp, id)
    order; messages consumed by ``run_id`` keep their position so offsets stay
    stable while the run marks messages processed.
    """

    def __init__(
        self,
        store: MessageStore,
        config: Optional[BatchConfig] = None,
        clock: Optional[Clock] = None,
        run_id: Optional[str] = None,
    ) -> None:
        self._store = store
        self._config = config or BatchConfig()
        self._clock = clock or utc_now
        self._run_id = run_id
        self._cutoff: Optional[datetime] = None
        self._handed_out: set[str] = set()

    @property
    def cutoff(self) -> Optional[datetime]:
        return self._cutoff

    def fetch(
        self,
        page_size: Optional[int] = None,
        chat_id: Optional[str] = None,
        offset: int = 0,
        lookback: Optional[timedelta] = None,
        source: Optional[SourceFamily] = None,
    ) -> ExtendedBatch:
        page_size = page_size or self._config.page_size
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        if offset < 0:
            raise ValueError("offset must not be negative")

        if offset == 0 or self._cutoff is None:
            lookback = lookback if lookback is not None else timedelta(hours=self._config.lookback_hours)
            self._cutoff = self._clock() - lookback
            self._handed_out = set()

        rows = self._store.list_walk_page(
            since=self._cutoff,
            offset=offset,
            limit=page_size,
            chat_id=chat_id,
            source=source,
            run_id=self._run_id,
        )
        page_count = len(rows)
        exhausted = page_count < page_size

        page = [row for row in rows if row.id not in self._handed_out and not row.processed]
        extension = self._extend(page) if page else []

        messages = page + extension
        self._handed_out.update(message.id for message in messages)

        if extension:
            LOGGER.debug(
                "Extended page at offset %s with %s messages from sender %s",
                offset,
                len(extension),
                extension[0].sender_id,
            )

        return ExtendedBatch(
            messages=tuple(messages),
            next_offset=offset + page_count,
            page_count=page_count,
            extended_count=len(extension),
            exhausted=exhausted,
        )

    def _extend(self, page: List[ChatMessage]) -> List[ChatMessage]:
        last = page[-1]
        in_page = {message.id for message in page}
        candidates = self._store.list_unprocessed_after(
            chat_id=last.chat_id,
            sender_id=last.sender_id,
            after=last.timestamp,
            after_id=last.id,
        )

        max_gap = self._config.extension_gap_seconds
        extension: List[ChatMessage] = []
        previous = last
        for candidate in candidates:
            if candidate.id in in_page or candidate.id in self._handed_out:
                continue
            if (candidate.timestamp - previous.timestamp).total_seconds() > max_gap:
                break
            extension.append(candidate)
            previous = candidate
        return extension
