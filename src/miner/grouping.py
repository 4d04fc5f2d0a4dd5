"""Message grouping (core domain).

Rule-based grouping partitions one page of chat messages into product
candidates. The LLM strategy asks the enrichment service for groups, but its
answer never bypasses the same composition rules: invalid groups are dropped
and everything the accepted groups leave uncovered goes through the
rule-based scan again.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from miner.classifier import IMAGE_TAGS, SequenceTag, classify_sequence, has_valid_composition
from miner.config import GroupingConfig
from miner.dedup import compute_fingerprint
from miner.errors import EnrichmentError
from miner.models import ChatMessage, GroupingResult, GroupProvenance, MessageGroup
from miner.ports import EnrichmentPort

LOGGER = logging.getLogger(__name__)


def sort_messages(messages: Iterable[ChatMessage]) -> List[ChatMessage]:
    """Chronological order with the id as a stable tie-breaker."""

    return sorted(messages, key=lambda m: (m.timestamp, m.id))


def make_group_id(message_ids: Iterable[str]) -> str:
    return f"grp-{compute_fingerprint(message_ids)[:16]}"


class RuleBasedGrouper:
    """Groups a sender's image run plus the caption texts that follow it.

    Per sender, scanning left to right:
    - messages that are neither text nor image are skipped
    - text with no image run right before it is skipped
    - a run of images followed by texts (each within the text window of the
      previous message) becomes one group
    - an image run without trailing text is deferred when nothing was grouped
      after it (the caption may arrive in a later page), otherwise skipped
    """

    def __init__(
        self,
        config: Optional[GroupingConfig] = None,
        provenance: GroupProvenance = GroupProvenance.RULE_BASED,
    ) -> None:
        self._config = config or GroupingConfig()
        self._provenance = provenance

    def group(
        self,
        messages: Iterable[ChatMessage],
        prior_group_ends: Optional[Mapping[Tuple[str, str], datetime]] = None,
    ) -> GroupingResult:
        """Partition messages into groups plus skipped and deferred ids.

        ``prior_group_ends`` holds, per (chat, sender), the end of groups accepted
        elsewhere in the same page so the tail decision accounts for them.
        """

        by_sender: Dict[Tuple[str, str], List[ChatMessage]] = {}
        for message in sort_messages(messages):
            by_sender.setdefault((message.chat_id, message.sender_id), []).append(message)

        groups: List[MessageGroup] = []
        grouped: set[str] = set()
        skipped: set[str] = set()
        tail: set[str] = set()

        for (chat_id, sender_id), sender_messages in by_sender.items():
            last_end = (prior_group_ends or {}).get((chat_id, sender_id))
            self._group_sender(sender_id, sender_messages, last_end, groups, grouped, skipped, tail)

        return GroupingResult(
            groups=tuple(groups),
            grouped_ids=frozenset(grouped),
            skipped_ids=frozenset(skipped),
            ungrouped_tail_ids=frozenset(tail),
        )

    def _group_sender(
        self,
        sender_id: str,
        messages: Sequence[ChatMessage],
        last_group_end: Optional[datetime],
        groups: List[MessageGroup],
        grouped: set[str],
        skipped: set[str],
        tail: set[str],
    ) -> None:
        tags = classify_sequence(messages)
        window = self._config.text_window_seconds
        pending: List[List[ChatMessage]] = []
        index = 0

        while index < len(messages):
            if tags[index] not in IMAGE_TAGS:
                skipped.add(messages[index].id)
                index += 1
                continue

            image_run: List[ChatMessage] = []
            while index < len(messages) and tags[index] in IMAGE_TAGS:
                image_run.append(messages[index])
                index += 1

            text_run: List[ChatMessage] = []
            previous = image_run[-1]
            while index < len(messages) and tags[index] == SequenceTag.TEXT:
                gap = (messages[index].timestamp - previous.timestamp).total_seconds()
                if gap > window:
                    break
                text_run.append(messages[index])
                previous = messages[index]
                index += 1

            if not text_run:
                pending.append(image_run)
                continue

            group = self._build_group(sender_id, image_run, text_run)
            groups.append(group)
            grouped.update(group.message_ids)
            last_group_end = text_run[-1].timestamp
            LOGGER.debug(
                "Grouped %s images + %s texts for sender %s",
                len(image_run),
                len(text_run),
                sender_id,
            )

        for image_run in pending:
            ids = {message.id for message in image_run}
            if last_group_end is None or image_run[0].timestamp > last_group_end:
                tail.update(ids)
                LOGGER.debug("Deferring %s uncaptioned images from %s", len(ids), sender_id)
            else:
                skipped.update(ids)
                LOGGER.debug("Skipping %s uncaptioned images from %s", len(ids), sender_id)

    def _build_group(
        self,
        sender_id: str,
        image_run: Sequence[ChatMessage],
        text_run: Sequence[ChatMessage],
    ) -> MessageGroup:
        members = sort_messages([*image_run, *text_run])
        message_ids = tuple(message.id for message in members)
        return MessageGroup(
            group_id=make_group_id(message_ids),
            message_ids=message_ids,
            sender_id=sender_id,
            provenance=self._provenance,
            confidence=self._config.rule_confidence,
            product_context=f"Product with {len(image_run)} images and {len(text_run)} text messages",
        )


def validate_group(
    group: MessageGroup,
    messages_by_id: Mapping[str, ChatMessage],
    claimed: Iterable[str] = (),
) -> Optional[str]:
    """Return why an externally produced group is invalid, or None if it is fine."""

    if not group.message_ids:
        return "empty group"
    if len(set(group.message_ids)) != len(group.message_ids):
        return "repeated message ids"

    unknown = [message_id for message_id in group.message_ids if message_id not in messages_by_id]
    if unknown:
        return f"unknown message ids: {', '.join(unknown)}"

    overlap = set(group.message_ids) & set(claimed)
    if overlap:
        return f"messages already grouped: {', '.join(sorted(overlap))}"

    members = [messages_by_id[message_id] for message_id in group.message_ids]
    senders = {member.sender_id for member in members}
    if len(senders) != 1:
        return f"{len(senders)} different senders"
    if len({member.chat_id for member in members}) != 1:
        return "messages from different chats"

    if not has_valid_composition(members):
        return "needs at least one text message and one image"
    return None


def _chunks(messages: Sequence[ChatMessage], size: int) -> Iterable[Sequence[ChatMessage]]:
    size = max(1, size)
    for start in range(0, len(messages), size):
        yield messages[start : start + size]


class LlmGroupingStrategy:
    """Groups with the enrichment service, then re-validates and recovers locally."""

    def __init__(self, enrichment: EnrichmentPort, config: Optional[GroupingConfig] = None) -> None:
        self._enrichment = enrichment
        self._config = config or GroupingConfig()
        self._fallback = RuleBasedGrouper(self._config)
        self._recovery = RuleBasedGrouper(self._config, provenance=GroupProvenance.RECOVERED)

    async def group(self, messages: Iterable[ChatMessage]) -> GroupingResult:
        ordered = sort_messages(messages)
        if not ordered:
            return GroupingResult()

        candidates: List[MessageGroup] = []
        try:
            for chunk in _chunks(ordered, self._config.max_grouping_messages):
                candidates.extend(await self._enrichment.group_messages(chunk))
        except EnrichmentError as exc:
            LOGGER.warning("LLM grouping failed (%s); falling back to rule-based grouping", exc)
            return self._fallback.group(ordered)

        by_id = {message.id: message for message in ordered}
        accepted: List[MessageGroup] = []
        claimed: set[str] = set()
        group_ends: Dict[Tuple[str, str], datetime] = {}

        for candidate in candidates:
            reason = validate_group(candidate, by_id, claimed)
            if reason:
                LOGGER.info("Rejected LLM group %s: %s", candidate.group_id, reason)
                continue
            members = sort_messages(by_id[message_id] for message_id in candidate.message_ids)
            message_ids = tuple(member.id for member in members)
            sender_id = members[0].sender_id
            accepted.append(
                MessageGroup(
                    group_id=make_group_id(message_ids),
                    message_ids=message_ids,
                    sender_id=sender_id,
                    provenance=GroupProvenance.LLM,
                    confidence=min(1.0, max(0.0, candidate.confidence)),
                    product_context=candidate.product_context,
                )
            )
            claimed.update(message_ids)
            end = members[-1].timestamp
            key = (members[0].chat_id, sender_id)
            if key not in group_ends or end > group_ends[key]:
                group_ends[key] = end

        remainder = [message for message in ordered if message.id not in claimed]
        recovery = self._recovery.group(remainder, prior_group_ends=group_ends)
        if recovery.groups:
            LOGGER.info("Recovered %s groups the LLM answer missed", len(recovery.groups))

        return GroupingResult(
            groups=tuple(accepted) + recovery.groups,
            grouped_ids=frozenset(claimed) | recovery.grouped_ids,
            skipped_ids=recovery.skipped_ids,
            ungrouped_tail_ids=recovery.ungrouped_tail_ids,
        )
