"""Retention strategies deciding which messages survive truncation."""

import textwrap
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from context_keeper.models import (
    ASSISTANT,
    SYSTEM,
    USER,
    MessageRecord,
    MessageView,
    estimate_tokens,
)
from context_keeper.scoring import PreservationScorer

SUMMARY_RESERVE_RATIO = 0.3
SUMMARY_TOPICS = 3


class Strategy(str, Enum):
    """Named retention strategies."""

    FULL_CONTEXT = "full_context"
    RECENT_MESSAGES = "recent_messages"
    IMPORTANT_MESSAGES = "important_messages"
    SUMMARIZED_CONTEXT = "summarized_context"
    INTELLIGENT_TRUNCATION = "intelligent_truncation"
    ADVANCED_INTELLIGENT_TRUNCATION = "advanced_intelligent_truncation"
    SEARCH_ENHANCED_TRUNCATION = "search_enhanced_truncation"


# full_context is chosen automatically when everything fits
SELECTABLE_STRATEGIES = tuple(s for s in Strategy if s is not Strategy.FULL_CONTEXT)


@dataclass
class Selection:
    """Messages a strategy kept, in send order."""

    kept: list[MessageView]
    summary_created: bool = False
    pairs_preserved: Optional[int] = None
    avg_importance_score: Optional[float] = None


def total_tokens(messages: Sequence) -> int:
    return sum(m.token_count for m in messages)


def split_system(messages: Sequence[MessageRecord]) -> tuple[list[MessageRecord], list[MessageRecord]]:
    systems = [m for m in messages if m.role == SYSTEM]
    others = [m for m in messages if m.role != SYSTEM]
    return systems, others


def group_turns(messages: Sequence) -> list[list]:
    """
    Group non-system messages into turns.

    A turn starts at a user message and takes every following assistant,
    function or tool message up to the next user message. Messages before
    the first user message form their own turn.
    """
    groups: list[list] = []
    for message in messages:
        if message.role == USER or not groups:
            groups.append([message])
        else:
            groups[-1].append(message)
    return groups


def is_pair(group: Sequence) -> bool:
    roles = {m.role for m in group}
    return USER in roles and ASSISTANT in roles


def in_order(messages: Sequence[MessageRecord]) -> list[MessageView]:
    return [MessageView.of(m) for m in sorted(messages, key=lambda m: m.sequence_number)]


class RetentionStrategy(ABC):
    """Base class for retention strategies."""

    strategy: Strategy

    @abstractmethod
    def select(
        self,
        messages: Sequence[MessageRecord],
        budget: int,
        scorer: PreservationScorer,
        now: datetime,
    ) -> Selection:
        """
        Choose messages to keep.

        Args:
            messages: Full log, ordered by sequence number
            budget: Token budget for the result
            scorer: Preservation scorer for priority-based strategies
            now: Reference time for recency

        System messages are always kept; the manager trims them only when
        they alone exceed the budget.
        """


class RecentMessages(RetentionStrategy):
    """Keep system messages, then the newest messages that fit."""

    strategy = Strategy.RECENT_MESSAGES

    def select(self, messages, budget, scorer, now):
        systems, others = split_system(messages)
        remaining = budget - total_tokens(systems)
        kept = []
        for message in reversed(others):
            if message.token_count > remaining:
                break
            kept.append(message)
            remaining -= message.token_count
        return Selection(kept=in_order(systems + kept))


class ImportantMessages(RetentionStrategy):
    """Keep system messages, then the highest-priority messages that fit."""

    strategy = Strategy.IMPORTANT_MESSAGES

    def select(self, messages, budget, scorer, now):
        systems, others = split_system(messages)
        scores = scorer.score(messages, now=now)
        ranked = sorted(
            others,
            key=lambda m: (scores[m.sequence_number].priority_score, m.sequence_number),
            reverse=True,
        )
        remaining = budget - total_tokens(systems)
        kept = []
        for message in ranked:
            if message.token_count <= remaining:
                kept.append(message)
                remaining -= message.token_count
        return Selection(kept=in_order(systems + kept))


class SummarizedContext(RetentionStrategy):
    """Keep system messages and a recent tail; summarize the evicted middle."""

    strategy = Strategy.SUMMARIZED_CONTEXT

    def select(self, messages, budget, scorer, now):
        systems, others = split_system(messages)
        system_tokens = total_tokens(systems)
        reserve = int(budget * SUMMARY_RESERVE_RATIO)

        remaining = budget - reserve - system_tokens
        tail = []
        for message in reversed(others):
            if message.token_count > remaining:
                break
            tail.append(message)
            remaining -= message.token_count
        tail.reverse()

        kept_ids = {m.sequence_number for m in tail}
        evicted = [m for m in others if m.sequence_number not in kept_ids]
        views = in_order(systems + tail)

        available = budget - system_tokens - total_tokens(tail)
        summary = self.summarize(evicted, available)
        if summary is None:
            return Selection(kept=views)

        # The summary goes right before the kept tail
        position = len(views)
        if tail:
            first = tail[0].sequence_number
            position = next(i for i, view in enumerate(views) if view.sequence_number == first)
        views.insert(position, summary)
        return Selection(kept=views, summary_created=True)

    def summarize(self, evicted: Sequence[MessageRecord], available: int) -> Optional[MessageView]:
        """Build a system-role summary of evicted messages that fits `available` tokens."""
        if not evicted or available <= 0:
            return None

        user_messages = [m for m in evicted if m.role == USER]
        topics = [
            textwrap.shorten(m.content, width=80, placeholder="...")
            for m in user_messages[:SUMMARY_TOPICS]
        ]
        header = f"Previous conversation summary: {len(evicted)} earlier messages omitted"
        candidates = []
        if topics:
            text = f"{header}. User discussed: {'; '.join(t for t in topics if t)}"
            if len(user_messages) > SUMMARY_TOPICS:
                text += f" (and {len(user_messages) - SUMMARY_TOPICS} more)"
            candidates.append(text)
        candidates.append(f"{header}.")

        for text in candidates:
            tokens = estimate_tokens(text)
            if tokens <= available:
                return MessageView(
                    role=SYSTEM,
                    content=text,
                    sequence_number=None,
                    token_count=tokens,
                    synthetic=True,
                )
        return None


class IntelligentTruncation(RetentionStrategy):
    """Keep system messages, then whole turns from newest to oldest."""

    strategy = Strategy.INTELLIGENT_TRUNCATION

    def select(self, messages, budget, scorer, now):
        systems, others = split_system(messages)
        remaining = budget - total_tokens(systems)
        kept_groups = []
        for group in reversed(group_turns(others)):
            tokens = total_tokens(group)
            if tokens > remaining:
                break
            kept_groups.append(group)
            remaining -= tokens

        kept = [m for group in kept_groups for m in group]
        return Selection(
            kept=in_order(systems + kept),
            pairs_preserved=sum(1 for group in kept_groups if is_pair(group)),
        )


class AdvancedIntelligentTruncation(RetentionStrategy):
    """Keep whole turns ranked by preservation priority rather than recency."""

    strategy = Strategy.ADVANCED_INTELLIGENT_TRUNCATION

    def select(self, messages, budget, scorer, now):
        systems, others = split_system(messages)
        scores = scorer.score(messages, now=now)

        def group_score(group):
            return sum(scores[m.sequence_number].priority_score for m in group) / len(group)

        ranked = sorted(
            group_turns(others),
            key=lambda g: (group_score(g), g[-1].sequence_number),
            reverse=True,
        )
        remaining = budget - total_tokens(systems)
        kept_groups = []
        for group in ranked:
            tokens = total_tokens(group)
            if tokens <= remaining:
                kept_groups.append(group)
                remaining -= tokens

        kept = [m for group in kept_groups for m in group]
        kept_scores = [scores[m.sequence_number].priority_score for m in kept]
        return Selection(
            kept=in_order(systems + kept),
            pairs_preserved=sum(1 for group in kept_groups if is_pair(group)),
            avg_importance_score=round(sum(kept_scores) / len(kept_scores), 6) if kept_scores else 0.0,
        )


class SearchEnhancedTruncation(IntelligentTruncation):
    """Intelligent truncation; recalled messages are added afterwards by the manager."""

    strategy = Strategy.SEARCH_ENHANCED_TRUNCATION


STRATEGIES: dict[Strategy, RetentionStrategy] = {
    cls.strategy: cls()
    for cls in (
        RecentMessages,
        ImportantMessages,
        SummarizedContext,
        IntelligentTruncation,
        AdvancedIntelligentTruncation,
        SearchEnhancedTruncation,
    )
}

_missing = set(SELECTABLE_STRATEGIES) - set(STRATEGIES)
if _missing:
    raise RuntimeError(f"No retention strategy registered for: {sorted(s.value for s in _missing)}")


def get_strategy(name: "Strategy | str") -> RetentionStrategy:
    """
    Look up a selectable strategy.

    Raises:
        ValueError: for unknown names and for full_context
    """
    strategy = Strategy(name)
    if strategy not in STRATEGIES:
        raise ValueError(f"Strategy {strategy.value} cannot be selected explicitly")
    return STRATEGIES[strategy]
