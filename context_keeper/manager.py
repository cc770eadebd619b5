"""
Context window management.

Decides, per conversational turn, which messages of a conversation go to the
provider so that the request stays within the model's token window:

- full_context when everything fits
- one retention strategy otherwise (recent, important, summarized,
  intelligent or advanced truncation, search-enhanced truncation)
- a budget check after every strategy that never drops system messages
  unless they alone exceed the budget
- an optional second phase that recalls relevant older messages found by
  conversation search
"""

import hashlib
import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence

from context_keeper.config import ContextConfig, KeeperConfig
from context_keeper.errors import ContextDataError
from context_keeper.models import (
    SYSTEM,
    ContextResult,
    Conversation,
    MessageRecord,
    MessageView,
    ModelCapacity,
    as_utc,
    utc_now,
)
from context_keeper.optimize import LEVELS, optimize_text
from context_keeper.relevance import RelevanceFinder, extract_search_terms
from context_keeper.resolver import ConfigurationResolver
from context_keeper.scoring import PreservationInfo, PreservationScorer
from context_keeper.strategies import (
    Strategy,
    get_strategy,
    group_turns,
    is_pair,
    total_tokens,
)

logger = logging.getLogger(__name__)


class ContextWindowManager:
    """Builds the message list sent to a provider for a conversation."""

    def __init__(
        self,
        resolver: Optional[ConfigurationResolver] = None,
        scorer: Optional[PreservationScorer] = None,
        finder: Optional[RelevanceFinder] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize context window manager.

        Args:
            resolver: Configuration resolver (global defaults if omitted)
            scorer: Preservation scorer for priority-based decisions
            finder: Relevance finder; without one no search phase runs
            clock: Source of "now" for recency and the middleware cache
        """
        self.resolver = resolver or ConfigurationResolver()
        self.clock = clock
        self.scorer = scorer or PreservationScorer(clock=clock)
        self.finder = finder
        self._cache: dict[str, tuple[datetime, ContextResult]] = {}

    @classmethod
    def from_config(cls, config: KeeperConfig, store=None) -> "ContextWindowManager":
        """Wire resolver, scorer and finder from a loaded configuration."""
        from context_keeper.search import create_message_search

        defaults = config.context
        finder = RelevanceFinder(
            create_message_search(config.search, store),
            max_search_results=defaults.max_search_results,
            relevance_threshold=defaults.relevance_threshold,
            timeout_seconds=defaults.search_timeout_seconds,
        )
        return cls(
            resolver=ConfigurationResolver(defaults, config.providers),
            scorer=PreservationScorer(recency_window=timedelta(minutes=defaults.recency_window_minutes)),
            finder=finder,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def preserve_context_for_switch(
        self,
        conversation: Conversation,
        capacity: ModelCapacity,
        strategy: Optional[str] = None,
        ratio: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> ContextResult:
        """
        Fit a conversation into a (new) model's context window.

        The search phase needs an outgoing message, so search-enhanced
        truncation only runs its base phase here.
        """
        config = self.resolver.resolve(conversation, capacity)
        window_size = min(config.window_size, capacity.context_length)
        return self.select_context(
            conversation.ordered_messages(),
            window_size=window_size,
            ratio=ratio if ratio is not None else config.ratio,
            strategy=strategy or config.strategy,
            now=now,
        )

    async def build_intelligent_context(
        self,
        conversation: Conversation,
        current_message: MessageRecord,
        config: Optional[ContextConfig] = None,
        capacity: Optional[ModelCapacity] = None,
        now: Optional[datetime] = None,
    ) -> ContextResult:
        """
        Build context for an outgoing message.

        Phase one applies the configured strategy. When the result is
        search-enhanced, phase two recalls relevant older messages into the
        remaining budget.
        """
        if config is None:
            config = self.resolver.resolve(conversation, capacity)
        now = as_utc(now) if now is not None else as_utc(self.clock())

        strategy = config.strategy
        if config.search_enhanced:
            strategy = Strategy.SEARCH_ENHANCED_TRUNCATION.value

        messages = conversation.ordered_messages()
        base = self.select_context(messages, config.window_size, config.ratio, strategy, now=now)

        if base.strategy != Strategy.SEARCH_ENHANCED_TRUNCATION.value or self.finder is None:
            return base

        result = await self._recall(base, messages, conversation, current_message, config, now)
        logger.info(
            f"Built context for conversation {conversation.id}: strategy={result.strategy} "
            f"kept={result.preserved_count}/{result.original_count} tokens={result.total_tokens} "
            f"recalled={result.recalled_count}"
        )
        return result

    def select_context(
        self,
        messages: Sequence[MessageRecord],
        window_size: int,
        ratio: float = 0.8,
        strategy: "str | Strategy" = Strategy.INTELLIGENT_TRUNCATION,
        now: Optional[datetime] = None,
    ) -> ContextResult:
        """
        Apply one retention strategy to an ordered message log.

        Raises:
            ContextDataError: for negative token counts, duplicate sequence
                numbers, or a ratio/window outside their valid range
        """
        self._check_input(messages, window_size, ratio)
        now = as_utc(now) if now is not None else as_utc(self.clock())
        messages = sorted(messages, key=lambda m: m.sequence_number)
        budget = int(window_size * ratio)
        current_tokens = total_tokens(messages)

        if current_tokens <= budget:
            return ContextResult(
                messages=[MessageView.of(m) for m in messages],
                total_tokens=current_tokens,
                truncated=False,
                strategy=Strategy.FULL_CONTEXT.value,
                original_count=len(messages),
                preserved_count=len(messages),
            )

        try:
            retention = get_strategy(strategy)
        except ValueError:
            logger.warning(f"Unknown strategy {strategy!r}, falling back to intelligent_truncation")
            retention = get_strategy(Strategy.INTELLIGENT_TRUNCATION)

        logger.debug(
            f"Applying {retention.strategy.value}: {current_tokens} tokens over budget {budget}"
        )
        selection = retention.select(messages, budget, self.scorer, now)

        scores: Optional[dict[int, PreservationInfo]] = None
        views = selection.kept
        if total_tokens(views) > budget:
            scores = self.scorer.score(messages, now=now)
            views = self._enforce_budget(views, budget, scores)

        pairs_preserved = selection.pairs_preserved
        avg_importance = selection.avg_importance_score
        if views is not selection.kept:
            if pairs_preserved is not None:
                pairs_preserved = self._count_pairs(views)
            if avg_importance is not None:
                kept = [scores[v.sequence_number].priority_score for v in views if v.role != SYSTEM]
                avg_importance = round(sum(kept) / len(kept), 6) if kept else 0.0

        preserved = sum(1 for v in views if not v.synthetic)
        return ContextResult(
            messages=views,
            total_tokens=total_tokens(views),
            truncated=preserved < len(messages),
            strategy=retention.strategy.value,
            original_count=len(messages),
            preserved_count=preserved,
            summary_created=any(v.synthetic for v in views),
            pairs_preserved=pairs_preserved,
            avg_importance_score=avg_importance,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _check_input(messages: Sequence[MessageRecord], window_size: int, ratio: float) -> None:
        if not 0 < ratio <= 1:
            raise ContextDataError(f"Context ratio must be in (0, 1], got {ratio}")
        if window_size < 0:
            raise ContextDataError(f"Window size must be non-negative, got {window_size}")
        seen: set[int] = set()
        for message in messages:
            if message.token_count < 0:
                raise ContextDataError(
                    f"Message {message.sequence_number} has negative token count {message.token_count}"
                )
            if message.sequence_number in seen:
                raise ContextDataError(f"Duplicate sequence number {message.sequence_number}")
            seen.add(message.sequence_number)

    @staticmethod
    def _count_pairs(views: Sequence[MessageView]) -> int:
        turns = group_turns([v for v in views if v.role != SYSTEM and not v.synthetic])
        return sum(1 for turn in turns if is_pair(turn))

    def _enforce_budget(
        self,
        views: list[MessageView],
        budget: int,
        scores: dict[int, PreservationInfo],
        trim_system: bool = True,
    ) -> list[MessageView]:
        """Shed the lowest-priority content until the budget holds."""
        views = list(views)

        def turn_priority(turn: list[MessageView]) -> tuple[float, int]:
            values = [
                scores[v.sequence_number].priority_score
                for v in turn
                if v.sequence_number in scores
            ]
            return (sum(values) / len(values) if values else 0.0, turn[-1].sequence_number or 0)

        while total_tokens(views) > budget:
            summaries = [v for v in views if v.synthetic]
            if summaries:
                drop = summaries[:1]
            else:
                turns = group_turns([v for v in views if v.role != SYSTEM])
                if not turns:
                    break
                # Whole turns go together so no answer loses its question
                drop = min(turns, key=turn_priority)
            dropped = {id(v) for v in drop}
            views = [v for v in views if id(v) not in dropped]

        if trim_system and total_tokens(views) > budget:
            # Only system messages are left and they still do not fit
            kept, used = [], 0
            for view in views:
                if used + view.token_count <= budget:
                    kept.append(view)
                    used += view.token_count
            logger.warning(
                f"System messages exceed the {budget}-token budget; kept {len(kept)} of {len(views)}"
            )
            views = kept

        return views

    async def _recall(
        self,
        base: ContextResult,
        messages: list[MessageRecord],
        conversation: Conversation,
        current_message: MessageRecord,
        config: ContextConfig,
        now: datetime,
    ) -> ContextResult:
        relevance = await self.finder.find_relevant_context(
            conversation,
            current_message,
            max_results=config.max_search_results,
            threshold=config.relevance_threshold,
            now=now,
        )
        if not relevance.relevant_messages:
            return replace(base, search_terms=list(relevance.search_terms))

        by_sequence = {m.sequence_number: m for m in messages}
        present = {v.sequence_number for v in base.messages}
        used = base.total_tokens
        budget = config.budget

        recalled: list[MessageView] = []
        for candidate in relevance.relevant_messages:
            record = by_sequence.get(candidate.sequence_number)
            if record is None or record.sequence_number in present:
                continue
            if used + record.token_count > budget:
                continue
            recalled.append(MessageView.of(record, recalled=True))
            present.add(record.sequence_number)
            used += record.token_count

        views = sorted(base.messages + recalled, key=lambda v: v.sequence_number or 0)
        preserved = base.preserved_count + len(recalled)
        return replace(
            base,
            messages=views,
            total_tokens=used,
            preserved_count=preserved,
            truncated=preserved < base.original_count,
            recalled_count=len(recalled),
            search_terms=list(relevance.search_terms),
        )

    # ------------------------------------------------------------------
    # Validation and middleware hooks
    # ------------------------------------------------------------------

    @staticmethod
    def validate_context_preservation(result: ContextResult, window_size: int) -> bool:
        """True if the result fits `window_size` and is non-empty unless it holds no tokens."""
        return result.total_tokens <= window_size and (
            bool(result.messages) or result.total_tokens == 0
        )

    @staticmethod
    def should_inject_context(message: MessageRecord, inject_context: bool = True) -> bool:
        """Whether the message refers back to earlier conversation."""
        if not inject_context or message.role == SYSTEM:
            return False
        return bool(extract_search_terms(message.content))

    async def build_context_for_middleware(
        self,
        conversation: Conversation,
        message: MessageRecord,
        config: Optional[ContextConfig] = None,
        now: Optional[datetime] = None,
    ) -> ContextResult:
        """Cached build_intelligent_context for request-time injection."""
        if config is None:
            config = self.resolver.resolve(conversation)
        now = as_utc(now) if now is not None else as_utc(self.clock())

        ttl = timedelta(seconds=config.cache_ttl)
        key = self._cache_key(conversation, message, config)
        cached = self._cache.get(key)
        if cached is not None and now - cached[0] < ttl:
            return self._copy(cached[1])

        result = await self.build_intelligent_context(conversation, message, config=config, now=now)
        if config.cache_ttl > 0:
            self._cache = {k: v for k, v in self._cache.items() if now - v[0] < ttl}
            self._cache[key] = (now, self._copy(result))
        return result

    @staticmethod
    def _copy(result: ContextResult) -> ContextResult:
        return replace(result, messages=list(result.messages), search_terms=list(result.search_terms))

    @staticmethod
    def _cache_key(conversation: Conversation, message: MessageRecord, config: ContextConfig) -> str:
        digest = hashlib.sha256(message.content.encode("utf-8")).hexdigest()[:16]
        settings = hashlib.sha256(config.model_dump_json().encode("utf-8")).hexdigest()[:16]
        return f"context:{conversation.id}:{conversation.last_sequence_number()}:{digest}:{settings}"

    @staticmethod
    def format_context_for_injection(result: ContextResult, max_chars: int = 200) -> str:
        """Render kept non-system messages as a labeled block for prompt injection."""
        lines = []
        for view in result.messages:
            if view.role == SYSTEM:
                continue
            content = view.content[:max_chars]
            if len(view.content) > max_chars:
                content += "..."
            label = " (recalled)" if view.recalled else ""
            lines.append(f"- {view.role.capitalize()}{label}: {content}")

        if not lines:
            return ""
        return "Relevant conversation context:\n" + "\n".join(lines) + "\n\n"

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    @staticmethod
    def optimize_context(result: ContextResult, level: str = "balanced") -> ContextResult:
        """
        Shrink message content without changing membership or order.

        Token counts scale with the content length and never grow.

        Raises:
            ValueError: for an unknown level
        """
        optimized = []
        for view in result.messages:
            # System instructions only get whitespace cleanup
            view_level = "light" if view.role == SYSTEM else level
            content = optimize_text(view.content, view_level)
            tokens = view.token_count
            if content != view.content and view.content:
                tokens = min(tokens, math.ceil(tokens * len(content) / len(view.content)))
            optimized.append(replace(view, content=content, token_count=tokens))

        new_total = total_tokens(optimized)
        return replace(
            result,
            messages=optimized,
            total_tokens=new_total,
            tokens_saved=result.total_tokens - new_total,
            optimization_level=level,
        )

    def optimize_for_token_budget(
        self,
        result: ContextResult,
        target_tokens: int,
        now: Optional[datetime] = None,
    ) -> ContextResult:
        """
        Bring a context result under `target_tokens`.

        Tries each optimization level from lightest to most aggressive and
        returns the first that fits. If even aggressive rewriting is not
        enough, whole lowest-priority turns are dropped from the aggressive
        result. System messages are never dropped, so a result whose system
        messages alone exceed the target stays over it.
        """
        if result.total_tokens <= target_tokens:
            return result

        for level in LEVELS:
            optimized = self.optimize_context(result, level)
            if optimized.total_tokens <= target_tokens:
                return optimized

        records = [
            MessageRecord(
                role=v.role,
                content=v.content,
                sequence_number=v.sequence_number,
                token_count=v.token_count,
            )
            for v in optimized.messages
            if v.sequence_number is not None
        ]
        scores = self.scorer.score(records, now=now)
        views = self._enforce_budget(optimized.messages, target_tokens, scores, trim_system=False)
        if total_tokens(views) > target_tokens:
            logger.warning(
                f"System messages alone exceed the {target_tokens}-token target; kept all of them"
            )

        preserved = sum(1 for v in views if not v.synthetic)
        pairs_preserved = optimized.pairs_preserved
        if pairs_preserved is not None:
            pairs_preserved = self._count_pairs(views)
        new_total = total_tokens(views)
        return replace(
            optimized,
            messages=views,
            total_tokens=new_total,
            truncated=preserved < optimized.original_count,
            preserved_count=preserved,
            summary_created=any(v.synthetic for v in views),
            pairs_preserved=pairs_preserved,
            tokens_saved=result.total_tokens - new_total,
            budget_optimization_applied=True,
        )

    @staticmethod
    def optimization_stats(original: ContextResult, optimized: ContextResult) -> dict[str, Any]:
        original_tokens = original.total_tokens
        optimized_tokens = optimized.total_tokens
        saved = original_tokens - optimized_tokens
        return {
            "original_tokens": original_tokens,
            "optimized_tokens": optimized_tokens,
            "tokens_saved": saved,
            "compression_ratio": optimized_tokens / original_tokens if original_tokens else 1.0,
            "space_saved_percentage": (saved / original_tokens) * 100 if original_tokens else 0.0,
            "messages_count": len(optimized.messages),
            "optimization_level": optimized.optimization_level or "none",
        }
