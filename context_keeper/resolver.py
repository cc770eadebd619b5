"""Resolution of effective context settings per conversation and model."""

import logging
from typing import Any, Optional

from context_keeper.config import (
    DEFAULT_PROVIDER_TABLE,
    ContextConfig,
    ContextDefaults,
    ContextOverrides,
    ProviderDefaults,
)
from context_keeper.models import Conversation, ModelCapacity
from context_keeper.strategies import SELECTABLE_STRATEGIES, Strategy

logger = logging.getLogger(__name__)

MIN_WINDOW_SIZE = 100
MAX_WINDOW_SIZE = 2_000_000

STRATEGY_DESCRIPTIONS: dict[str, dict[str, str]] = {
    Strategy.RECENT_MESSAGES.value: {
        "name": "Recent Messages",
        "description": "Preserve the most recent messages in the conversation",
        "best_for": "Ongoing conversations where recent context is most important",
    },
    Strategy.IMPORTANT_MESSAGES.value: {
        "name": "Important Messages",
        "description": "Preserve messages ranked by preservation priority",
        "best_for": "Conversations with important instructions, preferences or decisions",
    },
    Strategy.SUMMARIZED_CONTEXT.value: {
        "name": "Summarized Context",
        "description": "Summarize older messages while preserving recent ones",
        "best_for": "Long conversations where historical context matters",
    },
    Strategy.INTELLIGENT_TRUNCATION.value: {
        "name": "Intelligent Truncation",
        "description": "Keep whole question/answer turns from the most recent backwards",
        "best_for": "Most conversations - balances all factors",
    },
    Strategy.ADVANCED_INTELLIGENT_TRUNCATION.value: {
        "name": "Advanced Intelligent Truncation",
        "description": "Keep whole turns ranked by preservation markers and priority",
        "best_for": "Conversations where key facts are scattered across the history",
    },
    Strategy.SEARCH_ENHANCED_TRUNCATION.value: {
        "name": "Search-Enhanced Truncation",
        "description": "Recall relevant historical messages found by conversation search",
        "best_for": "Conversations where users reference previous topics",
    },
}

RECOMMENDED: dict[str, dict[str, Any]] = {
    "chat": {"strategy": "recent_messages", "ratio": 0.8, "search_enhanced": True},
    "analysis": {"strategy": "important_messages", "ratio": 0.9, "search_enhanced": False},
    "coding": {"strategy": "intelligent_truncation", "ratio": 0.85, "search_enhanced": True},
    "creative": {"strategy": "summarized_context", "ratio": 0.75, "search_enhanced": False},
}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ConfigurationResolver:
    """Merges global, provider and conversation settings and validates them."""

    def __init__(
        self,
        defaults: Optional[ContextDefaults] = None,
        provider_table: Optional[dict[str, ProviderDefaults]] = None,
    ):
        """
        Initialize resolver.

        Args:
            defaults: Global defaults (KeeperConfig.context)
            provider_table: Per-provider defaults keyed by lower-case provider id
        """
        self.defaults = defaults or ContextDefaults()
        if provider_table is None:
            provider_table = DEFAULT_PROVIDER_TABLE
        self.provider_table = {name.lower(): table for name, table in provider_table.items()}

    def default_configuration(self, capacity: Optional[ModelCapacity] = None) -> ContextConfig:
        """Global defaults, with the window taken from the model when known."""
        window_size = capacity.context_length if capacity else self.defaults.window_size
        return ContextConfig(
            window_size=window_size,
            strategy=self.defaults.strategy,
            ratio=self.defaults.ratio,
            search_enhanced=self.defaults.search_enhanced,
            cache_ttl=self.defaults.cache_ttl,
            max_search_results=self.defaults.max_search_results,
            relevance_threshold=self.defaults.relevance_threshold,
        )

    def provider_configuration(self, capacity: Optional[ModelCapacity]) -> dict[str, Any]:
        """Provider-specific overrides for the model's provider, if any."""
        if capacity is None or not capacity.provider_id:
            return {}
        table = self.provider_table.get(capacity.provider_id.lower())
        if table is None:
            return {}
        return table.model_dump(exclude_none=True)

    def computed_defaults(self, capacity: Optional[ModelCapacity] = None) -> ContextConfig:
        base = self.default_configuration(capacity).model_dump()
        base.update(self.provider_configuration(capacity))
        return ContextConfig(**base)

    def resolve(
        self, conversation: Conversation, capacity: Optional[ModelCapacity] = None
    ) -> ContextConfig:
        """Effective settings: conversation overrides > provider defaults > global defaults."""
        if capacity is None:
            capacity = conversation.model
        merged = self.computed_defaults(capacity).model_dump()
        merged.update(conversation.settings.explicit())
        return ContextConfig(**merged)

    def validate(self, config: "ContextConfig | ContextOverrides | dict[str, Any]") -> dict[str, str]:
        """
        Validate settings.

        Returns:
            Field name -> error message; empty when valid
        """
        if isinstance(config, (ContextConfig, ContextOverrides)):
            values = config.model_dump(exclude_none=True)
        else:
            values = {key: value for key, value in config.items() if value is not None}

        errors: dict[str, str] = {}

        if "window_size" in values:
            window_size = values["window_size"]
            if not _is_int(window_size) or window_size < MIN_WINDOW_SIZE:
                errors["window_size"] = f"Window size must be an integer >= {MIN_WINDOW_SIZE}"
            elif window_size > MAX_WINDOW_SIZE:
                errors["window_size"] = f"Window size cannot exceed {MAX_WINDOW_SIZE:,} tokens"

        if "ratio" in values:
            ratio = values["ratio"]
            if not _is_number(ratio) or not 0 < ratio <= 1:
                errors["ratio"] = "Context ratio must be greater than 0 and at most 1"

        if "strategy" in values:
            if values["strategy"] not in {s.value for s in SELECTABLE_STRATEGIES}:
                errors["strategy"] = "Invalid preservation strategy"

        if "search_enhanced" in values and not isinstance(values["search_enhanced"], bool):
            errors["search_enhanced"] = "Search enhancement must be true or false"

        for key, label in (("cache_ttl", "Cache TTL"), ("max_search_results", "Max search results")):
            if key in values:
                value = values[key]
                if not _is_int(value) or value < 0:
                    errors[key] = f"{label} must be a non-negative integer"

        if "relevance_threshold" in values:
            threshold = values["relevance_threshold"]
            if not _is_number(threshold) or not 0 <= threshold <= 1:
                errors["relevance_threshold"] = "Relevance threshold must be between 0 and 1"

        return errors

    def apply(
        self, conversation: Conversation, config: "ContextConfig | ContextOverrides | dict[str, Any]"
    ) -> dict[str, str]:
        """
        Store validated settings on the conversation.

        Returns:
            Validation errors; the conversation is only changed when empty
        """
        errors = self.validate(config)
        if errors:
            logger.info(f"Rejected context settings for conversation {conversation.id}: {errors}")
            return errors

        if isinstance(config, (ContextConfig, ContextOverrides)):
            values = config.model_dump(exclude_none=True)
        else:
            values = {key: value for key, value in config.items() if value is not None}
        allowed = {key: values[key] for key in ContextOverrides.model_fields if key in values}

        # Single assignment so concurrent writers resolve as last-writer-wins
        conversation.settings = ContextOverrides(**{**conversation.settings.explicit(), **allowed})
        return {}

    def reset(self, conversation: Conversation) -> None:
        """Drop conversation overrides so computed defaults apply again."""
        conversation.settings = ContextOverrides()

    def recommend(self, purpose: str) -> ContextConfig:
        """Pre-tuned settings for a conversation purpose (chat, analysis, coding, creative)."""
        base = self.default_configuration().model_dump()
        base.update(RECOMMENDED.get(purpose.lower(), {}))
        return ContextConfig(**base)

    @staticmethod
    def available_strategies() -> dict[str, dict[str, str]]:
        return {name: dict(info) for name, info in STRATEGY_DESCRIPTIONS.items()}
