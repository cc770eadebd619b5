"""Tests for configuration resolution and validation."""

import pytest

from context_keeper.config import ContextDefaults, ContextOverrides, ProviderDefaults
from context_keeper.models import ModelCapacity
from context_keeper.resolver import ConfigurationResolver


@pytest.fixture
def resolver():
    return ConfigurationResolver()


def test_resolve_global_defaults(resolver, make_conversation):
    """Test resolution with no model and no overrides."""
    config = resolver.resolve(make_conversation([]))
    assert config.window_size == 4096
    assert config.strategy == "intelligent_truncation"
    assert config.ratio == 0.8


def test_resolve_uses_model_capacity(resolver, make_conversation):
    """Test that the window comes from the model capacity."""
    conversation = make_conversation([], model=ModelCapacity(context_length=32000))
    assert resolver.resolve(conversation).window_size == 32000


def test_resolve_provider_defaults(resolver, make_conversation):
    """Test provider-specific defaults apply by provider id."""
    conversation = make_conversation([], model=ModelCapacity(context_length=8000, provider_id="OpenAI"))
    config = resolver.resolve(conversation)
    assert config.ratio == 0.85
    assert config.strategy == "intelligent_truncation"

    gemini = resolver.resolve(conversation, ModelCapacity(context_length=8000, provider_id="gemini"))
    assert gemini.strategy == "recent_messages"


def test_conversation_overrides_win(resolver, make_conversation):
    """Test precedence: conversation > provider > global."""
    conversation = make_conversation(
        [],
        settings=ContextOverrides(ratio=0.5, strategy="important_messages"),
        model=ModelCapacity(context_length=8000, provider_id="openai"),
    )
    config = resolver.resolve(conversation)
    assert config.ratio == 0.5
    assert config.strategy == "important_messages"
    assert config.window_size == 8000


def test_custom_defaults_and_provider_table(make_conversation):
    """Test resolver built from loaded configuration."""
    resolver = ConfigurationResolver(
        ContextDefaults(window_size=2048, ratio=0.7),
        {"Local": ProviderDefaults(search_enhanced=True)},
    )
    conversation = make_conversation([], model=ModelCapacity(context_length=1000, provider_id="local"))
    config = resolver.resolve(conversation)
    assert config.ratio == 0.7
    assert config.search_enhanced is True
    assert resolver.resolve(make_conversation([])).window_size == 2048


def test_validate_accepts_good_settings(resolver):
    """Test validation of a valid settings dict."""
    errors = resolver.validate(
        {"window_size": 8000, "ratio": 1.0, "strategy": "summarized_context", "search_enhanced": True}
    )
    assert errors == {}


def test_validate_reports_field_errors(resolver):
    """Test each invalid field gets an error."""
    errors = resolver.validate(
        {
            "window_size": 50,
            "ratio": 0,
            "strategy": "full_context",
            "search_enhanced": "yes",
            "cache_ttl": -1,
            "max_search_results": -5,
            "relevance_threshold": 1.5,
        }
    )
    assert set(errors) == {
        "window_size",
        "ratio",
        "strategy",
        "search_enhanced",
        "cache_ttl",
        "max_search_results",
        "relevance_threshold",
    }


def test_validate_window_upper_bound(resolver):
    errors = resolver.validate({"window_size": 3_000_000})
    assert "exceed" in errors["window_size"]


def test_apply_rejects_invalid_without_change(resolver, make_conversation):
    """Test invalid settings leave the conversation untouched."""
    conversation = make_conversation([], settings=ContextOverrides(ratio=0.6))
    errors = resolver.apply(conversation, {"ratio": 1.5})
    assert "ratio" in errors
    assert conversation.settings.ratio == 0.6


def test_apply_merges_and_reset_clears(resolver, make_conversation):
    """Test apply merges into existing overrides and reset drops them."""
    conversation = make_conversation([], settings=ContextOverrides(ratio=0.6))
    assert resolver.apply(conversation, {"strategy": "recent_messages"}) == {}
    assert conversation.settings.explicit() == {"ratio": 0.6, "strategy": "recent_messages"}

    resolver.reset(conversation)
    assert conversation.settings.explicit() == {}
    assert resolver.resolve(conversation).ratio == 0.8


def test_recommend(resolver):
    """Test recommended configurations per purpose."""
    coding = resolver.recommend("coding")
    assert coding.strategy == "intelligent_truncation"
    assert coding.ratio == 0.85
    assert coding.search_enhanced is True

    creative = resolver.recommend("Creative")
    assert creative.strategy == "summarized_context"

    unknown = resolver.recommend("unknown")
    assert unknown.strategy == "intelligent_truncation"


def test_available_strategies_excludes_full_context(resolver):
    strategies = resolver.available_strategies()
    assert "full_context" not in strategies
    assert len(strategies) == 6
    assert strategies["recent_messages"]["name"] == "Recent Messages"
