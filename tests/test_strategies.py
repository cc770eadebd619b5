"""Tests for retention strategies."""

import pytest

from context_keeper.scoring import PreservationScorer
from context_keeper.strategies import (
    SELECTABLE_STRATEGIES,
    STRATEGIES,
    Strategy,
    get_strategy,
    group_turns,
    is_pair,
)


@pytest.fixture
def scorer():
    return PreservationScorer()


def test_registry_covers_selectable_strategies():
    assert set(STRATEGIES) == set(SELECTABLE_STRATEGIES)
    assert Strategy.FULL_CONTEXT not in SELECTABLE_STRATEGIES


def test_get_strategy_rejects_unknown_and_full_context():
    with pytest.raises(ValueError):
        get_strategy("bogus")
    with pytest.raises(ValueError):
        get_strategy("full_context")
    assert get_strategy("recent_messages").strategy is Strategy.RECENT_MESSAGES


def test_group_turns(make_message):
    """Test turns start at user messages."""
    messages = [
        make_message("assistant", "welcome", 1),
        make_message("user", "q1", 2),
        make_message("assistant", "a1", 3),
        make_message("tool", "result", 4),
        make_message("user", "q2", 5),
    ]
    turns = group_turns(messages)
    assert [[m.sequence_number for m in turn] for turn in turns] == [[1], [2, 3, 4], [5]]
    assert [is_pair(turn) for turn in turns] == [False, True, False]


def test_recent_messages(chat_messages, scorer, now):
    """Test recent messages keeps system plus the newest that fit."""
    selection = get_strategy("recent_messages").select(chat_messages, 80, scorer, now)
    assert [v.sequence_number for v in selection.kept] == [1, 9, 10, 11]
    assert sum(v.token_count for v in selection.kept) == 70


def test_recent_messages_stops_at_first_misfit(make_message, scorer, now):
    """Test an older small message is not pulled past a large one."""
    messages = [
        make_message("user", "small", 1, tokens=5),
        make_message("assistant", "huge", 2, tokens=60),
        make_message("user", "latest", 3, tokens=30),
    ]
    selection = get_strategy("recent_messages").select(messages, 40, scorer, now)
    assert [v.sequence_number for v in selection.kept] == [3]


def test_important_messages_keeps_old_important(make_message, chat_messages, scorer, now):
    """Test an important early message survives over recent filler."""
    messages = [chat_messages[0], make_message("user", "Remember: my password is hunter2", 2, tokens=20)]
    messages += [m for m in chat_messages[2:]]

    important = get_strategy("important_messages").select(messages, 80, scorer, now)
    recent = get_strategy("recent_messages").select(messages, 80, scorer, now)

    assert 2 in [v.sequence_number for v in important.kept]
    assert 2 not in [v.sequence_number for v in recent.kept]
    assert sum(v.token_count for v in important.kept) <= 80
    assert [v.sequence_number for v in important.kept] == sorted(v.sequence_number for v in important.kept)


def test_summarized_context_inserts_summary(chat_messages, scorer, now):
    """Test summary goes between system messages and the kept tail."""
    selection = get_strategy("summarized_context").select(chat_messages, 80, scorer, now)

    assert selection.summary_created is True
    summary = selection.kept[1]
    assert summary.synthetic is True
    assert summary.role == "system"
    assert summary.sequence_number is None
    assert summary.content.startswith("Previous conversation summary: 8 earlier messages omitted")
    assert [v.sequence_number for v in selection.kept] == [1, None, 10, 11]
    assert sum(v.token_count for v in selection.kept) <= 80


def test_summarized_context_lists_user_topics(make_message, scorer, now):
    messages = [make_message("user", f"topic {i}", i, tokens=20) for i in range(1, 6)]
    selection = get_strategy("summarized_context").select(messages, 90, scorer, now)
    summary = next(v for v in selection.kept if v.synthetic)
    assert "User discussed: topic 1; topic 2" in summary.content


def test_intelligent_truncation_keeps_whole_turns(chat_messages, scorer, now):
    """Test turns are kept whole from the newest backwards."""
    selection = get_strategy("intelligent_truncation").select(chat_messages, 80, scorer, now)
    assert [v.sequence_number for v in selection.kept] == [1, 10, 11]
    assert selection.pairs_preserved == 1


def test_advanced_truncation_prefers_important_turns(make_message, chat_messages, scorer, now):
    """Test turns ranked by priority rather than recency."""
    messages = [chat_messages[0], make_message("user", "Important: the deploy key is in vault", 2, tokens=20)]
    messages += [m for m in chat_messages[2:]]

    selection = get_strategy("advanced_intelligent_truncation").select(messages, 80, scorer, now)
    kept = [v.sequence_number for v in selection.kept]

    assert kept[:3] == [1, 2, 3]
    assert sum(v.token_count for v in selection.kept) <= 80
    assert selection.avg_importance_score is not None
    assert selection.pairs_preserved >= 1


def test_search_enhanced_base_phase_matches_intelligent(chat_messages, scorer, now):
    intelligent = get_strategy("intelligent_truncation").select(chat_messages, 80, scorer, now)
    enhanced = get_strategy("search_enhanced_truncation").select(chat_messages, 80, scorer, now)
    assert enhanced.kept == intelligent.kept
