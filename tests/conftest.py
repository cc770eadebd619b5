"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from context_keeper.config import ContextOverrides
from context_keeper.models import Conversation, MessageRecord
from context_keeper.store import ConversationStore


NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    """Fixed reference time."""
    return NOW


@pytest.fixture
def make_message(now):
    """Factory for message records, created one minute apart ending at `now`."""

    def _make(role, content, seq, tokens=10, age_minutes=None):
        if age_minutes is None:
            age_minutes = 100 - seq
        return MessageRecord(
            role=role,
            content=content,
            sequence_number=seq,
            token_count=tokens,
            created_at=now - timedelta(minutes=age_minutes),
        )

    return _make


@pytest.fixture
def make_conversation():
    """Factory for conversations."""

    def _make(messages, conversation_id="conv-1", settings=None, model=None):
        return Conversation(
            id=conversation_id,
            messages=list(messages),
            settings=settings or ContextOverrides(),
            model=model,
        )

    return _make


@pytest.fixture
def chat_messages(make_message):
    """A system prompt followed by ten alternating 20-token messages."""
    messages = [make_message("system", "You are a helpful assistant.", 1, tokens=10)]
    for i in range(10):
        role = "user" if i % 2 == 0 else "assistant"
        messages.append(make_message(role, f"message number {i}", i + 2, tokens=20))
    return messages


@pytest.fixture
def store():
    """A fresh conversation store."""
    return ConversationStore()
