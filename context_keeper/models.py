"""Core data types for conversation context management."""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from context_keeper.config import ContextOverrides

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"
FUNCTION = "function"
TOOL = "tool"

ROLES = (SYSTEM, USER, ASSISTANT, FUNCTION, TOOL)


def estimate_tokens(text: str) -> int:
    """
    Estimate token count for generated text.

    Simple heuristic: ~4 chars per token. Only used for content this package
    creates itself; caller messages carry their own counts.
    """
    return math.ceil(len(text) / 4)


# Sorts before every real timestamp
EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a timestamp to aware UTC.

    Naive values are taken to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class MessageRecord:
    """A single entry in a conversation's ordered log."""

    role: str  # system, user, assistant, function or tool
    content: str
    sequence_number: int
    token_count: int
    created_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "created_at", as_utc(self.created_at))

    @property
    def is_system(self) -> bool:
        return self.role == SYSTEM

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MessageRecord":
        """Build a record from its JSON form."""
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            if created_at.endswith("Z"):
                created_at = created_at[:-1] + "+00:00"
            created_at = datetime.fromisoformat(created_at)
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            sequence_number=int(data["sequence_number"]),
            token_count=int(data.get("token_count", 0)),
            created_at=created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API."""
        return {
            "role": self.role,
            "content": self.content,
            "sequence_number": self.sequence_number,
            "token_count": self.token_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class ModelCapacity:
    """Context capacity of the target model, supplied by the provider layer."""

    context_length: int
    provider_id: Optional[str] = None


@dataclass
class Conversation:
    """An ordered message log plus conversation-level context settings."""

    id: str
    messages: list[MessageRecord] = field(default_factory=list)
    settings: ContextOverrides = field(default_factory=ContextOverrides)
    model: Optional[ModelCapacity] = None

    def ordered_messages(self) -> list[MessageRecord]:
        """Messages sorted by sequence number."""
        return sorted(self.messages, key=lambda m: m.sequence_number)

    def last_sequence_number(self) -> int:
        return max((m.sequence_number for m in self.messages), default=0)


@dataclass(frozen=True)
class MessageView:
    """Lightweight message emitted in a context result."""

    role: str
    content: str
    sequence_number: Optional[int]
    token_count: int
    recalled: bool = False  # re-admitted by search
    synthetic: bool = False  # generated summary, not part of the log

    @classmethod
    def of(cls, message: MessageRecord, recalled: bool = False) -> "MessageView":
        return cls(
            role=message.role,
            content=message.content,
            sequence_number=message.sequence_number,
            token_count=message.token_count,
            recalled=recalled,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "sequence_number": self.sequence_number,
            "token_count": self.token_count,
        }
        if self.recalled:
            data["recalled"] = True
        if self.synthetic:
            data["synthetic"] = True
        return data


@dataclass
class ContextResult:
    """Messages selected for a provider request, with truncation metadata."""

    messages: list[MessageView]
    total_tokens: int
    truncated: bool
    strategy: str
    original_count: int
    preserved_count: int
    summary_created: bool = False
    pairs_preserved: Optional[int] = None
    avg_importance_score: Optional[float] = None
    recalled_count: int = 0
    search_terms: list[str] = field(default_factory=list)
    tokens_saved: Optional[int] = None
    optimization_level: Optional[str] = None
    budget_optimization_applied: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API."""
        data: dict[str, Any] = {
            "messages": [m.to_dict() for m in self.messages],
            "total_tokens": self.total_tokens,
            "truncated": self.truncated,
            "strategy": self.strategy,
            "original_count": self.original_count,
            "preserved_count": self.preserved_count,
            "summary_created": self.summary_created,
            "recalled_count": self.recalled_count,
        }
        if self.pairs_preserved is not None:
            data["pairs_preserved"] = self.pairs_preserved
        if self.avg_importance_score is not None:
            data["avg_importance_score"] = self.avg_importance_score
        if self.search_terms:
            data["search_terms"] = list(self.search_terms)
        if self.tokens_saved is not None:
            data["tokens_saved"] = self.tokens_saved
            data["optimization_level"] = self.optimization_level
        if self.budget_optimization_applied:
            data["budget_optimization_applied"] = True
        return data
