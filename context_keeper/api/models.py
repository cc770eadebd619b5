"""API request and response models."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from context_keeper.config import ContextOverrides
from context_keeper.models import Conversation, MessageRecord, ModelCapacity, utc_now


class MessageIn(BaseModel):
    """A message record as posted by clients."""

    role: str  # "system", "user", "assistant", "function", "tool"
    content: str
    sequence_number: Optional[int] = None  # next in sequence if omitted
    token_count: int
    created_at: Optional[datetime] = None

    def to_record(self, default_sequence: int) -> MessageRecord:
        return MessageRecord(
            role=self.role,
            content=self.content,
            sequence_number=self.sequence_number if self.sequence_number is not None else default_sequence,
            token_count=self.token_count,
            created_at=self.created_at or utc_now(),
        )


class CapacityIn(BaseModel):
    """Model capacity descriptor."""

    context_length: int
    provider_id: Optional[str] = None

    def to_capacity(self) -> ModelCapacity:
        return ModelCapacity(context_length=self.context_length, provider_id=self.provider_id)


class ConversationIn(BaseModel):
    """Full conversation upload."""

    messages: list[MessageIn] = Field(default_factory=list)
    settings: ContextOverrides = Field(default_factory=ContextOverrides)
    model: Optional[CapacityIn] = None


class ConversationSummary(BaseModel):
    """Conversation summary for list and detail endpoints."""

    id: str
    created_at: datetime
    message_count: int
    total_tokens: int
    settings: dict[str, Any]
    model: Optional[CapacityIn] = None

    @classmethod
    def of(cls, conversation: Conversation, created_at: datetime) -> "ConversationSummary":
        model = None
        if conversation.model is not None:
            model = CapacityIn(
                context_length=conversation.model.context_length,
                provider_id=conversation.model.provider_id,
            )
        return cls(
            id=conversation.id,
            created_at=created_at,
            message_count=len(conversation.messages),
            total_tokens=sum(m.token_count for m in conversation.messages),
            settings=conversation.settings.explicit(),
            model=model,
        )


class ContextRequest(BaseModel):
    """Request to build context for an outgoing message."""

    message: MessageIn
    append: bool = Field(default=False, description="Append the message to the conversation first")
    use_cache: bool = Field(default=True, description="Serve from the middleware cache when possible")
    optimization_level: Optional[str] = Field(default=None, description="light, balanced or aggressive")
    target_tokens: Optional[int] = Field(default=None, ge=0, description="Shrink the result to at most this many tokens")


class ContextResponse(BaseModel):
    """Context result plus the rendered injection block."""

    result: dict[str, Any]
    injection: str
    inject: bool


class SwitchRequest(BaseModel):
    """Request to fit a conversation into another model's window."""

    model: CapacityIn
    strategy: Optional[str] = None
    ratio: Optional[float] = None


class ValidationResponse(BaseModel):
    """Field-level validation outcome."""

    valid: bool
    errors: dict[str, str]
