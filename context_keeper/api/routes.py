"""API route handlers."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from context_keeper.api.auth import verify_token
from context_keeper.api.models import (
    ContextRequest,
    ContextResponse,
    ConversationIn,
    ConversationSummary,
    MessageIn,
    SwitchRequest,
    ValidationResponse,
)
from context_keeper.errors import ContextDataError
from context_keeper.manager import ContextWindowManager
from context_keeper.models import Conversation
from context_keeper.store import ConversationStore

router = APIRouter(prefix="/api", tags=["api"])


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_manager(request: Request) -> ContextWindowManager:
    return request.app.state.manager


def _conversation_or_404(store: ConversationStore, conversation_id: str) -> Conversation:
    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


def _summary(store: ConversationStore, conversation: Conversation) -> ConversationSummary:
    metadata = store.get_metadata(conversation.id)
    return ConversationSummary.of(conversation, metadata["created_at"])


# Configuration endpoints
@router.get("/strategies")
async def list_strategies(
    token: str = Depends(verify_token),
    manager: ContextWindowManager = Depends(get_manager),
) -> dict[str, dict[str, str]]:
    """List selectable retention strategies."""
    return manager.resolver.available_strategies()


@router.get("/config/recommended/{purpose}")
async def recommended_config(
    purpose: str,
    token: str = Depends(verify_token),
    manager: ContextWindowManager = Depends(get_manager),
) -> dict[str, Any]:
    """Pre-tuned settings for a conversation purpose."""
    return manager.resolver.recommend(purpose).model_dump()


@router.post("/config/validate", response_model=ValidationResponse)
async def validate_config(
    settings: dict[str, Any],
    token: str = Depends(verify_token),
    manager: ContextWindowManager = Depends(get_manager),
) -> ValidationResponse:
    """Validate context settings without applying them."""
    errors = manager.resolver.validate(settings)
    return ValidationResponse(valid=not errors, errors=errors)


# Conversation endpoints
@router.get("/conversations", response_model=list[ConversationSummary])
async def list_conversations(
    token: str = Depends(verify_token),
    store: ConversationStore = Depends(get_store),
) -> list[ConversationSummary]:
    """List stored conversations."""
    summaries = []
    for metadata in store.list_conversations():
        conversation = store.get_conversation(metadata["id"])
        if conversation is not None:
            summaries.append(ConversationSummary.of(conversation, metadata["created_at"]))
    return summaries


@router.put("/conversations/{conversation_id}", response_model=ConversationSummary)
async def put_conversation(
    conversation_id: str,
    body: ConversationIn,
    token: str = Depends(verify_token),
    store: ConversationStore = Depends(get_store),
    manager: ContextWindowManager = Depends(get_manager),
) -> ConversationSummary:
    """Create or replace a conversation with its full message log."""
    errors = manager.resolver.validate(body.settings)
    if errors:
        raise HTTPException(status_code=422, detail=errors)
    messages = [m.to_record(default_sequence=i + 1) for i, m in enumerate(body.messages)]
    conversation = Conversation(
        id=conversation_id,
        messages=messages,
        settings=body.settings,
        model=body.model.to_capacity() if body.model else None,
    )
    store.put_conversation(conversation)
    return _summary(store, conversation)


@router.get("/conversations/{conversation_id}", response_model=ConversationSummary)
async def get_conversation(
    conversation_id: str,
    token: str = Depends(verify_token),
    store: ConversationStore = Depends(get_store),
) -> ConversationSummary:
    """Get conversation details."""
    return _summary(store, _conversation_or_404(store, conversation_id))


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    token: str = Depends(verify_token),
    store: ConversationStore = Depends(get_store),
) -> dict[str, str]:
    """Remove a conversation."""
    _conversation_or_404(store, conversation_id)
    store.remove_conversation(conversation_id)
    return {"status": "deleted"}


@router.post("/conversations/{conversation_id}/messages", response_model=ConversationSummary)
async def append_message(
    conversation_id: str,
    message: MessageIn,
    token: str = Depends(verify_token),
    store: ConversationStore = Depends(get_store),
) -> ConversationSummary:
    """Append one message to the conversation's log."""
    conversation = _conversation_or_404(store, conversation_id)
    store.append_message(
        conversation_id, message.to_record(conversation.last_sequence_number() + 1)
    )
    return _summary(store, conversation)


@router.get("/conversations/{conversation_id}/config")
async def get_effective_config(
    conversation_id: str,
    token: str = Depends(verify_token),
    store: ConversationStore = Depends(get_store),
    manager: ContextWindowManager = Depends(get_manager),
) -> dict[str, Any]:
    """Effective settings after merging overrides and defaults."""
    conversation = _conversation_or_404(store, conversation_id)
    return manager.resolver.resolve(conversation).model_dump()


@router.put("/conversations/{conversation_id}/settings", response_model=ValidationResponse)
async def apply_settings(
    conversation_id: str,
    settings: dict[str, Any],
    token: str = Depends(verify_token),
    store: ConversationStore = Depends(get_store),
    manager: ContextWindowManager = Depends(get_manager),
) -> ValidationResponse:
    """Validate and store conversation-level overrides."""
    conversation = _conversation_or_404(store, conversation_id)
    errors = manager.resolver.apply(conversation, settings)
    if errors:
        raise HTTPException(status_code=422, detail=errors)
    return ValidationResponse(valid=True, errors={})


@router.delete("/conversations/{conversation_id}/settings")
async def reset_settings(
    conversation_id: str,
    token: str = Depends(verify_token),
    store: ConversationStore = Depends(get_store),
    manager: ContextWindowManager = Depends(get_manager),
) -> dict[str, Any]:
    """Clear overrides and return the computed defaults."""
    conversation = _conversation_or_404(store, conversation_id)
    manager.resolver.reset(conversation)
    return manager.resolver.resolve(conversation).model_dump()


# Context endpoints
@router.post("/conversations/{conversation_id}/context", response_model=ContextResponse)
async def build_context(
    conversation_id: str,
    body: ContextRequest,
    token: str = Depends(verify_token),
    store: ConversationStore = Depends(get_store),
    manager: ContextWindowManager = Depends(get_manager),
) -> ContextResponse:
    """Build the context to send with an outgoing message."""
    conversation = _conversation_or_404(store, conversation_id)
    message = body.message.to_record(conversation.last_sequence_number() + 1)
    if body.append:
        store.append_message(conversation_id, message)

    try:
        if body.use_cache:
            result = await manager.build_context_for_middleware(conversation, message)
        else:
            result = await manager.build_intelligent_context(conversation, message)
        if body.optimization_level:
            result = manager.optimize_context(result, body.optimization_level)
        if body.target_tokens is not None:
            result = manager.optimize_for_token_budget(result, body.target_tokens)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    return ContextResponse(
        result=result.to_dict(),
        injection=manager.format_context_for_injection(result),
        inject=manager.should_inject_context(message),
    )


@router.post("/conversations/{conversation_id}/switch")
async def switch_model(
    conversation_id: str,
    body: SwitchRequest,
    token: str = Depends(verify_token),
    store: ConversationStore = Depends(get_store),
    manager: ContextWindowManager = Depends(get_manager),
) -> dict[str, Any]:
    """Fit the conversation into another model's context window."""
    conversation = _conversation_or_404(store, conversation_id)
    try:
        result = manager.preserve_context_for_switch(
            conversation, body.model.to_capacity(), strategy=body.strategy, ratio=body.ratio
        )
    except ContextDataError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return result.to_dict()
