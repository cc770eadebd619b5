"""In-process conversation store."""

import threading
from typing import Optional

from context_keeper.models import Conversation, MessageRecord, utc_now


class ConversationStore:
    """Holds conversations for the API and the in-memory search adapter."""

    def __init__(self):
        """Initialize conversation store."""
        self.conversations: dict[str, Conversation] = {}
        self.conversation_metadata: dict[str, dict] = {}
        self._lock = threading.Lock()

    def put_conversation(self, conversation: Conversation) -> None:
        """Store or replace a conversation."""
        with self._lock:
            self.conversations[conversation.id] = conversation
            self.conversation_metadata.setdefault(
                conversation.id,
                {"id": conversation.id, "created_at": utc_now()},
            )

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Get a conversation by ID."""
        return self.conversations.get(conversation_id)

    def get_metadata(self, conversation_id: str) -> Optional[dict]:
        """Get conversation metadata."""
        return self.conversation_metadata.get(conversation_id)

    def list_conversations(self) -> list[dict]:
        """List all conversations."""
        return list(self.conversation_metadata.values())

    def append_message(self, conversation_id: str, message: MessageRecord) -> None:
        """Append a message to a stored conversation."""
        with self._lock:
            conversation = self.conversations[conversation_id]
            conversation.messages = conversation.messages + [message]

    def remove_conversation(self, conversation_id: str) -> None:
        """Remove a conversation."""
        with self._lock:
            self.conversations.pop(conversation_id, None)
            self.conversation_metadata.pop(conversation_id, None)


# Global conversation store
_conversation_store = ConversationStore()


def get_conversation_store() -> ConversationStore:
    """Get the global conversation store."""
    return _conversation_store
