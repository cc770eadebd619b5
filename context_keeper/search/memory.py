"""Search over conversations held in the process."""

import re

from context_keeper.models import EARLIEST
from context_keeper.search.base import MessageSearch, SearchPage
from context_keeper.store import ConversationStore

_WORD = re.compile(r"[\w'-]+")


class InMemoryMessageSearch(MessageSearch):
    """Matches messages containing any word of the query."""

    def __init__(self, store: ConversationStore):
        self.store = store

    async def search(self, conversation_id: str, query: str, limit: int = 10) -> SearchPage:
        conversation = self.store.get_conversation(conversation_id)
        words = [w.lower() for w in _WORD.findall(query)]
        if conversation is None or not words:
            return SearchPage()

        hits = [
            message
            for message in conversation.messages
            if any(word in message.content.lower() for word in words)
        ]
        hits.sort(
            key=lambda m: (m.created_at or EARLIEST, m.sequence_number),
            reverse=True,
        )
        return SearchPage(items=hits[:limit], total=len(hits))
