"""Base message search interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from context_keeper.models import MessageRecord


@dataclass
class SearchPage:
    """One page of search hits."""

    items: list[MessageRecord] = field(default_factory=list)
    total: int = 0


class MessageSearch(ABC):
    """Keyword search over a single conversation's messages."""

    @abstractmethod
    async def search(self, conversation_id: str, query: str, limit: int = 10) -> SearchPage:
        """Return up to `limit` messages matching `query`, newest first."""

    async def close(self) -> None:
        """Release any held resources."""
