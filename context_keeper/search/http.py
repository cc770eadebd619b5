"""Client for a remote conversation search service."""

import logging
from typing import Optional

import aiohttp

from context_keeper.config import SearchServiceConfig
from context_keeper.errors import SearchError, retry_with_backoff
from context_keeper.models import MessageRecord
from context_keeper.search.base import MessageSearch, SearchPage

logger = logging.getLogger(__name__)


class HttpMessageSearch(MessageSearch):
    """Searches messages through the conversation search service API."""

    def __init__(self, config: SearchServiceConfig):
        """Initialize search client."""
        self.config = config
        self.base_url = config.base_url
        self.session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        """Initialize HTTP session."""
        if not self.base_url:
            raise ValueError("Search service URL not configured")
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        )

    async def close(self) -> None:
        """Close HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None

    async def search(self, conversation_id: str, query: str, limit: int = 10) -> SearchPage:
        """
        Search a conversation's messages.

        Raises:
            SearchError: on non-200 responses or transport failures
        """
        if not self.session:
            await self.connect()

        async def _request() -> SearchPage:
            return await self._search_once(conversation_id, query, limit)

        return await retry_with_backoff(_request, max_retries=self.config.max_retries)

    async def _search_once(self, conversation_id: str, query: str, limit: int) -> SearchPage:
        params = {"q": query, "limit": str(limit)}
        try:
            async with self.session.get(
                f"{self.base_url}/api/v1/conversations/{conversation_id}/messages/search",
                params=params,
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise SearchError(
                        f"Message search failed: {response.status} - {error_text}"
                    )

                result = await response.json()
        except aiohttp.ClientError as e:
            raise SearchError(f"Message search request failed: {e}") from e

        items = [MessageRecord.from_dict(item) for item in result.get("data", [])]
        logger.debug(f"Search for {query!r} in {conversation_id} returned {len(items)} messages")
        return SearchPage(items=items[:limit], total=result.get("total", len(items)))
