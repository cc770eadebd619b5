"""Message search adapters."""

from context_keeper.search.base import MessageSearch, SearchPage


def create_message_search(config, store=None):
    """Create the search adapter for the configured backend."""
    if config.base_url:
        from context_keeper.search.http import HttpMessageSearch
        return HttpMessageSearch(config)

    from context_keeper.search.memory import InMemoryMessageSearch
    from context_keeper.store import get_conversation_store
    return InMemoryMessageSearch(store if store is not None else get_conversation_store())


__all__ = ["MessageSearch", "SearchPage", "create_message_search"]
