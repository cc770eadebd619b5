"""Tests for the HTTP message search adapter."""

import pytest
from aiohttp import web

from context_keeper.config import SearchServiceConfig
from context_keeper.errors import SearchError
from context_keeper.search import create_message_search
from context_keeper.search.http import HttpMessageSearch
from context_keeper.search.memory import InMemoryMessageSearch
from tests.mock_search_server import create_mock_server_app


@pytest.fixture
async def mock_server():
    """Create and start mock search service."""
    app, server = create_mock_server_app()
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()

    # Get the actual port
    server_url = f"http://127.0.0.1:{site._server.sockets[0].getsockname()[1]}"

    try:
        yield (server, server_url)
    finally:
        await runner.cleanup()


def test_create_message_search_picks_backend(store):
    """Test the factory picks HTTP only when a URL is configured."""
    assert isinstance(create_message_search(SearchServiceConfig(), store), InMemoryMessageSearch)
    assert isinstance(
        create_message_search(SearchServiceConfig(base_url="http://localhost:9"), store),
        HttpMessageSearch,
    )


@pytest.mark.asyncio
async def test_http_search(mock_server):
    """Test searching messages through the service."""
    server, server_url = mock_server
    server.add_message("conv-1", {
        "role": "user",
        "content": "My favorite color is blue",
        "sequence_number": 2,
        "token_count": 7,
        "created_at": "2025-06-01T10:00:00",
    })
    server.add_message("conv-1", {
        "role": "assistant",
        "content": "Unrelated",
        "sequence_number": 3,
        "token_count": 3,
    })

    search = HttpMessageSearch(SearchServiceConfig(base_url=server_url))
    try:
        page = await search.search("conv-1", "favorite color", limit=5)
    finally:
        await search.close()

    assert page.total == 1
    assert len(page.items) == 1
    message = page.items[0]
    assert message.sequence_number == 2
    assert message.token_count == 7
    assert message.created_at.year == 2025
    assert server.requests[0] == {"conversation_id": "conv-1", "q": "favorite color", "limit": 5}


@pytest.mark.asyncio
async def test_http_search_retries_transient_failure(mock_server):
    """Test a failed request is retried once."""
    server, server_url = mock_server
    server.add_message("conv-1", {"role": "user", "content": "blue", "sequence_number": 1, "token_count": 1})
    server.failures_remaining = 1

    search = HttpMessageSearch(SearchServiceConfig(base_url=server_url, max_retries=1))
    try:
        page = await search.search("conv-1", "blue")
    finally:
        await search.close()

    assert len(server.requests) == 2
    assert [m.content for m in page.items] == ["blue"]


@pytest.mark.asyncio
async def test_http_search_error(mock_server):
    """Test non-200 responses raise SearchError after retries."""
    server, server_url = mock_server

    search = HttpMessageSearch(SearchServiceConfig(base_url=server_url, max_retries=0))
    try:
        with pytest.raises(SearchError, match="404"):
            await search.search("missing", "blue")
    finally:
        await search.close()


@pytest.mark.asyncio
async def test_http_search_requires_url():
    search = HttpMessageSearch(SearchServiceConfig())
    with pytest.raises(ValueError, match="not configured"):
        await search.search("conv-1", "blue")
