"""API server implementation."""

import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from context_keeper.api.auth import get_auth
from context_keeper.api.routes import router
from context_keeper.config import KeeperConfig
from context_keeper.manager import ContextWindowManager
from context_keeper.store import ConversationStore, get_conversation_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close the search client on shutdown."""
    yield
    finder = app.state.manager.finder
    if finder is not None:
        await finder.search.close()


def create_app(config: KeeperConfig, store: Optional[ConversationStore] = None) -> FastAPI:
    """Create FastAPI application."""
    app = FastAPI(
        title="Context Keeper API",
        description="Local API for conversation context management",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS middleware (allow localhost for UI)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if store is None:
        store = get_conversation_store()
    app.state.store = store
    app.state.manager = ContextWindowManager.from_config(config, store)

    app.include_router(router)

    return app


def start_server(config: KeeperConfig) -> None:
    """Start the API server."""
    auth = get_auth()
    token = auth.get_token()

    # Print token to stderr (for UI to read)
    print(f"API token: {token}", file=sys.stderr)
    print(f"Token saved to: {auth.token_file}", file=sys.stderr)

    bind = config.api.bind
    if ":" in bind:
        host, port_str = bind.rsplit(":", 1)
        port = int(port_str)
    else:
        host = bind
        port = 4831

    app = create_app(config)

    print(f"Starting API server on {host}:{port}", file=sys.stderr)
    print(f"API documentation: http://{host}:{port}/docs", file=sys.stderr)

    uvicorn.run(app, host=host, port=port, log_level="info")
