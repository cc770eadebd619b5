"""Tests for API server."""

import pytest
from fastapi.testclient import TestClient

from context_keeper.api.auth import APIAuth, get_auth
from context_keeper.api.server import create_app
from context_keeper.config import KeeperConfig
from context_keeper.store import ConversationStore


@pytest.fixture
def api_client():
    """Create test API client."""
    config = KeeperConfig()
    app = create_app(config, store=ConversationStore())
    return TestClient(app)


@pytest.fixture
def auth_token(monkeypatch):
    """Get a valid auth token."""
    monkeypatch.setattr(get_auth(), "_token", "test-token")
    return "test-token"


@pytest.fixture
def headers(auth_token):
    return {"Authorization": f"Bearer {auth_token}"}


def _chat_payload(settings=None):
    messages = [{"role": "system", "content": "You are helpful.", "sequence_number": 1, "token_count": 10}]
    for i in range(10):
        messages.append({
            "role": "user" if i % 2 == 0 else "assistant",
            "content": f"message number {i}",
            "sequence_number": i + 2,
            "token_count": 20,
        })
    return {"messages": messages, "settings": settings or {}}


def test_api_requires_auth(api_client):
    """Test that API endpoints require authentication."""
    response = api_client.get("/api/strategies")
    assert response.status_code in (401, 403)


def test_api_with_invalid_token(api_client, auth_token):
    """Test API access with invalid token."""
    headers = {"Authorization": "Bearer invalid_token"}
    response = api_client.get("/api/strategies", headers=headers)
    assert response.status_code == 401


def test_list_strategies(api_client, headers):
    response = api_client.get("/api/strategies", headers=headers)
    assert response.status_code == 200
    strategies = response.json()
    assert "full_context" not in strategies
    assert strategies["summarized_context"]["name"] == "Summarized Context"


def test_recommended_config(api_client, headers):
    response = api_client.get("/api/config/recommended/analysis", headers=headers)
    assert response.status_code == 200
    assert response.json()["strategy"] == "important_messages"
    assert response.json()["ratio"] == 0.9


def test_validate_config(api_client, headers):
    """Test validation endpoint reports field errors."""
    response = api_client.post(
        "/api/config/validate", json={"ratio": 2, "strategy": "recent_messages"}, headers=headers
    )
    assert response.status_code == 200
    body = response.json()
    assert body["valid"] is False
    assert set(body["errors"]) == {"ratio"}


def test_get_conversation_not_found(api_client, headers):
    response = api_client.get("/api/conversations/nonexistent", headers=headers)
    assert response.status_code == 404


def test_conversation_lifecycle(api_client, headers):
    """Test create, append, list and delete."""
    response = api_client.put("/api/conversations/c1", json=_chat_payload(), headers=headers)
    assert response.status_code == 200
    assert response.json()["message_count"] == 11
    assert response.json()["total_tokens"] == 210

    response = api_client.post(
        "/api/conversations/c1/messages",
        json={"role": "user", "content": "one more", "token_count": 4},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["message_count"] == 12

    response = api_client.get("/api/conversations", headers=headers)
    assert [c["id"] for c in response.json()] == ["c1"]

    response = api_client.delete("/api/conversations/c1", headers=headers)
    assert response.status_code == 200
    assert api_client.get("/api/conversations/c1", headers=headers).status_code == 404


def test_settings_apply_and_reset(api_client, headers):
    """Test settings are validated, applied and cleared."""
    api_client.put("/api/conversations/c1", json=_chat_payload(), headers=headers)

    response = api_client.put("/api/conversations/c1/settings", json={"ratio": 0}, headers=headers)
    assert response.status_code == 422

    response = api_client.put(
        "/api/conversations/c1/settings", json={"ratio": 0.5, "strategy": "recent_messages"}, headers=headers
    )
    assert response.status_code == 200
    assert response.json()["valid"] is True

    config = api_client.get("/api/conversations/c1/config", headers=headers).json()
    assert config["ratio"] == 0.5
    assert config["strategy"] == "recent_messages"

    response = api_client.delete("/api/conversations/c1/settings", headers=headers)
    assert response.status_code == 200
    assert response.json()["ratio"] == 0.8


def test_build_context(api_client, headers):
    """Test context building for an outgoing message."""
    settings = {"window_size": 100, "ratio": 0.8, "strategy": "recent_messages"}
    api_client.put("/api/conversations/c1", json=_chat_payload(settings), headers=headers)

    response = api_client.post(
        "/api/conversations/c1/context",
        json={"message": {"role": "user", "content": "What was my favorite color?", "token_count": 8}},
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["result"]["strategy"] == "recent_messages"
    assert body["result"]["total_tokens"] == 70
    assert body["result"]["truncated"] is True
    assert body["inject"] is True
    assert body["injection"].startswith("Relevant conversation context:")


def test_build_context_rejects_unknown_optimization(api_client, headers):
    api_client.put("/api/conversations/c1", json=_chat_payload(), headers=headers)
    response = api_client.post(
        "/api/conversations/c1/context",
        json={
            "message": {"role": "user", "content": "hi", "token_count": 1},
            "optimization_level": "extreme",
        },
        headers=headers,
    )
    assert response.status_code == 422


def test_switch_model(api_client, headers):
    """Test fitting a conversation into a smaller model."""
    api_client.put("/api/conversations/c1", json=_chat_payload(), headers=headers)
    response = api_client.post(
        "/api/conversations/c1/switch",
        json={"model": {"context_length": 100}, "strategy": "recent_messages"},
        headers=headers,
    )
    assert response.status_code == 200
    result = response.json()
    assert result["total_tokens"] == 70
    assert result["preserved_count"] == 4


def test_auth_token_from_file(tmp_path, monkeypatch):
    """Test token generation and reuse."""
    monkeypatch.delenv("CONTEXT_KEEPER_API_TOKEN", raising=False)
    token_file = tmp_path / "api_token"

    auth = APIAuth(token_file=token_file)
    token = auth.get_token()
    assert token_file.read_text() == token
    assert auth.verify_token(token)
    assert not auth.verify_token("wrong")

    assert APIAuth(token_file=token_file).get_token() == token


def test_auth_token_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("CONTEXT_KEEPER_API_TOKEN", "env-token")
    auth = APIAuth(token_file=tmp_path / "api_token")
    assert auth.get_token() == "env-token"
    assert not (tmp_path / "api_token").exists()


def test_put_conversation_rejects_invalid_settings(api_client, headers):
    """Test invalid settings are reported per field and nothing is stored."""
    response = api_client.put(
        "/api/conversations/c1",
        json=_chat_payload({"strategy": "bogus", "window_size": 5}),
        headers=headers,
    )
    assert response.status_code == 422
    assert set(response.json()["detail"]) == {"strategy", "window_size"}
    assert api_client.get("/api/conversations/c1", headers=headers).status_code == 404


def test_build_context_with_utc_timestamps(api_client, headers):
    """Test timestamps with a Z suffix are accepted end to end."""
    payload = _chat_payload({"strategy": "important_messages", "window_size": 100})
    for i, message in enumerate(payload["messages"]):
        message["created_at"] = f"2025-01-01T00:{i:02d}:00Z"
    api_client.put("/api/conversations/c1", json=payload, headers=headers)

    response = api_client.post(
        "/api/conversations/c1/context",
        json={"message": {"role": "user", "content": "What was my favorite color?", "token_count": 8}},
        headers=headers,
    )
    assert response.status_code == 200
    result = response.json()["result"]
    assert result["strategy"] == "important_messages"
    assert result["total_tokens"] <= 80


def test_shutdown_closes_search(monkeypatch, headers):
    """Test the search client is closed when the app shuts down."""
    app = create_app(KeeperConfig(), store=ConversationStore())
    closed = []

    async def close():
        closed.append(True)

    monkeypatch.setattr(app.state.manager.finder.search, "close", close)

    with TestClient(app) as client:
        assert client.get("/api/strategies", headers=headers).status_code == 200
        assert closed == []

    assert closed == [True]


def test_build_context_with_target_tokens(api_client, headers):
    settings = {"window_size": 100, "ratio": 0.8, "strategy": "recent_messages"}
    api_client.put("/api/conversations/c1", json=_chat_payload(settings), headers=headers)

    response = api_client.post(
        "/api/conversations/c1/context",
        json={"message": {"role": "user", "content": "hi", "token_count": 1}, "target_tokens": 30},
        headers=headers,
    )
    assert response.status_code == 200
    result = response.json()["result"]
    assert result["total_tokens"] <= 30
    assert result["budget_optimization_applied"] is True
    assert result["messages"][0]["role"] == "system"
