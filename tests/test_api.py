"""
Tests for the HTTP API.
Run with: pytest tests/test_api.py
"""

import pytest
from unittest.mock import patch

from threadbox.storage.models import AssistantMessageBlock, BlockStatus, BlockType


@pytest.fixture
def client(tmp_path):
    """Test client backed by a temp SQLite file and no completion providers."""
    from fastapi.testclient import TestClient

    cfg = {
        "server": {"host": "127.0.0.1", "port": 8700},
        "storage": {"sqlite_path": str(tmp_path / "api.db")},
        "logging": {"level": "WARNING"},
        "providers": [],
        "defaults": {"provider_id": "fake", "model_id": "test-model"},
        "search": {"engine": "duckduckgo"},
        "enricher": {"enabled": False},
    }

    import threadbox.main  # ensure module is imported before patching

    with patch("threadbox.main.get_config", return_value=cfg), \
         patch("threadbox.search.engines.get_runtime_config", return_value={}), \
         patch("threadbox.search.engines.update_runtime_config", return_value=True):
        from threadbox.main import app
        with TestClient(app) as c:
            yield c


def _create(client, title="chat"):
    r = client.post("/api/v1/conversations", json={"title": title})
    assert r.status_code == 201
    return r.json()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

def test_health(client):
    r = client.get("/api/v1/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["providers"] == {}
    assert data["search_engine"] == "duckduckgo"


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

def test_create_and_get_conversation(client):
    conv = _create(client)
    assert conv["title"] == "chat"
    assert conv["settings"]["provider_id"] == "fake"
    assert conv["is_new"] is True

    r = client.get(f"/api/v1/conversations/{conv['id']}")
    assert r.status_code == 200
    assert r.json()["id"] == conv["id"]

    listing = client.get("/api/v1/conversations").json()
    assert listing["total"] == 1
    assert listing["list"][0]["id"] == conv["id"]


def test_missing_conversation_is_404(client):
    r = client.get("/api/v1/conversations/ghost")
    assert r.status_code == 404
    assert "ghost" in r.json()["error"]


def test_rename_conversation(client):
    conv = _create(client)
    r = client.patch(f"/api/v1/conversations/{conv['id']}", json={"title": "renamed"})
    assert r.status_code == 200
    assert r.json()["title"] == "renamed"

    r = client.patch(f"/api/v1/conversations/{conv['id']}", json={"title": 5})
    assert r.status_code == 400


def test_invalid_json_body(client):
    r = client.post(
        "/api/v1/conversations",
        content="not json",
        headers={"Content-Type": "application/json"},
    )
    assert r.status_code == 400
    assert r.json()["error"] == "invalid JSON"

    r = client.post("/api/v1/conversations", json=["a", "list"])
    assert r.status_code == 400


def test_update_settings(client):
    conv = _create(client)
    r = client.patch(
        f"/api/v1/conversations/{conv['id']}/settings",
        json={"context_length": 4000, "system_prompt": "be brief"},
    )
    assert r.status_code == 200
    settings = r.json()["settings"]
    assert settings["context_length"] == 4000
    assert settings["system_prompt"] == "be brief"


def test_delete_conversation(client):
    conv = _create(client)
    assert client.delete(f"/api/v1/conversations/{conv['id']}").status_code == 200
    assert client.get(f"/api/v1/conversations/{conv['id']}").status_code == 404


def test_activate_missing_conversation(client):
    assert client.post("/api/v1/conversations/ghost/activate").status_code == 404


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def test_send_message_returns_placeholder(client):
    conv = _create(client)
    r = client.post(f"/api/v1/conversations/{conv['id']}/messages", json={"text": "hello"})
    assert r.status_code == 202
    assistant = r.json()
    assert assistant["role"] == "assistant"
    assert assistant["content"] == []

    msgs = client.get(f"/api/v1/conversations/{conv['id']}/messages").json()
    assert msgs["total"] == 2
    user = msgs["list"][0]
    assert user["role"] == "user"
    assert user["content"]["text"] == "hello"
    assert user["id"] == assistant["parent_id"]


def test_send_message_validation(client):
    conv = _create(client)
    r = client.post(f"/api/v1/conversations/{conv['id']}/messages", json={"text": 42})
    assert r.status_code == 400

    r = client.post("/api/v1/conversations/ghost/messages", json={"text": "hi"})
    assert r.status_code == 404


def test_retry_user_message_rejected(client):
    conv = _create(client)
    assistant = client.post(
        f"/api/v1/conversations/{conv['id']}/messages", json={"text": "hello"}
    ).json()

    r = client.post(f"/api/v1/messages/{assistant['parent_id']}/retry")
    assert r.status_code == 400

    assert client.post("/api/v1/messages/ghost/retry").status_code == 404


def test_message_endpoints(client):
    conv = _create(client)
    assistant = client.post(
        f"/api/v1/conversations/{conv['id']}/messages", json={"text": "hello"}
    ).json()

    r = client.get(f"/api/v1/messages/{assistant['id']}")
    assert r.status_code == 200
    assert "generating" in r.json()

    r = client.get(f"/api/v1/messages/{assistant['id']}/search-results")
    assert r.json() == {"results": [], "count": 0}

    r = client.get(f"/api/v1/messages/{assistant['id']}/variants")
    assert r.json() == {"list": []}

    assert client.delete(f"/api/v1/messages/{assistant['id']}").status_code == 200
    assert client.get(f"/api/v1/messages/{assistant['id']}").status_code == 404


def test_stop_unknown_message_is_ok(client):
    assert client.post("/api/v1/messages/ghost/stop").status_code == 200


def test_get_message_mid_stream_shows_live_blocks(client):
    import threadbox.main

    conv = _create(client)
    with patch("threadbox.main._spawn_generation"):
        assistant = client.post(
            f"/api/v1/conversations/{conv['id']}/messages", json={"text": "hello"}
        ).json()

    state = threadbox.main.orchestrator.get_generating_message_state(assistant["id"])
    state.message.blocks.append(
        AssistantMessageBlock(type=BlockType.CONTENT, status=BlockStatus.LOADING, content="Hel")
    )

    data = client.get(f"/api/v1/messages/{assistant['id']}").json()
    assert data["generating"] is True
    assert [(b["type"], b["status"], b["content"]) for b in data["content"]] == [
        ("content", "loading", "Hel")
    ]

    client.post(f"/api/v1/messages/{assistant['id']}/stop")
    data = client.get(f"/api/v1/messages/{assistant['id']}").json()
    assert data["generating"] is False
    assert [b["type"] for b in data["content"]] == ["content", "error"]


def test_missing_message_is_404(client):
    assert client.get("/api/v1/messages/ghost").status_code == 404
    assert client.get("/api/v1/messages/ghost/variants").status_code == 404
    assert client.get("/api/v1/messages/ghost/search-results").status_code == 404


def test_clear_messages(client):
    conv = _create(client)
    client.post(f"/api/v1/conversations/{conv['id']}/messages", json={"text": "hello"})

    assert client.delete(f"/api/v1/conversations/{conv['id']}/messages").status_code == 200
    assert client.get(f"/api/v1/conversations/{conv['id']}/messages").json()["total"] == 0


# ---------------------------------------------------------------------------
# Search engines
# ---------------------------------------------------------------------------

def test_search_engines(client):
    data = client.get("/api/v1/search/engines").json()
    assert data["active"] == "duckduckgo"
    assert {e["name"] for e in data["engines"]} == {"duckduckgo", "google"}

    r = client.post("/api/v1/search/engines/google/activate")
    assert r.status_code == 200
    assert client.get("/api/v1/search/engines").json()["active"] == "google"

    assert client.post("/api/v1/search/engines/altavista/activate").status_code == 400
