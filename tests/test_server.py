"""
API tests for the FastAPI server, using a scripted model and an in-memory
settings database.

Run with:
    pytest tests/test_server.py -v
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from helpers import FILE_RESPONSE, FakeModel, chat

from codepilot import __version__, server
from codepilot.config import Settings

COMPLEX_REQUEST = (
    "Build a full application with authentication and database integration, production ready"
)


def payload(messages):
    return [m.to_dict() for m in messages]


@pytest.fixture
def model():
    return FakeModel()


@pytest.fixture
def runtime(model):
    rt = server.build_runtime(Settings(settings_db=Path(":memory:")), model=model)
    server._runtime = rt
    yield rt
    server._runtime = None
    rt.store.close()


@pytest.fixture
def client(runtime):
    return TestClient(server.app)


class TestSystem:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "version": __version__}

    def test_runtime_missing(self):
        server._runtime = None
        resp = TestClient(server.app).get("/context/settings")
        assert resp.status_code == 503


class TestContextEndpoints:
    """Budget, analysis, optimization and settings."""

    def test_budget(self, client):
        resp = client.post(
            "/context/budget",
            json={"model_max_tokens": 4096, "system_prompt_tokens": 3500, "messages_tokens": 2000},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["can_fit"] is False
        assert data["message_tokens"] == 0

    def test_budget_rejects_negative(self, client):
        resp = client.post(
            "/context/budget",
            json={"model_max_tokens": 4096, "system_prompt_tokens": -1, "messages_tokens": 0},
        )
        assert resp.status_code == 422

    def test_analyze_messages(self, client):
        resp = client.post("/context/analyze", json={"messages": payload(chat(25))})
        data = resp.json()
        assert data["message_count"] == 25
        assert [r["type"] for r in data["recommendations"]] == ["compress"]

    def test_analyze_live_conversation(self, client, runtime):
        runtime.conversation.extend(chat(3))
        data = client.post("/context/analyze", json={}).json()
        assert data["message_count"] == 3
        assert data["total_tokens"] == runtime.conversation.usage()

    def test_optimize_messages(self, client):
        resp = client.post("/context/optimize", json={"strategy": "summarize", "messages": payload(chat(10))})
        data = resp.json()
        assert resp.status_code == 200
        assert len(data["messages"]) == 6
        assert data["tokens_after"] < data["tokens_before"]

    def test_optimize_live_conversation(self, client, runtime):
        runtime.conversation.extend(chat(10))
        client.post("/context/optimize", json={"strategy": "summarize"})
        assert runtime.conversation.message_count == 6

    def test_optimize_rejects_reset(self, client):
        resp = client.post("/context/optimize", json={"strategy": "reset", "messages": []})
        assert resp.status_code == 422

    def test_settings(self, client, runtime):
        assert client.get("/context/settings").json()["max_context_length"] == 8000

        resp = client.put("/context/settings", json={"max_context_length": 4000, "auto_optimize": True})
        assert resp.status_code == 200
        assert resp.json()["max_context_length"] == 4000
        assert runtime.optimizer.settings.auto_optimize is True
        assert client.get("/context/settings").json()["max_context_length"] == 4000

    def test_invalid_settings(self, client):
        assert client.put("/context/settings", json={"compression_level": "extreme"}).status_code == 422
        assert client.put("/context/settings", json={"max_context_length": 0}).status_code == 422


class TestChat:
    """Chat and agent modes plus error mapping."""

    def test_chat_mode(self, client, runtime, model):
        resp = client.post("/chat", json={"messages": [{"role": "user", "content": "hi"}]})
        data = resp.json()

        assert resp.status_code == 200
        assert data["mode"] == "chat"
        assert data["response"] == FILE_RESPONSE
        assert data["duration_ms"] is not None
        assert len(model.calls) == 1
        assert runtime.conversation.messages()[-1].role == "assistant"

    def test_agent_mode(self, client, runtime):
        resp = client.post("/chat", json={"messages": [{"role": "user", "content": COMPLEX_REQUEST}]})
        data = resp.json()

        assert resp.status_code == 200
        assert data["mode"] == "agent"
        assert data["success"] is True
        assert data["response"].startswith("✅ **Task completed successfully**")
        assert data["agent"]["steps"][0]["type"] == "analyze"

        agents = client.get("/agents").json()
        assert agents["enabled"] is True
        assert agents["active"] == []
        assert agents["recent"][0]["agent_type"] == "coding"

    def test_context_length_error(self, client):
        resp = client.post(
            "/chat",
            json={"messages": [{"role": "user", "content": "hi"}], "file_context": "x" * 200_000},
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "CONTEXT_LENGTH_EXCEEDED"

    def test_rate_limit_error(self, client, model):
        model.responses.append(RuntimeError("Rate limit exceeded for this key"))
        resp = client.post("/chat", json={"messages": [{"role": "user", "content": "hi"}]})
        assert resp.status_code == 429
        assert resp.json()["detail"].startswith("Rate limit exceeded.\n\n")

    def test_stop_agents(self, client):
        assert client.post("/agents/stop").json() == {"stopped": 0}
