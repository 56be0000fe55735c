"""Tests for the FastAPI server.

Test Categories:
    - Health and tool listing
    - Chat, both streaming (SSE) and JSON
    - Context analysis
    - Cache statistics and clearing
    - Error responses
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from conftest import FakeEngine, build_loop, text_response, tool_response

from keel.cache.response_cache import ResponseCache
from keel.interfaces.api.server import AppState, create_app
from keel.state.store import MemoryConversationStore


# =============================================================================
# Fixtures
# =============================================================================


def make_client(engine: FakeEngine, registry, cache=None) -> TestClient:
    store = MemoryConversationStore()
    state = AppState(
        loop=build_loop(engine, registry=registry, cache=cache, store=store),
        registry=registry,
        store=store,
        cache=cache,
        start_time=datetime.now(timezone.utc),
    )
    return TestClient(create_app(state=state))


@pytest.fixture
def cache() -> ResponseCache:
    return ResponseCache()


# =============================================================================
# Test: System Endpoints
# =============================================================================


class TestSystemEndpoints:
    """Test health and tool listing."""

    def test_health(self, echo_registry, cache):
        with make_client(FakeEngine(), echo_registry, cache) as client:
            response = client.get("/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert data["tools"] == 2
        assert data["cache_enabled"] is True

    def test_tools(self, echo_registry):
        with make_client(FakeEngine(), echo_registry) as client:
            response = client.get("/tools")
        assert [t["name"] for t in response.json()] == ["echo", "boom"]


# =============================================================================
# Test: Chat
# =============================================================================


class TestChatEndpoint:
    """Test the chat endpoint."""

    def test_json_response(self, echo_registry):
        engine = FakeEngine([
            tool_response(("t1", "echo", {"text": "hi"})),
            text_response("Echo returned hi."),
        ])
        with make_client(engine, echo_registry) as client:
            response = client.post("/chat", json={"message": "Echo hi", "stream": False})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["response"] == "Echo returned hi."
        assert data["reason"] == "done"
        assert data["iterations"] == 2
        assert [e["type"] for e in data["events"]] == ["tool", "tool_result", "text", "done"]

    def test_streaming_response(self, echo_registry):
        engine = FakeEngine([text_response("Streaming hello.")])
        with make_client(engine, echo_registry) as client:
            response = client.post("/chat", json={"message": "Hello"})

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("text/event-stream")
        body = response.text
        assert "event: text" in body
        assert "event: done" in body
        assert body.index("event: text") < body.index("event: done")

    def test_model_error_streams_error_event(self, echo_registry):
        engine = FakeEngine([RuntimeError("upstream down")])
        with make_client(engine, echo_registry) as client:
            response = client.post("/chat", json={"message": "Hello"})
        assert "event: error" in response.text
        assert "event: done" not in response.text

    def test_history_accepted(self, echo_registry):
        engine = FakeEngine([text_response("Sure.")])
        with make_client(engine, echo_registry) as client:
            client.post("/chat", json={
                "message": "And now?",
                "stream": False,
                "history": [
                    {"role": "user", "content": "First question"},
                    {"role": "assistant", "content": "First answer"},
                ],
            })
        assert [m["content"] for m in engine.requests[0].messages] == [
            "First question", "First answer", "And now?",
        ]

    def test_empty_message_rejected(self, echo_registry):
        with make_client(FakeEngine(), echo_registry) as client:
            response = client.post("/chat", json={"message": ""})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


# =============================================================================
# Test: Context and Cache
# =============================================================================


class TestContextEndpoint:
    """Test conversation analysis."""

    def test_analyze_only(self, echo_registry):
        with make_client(FakeEngine(), echo_registry) as client:
            response = client.post("/context/analyze", json={"messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello"},
            ]})
        data = response.json()
        assert data["stats"]["message_count"] == 2
        assert data["stats"]["recommended_strategy"] == "sliding-window"
        assert "result" not in data

    def test_apply_strategy(self, echo_registry):
        with make_client(FakeEngine(), echo_registry) as client:
            response = client.post("/context/analyze", json={
                "messages": [{"role": "user", "content": "Hi"}],
                "strategy": "sliding-window",
            })
        data = response.json()
        assert data["result"]["strategy"] == "sliding-window"
        assert data["messages"][0]["content"] == "Hi"

    def test_unknown_strategy(self, echo_registry):
        with make_client(FakeEngine(), echo_registry) as client:
            response = client.post("/context/analyze", json={
                "messages": [],
                "strategy": "magic",
            })
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["code"] == "HTTP_422"


class TestCacheEndpoints:
    """Test cache statistics and clearing."""

    def test_stats_and_clear(self, echo_registry, cache):
        engine = FakeEngine([text_response("Cached answer.")])
        with make_client(engine, echo_registry, cache) as client:
            client.post("/chat", json={"message": "Question", "stream": False})
            client.post("/chat", json={"message": "Question", "stream": False})
            stats = client.get("/cache/stats").json()
            cleared = client.delete("/cache").json()

        assert stats["enabled"] is True
        assert stats["total_entries"] == 1
        assert stats["total_hits"] == 1
        assert cleared == {"cleared": True}
        assert len(cache) == 0
        assert engine.calls == 1

    def test_stats_without_cache(self, echo_registry):
        with make_client(FakeEngine(), echo_registry) as client:
            assert client.get("/cache/stats").json() == {"enabled": False}
