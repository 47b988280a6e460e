"""Tests for the FastAPI app (src/api).

Covers:
- POST /api/search response shape and request forwarding
- Validation errors (422) and service errors (400 / 500)
- GET /api/health and GET /api
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest
from fastapi.testclient import TestClient

from src.api.main import app


@dataclass(frozen=True)
class MockSearchResult:
    """Stand-in for services.search.SearchResult."""

    query: str = "solar"
    candidates: list[dict[str, Any]] = field(
        default_factory=lambda: [
            {
                "source_id": "doc-1",
                "source_kind": "document",
                "chunk_index": 0,
                "title": "solar.pdf",
                "url": None,
                "content": "Solar panels convert sunlight.",
                "published_date": None,
                "author": None,
                "raw_score": 0.9,
                "source": "both",
                "derived_scores": {"combined": 1.0},
                "penalties": {},
                "provenance": [{"query": "solar", "source": "vector"}],
            }
        ]
    )
    context: str = "Relevant Document Excerpts:\n\n[1] solar.pdf (excerpt 1)\nSolar panels convert sunlight."
    sources: list[dict[str, Any]] = field(
        default_factory=lambda: [
            {
                "type": "document",
                "source_id": "doc-1",
                "title": "solar.pdf",
                "score": 1.0,
                "snippet": "Solar panels convert sunlight.",
                "metadata": {"chunk_index": 0},
            }
        ]
    )
    variations: list[str] = field(default_factory=lambda: ["solar"])
    stats: dict[str, Any] = field(default_factory=lambda: {"fusion": {"fused_count": 1}})
    duration_ms: float = 12.5


@pytest.fixture
def search_calls(monkeypatch):
    """Replace the search service and record its keyword arguments."""
    calls: list[dict[str, Any]] = []

    def fake_search(**kwargs):
        calls.append(kwargs)
        return MockSearchResult()

    monkeypatch.setattr("src.services.search.search", fake_search)
    return calls


@pytest.fixture
def client():
    return TestClient(app)


class TestSearchEndpoint:
    """Tests for /api/search endpoint."""

    def test_search_returns_valid_response(self, client, search_calls):
        """Response carries candidates, context, sources and timing."""
        response = client.post("/api/search", json={"query": "solar"})

        assert response.status_code == 200
        data = response.json()
        assert data["query"] == "solar"
        assert data["variations"] == ["solar"]
        assert data["candidates"][0]["source"] == "both"
        assert data["candidates"][0]["provenance"] == [{"query": "solar", "source": "vector"}]
        assert data["sources"][0]["type"] == "document"
        assert data["context"].startswith("Relevant Document Excerpts")
        assert isinstance(data["response_time_seconds"], float)

    def test_search_forwards_all_parameters(self, client, search_calls):
        """Every request field reaches the service."""
        client.post(
            "/api/search",
            json={
                "query": "solar",
                "context": "talking about roofs",
                "user_id": "u-1",
                "topic": "energy",
                "time_range": "week",
                "country": "denmark",
                "filtering_mode": "strict",
                "ordering_strategy": "hybrid",
                "include_web": False,
                "include_keyword": True,
                "expand": False,
            },
        )

        assert search_calls == [
            {
                "query": "solar",
                "context": "talking about roofs",
                "user_id": "u-1",
                "topic": "energy",
                "time_range": "week",
                "country": "denmark",
                "filtering_mode": "strict",
                "ordering_strategy": "hybrid",
                "include_web": False,
                "include_keyword": True,
                "expand": False,
            }
        ]

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"query": ""},
            {"query": "x" * 501},
            {"query": "solar", "time_range": "decade"},
            {"query": "solar", "filtering_mode": "aggressive"},
            {"query": "solar", "ordering_strategy": "alphabetical"},
        ],
    )
    def test_invalid_request_fails(self, client, search_calls, payload):
        """Invalid payloads return 422 without calling the service."""
        response = client.post("/api/search", json=payload)

        assert response.status_code == 422
        assert search_calls == []

    def test_value_error_returns_400(self, client, monkeypatch):
        """ValueError from the service maps to 400."""

        def raise_value_error(**kwargs):
            raise ValueError("Query must not be empty.")

        monkeypatch.setattr("src.services.search.search", raise_value_error)
        response = client.post("/api/search", json={"query": " "})

        assert response.status_code == 400
        assert response.json()["detail"] == "Query must not be empty."

    def test_unexpected_error_returns_500(self, client, monkeypatch):
        """Any other exception maps to 500."""

        def boom(**kwargs):
            raise RuntimeError("vector store unavailable")

        monkeypatch.setattr("src.services.search.search", boom)
        response = client.post("/api/search", json={"query": "solar"})

        assert response.status_code == 500
        assert "vector store unavailable" in response.json()["detail"]


class TestHealthEndpoint:
    """Tests for /api/health endpoint."""

    def test_health(self, client):
        """Health reports status, version and configured modes."""
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == "1.0.0"
        assert data["filtering_mode"] == "moderate"
        assert data["web_enabled"] is True

    def test_api_root(self, client):
        """Root lists name, version and docs path."""
        data = client.get("/api").json()
        assert data["version"] == "1.0.0"
        assert data["docs"] == "/api/docs"
