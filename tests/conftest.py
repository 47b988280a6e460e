"""Pytest configuration and shared fixtures for tests."""

from __future__ import annotations

import pytest

from src.common.config_loader import clear_config_cache
from src.engine.llm_client import reset_clients


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Each test starts from the repository settings.yaml with no env overrides."""
    for key in (
        "RAG_SETTINGS_PATH",
        "RAG_VECTOR_TOP_K",
        "RAG_FILTERING_MODE",
        "RAG_MMR_LAMBDA",
        "RAG_ORDERING_STRATEGY",
        "RAG_MAX_RETRIEVAL_WORKERS",
        "RAG_RETRIEVAL_TIMEOUT_SECS",
        "TAVILY_API_KEY",
    ):
        monkeypatch.delenv(key, raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture(autouse=True)
def reset_llm_client():
    """Drop the OpenAI client singleton between tests."""
    yield
    reset_clients()


# ---------------------------------------------------------------------------
# In-memory collaborators for pipeline-level tests
# ---------------------------------------------------------------------------


class _Embedder:
    def embed(self, text):
        return [0.1, 0.2, 0.3]


class _RecordingIndex:
    """Returns canned hits and records every query it receives."""

    def __init__(self, hits, error=None):
        self.hits = hits
        self.error = error
        self.queries = []

    def search(self, query, top_k, filters=None):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return [dict(h) for h in self.hits][:top_k]


class _RecordingWeb(_RecordingIndex):
    def search(self, query, filters=None):
        self.filters = filters
        return super().search(query, filters.max_results if filters else 5)


PIPELINE_VECTOR_HITS = [
    {
        "source_id": "doc-1",
        "chunk_index": 0,
        "content": "Solar panels convert sunlight into electricity.",
        "score": 0.9,
        "metadata": {"document_name": "solar.pdf"},
    },
    {
        "source_id": "doc-2",
        "chunk_index": 3,
        "content": "Heat pumps move heat from outside air into homes.",
        "score": 0.75,
        "metadata": {"document_name": "heat.pdf"},
    },
]

PIPELINE_KEYWORD_HITS = [
    {
        "source_id": "doc-1",
        "chunk_index": 0,
        "content": "Solar panels convert sunlight into electricity.",
        "score": 3.2,
        "metadata": {"document_name": "solar.pdf"},
    },
    {
        "source_id": "doc-3",
        "chunk_index": 0,
        "content": "Geothermal wells tap underground warmth.",
        "score": 1.6,
        "metadata": {"document_name": "geo.pdf"},
    },
]

PIPELINE_WEB_HITS = [
    {
        "title": "Photovoltaic research",
        "url": "https://www.nature.com/articles/pv",
        "content": "Photovoltaic research roundup for the year.",
        "score": 0.8,
        "published_date": None,
        "author": "Nature Editors",
    }
]


@pytest.fixture
def fake_collaborators():
    """Vector, keyword and web fakes with a small overlapping corpus.

    doc-1 is found by both vector and keyword search; doc-3 only by keyword
    with a score that fuses below the default min_score.
    """
    from src.engine.retrieval import Collaborators

    return Collaborators(
        embedder=_Embedder(),
        vector_index=_RecordingIndex(PIPELINE_VECTOR_HITS),
        keyword_index=_RecordingIndex(PIPELINE_KEYWORD_HITS),
        web_search=_RecordingWeb(PIPELINE_WEB_HITS),
    )


@pytest.fixture
def failing_keyword_collaborators(fake_collaborators):
    """Same corpus, but the keyword index raises."""
    from src.engine.retrieval import Collaborators
    from src.engine.types import CollaboratorError

    return Collaborators(
        embedder=fake_collaborators.embedder,
        vector_index=fake_collaborators.vector_index,
        keyword_index=_RecordingIndex([], error=CollaboratorError("index offline")),
        web_search=fake_collaborators.web_search,
    )


@pytest.fixture
def pipeline_config():
    """Default stage configs with an ordering budget that never trips in CI."""
    from src.engine.ordering import OrderingConfig
    from src.engine.pipeline import PipelineConfig

    return PipelineConfig(ordering=OrderingConfig(max_processing_time_ms=10_000))
