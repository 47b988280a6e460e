"""Tests for src/engine/vector_store.py - Chroma adapter and embedding provider."""

from unittest.mock import MagicMock

import pytest
from chromadb.errors import InvalidArgumentError

from src.engine.types import CollaboratorError
from src.engine.vector_store import (
    ChromaVectorIndex,
    OpenAIEmbeddingProvider,
    _normalize_where,
    distance_to_similarity,
)


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def collection(client):
    return client.get_or_create_collection.return_value


class TestHelpers:
    def test_distance_to_similarity(self):
        assert distance_to_similarity(0.0) == 1.0
        assert distance_to_similarity(0.25) == pytest.approx(0.75)
        assert distance_to_similarity(1.7) == 0.0

    def test_normalize_where(self):
        assert _normalize_where(None) is None
        assert _normalize_where({"lang": None}) is None
        assert _normalize_where({"lang": "en"}) == {"lang": "en"}
        assert _normalize_where({"lang": "en", "year": 2024}) == {"$and": [{"lang": "en"}, {"year": 2024}]}


class TestChromaVectorIndex:
    def test_collection_uses_cosine_space(self, client):
        ChromaVectorIndex(client=client, collection_name="docs")
        client.get_or_create_collection.assert_called_once_with("docs", metadata={"hnsw:space": "cosine"})

    def test_search_maps_hits(self, client, collection):
        collection.query.return_value = {
            "ids": [["c1", "c2"]],
            "documents": [["first chunk", "second chunk"]],
            "metadatas": [[{"document_id": "doc-1", "chunk_index": 2, "document_name": "a.pdf"}, None]],
            "distances": [[0.1, 0.4]],
        }
        index = ChromaVectorIndex(client=client)

        hits = index.search([0.1, 0.2], top_k=2, filters={"lang": "en"})

        assert hits[0] == {
            "source_id": "doc-1",
            "chunk_index": 2,
            "content": "first chunk",
            "score": pytest.approx(0.9),
            "metadata": {"document_id": "doc-1", "chunk_index": 2, "document_name": "a.pdf"},
        }
        assert hits[1]["source_id"] == "c2"
        assert hits[1]["chunk_index"] is None
        assert hits[1]["score"] == pytest.approx(0.6)
        kwargs = collection.query.call_args.kwargs
        assert kwargs["n_results"] == 2
        assert kwargs["where"] == {"lang": "en"}

    def test_search_empty_result(self, client, collection):
        collection.query.return_value = {"ids": [[]], "documents": [[]], "metadatas": [[]], "distances": [[]]}
        assert ChromaVectorIndex(client=client).search([0.1]) == []

    def test_search_failure_is_collaborator_error(self, client, collection):
        collection.query.side_effect = RuntimeError("index corrupted")
        with pytest.raises(CollaboratorError, match="Vector search failed"):
            ChromaVectorIndex(client=client).search([0.1])

    def test_upsert_recreates_collection_on_dimension_change(self, client, collection):
        collection.upsert.side_effect = [InvalidArgumentError("Embedding dimension 3 does not match collection dimensionality 2"), None]
        index = ChromaVectorIndex(client=client, collection_name="docs")

        index.upsert(["c1"], ["text"], [[0.1, 0.2, 0.3]], [{"document_id": "doc-1"}])

        client.delete_collection.assert_called_once_with("docs")
        assert collection.upsert.call_count == 2

    def test_upsert_other_errors_raise(self, client, collection):
        collection.upsert.side_effect = InvalidArgumentError("bad metadata")
        index = ChromaVectorIndex(client=client)
        with pytest.raises(CollaboratorError, match="Vector upsert failed"):
            index.upsert(["c1"], ["text"], [[0.1]])
        client.delete_collection.assert_not_called()


class TestOpenAIEmbeddingProvider:
    def test_embed(self, monkeypatch):
        calls = []

        def fake_create_embeddings(texts, model=None):
            calls.append((list(texts), model))
            return [[0.5, 0.5] for _ in texts]

        monkeypatch.setattr("src.engine.llm_client.create_embeddings", fake_create_embeddings)
        provider = OpenAIEmbeddingProvider(model="text-embedding-3-small")

        assert provider.embed("solar") == [0.5, 0.5]
        assert provider.embed_many(["a", "b"]) == [[0.5, 0.5], [0.5, 0.5]]
        assert calls[0] == (["solar"], "text-embedding-3-small")

    def test_embed_empty_response(self, monkeypatch):
        monkeypatch.setattr("src.engine.llm_client.create_embeddings", lambda texts, model=None: [])
        assert OpenAIEmbeddingProvider().embed("solar") == []
