"""Tests for src/engine/keyword_index.py - in-memory BM25."""

import pytest

from src.engine.keyword_index import BM25KeywordIndex, tokenize


@pytest.fixture
def index():
    idx = BM25KeywordIndex()
    idx.add_documents(
        [
            {"source_id": "doc-1", "chunk_index": 0, "content": "Solar panels convert sunlight.", "metadata": {"document_name": "solar.pdf"}},
            {"source_id": "doc-2", "chunk_index": 0, "content": "Wind turbines and wind farms."},
            {"source_id": "doc-3", "content": "Solar solar solar everywhere about solar power and panels."},
        ]
    )
    return idx


def test_tokenize():
    assert tokenize("Solar-Panels, 2026!") == ["solar", "panels", "2026"]
    assert tokenize("") == []


class TestSearch:
    def test_only_matching_documents(self, index):
        hits = index.search("wind", top_k=5)
        assert [h["source_id"] for h in hits] == ["doc-2"]
        assert hits[0]["score"] > 0

    def test_hit_shape(self, index):
        hit = index.search("sunlight")[0]
        assert hit["chunk_index"] == 0
        assert hit["content"] == "Solar panels convert sunlight."
        assert hit["metadata"] == {"document_name": "solar.pdf"}

    def test_term_frequency_ranks_higher(self, index):
        hits = index.search("solar")
        assert [h["source_id"] for h in hits] == ["doc-3", "doc-1"]

    def test_top_k(self, index):
        assert len(index.search("solar panels", top_k=1)) == 1

    def test_no_match_or_empty(self, index):
        assert index.search("geothermal") == []
        assert index.search("") == []
        assert index.search("solar", top_k=0) == []

    def test_empty_index(self):
        assert BM25KeywordIndex().search("solar") == []


def test_len_counts_documents(index):
    assert len(index) == 3
    index.add("doc-4", "more text")
    assert len(index) == 4
