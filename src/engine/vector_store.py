"""Chroma-backed vector index and OpenAI embedding provider.

Both are thin adapters behind the retrieval protocols: they raise
CollaboratorError / LLMClientError and leave degradation to the retriever.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

import chromadb
from chromadb.errors import InvalidArgumentError

from .types import CollaboratorError

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider:
    """``embed(text) -> list[float]`` using the shared OpenAI client."""

    def __init__(self, model: str | None = None):
        self.model = model

    def embed(self, text: str) -> List[float]:
        from .llm_client import create_embeddings

        vectors = create_embeddings([text], model=self.model)
        return vectors[0] if vectors else []

    def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        from .llm_client import create_embeddings

        return create_embeddings(texts, model=self.model)


def _normalize_where(filters: Mapping[str, Any] | None) -> Dict[str, Any] | None:
    """Chroma expects a single top-level operator; wrap multiple keys in $and."""
    if not filters:
        return None
    clauses = [{k: v} for k, v in filters.items() if v is not None]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def distance_to_similarity(distance: float) -> float:
    """Cosine distance (0 = identical) to a similarity in [0, 1]."""
    return max(0.0, min(1.0, 1.0 - float(distance)))


class ChromaVectorIndex:
    """``search(vector, top_k, filters)`` over a persistent Chroma collection.

    Collections are created with cosine space so distances map to
    ``1 - distance`` similarity.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        collection_name: str = "documents",
        *,
        client: Any = None,
    ):
        if client is None:
            from ..common.config_loader import resolve_repo_path

            db_path = resolve_repo_path(path or "data/vector_store")
            db_path.mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(path=str(db_path))
        self.client = client
        self.collection_name = collection_name
        self.collection = self._get_collection()

    def _get_collection(self) -> Any:
        return self.client.get_or_create_collection(
            self.collection_name, metadata={"hnsw:space": "cosine"}
        )

    def _reset_collection(self) -> None:
        logger.warning("Embedding dimension changed; recreating collection %s", self.collection_name)
        self.client.delete_collection(self.collection_name)
        self.collection = self._get_collection()

    def upsert(
        self,
        ids: Sequence[str],
        documents: Sequence[str],
        embeddings: Sequence[Sequence[float]],
        metadatas: Sequence[Mapping[str, Any]] | None = None,
    ) -> None:
        kwargs: Dict[str, Any] = {
            "ids": list(ids),
            "documents": list(documents),
            "embeddings": [list(e) for e in embeddings],
        }
        if metadatas is not None:
            kwargs["metadatas"] = [dict(m) for m in metadatas]
        try:
            self.collection.upsert(**kwargs)
        except InvalidArgumentError as exc:
            if "dimension" not in str(exc).lower():
                raise CollaboratorError(f"Vector upsert failed: {exc}") from exc
            self._reset_collection()
            self.collection.upsert(**kwargs)

    def search(
        self,
        vector: Sequence[float],
        top_k: int = 5,
        filters: Mapping[str, Any] | None = None,
    ) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {
            "query_embeddings": [list(vector)],
            "n_results": int(top_k),
            "include": ["documents", "metadatas", "distances"],
        }
        where = _normalize_where(filters)
        if where is not None:
            kwargs["where"] = where

        try:
            results = self.collection.query(**kwargs)
        except Exception as exc:  # noqa: BLE001
            raise CollaboratorError(f"Vector search failed: {exc}") from exc

        ids = (results.get("ids") or [[]])[0] or []
        documents = (results.get("documents") or [[]])[0] or []
        metadatas = (results.get("metadatas") or [[]])[0] or []
        distances = (results.get("distances") or [[]])[0] or []

        hits: List[Dict[str, Any]] = []
        for i, chunk_id in enumerate(ids):
            meta = dict(metadatas[i] or {}) if i < len(metadatas) else {}
            try:
                distance = float(distances[i])
            except (IndexError, TypeError, ValueError):
                distance = 1.0
            chunk_index = meta.get("chunk_index")
            hits.append(
                {
                    "source_id": str(meta.get("document_id") or chunk_id),
                    "chunk_index": int(chunk_index) if chunk_index is not None else None,
                    "content": str(documents[i] or "") if i < len(documents) else "",
                    "score": distance_to_similarity(distance),
                    "metadata": meta,
                }
            )
        return hits
