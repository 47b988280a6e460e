from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Tuple

from ..common.text_similarity import clamp, normalize_url


class SourceKind(str, Enum):
    DOCUMENT = "document"
    WEB = "web"


class RetrievalSource(str, Enum):
    VECTOR = "vector"
    KEYWORD = "keyword"
    WEB = "web"


@dataclass(frozen=True)
class Provenance:
    """Which query variation and which collaborator produced a candidate."""

    query: str
    source: RetrievalSource


@dataclass(frozen=True)
class Candidate:
    """One retrieved passage or web excerpt flowing through the pipeline.

    Stages never mutate a candidate; they return updated copies via the
    with_* helpers so earlier stage outputs stay intact for debugging.
    """

    source_id: str
    source_kind: SourceKind
    content: str
    title: str = ""
    url: str | None = None
    chunk_index: int | None = None
    published_date: str | None = None
    author: str | None = None
    raw_score: float | None = None
    derived_scores: Dict[str, float] = field(default_factory=dict)
    penalties: Dict[str, float] = field(default_factory=dict)
    provenance: Tuple[Provenance, ...] = ()
    source: str = ""  # semantic | keyword | both | web, set by fusion
    embedding: Tuple[float, ...] | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def key(self) -> str:
        """Identity key: kind + source id (+ chunk index for documents).

        Web candidates are keyed by normalized URL, so tracking parameters
        and a leading www. do not split one page in two.
        """
        if self.is_web:
            return f"{self.source_kind.value}:{normalize_url(self.url or self.source_id) or self.source_id}"
        base = f"{self.source_kind.value}:{self.source_id}"
        if self.chunk_index is not None:
            return f"{base}:{self.chunk_index}"
        return base

    @property
    def is_web(self) -> bool:
        return self.source_kind == SourceKind.WEB

    @property
    def relevance(self) -> float:
        """Best score available at this point of the pipeline.

        combined (after fusion) > filtering (after strategy filter) > raw_score.
        """
        for name in ("combined", "filtering"):
            if name in self.derived_scores:
                return self.derived_scores[name]
        return float(self.raw_score) if self.raw_score is not None else 0.0

    def with_scores(self, **scores: float) -> "Candidate":
        merged = dict(self.derived_scores)
        for name, value in scores.items():
            merged[name] = clamp(value)
        return replace(self, derived_scores=merged)

    def with_penalty(self, category: str, factor: float) -> "Candidate":
        penalties = dict(self.penalties)
        penalties[category] = clamp(factor)
        return replace(self, penalties=penalties)

    def with_provenance(self, *records: Provenance) -> "Candidate":
        merged = list(self.provenance)
        for record in records:
            if record not in merged:
                merged.append(record)
        return replace(self, provenance=tuple(merged))

    def with_updates(self, **changes: Any) -> "Candidate":
        return replace(self, **changes)

    def score_or(self, default: float = 0.0) -> float:
        """``combined`` once fused, else raw_score, else ``default``."""
        if "combined" in self.derived_scores:
            return self.derived_scores["combined"]
        return float(self.raw_score) if self.raw_score is not None else default

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_kind": self.source_kind.value,
            "chunk_index": self.chunk_index,
            "title": self.title,
            "url": self.url,
            "content": self.content,
            "published_date": self.published_date,
            "author": self.author,
            "raw_score": self.raw_score,
            "source": self.source,
            "derived_scores": dict(self.derived_scores),
            "penalties": dict(self.penalties),
            "provenance": [
                {"query": p.query, "source": p.source.value} for p in self.provenance
            ],
        }


def merge_by_key(candidates: Iterable[Candidate]) -> List[Candidate]:
    """Collapse candidates sharing an identity key.

    Keeps the highest raw score (first seen wins ties), unions provenance,
    and preserves first-seen order.
    """
    merged: Dict[str, Candidate] = {}
    for cand in candidates:
        key = cand.key()
        existing = merged.get(key)
        if existing is None:
            merged[key] = cand
            continue
        keep, other = existing, cand
        if (cand.raw_score or 0.0) > (existing.raw_score or 0.0):
            keep, other = cand, existing
        merged[key] = keep.with_provenance(*existing.provenance, *other.provenance)
    return list(merged.values())


class PipelineError(RuntimeError):
    """Raised when the retrieval pipeline encounters a recoverable error."""


class CollaboratorError(PipelineError):
    """Raised by collaborator adapters (vector index, keyword index, web search).

    ``retryable`` is False for failures a second attempt cannot fix
    (bad input, rejected credentials).
    """

    def __init__(self, message: str = "", *, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class LLMClientError(PipelineError):
    """Raised when a language-model or embedding call fails."""


@dataclass(frozen=True)
class WebSearchFilters:
    """Optional constraints passed through to the web-search provider."""

    topic: str | None = None
    time_range: str | None = None  # day|week|month|year or d|w|m|y
    country: str | None = None
    start_date: str | None = None  # YYYY-MM-DD
    end_date: str | None = None
    max_results: int = 5
    include_domains: Tuple[str, ...] = ()
    exclude_domains: Tuple[str, ...] = ()
