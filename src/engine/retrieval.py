"""Parallel candidate retrieval from vector, keyword and web sources.

All enabled sources are queried at once on a thread pool and collected with
a deadline. A failing or slow source contributes an empty list plus an entry
in ``errors``; the other sources are unaffected.

Design Principles:
    - Collaborators are typing.Protocol interfaces (adapters live in
      vector_store.py, keyword_index.py and web_search.py)
    - Frozen dataclasses for config, request and result
    - Per-source timings and errors in the result for observability

Usage:
    from src.engine.retrieval import RetrievalConfig, RetrievalRequest, Collaborators, retrieve_candidates

    result = retrieve_candidates(
        RetrievalRequest(query="solar panel efficiency"),
        RetrievalConfig.from_settings(),
        Collaborators(embedder=..., vector_index=..., keyword_index=..., web_search=...),
    )
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Protocol, Sequence, Tuple

from .circuit_breaker import CircuitBreakers
from .types import (
    Candidate,
    Provenance,
    RetrievalSource,
    SourceKind,
    WebSearchFilters,
)

logger = logging.getLogger(__name__)

UNKNOWN_DOCUMENT = "Unknown Document"


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------


class EmbeddingProvider(Protocol):
    def embed(self, text: str) -> List[float]: ...


class VectorIndex(Protocol):
    def search(
        self, vector: Sequence[float], top_k: int, filters: Mapping[str, Any] | None
    ) -> List[Dict[str, Any]]: ...


class KeywordIndex(Protocol):
    def search(self, query: str, top_k: int) -> List[Dict[str, Any]]: ...


class WebSearchProvider(Protocol):
    def search(self, query: str, filters: WebSearchFilters | None) -> List[Dict[str, Any]]: ...


class DocumentStore(Protocol):
    def get_document(self, document_id: str) -> Mapping[str, Any] | None: ...


@dataclass(frozen=True)
class Collaborators:
    """External services the retriever may call. Any of them may be absent."""

    embedder: EmbeddingProvider | None = None
    vector_index: VectorIndex | None = None
    keyword_index: KeywordIndex | None = None
    web_search: WebSearchProvider | None = None
    document_store: DocumentStore | None = None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetrievalConfig:
    vector_top_k: int = 5
    keyword_top_k: int = 5
    web_max_results: int = 5
    min_vector_score: float = 0.7
    relaxed_vector_score: float = 0.6
    include_web: bool = True
    include_keyword: bool = True
    max_workers: int = 8
    timeout_secs: float = 3.0
    unknown_document_name: str = UNKNOWN_DOCUMENT

    @classmethod
    def from_settings(cls, **overrides: Any) -> "RetrievalConfig":
        try:
            from ..common.config_loader import get_performance_settings, load_settings

            r = load_settings().retrieval
            perf = get_performance_settings()
            values: Dict[str, Any] = {
                "vector_top_k": r.vector_top_k,
                "keyword_top_k": r.keyword_top_k,
                "web_max_results": r.web_max_results,
                "min_vector_score": r.min_vector_score,
                "relaxed_vector_score": r.relaxed_vector_score,
                "include_web": r.include_web,
                "include_keyword": r.include_keyword,
                "unknown_document_name": r.unknown_document_name,
                "max_workers": perf["max_retrieval_workers"],
                "timeout_secs": perf["retrieval_timeout_secs"],
            }
        except Exception:  # noqa: BLE001
            values = {}
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class RetrievalRequest:
    query: str
    vector_filters: Dict[str, Any] | None = None
    web_filters: WebSearchFilters | None = None
    include_vector: bool = True
    include_keyword: bool | None = None  # None -> config
    include_web: bool | None = None  # None -> config


@dataclass(frozen=True)
class RetrievalResult:
    query: str
    vector: Tuple[Candidate, ...] = ()
    keyword: Tuple[Candidate, ...] = ()
    web: Tuple[Candidate, ...] = ()
    errors: Dict[str, str] = field(default_factory=dict)
    per_source_ms: Dict[str, float] = field(default_factory=dict)
    duration_ms: float = 0.0
    debug: Dict[str, Any] = field(default_factory=dict)

    @property
    def all_candidates(self) -> List[Candidate]:
        return [*self.vector, *self.keyword, *self.web]


# ---------------------------------------------------------------------------
# Hit → Candidate
# ---------------------------------------------------------------------------


def _float_or_none(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class _DocumentNames:
    """Per-call memo of document display names."""

    def __init__(self, store: DocumentStore | None, unknown: str):
        self._store = store
        self._unknown = unknown
        self._names: Dict[str, str] = {}

    def name_for(self, source_id: str, metadata: Mapping[str, Any]) -> str:
        if source_id in self._names:
            return self._names[source_id]
        name = None
        if self._store is not None:
            try:
                doc = self._store.get_document(source_id)
                if doc:
                    name = doc.get("filename") or doc.get("name") or doc.get("title")
            except Exception as exc:  # noqa: BLE001
                logger.warning("Document lookup failed for %s: %s", source_id, exc)
        else:
            name = metadata.get("document_name") or metadata.get("filename")
        self._names[source_id] = str(name) if name else self._unknown
        return self._names[source_id]


def document_candidate(
    hit: Mapping[str, Any],
    query: str,
    source: RetrievalSource,
    names: _DocumentNames,
) -> Candidate:
    metadata = dict(hit.get("metadata") or {})
    source_id = str(hit.get("source_id") or hit.get("id") or "")
    chunk_index = hit.get("chunk_index")
    return Candidate(
        source_id=source_id,
        source_kind=SourceKind.DOCUMENT,
        chunk_index=int(chunk_index) if chunk_index is not None else None,
        content=str(hit.get("content") or ""),
        title=names.name_for(source_id, metadata),
        raw_score=_float_or_none(hit.get("score")),
        provenance=(Provenance(query=query, source=source),),
        metadata=metadata,
    )


def web_candidate(hit: Mapping[str, Any], query: str) -> Candidate:
    url = str(hit.get("url") or "")
    return Candidate(
        source_id=url,
        source_kind=SourceKind.WEB,
        content=str(hit.get("content") or ""),
        title=str(hit.get("title") or "Untitled"),
        url=url or None,
        published_date=hit.get("published_date"),
        author=hit.get("author"),
        raw_score=_float_or_none(hit.get("score")),
        provenance=(Provenance(query=query, source=RetrievalSource.WEB),),
    )


# ---------------------------------------------------------------------------
# Per-source lookups
# ---------------------------------------------------------------------------


def apply_vector_floor(
    hits: Sequence[Mapping[str, Any]],
    min_score: float,
    relaxed_score: float,
) -> Tuple[List[Mapping[str, Any]], bool]:
    """Keep hits at or above min_score; if none pass, retry once at relaxed_score.

    Returns (kept hits, relaxed flag).
    """
    def _passing(floor: float) -> List[Mapping[str, Any]]:
        return [h for h in hits if (_float_or_none(h.get("score")) or 0.0) >= floor]

    kept = _passing(min_score)
    if kept or not hits:
        return kept, False
    return _passing(relaxed_score), True


def _call(breakers: CircuitBreakers | None, name: str, fn: Callable[..., Any], *args: Any) -> Any:
    if breakers is None:
        return fn(*args)
    return breakers.call(name, fn, *args)


def _lookup_vector(
    request: RetrievalRequest,
    config: RetrievalConfig,
    collaborators: Collaborators,
    names: _DocumentNames,
    breakers: CircuitBreakers | None = None,
) -> Tuple[List[Candidate], Dict[str, Any]]:
    """Returns (candidates, floor debug)."""
    vector = _call(breakers, "embedding", collaborators.embedder.embed, request.query)  # type: ignore[union-attr]
    hits = _call(
        breakers,
        "vector",
        collaborators.vector_index.search,  # type: ignore[union-attr]
        vector,
        config.vector_top_k,
        request.vector_filters,
    )
    kept, relaxed = apply_vector_floor(hits, config.min_vector_score, config.relaxed_vector_score)
    floor_debug = {
        "hits": len(hits),
        "kept": len(kept),
        "relaxed": relaxed,
        "floor": config.relaxed_vector_score if relaxed else config.min_vector_score,
    }
    if relaxed:
        logger.debug("Vector floor relaxed to %.2f for %r", config.relaxed_vector_score, request.query)
    found = [document_candidate(h, request.query, RetrievalSource.VECTOR, names) for h in kept]
    return found, {"vector_floor": floor_debug}


def _lookup_keyword(
    request: RetrievalRequest,
    config: RetrievalConfig,
    collaborators: Collaborators,
    names: _DocumentNames,
    breakers: CircuitBreakers | None = None,
) -> Tuple[List[Candidate], Dict[str, Any]]:
    hits = _call(
        breakers,
        "keyword",
        collaborators.keyword_index.search,  # type: ignore[union-attr]
        request.query,
        config.keyword_top_k,
    )
    return [document_candidate(h, request.query, RetrievalSource.KEYWORD, names) for h in hits], {}


def _lookup_web(
    request: RetrievalRequest,
    config: RetrievalConfig,
    collaborators: Collaborators,
    breakers: CircuitBreakers | None = None,
) -> Tuple[List[Candidate], Dict[str, Any]]:
    filters = request.web_filters or WebSearchFilters(max_results=config.web_max_results)
    hits = _call(breakers, "web", collaborators.web_search.search, request.query, filters)  # type: ignore[union-attr]
    return [web_candidate(h, request.query) for h in hits], {}


# ---------------------------------------------------------------------------
# Fan-out / fan-in
# ---------------------------------------------------------------------------


def retrieve_candidates(
    request: RetrievalRequest,
    config: RetrievalConfig | None = None,
    collaborators: Collaborators | None = None,
    *,
    breakers: CircuitBreakers | None = None,
) -> RetrievalResult:
    """Query every enabled source in parallel; never raises for a source failure.

    Each lookup returns its own debug entries; only the collecting thread
    writes to the result, so a lookup still running after the deadline
    cannot change it.
    """
    cfg = config or RetrievalConfig()
    collabs = collaborators or Collaborators()
    start = time.perf_counter()
    names = _DocumentNames(collabs.document_store, cfg.unknown_document_name)
    debug: Dict[str, Any] = {"sources": {}}

    include_keyword = cfg.include_keyword if request.include_keyword is None else request.include_keyword
    include_web = cfg.include_web if request.include_web is None else request.include_web

    tasks: Dict[str, Callable[[], Tuple[List[Candidate], Dict[str, Any]]]] = {}
    if request.include_vector and collabs.embedder is not None and collabs.vector_index is not None:
        tasks["vector"] = lambda: _lookup_vector(request, cfg, collabs, names, breakers)
    if include_keyword and collabs.keyword_index is not None:
        tasks["keyword"] = lambda: _lookup_keyword(request, cfg, collabs, names, breakers)
    if include_web and collabs.web_search is not None:
        tasks["web"] = lambda: _lookup_web(request, cfg, collabs, breakers)

    results: Dict[str, List[Candidate]] = {}
    errors: Dict[str, str] = {}
    per_source_ms: Dict[str, float] = {}

    if not tasks:
        return RetrievalResult(query=request.query, duration_ms=(time.perf_counter() - start) * 1000, debug=debug)

    def _timed(name: str) -> Tuple[str, List[Candidate], Dict[str, Any], float]:
        t0 = time.perf_counter()
        found, extra = tasks[name]()
        return name, found, extra, (time.perf_counter() - t0) * 1000

    executor = ThreadPoolExecutor(max_workers=max(1, min(cfg.max_workers, len(tasks))))
    future_to_source = {executor.submit(_timed, name): name for name in tasks}

    try:
        for future in as_completed(future_to_source, timeout=cfg.timeout_secs):
            source = future_to_source[future]
            try:
                _, found, extra, dur_ms = future.result(timeout=0)
                results[source] = found
                per_source_ms[source] = round(dur_ms, 2)
                debug["sources"][source] = {"hits": len(found), "duration_ms": round(dur_ms, 2)}
                debug.update(extra)
            except Exception as exc:  # noqa: BLE001
                logger.warning("%s retrieval failed for %r: %s", source, request.query, exc)
                results[source] = []
                errors[source] = str(exc) or type(exc).__name__
                debug["sources"][source] = {"hits": 0, "error": errors[source]}
    except FuturesTimeoutError:
        for future, source in future_to_source.items():
            if source not in results:
                logger.warning("%s retrieval timed out after %.1fs", source, cfg.timeout_secs)
                results[source] = []
                errors[source] = f"Timeout after {cfg.timeout_secs}s"
                debug["sources"][source] = {"hits": 0, "error": errors[source]}
                future.cancel()

    executor.shutdown(wait=False, cancel_futures=True)

    duration_ms = (time.perf_counter() - start) * 1000
    result = RetrievalResult(
        query=request.query,
        vector=tuple(results.get("vector", [])),
        keyword=tuple(results.get("keyword", [])),
        web=tuple(results.get("web", [])),
        errors=errors,
        per_source_ms=per_source_ms,
        duration_ms=duration_ms,
        debug=debug,
    )
    logger.debug(
        "Retrieved for %r: vector=%d keyword=%d web=%d errors=%s (%.1fms)",
        request.query,
        len(result.vector),
        len(result.keyword),
        len(result.web),
        sorted(errors),
        duration_ms,
    )
    return result
