"""Retrieval fusion and ranking pipeline.

Composes the stage modules into one run per query. Every stage is a pure
function over immutable Candidates; only retrieval touches the network.

Pipeline Stages:
    1. Expand      → query variations (QueryExpander, cached)
    2. Retrieve    → vector / keyword / web per variation, sources in parallel
    3. Aggregate   → merge per source across variations
    4. Deduplicate → exact and near duplicates over all candidates
    5. Filter      → contextual (time range, topic) then strategy (quality,
                     authority, domain diversity); web candidates only
    6. Fuse        → documents: semantic vs keyword; web: normalized by max
    7. Diversify   → MMR selection
    8. Order       → final sort under a time budget

Design Principles:
    - Frozen dataclasses for config, request and result
    - Dependency injection for collaborators, scorers and the expander
    - Per-stage stats and timings in the result for observability
    - Zero candidates is an empty result, never an error

Usage:
    from src.engine.pipeline import PipelineConfig, PipelineRequest, execute_pipeline

    result = execute_pipeline(
        PipelineRequest(query="heat pump efficiency", time_range="year"),
        PipelineConfig.from_settings(),
        collaborators,
    )
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Sequence, Tuple

from .authority import AuthorityConfig, DomainAuthorityScorer
from .circuit_breaker import CircuitBreakers
from .deduplication import DeduplicationConfig, deduplicate
from .diversity import DiversityConfig, apply_mmr
from .filtering import (
    FilteringConfig,
    FilteringStrategy,
    apply_contextual_filtering,
    apply_strategy,
    combine_stats,
    resolve_strategy,
    time_range_cutoff,
)
from .fusion import FusionConfig, FusionWeights, fuse_results, normalize_by_max
from .ordering import OrderingConfig, order_candidates
from .quality import QualityConfig, QualityScorer
from .query_expansion import ExpansionResult, QueryExpander, QueryExpansionConfig, aggregate_results
from .retrieval import (
    Collaborators,
    RetrievalConfig,
    RetrievalRequest,
    RetrievalResult,
    retrieve_candidates,
)
from .types import Candidate, WebSearchFilters
from ..common.date_utils import utcnow

logger = logging.getLogger(__name__)

ScoreFn = Callable[[Candidate], float]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable configuration for every stage."""

    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    expansion: QueryExpansionConfig = field(default_factory=QueryExpansionConfig)
    deduplication: DeduplicationConfig = field(default_factory=DeduplicationConfig)
    filtering: FilteringConfig = field(default_factory=FilteringConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    diversity: DiversityConfig = field(default_factory=DiversityConfig)
    ordering: OrderingConfig = field(default_factory=OrderingConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    authority: AuthorityConfig = field(default_factory=AuthorityConfig)

    # Per-source cap after merging variations
    aggregate_max_results: int = 20

    @classmethod
    def from_settings(cls) -> "PipelineConfig":
        """Load every stage config from settings.yaml."""
        return cls(
            retrieval=RetrievalConfig.from_settings(),
            expansion=QueryExpansionConfig.from_settings(),
            deduplication=DeduplicationConfig.from_settings(),
            filtering=FilteringConfig.from_settings(),
            fusion=FusionConfig.from_settings(),
            diversity=DiversityConfig.from_settings(),
            ordering=OrderingConfig.from_settings(),
            quality=QualityConfig.from_settings(),
            authority=AuthorityConfig.from_settings(),
        )


# ---------------------------------------------------------------------------
# Input / output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineRequest:
    """Input for one pipeline run."""

    query: str
    context: str | None = None
    user_id: str | None = None
    topic: str | None = None
    time_range: str | None = None
    country: str | None = None
    filtering_mode: str | None = None
    filtering_strategy: FilteringStrategy | None = None
    ordering_strategy: str | None = None
    fusion_weights: FusionWeights | None = None
    vector_filters: Dict[str, Any] | None = None
    include_web: bool | None = None
    include_keyword: bool | None = None
    expand: bool = True
    now: datetime | None = None

    def web_filters(self, max_results: int) -> WebSearchFilters:
        return WebSearchFilters(
            topic=self.topic,
            time_range=self.time_range,
            country=self.country,
            max_results=max_results,
        )


@dataclass(frozen=True)
class PipelineResult:
    """Ordered candidates plus per-stage stats."""

    query: str
    candidates: Tuple[Candidate, ...]
    variations: Tuple[str, ...]
    stats: Dict[str, Any] = field(default_factory=dict)
    debug: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def documents(self) -> List[Candidate]:
        return [c for c in self.candidates if not c.is_web]

    @property
    def web(self) -> List[Candidate]:
        return [c for c in self.candidates if c.is_web]

    @property
    def errors(self) -> Dict[str, Dict[str, str]]:
        return dict(self.stats.get("retrieval", {}).get("errors", {}))


# ---------------------------------------------------------------------------
# Stage helpers
# ---------------------------------------------------------------------------


def _expand(
    request: PipelineRequest,
    expander: QueryExpander | None,
    config: PipelineConfig,
) -> ExpansionResult:
    if not request.expand:
        return ExpansionResult(original_query=request.query, variations=(request.query,))
    exp = expander or QueryExpander(config.expansion)
    return exp.expand(request.query, request.context)


def _retrieve_all(
    request: PipelineRequest,
    variations: Sequence[str],
    config: PipelineConfig,
    collaborators: Collaborators,
    breakers: CircuitBreakers | None = None,
) -> List[RetrievalResult]:
    web_filters = request.web_filters(config.retrieval.web_max_results)
    results: List[RetrievalResult] = []
    for variation in variations:
        results.append(
            retrieve_candidates(
                RetrievalRequest(
                    query=variation,
                    vector_filters=request.vector_filters,
                    web_filters=web_filters,
                    include_keyword=request.include_keyword,
                    include_web=request.include_web,
                ),
                config.retrieval,
                collaborators,
                breakers=breakers,
            )
        )
    return results


def _surviving(
    candidates: Sequence[Candidate],
    survivors: Dict[str, Candidate],
) -> List[Candidate]:
    """Candidates whose identity key survived deduplication, with merged provenance."""
    kept: List[Candidate] = []
    for cand in candidates:
        winner = survivors.get(cand.key())
        if winner is not None:
            kept.append(cand.with_provenance(*winner.provenance))
    return kept


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


def execute_pipeline(
    request: PipelineRequest,
    config: PipelineConfig | None = None,
    collaborators: Collaborators | None = None,
    *,
    expander: QueryExpander | None = None,
    quality_fn: ScoreFn | None = None,
    authority_fn: ScoreFn | None = None,
    breakers: CircuitBreakers | None = None,
) -> PipelineResult:
    """Run expand → retrieve → dedupe → filter → fuse → MMR → order.

    Args:
        request: Query and per-request options
        config: Stage configuration (defaults when omitted)
        collaborators: Vector/keyword/web adapters; missing ones are skipped
        expander: Query expander with its own cache (one is built from config otherwise)
        quality_fn: Result quality scorer
        authority_fn: Domain authority scorer
        breakers: Circuit breakers around collaborator calls (none when omitted)

    Returns:
        PipelineResult with ordered candidates and per-stage stats
    """
    cfg = config or PipelineConfig()
    collabs = collaborators or Collaborators()
    start = time.perf_counter()
    now = request.now or utcnow()
    quality_fn = quality_fn or QualityScorer(cfg.quality)
    authority_fn = authority_fn or DomainAuthorityScorer(cfg.authority)
    stats: Dict[str, Any] = {}
    debug: Dict[str, Any] = {}

    # Stage 1: Expand
    expansion = _expand(request, expander, cfg)
    variations = expansion.variations or (request.query,)
    stats["expansion"] = {
        "variations": len(variations),
        "cached": expansion.cached,
        "fallback": expansion.fallback,
        "duration_ms": round(expansion.duration_ms, 2),
    }

    # Stage 2: Retrieve (variations sequentially, sources in parallel)
    t0 = time.perf_counter()
    retrievals = _retrieve_all(request, variations, cfg, collabs, breakers)
    errors = {r.query: dict(r.errors) for r in retrievals if r.errors}
    debug["retrieval"] = {r.query: r.debug for r in retrievals}

    # Stage 3: Aggregate per source across variations
    cap = cfg.aggregate_max_results
    vector = aggregate_results({r.query: r.vector for r in retrievals}, cap)
    keyword = aggregate_results({r.query: r.keyword for r in retrievals}, cap)
    web = aggregate_results({r.query: r.web for r in retrievals}, cap)
    stats["retrieval"] = {
        "vector_count": len(vector),
        "keyword_count": len(keyword),
        "web_count": len(web),
        "errors": errors,
        "duration_ms": round((time.perf_counter() - t0) * 1000, 2),
    }
    if breakers is not None:
        stats["resilience"] = breakers.stats()

    if not (vector or keyword or web):
        logger.info("No candidates retrieved for %r", request.query)
        duration_ms = (time.perf_counter() - start) * 1000
        return PipelineResult(
            query=request.query,
            candidates=(),
            variations=tuple(variations),
            stats=stats,
            debug=debug,
            duration_ms=duration_ms,
        )

    # Stage 4: Deduplicate across all sources
    dedup = deduplicate([*vector, *keyword, *web], cfg.deduplication)
    survivors = {c.key(): c for c in dedup.candidates}
    semantic = _surviving(vector, survivors)
    lexical = _surviving(keyword, survivors)
    web_survivors = [c for c in dedup.candidates if c.is_web]
    stats["deduplication"] = dedup.stats.to_dict()

    # Stage 5: Filter web candidates
    strategy = resolve_strategy(
        strategy=request.filtering_strategy,
        mode=request.filtering_mode,
        user_id=request.user_id,
        config=cfg.filtering,
    )
    contextual = apply_contextual_filtering(
        web_survivors,
        strategy,
        cutoff=time_range_cutoff(request.time_range, now),
        is_strict=strategy.mode == "strict",
        topic=request.topic,
        now=now,
    )
    filtered = apply_strategy(
        contextual.candidates, strategy, quality_fn=quality_fn, authority_fn=authority_fn
    )
    stats["filtering"] = {
        **combine_stats(contextual.stats, filtered.stats).to_dict(),
        "contextual": contextual.stats.to_dict(),
    }

    # Stage 6: Fuse
    fused = fuse_results(
        semantic,
        lexical,
        cfg.fusion,
        weights=request.fusion_weights,
        user_id=request.user_id,
    )
    web_fused = normalize_by_max(filtered.candidates, source="web")
    stats["fusion"] = {**fused.stats, "web_count": len(web_fused)}

    # Stage 7: Diversify
    diversified = apply_mmr([*fused.candidates, *web_fused], cfg.diversity)
    stats["diversity"] = dict(diversified.stats)

    # Stage 8: Order
    ordered = order_candidates(
        diversified.candidates,
        cfg.ordering,
        strategy=request.ordering_strategy,
        quality_fn=quality_fn,
        authority_fn=authority_fn,
        now=now,
    )
    stats["ordering"] = ordered.stats.to_dict()

    duration_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "Pipeline completed for %r: %d variations, %d candidates (%.1fms)",
        request.query,
        len(variations),
        len(ordered.candidates),
        duration_ms,
    )
    return PipelineResult(
        query=request.query,
        candidates=ordered.candidates,
        variations=tuple(variations),
        stats=stats,
        debug=debug,
        duration_ms=duration_ms,
    )


def build_collaborators(settings: Any = None) -> Collaborators:
    """Default adapters: OpenAI embeddings, Chroma, in-memory BM25, Tavily."""
    from ..common.config_loader import load_settings
    from .keyword_index import BM25KeywordIndex
    from .vector_store import ChromaVectorIndex, OpenAIEmbeddingProvider
    from .web_search import TavilyWebSearch, WebSearchConfig

    s = settings or load_settings()
    return Collaborators(
        embedder=OpenAIEmbeddingProvider(s.embedding_model),
        vector_index=ChromaVectorIndex(s.vector_store_path, s.vector_collection),
        keyword_index=BM25KeywordIndex(),
        web_search=TavilyWebSearch(WebSearchConfig.from_settings()),
    )
