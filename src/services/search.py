from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List

from ..common.config_loader import Settings, load_settings
from ..engine.cache import TTLCache
from ..engine.circuit_breaker import CircuitBreakers, ResilienceConfig
from ..engine.context import extract_sources, format_context
from ..engine.pipeline import (
    PipelineConfig,
    PipelineRequest,
    PipelineResult,
    build_collaborators,
    execute_pipeline,
)
from ..engine.query_expansion import QueryExpander
from ..engine.retrieval import Collaborators

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchResult:
    query: str
    candidates: list[dict[str, Any]]
    context: str
    sources: list[dict[str, Any]]
    variations: list[str]
    stats: dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0


class SearchEngine:
    """Long-lived holder of config, adapters, circuit breakers and the query-rewrite cache."""

    def __init__(
        self,
        *,
        config: PipelineConfig | None = None,
        collaborators: Collaborators | None = None,
        expander: QueryExpander | None = None,
        breakers: CircuitBreakers | None = None,
    ):
        self.config = config or PipelineConfig.from_settings()
        self.collaborators = collaborators if collaborators is not None else Collaborators()
        exp_cfg = self.config.expansion
        self.expander = expander or QueryExpander(
            exp_cfg,
            cache=TTLCache(ttl_secs=exp_cfg.cache_ttl_secs, max_size=exp_cfg.cache_max_size),
        )
        self.breakers = breakers or CircuitBreakers(ResilienceConfig.from_settings())

    def run(self, request: PipelineRequest) -> PipelineResult:
        return execute_pipeline(
            request,
            self.config,
            self.collaborators,
            expander=self.expander,
            breakers=self.breakers,
        )


def build_search_engine(*, settings: Settings | None = None) -> SearchEngine:
    resolved = settings or load_settings()
    return SearchEngine(
        config=PipelineConfig.from_settings(),
        collaborators=build_collaborators(resolved),
    )


@lru_cache(maxsize=1)
def get_search_engine() -> SearchEngine:
    return build_search_engine()


def to_search_result(result: PipelineResult, *, min_source_score: float = 0.6) -> SearchResult:
    return SearchResult(
        query=result.query,
        candidates=[c.to_dict() for c in result.candidates],
        context=format_context(result.candidates),
        sources=extract_sources(result.candidates, min_score=min_source_score),
        variations=list(result.variations),
        stats=result.stats,
        duration_ms=result.duration_ms,
    )


def search(
    *,
    query: str,
    context: str | None = None,
    user_id: str | None = None,
    topic: str | None = None,
    time_range: str | None = None,
    country: str | None = None,
    filtering_mode: str | None = None,
    ordering_strategy: str | None = None,
    include_web: bool | None = None,
    include_keyword: bool | None = None,
    expand: bool = True,
    engine: SearchEngine | None = None,
) -> SearchResult:
    if not query or not query.strip():
        raise ValueError("Query must not be empty.")

    eng = engine or get_search_engine()
    request = PipelineRequest(
        query=query.strip(),
        context=context,
        user_id=user_id,
        topic=topic,
        time_range=time_range,
        country=country,
        filtering_mode=filtering_mode,
        ordering_strategy=ordering_strategy,
        include_web=include_web,
        include_keyword=include_keyword,
        expand=expand,
    )
    result = eng.run(request)
    if result.errors:
        logger.warning("Search for %r completed with source errors: %s", query, result.errors)
    return to_search_result(result)


def health() -> Dict[str, Any]:
    """Configuration summary; does not build adapters."""
    s = load_settings()
    return {
        "status": "ok",
        "filtering_mode": s.filtering_mode,
        "ordering_strategy": s.ordering_strategy,
        "web_enabled": s.retrieval.include_web,
        "keyword_enabled": s.retrieval.include_keyword,
    }


__all__: List[str] = [
    "SearchEngine",
    "SearchResult",
    "build_search_engine",
    "get_search_engine",
    "search",
    "health",
    "to_search_result",
]
