"""Query expansion: rewrite one query into several search phrasings.

The expander asks a chat model for N alternative phrasings of the user's
query and caches the answer. It never raises past the pipeline: any model
failure or unparseable output yields ``[query]`` unchanged.

Design Principles:
    - Frozen dataclasses for config and results
    - Language model injected as a plain callable (testable without OpenAI)
    - Cache injected by the orchestrator (no module-level state)

Usage:
    from src.engine.query_expansion import QueryExpander, QueryExpansionConfig

    expander = QueryExpander(QueryExpansionConfig.from_settings())
    result = expander.expand("how do solar panels work")
    result.variations  # ("how do solar panels work", "solar panel working principle", ...)
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Tuple

from ..common.text_similarity import normalize_url
from .cache import TTLCache
from .types import Candidate

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueryExpansionConfig:
    """Configuration for query expansion."""

    enabled: bool = True
    max_variations: int = 3
    model: str | None = None  # None -> openai.chat_model from settings
    max_tokens: int = 200
    temperature: float = 0.7
    cache_ttl_secs: float = 3600.0
    cache_max_size: int = 1000
    synonym_fallback: bool = False

    @classmethod
    def from_settings(cls, **overrides: Any) -> "QueryExpansionConfig":
        """Create config from the query_expansion section of settings.yaml."""
        try:
            from ..common.config_loader import get_section

            cfg = get_section("query_expansion")
            values: Dict[str, Any] = {
                "enabled": bool(cfg.get("enabled", True)),
                "max_variations": int(cfg.get("max_variations", 3)),
                "model": cfg.get("model"),
                "max_tokens": int(cfg.get("max_tokens", 200)),
                "temperature": float(cfg.get("temperature", 0.7)),
                "cache_ttl_secs": float(cfg.get("cache_ttl_secs", 3600)),
                "cache_max_size": int(cfg.get("cache_max_size", 1000)),
                "synonym_fallback": bool(cfg.get("synonym_fallback", False)),
            }
        except Exception:  # noqa: BLE001
            values = {}
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class ExpansionResult:
    """Variations for one query. The first entry is not necessarily the original."""

    original_query: str
    variations: Tuple[str, ...]
    cached: bool = False
    fallback: bool = False  # True when the original query was returned because expansion failed
    duration_ms: float = 0.0


# complete_fn: (system_prompt, user_prompt, config) -> raw model text
CompleteFn = Callable[[str, str, QueryExpansionConfig], str]


# ---------------------------------------------------------------------------
# Prompting and parsing
# ---------------------------------------------------------------------------

_ARRAY_RE = re.compile(r"\[[\s\S]*?\]")


def build_prompts(query: str, max_variations: int, context: str | None = None) -> Tuple[str, str]:
    """Return (system_prompt, user_prompt) for the rewrite call."""
    system_prompt = (
        f"You are a query rewriting assistant. Generate {max_variations} different "
        "variations of the user's search query. Each variation should:\n"
        "1. Preserve the core intent and meaning\n"
        "2. Use different wording and phrasing\n"
        "3. Be optimized for search\n"
        "4. Be concise and clear\n"
        'Return a JSON object with a "variations" array of strings. '
        'Example: {"variations": ["query 1", "query 2", "query 3"]}'
    )
    if context:
        user_prompt = (
            f'Original query: "{query}"\n\nContext: {context}\n\n'
            f"Generate {max_variations} query variations."
        )
    else:
        user_prompt = f'Original query: "{query}"\n\nGenerate {max_variations} query variations.'
    return system_prompt, user_prompt


def _list_from_payload(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("variations", "queries"):
            if isinstance(payload.get(key), list):
                return payload[key]
        for value in payload.values():
            if isinstance(value, list):
                return value
    return []


def parse_variations(raw: str | None, max_variations: int) -> List[str]:
    """Extract query strings from model output.

    Accepts a JSON object (``variations``/``queries``/any list field), a bare
    JSON list, or text containing a JSON array. Returns cleaned, deduplicated
    variations (may be empty).
    """
    if not raw:
        return []

    items: List[Any] = []
    try:
        items = _list_from_payload(json.loads(raw))
    except (json.JSONDecodeError, TypeError):
        match = _ARRAY_RE.search(raw)
        if match:
            try:
                items = _list_from_payload(json.loads(match.group(0)))
            except json.JSONDecodeError:
                items = []

    cleaned = [str(item).strip() for item in items if isinstance(item, str) and item.strip()]
    return dedupe_case_insensitive(cleaned)[: max(1, int(max_variations))]


def dedupe_case_insensitive(values: Iterable[str]) -> List[str]:
    """Drop case-insensitive repeats, keeping first-seen order and casing."""
    seen: set[str] = set()
    out: List[str] = []
    for value in values:
        folded = value.casefold()
        if folded in seen:
            continue
        seen.add(folded)
        out.append(value)
    return out


def normalize_cache_key(query: str) -> str:
    return re.sub(r"\s+", " ", (query or "").strip().lower())


# Small deterministic synonym map for the no-LLM fallback.
SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "ai": ("artificial intelligence", "machine learning"),
    "ml": ("machine learning", "deep learning"),
    "learn": ("study", "understand"),
    "help": ("assist", "support"),
    "create": ("make", "build"),
    "find": ("search", "locate"),
    "explain": ("describe", "clarify"),
    "fast": ("quick", "rapid"),
    "cheap": ("affordable", "inexpensive"),
    "error": ("bug", "failure"),
}


def expand_with_synonyms(query: str, max_variations: int = 3) -> List[str]:
    """Original query followed by single-word synonym substitutions."""
    variations = [query]
    tokens = query.split()
    for i, token in enumerate(tokens):
        bare = re.sub(r"[^\w]", "", token.lower())
        for synonym in SYNONYMS.get(bare, ()):
            replaced = tokens[:i] + [synonym] + tokens[i + 1:]
            variations.append(" ".join(replaced))
    return dedupe_case_insensitive(variations)[: max(1, int(max_variations))]


def _default_complete(system_prompt: str, user_prompt: str, config: QueryExpansionConfig) -> str:
    from .llm_client import call_llm

    return call_llm(
        user_prompt,
        system=system_prompt,
        model=config.model,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        json_mode=True,
    )


# ---------------------------------------------------------------------------
# Expander
# ---------------------------------------------------------------------------


class QueryExpander:
    """Rewrites a query into variations with caching and identity fallback."""

    def __init__(
        self,
        config: QueryExpansionConfig | None = None,
        *,
        complete_fn: CompleteFn | None = None,
        cache: TTLCache[Tuple[str, ...]] | None = None,
    ):
        self.config = config or QueryExpansionConfig()
        self._complete = complete_fn or _default_complete
        self.cache = cache if cache is not None else TTLCache(
            ttl_secs=self.config.cache_ttl_secs,
            max_size=self.config.cache_max_size,
        )

    def expand(self, query: str, context: str | None = None) -> ExpansionResult:
        start = time.perf_counter()

        def _result(variations: Sequence[str], *, cached: bool = False, fallback: bool = False) -> ExpansionResult:
            return ExpansionResult(
                original_query=query,
                variations=tuple(variations),
                cached=cached,
                fallback=fallback,
                duration_ms=(time.perf_counter() - start) * 1000,
            )

        if not query or not query.strip():
            return _result([query], fallback=True)

        if not self.config.enabled:
            if self.config.synonym_fallback:
                return _result(expand_with_synonyms(query, self.config.max_variations))
            return _result([query], fallback=True)

        key = normalize_cache_key(query)
        hit = self.cache.get(key)
        if hit is not None:
            logger.debug("Using cached query rewrite for %r", key)
            return _result(hit, cached=True)

        system_prompt, user_prompt = build_prompts(query, self.config.max_variations, context)
        try:
            raw = self._complete(system_prompt, user_prompt, self.config)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Query expansion failed, using original query: %s", exc)
            return _result([query], fallback=True)

        variations = parse_variations(raw, self.config.max_variations)
        if not variations:
            logger.warning("Query expansion returned no usable variations for %r", query)
            return _result([query], fallback=True)

        self.cache.set(key, tuple(variations))
        logger.debug("Expanded %r into %d variations", query, len(variations))
        return _result(variations)


# ---------------------------------------------------------------------------
# Result aggregation across variations
# ---------------------------------------------------------------------------


def _aggregation_key(candidate: Candidate) -> str:
    if candidate.is_web and candidate.url:
        return f"url:{normalize_url(candidate.url)}"
    return candidate.key()


def aggregate_results(
    results_by_query: Mapping[str, Sequence[Candidate]],
    max_results: int = 20,
) -> List[Candidate]:
    """Merge candidates retrieved for several query variations.

    Web candidates are keyed by URL, documents by identity key. The highest
    raw score is kept and provenance from every variation is joined. Output
    is sorted by raw score (descending, stable) and truncated.
    """
    merged: Dict[str, Candidate] = {}
    for query, candidates in results_by_query.items():
        for cand in candidates:
            key = _aggregation_key(cand)
            existing = merged.get(key)
            if existing is None:
                merged[key] = cand
                continue
            best, other = existing, cand
            if (cand.raw_score or 0.0) > (existing.raw_score or 0.0):
                best, other = cand, existing
            merged[key] = best.with_provenance(*existing.provenance, *other.provenance)

    ordered = sorted(merged.values(), key=lambda c: c.raw_score or 0.0, reverse=True)
    return ordered[: max(0, int(max_results))]


__all__ = [
    "QueryExpansionConfig",
    "ExpansionResult",
    "QueryExpander",
    "build_prompts",
    "parse_variations",
    "dedupe_case_insensitive",
    "normalize_cache_key",
    "expand_with_synonyms",
    "aggregate_results",
]
