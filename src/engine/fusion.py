"""Hybrid score fusion of semantic (vector) and keyword result lists.

Each list is normalized by its own maximum so both span [0, 1], then blended
with a renormalized weight pair. A chunk found by both sources gets the sum
of its weighted contributions and is tagged ``both``.

Pipeline:
    normalize_by_max → weighted merge by identity key → stable sort
    → Jaccard dedup → min_score filter (inclusive) → truncate

Usage:
    from src.engine.fusion import fuse_results, FusionConfig

    result = fuse_results(semantic, keyword, FusionConfig.from_settings())
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple

from ..common.text_similarity import jaccard_similarity
from .ab_testing import select_variant
from .types import Candidate

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Weights
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FusionWeights:
    semantic: float = 0.6
    keyword: float = 0.4


DEFAULT_WEIGHTS = FusionWeights()

WEIGHT_PRESETS: Dict[str, FusionWeights] = {
    "balanced": FusionWeights(0.6, 0.4),
    "semantic_heavy": FusionWeights(0.8, 0.2),
    "keyword_heavy": FusionWeights(0.3, 0.7),
    "equal": FusionWeights(0.5, 0.5),
}


def normalize_weights(weights: FusionWeights) -> FusionWeights:
    """Clamp negatives to 0 and rescale to sum 1.0 (all-zero → defaults)."""
    semantic, keyword = float(weights.semantic), float(weights.keyword)
    if semantic < 0 or keyword < 0 or semantic > 1 or keyword > 1:
        logger.warning("Invalid fusion weights %s, normalizing", weights)
    semantic, keyword = max(0.0, semantic), max(0.0, keyword)
    total = semantic + keyword
    if total <= 0:
        return DEFAULT_WEIGHTS
    return FusionWeights(semantic / total, keyword / total)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FusionConfig:
    weights: FusionWeights = DEFAULT_WEIGHTS
    min_score: float = 0.3
    max_results: int = 20
    enable_deduplication: bool = True
    dedup_threshold: float = 0.85
    ab_test_enabled: bool = False
    ab_variants: Mapping[str, float] = field(
        default_factory=lambda: {"balanced": 50, "semantic_heavy": 30, "keyword_heavy": 20}
    )

    @classmethod
    def from_settings(cls, **overrides: Any) -> "FusionConfig":
        try:
            from ..common.config_loader import get_section

            cfg = get_section("fusion")
            ab = cfg.get("ab_test") or {}
            values: Dict[str, Any] = {
                "weights": FusionWeights(
                    float(cfg.get("semantic_weight", 0.6)),
                    float(cfg.get("keyword_weight", 0.4)),
                ),
                "min_score": float(cfg.get("min_score", 0.3)),
                "max_results": int(cfg.get("max_results", 20)),
                "enable_deduplication": bool(cfg.get("enable_deduplication", True)),
                "dedup_threshold": float(cfg.get("dedup_threshold", 0.85)),
                "ab_test_enabled": bool(ab.get("enabled", False)),
            }
            if ab.get("variants"):
                values["ab_variants"] = dict(ab["variants"])
        except Exception:  # noqa: BLE001
            values = {}
        values.update(overrides)
        return cls(**values)


def resolve_weights(
    config: FusionConfig,
    *,
    user_id: str | None = None,
    override: FusionWeights | None = None,
) -> Tuple[FusionWeights, str]:
    """Pick fusion weights: explicit override, then A/B bucket, then default.

    Returns (normalized weights, label) where label is ``override``, the A/B
    variant name, or ``default``.
    """
    if override is not None:
        return normalize_weights(override), "override"

    if config.ab_test_enabled and user_id:
        variant = select_variant(user_id, config.ab_variants)
        if variant and variant in WEIGHT_PRESETS:
            logger.debug("A/B fusion variant %s selected for user %s", variant, user_id)
            return WEIGHT_PRESETS[variant], variant

    return normalize_weights(config.weights), "default"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FusionResult:
    candidates: Tuple[Candidate, ...]
    weights: FusionWeights
    variant: str = "default"
    stats: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Fusion
# ---------------------------------------------------------------------------


def _raw(candidate: Candidate) -> float:
    return float(candidate.raw_score or 0.0)


def _normalized(
    candidates: Sequence[Candidate],
    score_fn: Callable[[Candidate], float] = _raw,
) -> List[Tuple[Candidate, float]]:
    if not candidates:
        return []
    scores = [score_fn(c) for c in candidates]
    top = max(scores)
    if top <= 0:
        return [(c, 0.0) for c in candidates]
    return [(c, s / top) for c, s in zip(candidates, scores)]


def normalize_by_max(candidates: Sequence[Candidate], source: str = "web") -> List[Candidate]:
    """Scale scores by the list maximum into ``combined`` and tag the source.

    Uses the filtering score when a candidate has one, so strategy penalties
    carry into the normalized value.
    """
    return [
        cand.with_scores(combined=norm).with_updates(source=source)
        for cand, norm in _normalized(
            candidates, lambda c: c.derived_scores.get("filtering", _raw(c))
        )
    ]


def _dedup_by_jaccard(candidates: Sequence[Candidate], threshold: float) -> List[Candidate]:
    kept: List[Candidate] = []
    for cand in candidates:
        for idx, existing in enumerate(kept):
            if jaccard_similarity(cand.content, existing.content) >= threshold:
                if cand.relevance > existing.relevance:
                    kept[idx] = cand
                break
        else:
            kept.append(cand)
    return kept


def fuse_results(
    semantic: Sequence[Candidate],
    keyword: Sequence[Candidate],
    config: FusionConfig | None = None,
    *,
    weights: FusionWeights | None = None,
    user_id: str | None = None,
) -> FusionResult:
    """Blend semantic and keyword candidates into one ranked list."""
    cfg = config or FusionConfig()
    start = time.perf_counter()
    eff_weights, variant = resolve_weights(cfg, user_id=user_id, override=weights)

    merged: Dict[str, Candidate] = {}
    scores: Dict[str, float] = {}

    for cand, norm in _normalized(semantic):
        key = cand.key()
        merged[key] = cand.with_updates(
            source="semantic",
            metadata={**cand.metadata, "semantic_score": cand.raw_score},
        )
        scores[key] = norm * eff_weights.semantic

    for cand, norm in _normalized(keyword):
        key = cand.key()
        contribution = norm * eff_weights.keyword
        existing = merged.get(key)
        if existing is not None:
            merged[key] = existing.with_updates(
                source="both",
                metadata={**existing.metadata, "keyword_score": cand.raw_score},
            ).with_provenance(*cand.provenance)
            scores[key] = scores[key] + contribution
        else:
            merged[key] = cand.with_updates(
                source="keyword",
                metadata={**cand.metadata, "keyword_score": cand.raw_score},
            )
            scores[key] = contribution

    fused = [merged[key].with_scores(combined=scores[key]) for key in merged]
    fused.sort(key=lambda c: c.derived_scores["combined"], reverse=True)

    if cfg.enable_deduplication:
        fused = _dedup_by_jaccard(fused, cfg.dedup_threshold)

    fused = [c for c in fused if c.derived_scores["combined"] >= cfg.min_score]
    fused = fused[: max(0, int(cfg.max_results))]

    stats = {
        "semantic_count": len(semantic),
        "keyword_count": len(keyword),
        "fused_count": len(fused),
        "weights": {"semantic": eff_weights.semantic, "keyword": eff_weights.keyword},
        "variant": variant,
        "duration_ms": (time.perf_counter() - start) * 1000,
    }
    logger.debug("Fusion completed: %s", stats)
    return FusionResult(candidates=tuple(fused), weights=eff_weights, variant=variant, stats=stats)


def precision_metrics(
    hybrid: Sequence[Candidate],
    semantic_only: Sequence[Candidate],
    keyword_only: Sequence[Candidate],
) -> Dict[str, Any]:
    """Average scores per list and the hybrid's relative improvement (percent)."""

    def _avg(values: List[float]) -> float:
        return sum(values) / len(values) if values else 0.0

    semantic_avg = _avg([float(c.raw_score or 0.0) for c in semantic_only])
    keyword_avg = _avg([float(c.raw_score or 0.0) for c in keyword_only])
    hybrid_avg = _avg([c.derived_scores.get("combined", 0.0) for c in hybrid])

    return {
        "semantic_precision": semantic_avg,
        "keyword_precision": keyword_avg,
        "hybrid_precision": hybrid_avg,
        "improvement": {
            "vs_semantic": ((hybrid_avg - semantic_avg) / semantic_avg * 100) if semantic_avg > 0 else 0.0,
            "vs_keyword": ((hybrid_avg - keyword_avg) / keyword_avg * 100) if keyword_avg > 0 else 0.0,
        },
    }
