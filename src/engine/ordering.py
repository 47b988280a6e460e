"""Final relevance ordering of pipeline output.

Strategies:
    relevance / score → fused (or raw) score; web results without a positive
                        score fall back to quality
    quality           → quality scorer output
    chronological     → freshness decay (web only; documents use score)
    hybrid            → documents: score·0.7 + quality·0.3
                        web: score·0.5 + quality·0.3 + authority·0.2, with
                        quality/authority re-weighted by their share when the
                        score is missing

The orderer runs under a wall-clock budget. If the budget is already spent
when ordering starts, everything is sorted by raw score. If it runs out part
way, the unprocessed remainder is sorted by raw score and appended after the
scored head. Ordering degrades; it never raises for time.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Sequence, Tuple

from ..common.date_utils import days_between, parse_date, utcnow
from ..common.text_similarity import clamp
from .types import Candidate

logger = logging.getLogger(__name__)

STRATEGIES = ("relevance", "score", "quality", "hybrid", "chronological")

ScoreFn = Callable[[Candidate], float]

DEFAULT_FRESHNESS_STEPS: Tuple[Tuple[float, float], ...] = (
    (7, 1.0),
    (30, 0.9),
    (90, 0.8),
    (180, 0.7),
    (365, 1.0),
)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentWeights:
    score: float = 0.7
    quality: float = 0.3


@dataclass(frozen=True)
class WebWeights:
    score: float = 0.5
    quality: float = 0.3
    authority: float = 0.2


ORDERING_PRESETS: Dict[str, Tuple[DocumentWeights, WebWeights]] = {
    "relevance": (DocumentWeights(1.0, 0.0), WebWeights(1.0, 0.0, 0.0)),
    "score": (DocumentWeights(1.0, 0.0), WebWeights(1.0, 0.0, 0.0)),
    "quality": (DocumentWeights(0.0, 1.0), WebWeights(0.0, 1.0, 0.0)),
    "hybrid": (DocumentWeights(0.7, 0.3), WebWeights(0.5, 0.3, 0.2)),
    "chronological": (DocumentWeights(0.0, 0.0), WebWeights(0.0, 0.0, 0.0)),
}


@dataclass(frozen=True)
class OrderingConfig:
    strategy: str = "relevance"
    max_processing_time_ms: float = 50.0
    ascending: bool = False
    document: DocumentWeights = DocumentWeights()
    web: WebWeights = WebWeights()
    freshness_steps: Tuple[Tuple[float, float], ...] = DEFAULT_FRESHNESS_STEPS
    freshness_floor: float = 0.3

    @classmethod
    def from_settings(cls, **overrides: Any) -> "OrderingConfig":
        try:
            from ..common.config_loader import get_section, load_settings

            cfg = get_section("ordering")
            doc = cfg.get("document") or {}
            web = cfg.get("web") or {}
            fresh = cfg.get("freshness") or {}
            values: Dict[str, Any] = {
                "strategy": load_settings().ordering_strategy,
                "max_processing_time_ms": float(cfg.get("max_processing_time_ms", 50)),
                "ascending": bool(cfg.get("ascending", False)),
                "document": DocumentWeights(
                    float(doc.get("score_weight", 0.7)),
                    float(doc.get("quality_weight", 0.3)),
                ),
                "web": WebWeights(
                    float(web.get("score_weight", 0.5)),
                    float(web.get("quality_weight", 0.3)),
                    float(web.get("authority_weight", 0.2)),
                ),
                "freshness_floor": float(fresh.get("floor", 0.3)),
            }
            if fresh.get("steps"):
                values["freshness_steps"] = tuple(
                    (float(days), float(score)) for days, score in fresh["steps"]
                )
        except Exception:  # noqa: BLE001
            values = {}
        values.update(overrides)
        return cls(**values)


def config_for_strategy(strategy: str, base: OrderingConfig | None = None) -> OrderingConfig:
    """Apply a strategy preset; hybrid keeps the configured weights."""
    cfg = base or OrderingConfig()
    if strategy not in ORDERING_PRESETS:
        logger.warning("Unknown ordering strategy %r, using relevance", strategy)
        strategy = "relevance"
    if strategy == "hybrid":
        return replace(cfg, strategy=strategy)
    doc, web = ORDERING_PRESETS[strategy]
    return replace(cfg, strategy=strategy, document=doc, web=web)


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


def freshness_score(
    published_date: Any,
    now: datetime | None = None,
    steps: Sequence[Tuple[float, float]] = DEFAULT_FRESHNESS_STEPS,
    floor: float = 0.3,
) -> float:
    """Step table for recent dates, linear decay to ``floor`` after the last step.

    Missing, unparseable or future dates score a neutral 0.5.
    """
    published = parse_date(published_date)
    if published is None:
        return 0.5
    current = now or utcnow()
    if published > current:
        return 0.5

    age = days_between(published, current)
    for max_days, score in steps:
        if age <= max_days:
            return score

    last = steps[-1][0] if steps else 365.0
    return max(floor, 1.0 - (age - last) / 365.0)


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderingStats:
    document_count: int = 0
    web_count: int = 0
    scored_count: int = 0
    duration_ms: float = 0.0
    strategy: str = "relevance"
    performance_warning: bool = False
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class OrderingResult:
    candidates: Tuple[Candidate, ...]
    stats: OrderingStats = field(default_factory=OrderingStats)


def _raw_sort_key(candidate: Candidate) -> float:
    return float(candidate.raw_score or 0.0)


def _score_document(cand: Candidate, cfg: OrderingConfig, quality_fn: ScoreFn) -> Candidate:
    score = cand.relevance
    strategy = cfg.strategy

    if strategy == "quality":
        quality = quality_fn(cand)
        return cand.with_scores(quality=quality, ordering=quality)
    if strategy == "hybrid":
        quality = quality_fn(cand)
        return cand.with_scores(
            quality=quality,
            ordering=score * cfg.document.score + quality * cfg.document.quality,
        )
    # relevance, score, and chronological (documents carry no date)
    return cand.with_scores(ordering=score)


def _score_web(
    cand: Candidate,
    cfg: OrderingConfig,
    quality_fn: ScoreFn,
    authority_fn: ScoreFn,
    now: datetime,
) -> Candidate:
    score = cand.relevance
    strategy = cfg.strategy

    if strategy == "chronological":
        fresh = freshness_score(cand.published_date, now, cfg.freshness_steps, cfg.freshness_floor)
        return cand.with_scores(freshness=fresh, ordering=fresh)

    if strategy == "quality":
        quality = quality_fn(cand)
        return cand.with_scores(quality=quality, ordering=quality)

    if strategy == "hybrid":
        quality = quality_fn(cand)
        authority = authority_fn(cand)
        weights = cfg.web
        if score > 0:
            ordering = score * weights.score + quality * weights.quality + authority * weights.authority
        else:
            total = weights.quality + weights.authority
            if total > 0:
                ordering = quality * (weights.quality / total) + authority * (weights.authority / total)
            else:
                ordering = quality
        return cand.with_scores(quality=quality, authority=authority, ordering=ordering)

    # relevance / score
    if score > 0:
        return cand.with_scores(ordering=score)
    quality = quality_fn(cand)
    return cand.with_scores(quality=quality, ordering=quality)


def order_candidates(
    candidates: Sequence[Candidate],
    config: OrderingConfig | None = None,
    *,
    strategy: str | None = None,
    quality_fn: ScoreFn | None = None,
    authority_fn: ScoreFn | None = None,
    now: datetime | None = None,
    clock: Callable[[], float] = time.perf_counter,
    started_at: float | None = None,
) -> OrderingResult:
    """Order candidates by the configured strategy within the time budget.

    ``started_at`` lets the caller charge time already spent (same clock) to
    the budget.
    """
    cfg = config or OrderingConfig()
    if strategy:
        cfg = config_for_strategy(strategy, cfg)
    elif cfg.strategy not in STRATEGIES:
        cfg = config_for_strategy(cfg.strategy, cfg)

    start = clock() if started_at is None else started_at
    budget_secs = max(0.0, cfg.max_processing_time_ms) / 1000.0
    reverse = not cfg.ascending
    current = now or utcnow()

    if quality_fn is None:
        from .quality import QualityScorer

        quality_fn = QualityScorer()
    if authority_fn is None:
        from .authority import DomainAuthorityScorer

        authority_fn = DomainAuthorityScorer()

    doc_count = sum(1 for c in candidates if not c.is_web)
    web_count = len(candidates) - doc_count

    def _elapsed() -> float:
        return clock() - start

    if candidates and _elapsed() > budget_secs:
        logger.warning(
            "Ordering time limit reached before start (%.1fms), using raw score ordering",
            _elapsed() * 1000,
        )
        ordered = sorted(
            (c.with_scores(ordering=_raw_sort_key(c)) for c in candidates),
            key=_raw_sort_key,
            reverse=reverse,
        )
        stats = OrderingStats(
            document_count=doc_count,
            web_count=web_count,
            scored_count=0,
            duration_ms=_elapsed() * 1000,
            strategy=cfg.strategy,
            performance_warning=True,
            degraded=True,
        )
        return OrderingResult(candidates=tuple(ordered), stats=stats)

    scored: List[Candidate] = []
    remainder: List[Candidate] = []
    for idx, cand in enumerate(candidates):
        if _elapsed() > budget_secs:
            logger.warning(
                "Ordering time limit reached during processing (%d/%d scored)", idx, len(candidates)
            )
            remainder = list(candidates[idx:])
            break
        if cand.is_web:
            scored.append(_score_web(cand, cfg, quality_fn, authority_fn, current))
        else:
            scored.append(_score_document(cand, cfg, quality_fn))

    scored.sort(key=lambda c: c.derived_scores.get("ordering", 0.0), reverse=reverse)
    tail = sorted(remainder, key=_raw_sort_key, reverse=reverse)
    ordered = scored + [c.with_scores(ordering=clamp(_raw_sort_key(c))) for c in tail]

    duration = _elapsed()
    stats = OrderingStats(
        document_count=doc_count,
        web_count=web_count,
        scored_count=len(scored),
        duration_ms=duration * 1000,
        strategy=cfg.strategy,
        performance_warning=duration > budget_secs,
        degraded=bool(remainder),
    )
    if stats.performance_warning:
        logger.warning("Ordering exceeded target time: %.1fms > %.1fms", duration * 1000, cfg.max_processing_time_ms)
    logger.debug("Candidates ordered: %s", stats)
    return OrderingResult(candidates=tuple(ordered), stats=stats)


def quick_order(candidates: Sequence[Candidate]) -> List[Candidate]:
    """Score-only descending sort, no scorers and no budget."""
    return sorted(candidates, key=lambda c: c.relevance, reverse=True)
