"""Strategy-based filtering of web results.

A FilteringStrategy is plain data: per signal category (time range, topic,
quality, authority) a threshold for each mode plus a hard/soft switch, and a
per-domain diversity cap. No subclassing; strict/moderate/lenient are presets.

Stages (fixed order):
    1. apply_contextual_filtering → time range, then topic
    2. apply_strategy             → quality, authority, diversity cap
    3. sort by filtering score (descending, stable)

Hard filter: drop when signal < threshold.
Ranking penalty: keep, multiply the filtering score by (1 - penalty) and
record the penalty on the candidate.

Usage:
    from src.engine.filtering import apply_contextual_filtering, apply_strategy, get_strategy

    strategy = get_strategy("moderate")
    contextual = apply_contextual_filtering(web, strategy, cutoff=cutoff, topic="solar")
    result = apply_strategy(contextual.candidates, strategy)
    audit = combine_stats(contextual.stats, result.stats)
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple

from ..common.date_utils import days_between, parse_date, utcnow
from ..common.text_similarity import extract_domain
from .ab_testing import select_variant
from .types import Candidate

logger = logging.getLogger(__name__)

MODES = ("strict", "moderate", "lenient")
CATEGORIES = ("time_range", "topic", "quality", "authority")

ScoreFn = Callable[[Candidate], float]


# ---------------------------------------------------------------------------
# Strategy data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CategoryStrategy:
    enabled: bool = True
    use_hard_filter: bool = False
    strict_threshold: float = 0.8
    moderate_threshold: float = 0.7
    lenient_threshold: float = 0.6
    ranking_penalty: float = 0.3

    def threshold(self, mode: str) -> float:
        if mode == "strict":
            return self.strict_threshold
        if mode == "moderate":
            return self.moderate_threshold
        return self.lenient_threshold


@dataclass(frozen=True)
class DiversityStrategy:
    enabled: bool = True
    min_domain_diversity: float = 0.5
    max_results_per_domain: int = 3


@dataclass(frozen=True)
class FilteringStrategy:
    mode: str
    time_range: CategoryStrategy
    topic: CategoryStrategy
    quality: CategoryStrategy
    authority: CategoryStrategy
    diversity: DiversityStrategy

    def category(self, name: str) -> CategoryStrategy:
        return getattr(self, name)


def _category(hard: bool, s: float, m: float, l: float, penalty: float) -> CategoryStrategy:
    return CategoryStrategy(
        enabled=True,
        use_hard_filter=hard,
        strict_threshold=s,
        moderate_threshold=m,
        lenient_threshold=l,
        ranking_penalty=penalty,
    )


STRICT = FilteringStrategy(
    mode="strict",
    time_range=_category(True, 0.9, 0.8, 0.7, 0.5),
    topic=_category(True, 0.8, 0.7, 0.6, 0.4),
    quality=_category(True, 0.7, 0.6, 0.5, 0.3),
    authority=_category(True, 0.7, 0.6, 0.5, 0.3),
    diversity=DiversityStrategy(True, 0.7, 2),
)

MODERATE = FilteringStrategy(
    mode="moderate",
    time_range=_category(False, 0.8, 0.7, 0.6, 0.3),
    topic=_category(False, 0.7, 0.6, 0.5, 0.25),
    quality=_category(False, 0.6, 0.5, 0.4, 0.2),
    authority=_category(False, 0.6, 0.5, 0.4, 0.2),
    diversity=DiversityStrategy(True, 0.5, 3),
)

LENIENT = FilteringStrategy(
    mode="lenient",
    time_range=_category(False, 0.7, 0.6, 0.5, 0.15),
    topic=_category(False, 0.6, 0.5, 0.4, 0.15),
    quality=_category(False, 0.5, 0.4, 0.3, 0.1),
    authority=_category(False, 0.5, 0.4, 0.3, 0.1),
    diversity=DiversityStrategy(True, 0.3, 5),
)

STRATEGIES: Dict[str, FilteringStrategy] = {"strict": STRICT, "moderate": MODERATE, "lenient": LENIENT}


def get_strategy(mode: str | None) -> FilteringStrategy:
    """Preset for a mode name; unknown or empty names give ``moderate``."""
    return STRATEGIES.get((mode or "").strip().lower(), MODERATE)


def validate_strategy(strategy: FilteringStrategy) -> List[str]:
    """Return human-readable problems with a strategy (empty list = valid)."""
    errors: List[str] = []
    if strategy.mode not in MODES:
        errors.append(f"mode must be one of {', '.join(MODES)}, got {strategy.mode!r}")
    for name in CATEGORIES:
        cat = strategy.category(name)
        for attr in ("strict_threshold", "moderate_threshold", "lenient_threshold", "ranking_penalty"):
            value = getattr(cat, attr)
            if not 0.0 <= value <= 1.0:
                errors.append(f"{name}.{attr} must be in [0, 1], got {value}")
    if not 0.0 <= strategy.diversity.min_domain_diversity <= 1.0:
        errors.append(
            f"diversity.min_domain_diversity must be in [0, 1], got {strategy.diversity.min_domain_diversity}"
        )
    if strategy.diversity.max_results_per_domain <= 0:
        errors.append(
            f"diversity.max_results_per_domain must be > 0, got {strategy.diversity.max_results_per_domain}"
        )
    return errors


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FilteringConfig:
    mode: str = "moderate"
    ab_test_enabled: bool = False
    ab_variants: Mapping[str, float] = field(
        default_factory=lambda: {"strict": 33, "moderate": 34, "lenient": 33}
    )

    @classmethod
    def from_settings(cls, **overrides: Any) -> "FilteringConfig":
        try:
            from ..common.config_loader import get_section, load_settings

            cfg = get_section("filtering")
            ab = cfg.get("ab_test") or {}
            values: Dict[str, Any] = {
                "mode": load_settings().filtering_mode,
                "ab_test_enabled": bool(ab.get("enabled", False)),
            }
            if ab.get("variants"):
                values["ab_variants"] = dict(ab["variants"])
        except Exception:  # noqa: BLE001
            values = {}
        values.update(overrides)
        return cls(**values)


def resolve_strategy(
    *,
    strategy: FilteringStrategy | None = None,
    mode: str | None = None,
    user_id: str | None = None,
    config: FilteringConfig | None = None,
) -> FilteringStrategy:
    """Explicit strategy, else mode, else A/B bucket for user_id, else config mode."""
    if strategy is not None:
        return strategy
    if mode:
        return get_strategy(mode)
    cfg = config or FilteringConfig()
    if cfg.ab_test_enabled and user_id:
        variant = select_variant(user_id, cfg.ab_variants)
        if variant in STRATEGIES:
            logger.debug("A/B filtering variant %s selected for user %s", variant, user_id)
            return STRATEGIES[variant]
    return get_strategy(cfg.mode)


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

_TIME_RANGE_DAYS = {"day": 1, "d": 1, "week": 7, "w": 7, "month": 30, "m": 30, "year": 365, "y": 365}


def time_range_cutoff(time_range: str | None, now: datetime | None = None) -> datetime | None:
    """Cutoff datetime for a time-range keyword (day/week/month/year or d/w/m/y)."""
    if not time_range:
        return None
    days = _TIME_RANGE_DAYS.get(time_range.strip().lower())
    if days is None:
        return None
    return (now or utcnow()) - timedelta(days=days)


def time_range_score(
    candidate: Candidate,
    cutoff: datetime | None,
    is_strict: bool = False,
    now: datetime | None = None,
) -> float:
    if cutoff is None:
        return 1.0
    if not candidate.published_date:
        return 0.3 if is_strict else 0.6

    published = parse_date(candidate.published_date)
    if published is None:
        return 0.5

    current = now or utcnow()
    if published > current:
        return 0.0
    if published >= cutoff:
        return 1.0
    penalty = min(0.8, days_between(published, cutoff) / 365)
    return max(0.0, 1.0 - penalty)


def topic_match_score(candidate: Candidate, topic: str | None) -> float:
    if not topic:
        return 1.0
    phrase = topic.lower().strip()
    words = [w for w in re.split(r"\s+", phrase) if len(w) >= 2]
    if not words:
        return 1.0
    text = f"{(candidate.title or '').lower()} {(candidate.content or '').lower()}"
    if phrase in text:
        return 1.0
    return sum(1 for w in words if w in text) / len(words)


# ---------------------------------------------------------------------------
# Category mechanics
# ---------------------------------------------------------------------------


def _filtering_score(candidate: Candidate) -> float:
    score = candidate.derived_scores.get("filtering")
    if score is not None:
        return score
    if candidate.raw_score is not None:
        return float(candidate.raw_score)
    return 0.5


def _apply_category(
    candidates: Sequence[Candidate],
    name: str,
    signal_name: str,
    strategy: FilteringStrategy,
    signal_fn: ScoreFn,
) -> Tuple[List[Candidate], int, int]:
    """Returns (kept, hard_removed, penalized)."""
    cat = strategy.category(name)
    if not cat.enabled:
        return list(candidates), 0, 0

    threshold = cat.threshold(strategy.mode)
    kept: List[Candidate] = []
    removed = penalized = 0

    for cand in candidates:
        signal = signal_fn(cand)
        current = _filtering_score(cand)
        updated = cand.with_scores(**{signal_name: signal})

        if signal < threshold:
            if cat.use_hard_filter:
                removed += 1
                continue
            updated = updated.with_penalty(name, cat.ranking_penalty).with_scores(
                filtering=current * (1 - cat.ranking_penalty)
            )
            penalized += 1
        else:
            updated = updated.with_scores(filtering=current)
        kept.append(updated)

    return kept, removed, penalized


def _by_filtering_score(candidates: Sequence[Candidate]) -> List[Candidate]:
    return sorted(candidates, key=_filtering_score, reverse=True)


def apply_diversity_cap(candidates: Sequence[Candidate], strategy: FilteringStrategy) -> List[Candidate]:
    """Keep at most max_results_per_domain per domain, then backfill unseen domains."""
    div = strategy.diversity
    if not div.enabled:
        return list(candidates)

    ranked = _by_filtering_score(candidates)
    kept: List[Candidate] = []
    excluded: List[Candidate] = []
    per_domain: Dict[str, int] = {}

    for cand in ranked:
        domain = extract_domain(cand.url)
        if per_domain.get(domain, 0) < div.max_results_per_domain:
            kept.append(cand)
            per_domain[domain] = per_domain.get(domain, 0) + 1
        else:
            excluded.append(cand)

    unique = {extract_domain(c.url) for c in kept}
    ratio = len(unique) / max(1, len(kept))
    if kept and ratio < div.min_domain_diversity:
        needed = math.ceil(len(kept) * div.min_domain_diversity) - len(unique)
        for cand in excluded:
            if needed <= 0:
                break
            domain = extract_domain(cand.url)
            if domain not in unique:
                kept.append(cand)
                unique.add(domain)
                needed -= 1

    return kept


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FilteringStats:
    original_count: int = 0
    filtered_count: int = 0
    hard_filtered_count: int = 0
    ranking_adjusted_count: int = 0
    diversity_filtered_count: int = 0
    duration_ms: float = 0.0
    strategy: str = "moderate"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FilteringResult:
    candidates: Tuple[Candidate, ...]
    stats: FilteringStats


def apply_contextual_filtering(
    candidates: Sequence[Candidate],
    strategy: FilteringStrategy,
    *,
    cutoff: datetime | None = None,
    is_strict: bool = False,
    topic: str | None = None,
    now: datetime | None = None,
) -> FilteringResult:
    """Time-range then topic filtering, once the caller knows cutoff and topic."""
    start = time.perf_counter()
    working = [c.with_scores(filtering=_filtering_score(c)) for c in candidates]
    removed = penalized = 0

    if cutoff is not None:
        working, t_removed, t_penalized = _apply_category(
            working,
            "time_range",
            "time_range",
            strategy,
            lambda c: time_range_score(c, cutoff, is_strict, now),
        )
        removed += t_removed
        penalized += t_penalized

    if topic:
        working, p_removed, p_penalized = _apply_category(
            working, "topic", "topic_match", strategy, lambda c: topic_match_score(c, topic)
        )
        removed += p_removed
        penalized += p_penalized

    stats = FilteringStats(
        original_count=len(candidates),
        filtered_count=len(working),
        hard_filtered_count=removed,
        ranking_adjusted_count=penalized,
        duration_ms=(time.perf_counter() - start) * 1000,
        strategy=strategy.mode,
    )
    return FilteringResult(candidates=tuple(working), stats=stats)


def combine_stats(contextual: FilteringStats, strategic: FilteringStats) -> FilteringStats:
    """One audit record covering the contextual pass and the strategy pass after it."""
    return FilteringStats(
        original_count=contextual.original_count,
        filtered_count=strategic.filtered_count,
        hard_filtered_count=contextual.hard_filtered_count + strategic.hard_filtered_count,
        ranking_adjusted_count=contextual.ranking_adjusted_count + strategic.ranking_adjusted_count,
        diversity_filtered_count=strategic.diversity_filtered_count,
        duration_ms=contextual.duration_ms + strategic.duration_ms,
        strategy=strategic.strategy,
    )


def apply_strategy(
    candidates: Sequence[Candidate],
    strategy: FilteringStrategy | None = None,
    *,
    mode: str | None = None,
    user_id: str | None = None,
    config: FilteringConfig | None = None,
    quality_fn: ScoreFn | None = None,
    authority_fn: ScoreFn | None = None,
) -> FilteringResult:
    """Quality → authority → diversity cap, then sort by filtering score."""
    start = time.perf_counter()
    eff = resolve_strategy(strategy=strategy, mode=mode, user_id=user_id, config=config)

    if not candidates:
        return FilteringResult(candidates=(), stats=FilteringStats(strategy=eff.mode))

    if quality_fn is None:
        from .quality import QualityScorer

        quality_fn = QualityScorer()
    if authority_fn is None:
        from .authority import DomainAuthorityScorer

        authority_fn = DomainAuthorityScorer()

    working = [c.with_scores(filtering=_filtering_score(c)) for c in candidates]
    original = len(working)

    working, q_removed, q_penalized = _apply_category(working, "quality", "quality", eff, quality_fn)
    working, a_removed, a_penalized = _apply_category(working, "authority", "authority", eff, authority_fn)

    before_diversity = len(working)
    working = apply_diversity_cap(working, eff)
    diversity_removed = before_diversity - len(working)

    working = _by_filtering_score(working)

    stats = FilteringStats(
        original_count=original,
        filtered_count=len(working),
        hard_filtered_count=q_removed + a_removed,
        ranking_adjusted_count=q_penalized + a_penalized,
        diversity_filtered_count=diversity_removed,
        duration_ms=(time.perf_counter() - start) * 1000,
        strategy=eff.mode,
    )
    logger.debug("Filtering strategy applied: %s", stats)
    return FilteringResult(candidates=tuple(working), stats=stats)


def with_mode(strategy: FilteringStrategy, mode: str) -> FilteringStrategy:
    """Same thresholds table evaluated under a different mode."""
    return replace(strategy, mode=mode)
