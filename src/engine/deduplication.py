"""Exact and near-duplicate removal across retrieval sources.

Phases (each operates on the survivors of the previous one):
    1. Identity merge   → candidates sharing kind + source id (+ chunk) collapse
    2. Exact duplicates → equal normalized-content hash, verified by
                          character similarity >= exact_threshold
    3. Near duplicates  → pairwise fuzzy similarity >= near_threshold
                          (only when near_threshold < 1.0)
    4. Similarity pass  → pairwise fuzzy similarity >= similarity_threshold
                          (only when similarity_threshold < near_threshold)

Whenever two candidates collapse, the one with the strictly higher raw score
wins; on ties the earlier one is kept. Pairwise passes are O(n²); callers keep
n small through top-K limits.

Usage:
    from src.engine.deduplication import deduplicate, DeduplicationConfig

    result = deduplicate(candidates, DeduplicationConfig.from_settings())
    result.candidates, result.stats
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Sequence, Tuple

from ..common.text_similarity import (
    character_similarity,
    content_hash,
    fuzzy_similarity,
    jaccard_similarity,
)
from .types import Candidate, merge_by_key

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeduplicationConfig:
    enabled: bool = True
    exact_threshold: float = 1.0
    near_threshold: float = 0.95
    similarity_threshold: float = 0.85
    use_content_hash: bool = True
    use_fuzzy_matching: bool = True
    preserve_highest_score: bool = True

    @classmethod
    def from_settings(cls, **overrides: Any) -> "DeduplicationConfig":
        try:
            from ..common.config_loader import get_section

            section = get_section("deduplication")
            values: Dict[str, Any] = {
                k: v for k, v in section.items() if k in cls.__dataclass_fields__
            }
        except Exception:  # noqa: BLE001
            values = {}
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class DeduplicationStats:
    original_count: int = 0
    deduplicated_count: int = 0
    exact_removed: int = 0
    near_removed: int = 0
    similarity_removed: int = 0
    total_removed: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DeduplicationResult:
    candidates: Tuple[Candidate, ...]
    stats: DeduplicationStats


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


def candidate_similarity(a: Candidate, b: Candidate, use_fuzzy: bool = True) -> float:
    """Similarity of two candidates; identical identity keys score 1.0."""
    if a.key() == b.key():
        return 1.0
    if use_fuzzy:
        return fuzzy_similarity(a.content, b.content)
    return jaccard_similarity(a.content, b.content)


def _score(candidate: Candidate) -> float:
    return float(candidate.raw_score or 0.0)


def _prefer(newcomer: Candidate, existing: Candidate, preserve_highest: bool) -> bool:
    return preserve_highest and _score(newcomer) > _score(existing)


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------


def _remove_exact(
    candidates: Sequence[Candidate],
    threshold: float,
    preserve_highest: bool,
) -> List[Candidate]:
    kept: List[Candidate] = []
    index_by_hash: Dict[str, int] = {}

    for cand in candidates:
        digest = content_hash(cand.content)
        idx = index_by_hash.get(digest)
        if idx is None:
            index_by_hash[digest] = len(kept)
            kept.append(cand)
            continue

        existing = kept[idx]
        if character_similarity(cand.content, existing.content) >= threshold:
            if _prefer(cand, existing, preserve_highest):
                kept[idx] = cand.with_provenance(*existing.provenance)
            else:
                kept[idx] = existing.with_provenance(*cand.provenance)
        else:
            # Hash collision that failed verification: keep both.
            kept.append(cand)

    return kept


def _collapse(earlier: Candidate, later: Candidate, preserve_highest: bool) -> Candidate:
    if _prefer(later, earlier, preserve_highest):
        return later.with_provenance(*earlier.provenance)
    return earlier.with_provenance(*later.provenance)


def _best_match(
    cand: Candidate,
    accepted: Sequence[Candidate],
    threshold: float,
    use_fuzzy: bool,
    skip: int = -1,
) -> int:
    best_idx = -1
    best_sim = 0.0
    for idx, existing in enumerate(accepted):
        if idx == skip:
            continue
        sim = candidate_similarity(cand, existing, use_fuzzy)
        if sim >= threshold and sim > best_sim:
            best_sim = sim
            best_idx = idx
    return best_idx


def _remove_similar(
    candidates: Sequence[Candidate],
    threshold: float,
    use_fuzzy: bool,
    preserve_highest: bool,
) -> List[Candidate]:
    accepted: List[Candidate] = []

    for cand in candidates:
        best_idx = _best_match(cand, accepted, threshold, use_fuzzy)
        if best_idx < 0:
            accepted.append(cand)
            continue

        match = accepted[best_idx]
        accepted[best_idx] = _collapse(match, cand, preserve_highest)
        winner = accepted[best_idx]
        if winner.key() == match.key() and winner.content == match.content:
            continue

        # The new winner may match other survivors: collapse until no accepted
        # pair is at or above the threshold.
        idx = best_idx
        while True:
            other = _best_match(accepted[idx], accepted, threshold, use_fuzzy, skip=idx)
            if other < 0:
                break
            keep, drop = min(idx, other), max(idx, other)
            accepted[keep] = _collapse(accepted[keep], accepted[drop], preserve_highest)
            del accepted[drop]
            idx = keep

    return accepted


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def deduplicate(
    candidates: Sequence[Candidate],
    config: DeduplicationConfig | None = None,
) -> DeduplicationResult:
    """Remove exact and near duplicates. Input order is preserved for survivors."""
    cfg = config or DeduplicationConfig()
    start = time.perf_counter()
    original = len(candidates)

    if not cfg.enabled or original <= 1:
        return DeduplicationResult(
            candidates=tuple(candidates),
            stats=DeduplicationStats(original_count=original, deduplicated_count=original),
        )

    working = merge_by_key(candidates)
    exact_removed = original - len(working)

    if cfg.use_content_hash:
        before = len(working)
        working = _remove_exact(working, cfg.exact_threshold, cfg.preserve_highest_score)
        exact_removed += before - len(working)

    near_removed = 0
    if cfg.near_threshold < 1.0:
        before = len(working)
        working = _remove_similar(
            working, cfg.near_threshold, cfg.use_fuzzy_matching, cfg.preserve_highest_score
        )
        near_removed = before - len(working)

    similarity_removed = 0
    if cfg.similarity_threshold < cfg.near_threshold:
        before = len(working)
        working = _remove_similar(
            working, cfg.similarity_threshold, cfg.use_fuzzy_matching, cfg.preserve_highest_score
        )
        similarity_removed = before - len(working)

    stats = DeduplicationStats(
        original_count=original,
        deduplicated_count=len(working),
        exact_removed=exact_removed,
        near_removed=near_removed,
        similarity_removed=similarity_removed,
        total_removed=exact_removed + near_removed + similarity_removed,
        duration_ms=(time.perf_counter() - start) * 1000,
    )
    logger.debug("Deduplication completed: %s", stats)
    return DeduplicationResult(candidates=tuple(working), stats=stats)


def quick_deduplicate(candidates: Sequence[Candidate], threshold: float = 0.95) -> List[Candidate]:
    """Single hash-bucketed pass verified with word Jaccard. Cheaper than deduplicate()."""
    kept: List[Candidate] = []
    index_by_hash: Dict[str, int] = {}

    for cand in candidates:
        digest = content_hash(cand.content)
        idx = index_by_hash.get(digest)
        if idx is None:
            index_by_hash[digest] = len(kept)
            kept.append(cand)
        elif jaccard_similarity(cand.content, kept[idx].content) >= threshold:
            if _score(cand) > _score(kept[idx]):
                kept[idx] = cand
        else:
            kept.append(cand)

    return kept
