"""Maximal Marginal Relevance (MMR) selection.

    MMR(c) = λ · relevance(c) − (1 − λ) · max_{s ∈ selected} sim(c, s)

Candidates are sorted by relevance (stable), the top one seeds the selection,
and the highest-MMR remaining candidate is moved over until max_results is
reached. Each remaining candidate's max-similarity is updated incrementally
against the newest selection only, so a full run is O(n²) similarity calls.

Similarity is word Jaccard over content by default. Embedding mode uses the
cosine of precomputed vectors and falls back to Jaccard for a pair where
either vector is missing.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from ..common.text_similarity import clamp, cosine_similarity, jaccard_similarity
from .types import Candidate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiversityConfig:
    enabled: bool = True
    lambda_: float = 0.7
    max_results: int = 10
    use_embedding_similarity: bool = False

    @classmethod
    def from_settings(cls, **overrides: Any) -> "DiversityConfig":
        try:
            from ..common.config_loader import get_section, load_settings

            cfg = get_section("diversity")
            values: Dict[str, Any] = {
                "enabled": bool(cfg.get("enabled", True)),
                "lambda_": float(load_settings().mmr_lambda),
                "max_results": int(cfg.get("max_results", 10)),
                "use_embedding_similarity": bool(cfg.get("use_embedding_similarity", False)),
            }
        except Exception:  # noqa: BLE001
            values = {}
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class DiversityResult:
    candidates: Tuple[Candidate, ...]
    stats: Dict[str, Any] = field(default_factory=dict)


def pair_similarity(a: Candidate, b: Candidate, use_embedding: bool = False) -> float:
    if use_embedding and a.embedding and b.embedding:
        return clamp(cosine_similarity(a.embedding, b.embedding))
    return jaccard_similarity(a.content, b.content)


def apply_mmr(candidates: Sequence[Candidate], config: DiversityConfig | None = None) -> DiversityResult:
    cfg = config or DiversityConfig()
    start = time.perf_counter()

    ranked = sorted(candidates, key=lambda c: c.relevance, reverse=True)
    limit = cfg.max_results if cfg.max_results and cfg.max_results > 0 else len(ranked)
    lam = clamp(cfg.lambda_)

    if not cfg.enabled or len(ranked) <= 1:
        selected = ranked[:limit]
        return DiversityResult(
            candidates=tuple(selected),
            stats={"original_count": len(candidates), "selected_count": len(selected), "lambda": lam},
        )

    seed = ranked[0]
    selected: List[Candidate] = [
        seed.with_scores(marginal_relevance=seed.relevance).with_updates(
            metadata={**seed.metadata, "mmr_score": seed.relevance}
        )
    ]
    remaining = list(ranked[1:])
    max_sim = [pair_similarity(c, seed, cfg.use_embedding_similarity) for c in remaining]

    while remaining and len(selected) < limit:
        best_idx = 0
        best_mmr = float("-inf")
        for idx, cand in enumerate(remaining):
            mmr = lam * cand.relevance - (1 - lam) * max_sim[idx]
            if mmr > best_mmr:
                best_mmr = mmr
                best_idx = idx

        chosen = remaining.pop(best_idx)
        chosen_sim = max_sim.pop(best_idx)
        selected.append(
            chosen.with_scores(marginal_relevance=chosen.relevance - chosen_sim).with_updates(
                metadata={**chosen.metadata, "mmr_score": best_mmr}
            )
        )
        for idx, cand in enumerate(remaining):
            sim = pair_similarity(cand, chosen, cfg.use_embedding_similarity)
            if sim > max_sim[idx]:
                max_sim[idx] = sim

    stats = {
        "original_count": len(candidates),
        "selected_count": len(selected),
        "lambda": lam,
        "duration_ms": (time.perf_counter() - start) * 1000,
    }
    logger.debug("MMR diversity selection applied: %s", stats)
    return DiversityResult(candidates=tuple(selected), stats=stats)


def diversity_metrics(candidates: Sequence[Candidate]) -> Dict[str, float]:
    """Pairwise Jaccard statistics; diversity = 1 - average similarity."""
    sims = [
        jaccard_similarity(candidates[i].content, candidates[j].content)
        for i in range(len(candidates))
        for j in range(i + 1, len(candidates))
    ]
    if not sims:
        return {"average_similarity": 0.0, "max_similarity": 0.0, "min_similarity": 0.0, "diversity": 1.0}
    avg = sum(sims) / len(sims)
    return {
        "average_similarity": avg,
        "max_similarity": max(sims),
        "min_similarity": min(sims),
        "diversity": 1.0 - avg,
    }
