"""Content-heuristic quality scoring for retrieved results.

Scores a candidate from four factors (length, readability, structure,
completeness) and blends them with configurable weights. Used by the
strategy filter (quality category) and the relevance orderer.

Usage:
    from src.engine.quality import QualityConfig, score_quality

    score = score_quality(candidate, QualityConfig.from_settings())
    score.overall  # 0.0 - 1.0
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from ..common.text_similarity import clamp
from .types import Candidate

logger = logging.getLogger(__name__)

_SENTENCE_END_RE = re.compile(r"[.!?]+\s")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_FORMATTING_MARKERS = ("\n-", "\n*", "\n1.", "<h", "#")


@dataclass(frozen=True)
class QualityConfig:
    content_length_weight: float = 0.25
    readability_weight: float = 0.30
    structure_weight: float = 0.25
    completeness_weight: float = 0.20

    min_content_length: int = 50
    optimal_content_length: int = 500
    max_content_length: int = 5000

    min_words_per_sentence: int = 5
    max_words_per_sentence: int = 25
    min_sentences: int = 3

    min_paragraphs: int = 1
    require_title: bool = True

    min_word_count: int = 20
    optimal_word_count: int = 200

    @classmethod
    def from_settings(cls, **overrides: Any) -> "QualityConfig":
        try:
            from ..common.config_loader import get_section

            section = get_section("quality")
            known = {k: v for k, v in section.items() if k in cls.__dataclass_fields__}
        except Exception:  # noqa: BLE001
            known = {}
        known.update(overrides)
        return cls(**known)


@dataclass(frozen=True)
class QualityMetrics:
    content_length: int
    word_count: int
    sentence_count: int
    paragraph_count: int


@dataclass(frozen=True)
class QualityScore:
    overall: float
    metrics: QualityMetrics
    factors: Dict[str, float] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Factor scores
# ---------------------------------------------------------------------------


def _readability(word_count: int, sentence_count: int, cfg: QualityConfig) -> float:
    if word_count == 0 or sentence_count == 0:
        return 0.0

    avg = word_count / sentence_count
    if avg < cfg.min_words_per_sentence:
        sentence_length = max(0.3, avg / cfg.min_words_per_sentence)
    elif avg > cfg.max_words_per_sentence:
        excess = avg - cfg.max_words_per_sentence
        sentence_length = 1.0 - min(0.5, excess / cfg.max_words_per_sentence)
    else:
        sentence_length = 1.0

    sentence_count_score = min(1.0, sentence_count / max(1, cfg.min_sentences))
    return clamp(0.6 * sentence_length + 0.4 * sentence_count_score)


def _structure(title: str, paragraph_count: int, content: str, cfg: QualityConfig) -> float:
    score = 0.0

    if not cfg.require_title:
        score += 0.3
    elif title and title.strip() and title != "Untitled":
        score += 0.3

    min_paragraphs = max(1, cfg.min_paragraphs)
    if paragraph_count >= min_paragraphs:
        score += 0.4 * min(1.0, paragraph_count / max(2, min_paragraphs))
    else:
        score += 0.4 * (paragraph_count / min_paragraphs)

    if any(marker in content for marker in _FORMATTING_MARKERS):
        score += 0.3
    elif paragraph_count > 1:
        score += 0.15

    return clamp(score)


def _length_penalized(length: int, cfg: QualityConfig) -> float:
    if length < cfg.min_content_length:
        return length / cfg.min_content_length
    if length <= cfg.optimal_content_length:
        return 1.0
    if length <= cfg.max_content_length:
        span = max(1, cfg.max_content_length - cfg.optimal_content_length)
        return 1.0 - min(0.3, (length - cfg.optimal_content_length) / span)
    return 1.0 - min(0.5, (length - cfg.max_content_length) / cfg.max_content_length)


def _content_length(length: int, cfg: QualityConfig) -> float:
    score = _length_penalized(length, cfg)
    if length > cfg.max_content_length:
        return max(0.3, score)
    return max(0.0, score)


def _completeness(length: int, word_count: int, cfg: QualityConfig) -> float:
    length_score = _length_penalized(length, cfg)

    if word_count < cfg.min_word_count:
        word_score = word_count / max(1, cfg.min_word_count)
    elif word_count <= cfg.optimal_word_count:
        word_score = 1.0
    else:
        excess = word_count - cfg.optimal_word_count
        word_score = 1.0 - min(0.2, excess / max(1, cfg.optimal_word_count))

    return clamp(0.6 * length_score + 0.4 * word_score)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def compute_metrics(content: str) -> QualityMetrics:
    words = content.split()
    sentences = max(1, len(_SENTENCE_END_RE.findall(content)) + 1)
    paragraphs = [p for p in _PARAGRAPH_SPLIT_RE.split(content) if p.strip()]
    return QualityMetrics(
        content_length=len(content),
        word_count=len(words),
        sentence_count=sentences,
        paragraph_count=max(1, len(paragraphs)),
    )


def score_quality(candidate: Candidate, config: QualityConfig | None = None) -> QualityScore:
    """Score a candidate's content quality (0.0 - 1.0) with per-factor breakdown."""
    cfg = config or QualityConfig()
    content = candidate.content or ""
    metrics = compute_metrics(content)

    factors = {
        "content_length": _content_length(metrics.content_length, cfg),
        "readability": _readability(metrics.word_count, metrics.sentence_count, cfg),
        "structure": _structure(candidate.title or "", metrics.paragraph_count, content, cfg),
        "completeness": _completeness(metrics.content_length, metrics.word_count, cfg),
    }
    overall = (
        factors["content_length"] * cfg.content_length_weight
        + factors["readability"] * cfg.readability_weight
        + factors["structure"] * cfg.structure_weight
        + factors["completeness"] * cfg.completeness_weight
    )
    return QualityScore(overall=clamp(overall), metrics=metrics, factors=factors)


class QualityScorer:
    """Callable ``(candidate) -> float`` wrapper used by filter and orderer."""

    def __init__(self, config: QualityConfig | None = None):
        self.config = config or QualityConfig()

    def __call__(self, candidate: Candidate) -> float:
        return score_quality(candidate, self.config).overall


def filter_by_quality(
    candidates: Sequence[Candidate],
    min_quality: float = 0.5,
    config: QualityConfig | None = None,
) -> List[Candidate]:
    """Keep candidates whose quality is at least ``min_quality`` (<= 0 disables)."""
    if min_quality <= 0:
        return list(candidates)
    return [c for c in candidates if score_quality(c, config).overall >= min_quality]


def sort_by_quality(candidates: Sequence[Candidate], config: QualityConfig | None = None) -> List[Candidate]:
    scored = [(score_quality(c, config).overall, c) for c in candidates]
    scored.sort(key=lambda item: item[0], reverse=True)
    return [c for _, c in scored]
