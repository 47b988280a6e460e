"""Tests for src/engine/ordering.py - final relevance ordering.

Covers:
- relevance / quality / hybrid / chronological strategies
- Web fallback to quality when no score is available
- Freshness step table and decay
- Time budget degradation (before start and mid-loop)
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from src.engine.ordering import (
    OrderingConfig,
    config_for_strategy,
    freshness_score,
    order_candidates,
    quick_order,
)
from src.engine.types import Candidate, SourceKind

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)
ROOMY = OrderingConfig(max_processing_time_ms=10_000)


def _doc(source_id, score):
    return Candidate(source_id=source_id, source_kind=SourceKind.DOCUMENT, content=source_id, raw_score=score)


def _web(url, score, published=None):
    return Candidate(
        source_id=url,
        source_kind=SourceKind.WEB,
        url=url,
        content=url,
        raw_score=score,
        published_date=published,
    )


def _const(value):
    return lambda candidate: value


def _ids(result):
    return [c.source_id for c in result.candidates]


def _days_ago(days):
    return (NOW - timedelta(days=days)).isoformat()


class TestFreshness:
    @pytest.mark.parametrize(
        "days,expected",
        [
            (3, 1.0),
            (20, 0.9),
            (60, 0.8),
            (100, 0.7),
            (200, 1.0),
            (2000, 0.3),
        ],
    )
    def test_steps(self, days, expected):
        assert freshness_score(_days_ago(days), NOW) == pytest.approx(expected)

    def test_decay_after_last_step(self):
        assert freshness_score(_days_ago(400), NOW) == pytest.approx(1.0 - 35 / 365)

    def test_missing_and_future(self):
        assert freshness_score(None, NOW) == 0.5
        assert freshness_score("garbage", NOW) == 0.5
        assert freshness_score("2027-01-01", NOW) == 0.5

    def test_custom_steps(self):
        assert freshness_score(_days_ago(10), NOW, steps=((5, 1.0), (15, 0.4))) == 0.4


class TestStrategies:
    def test_relevance(self):
        cands = [_doc("a", 0.3), _doc("b", 0.9), _web("https://w.org", 0.6)]
        result = order_candidates(cands, ROOMY, quality_fn=_const(0.5), authority_fn=_const(0.5), now=NOW)
        assert _ids(result) == ["b", "https://w.org", "a"]
        assert result.stats.document_count == 2
        assert result.stats.web_count == 1

    def test_fused_score_preferred_over_raw(self):
        a = _doc("a", 0.9).with_scores(combined=0.2)
        b = _doc("b", 0.1).with_scores(combined=0.7)
        result = order_candidates([a, b], ROOMY, quality_fn=_const(0.5), authority_fn=_const(0.5))
        assert _ids(result) == ["b", "a"]

    def test_web_without_score_uses_quality(self):
        result = order_candidates(
            [_web("https://w.org", None)], ROOMY, quality_fn=_const(0.42), authority_fn=_const(0.5)
        )
        assert result.candidates[0].derived_scores["ordering"] == pytest.approx(0.42)

    def test_quality(self):
        scores = {"a": 0.2, "b": 0.8}
        result = order_candidates(
            [_doc("a", 0.9), _doc("b", 0.1)],
            ROOMY,
            strategy="quality",
            quality_fn=lambda c: scores[c.source_id],
            authority_fn=_const(0.5),
        )
        assert _ids(result) == ["b", "a"]

    def test_hybrid_document(self):
        result = order_candidates(
            [_doc("a", 0.8)], ROOMY, strategy="hybrid", quality_fn=_const(0.5), authority_fn=_const(0.9)
        )
        assert result.candidates[0].derived_scores["ordering"] == pytest.approx(0.71)

    def test_hybrid_web(self):
        result = order_candidates(
            [_web("https://w.org", 0.6)], ROOMY, strategy="hybrid", quality_fn=_const(0.5), authority_fn=_const(0.9)
        )
        assert result.candidates[0].derived_scores["ordering"] == pytest.approx(0.63)

    def test_hybrid_web_without_score_reweights(self):
        result = order_candidates(
            [_web("https://w.org", 0.0)], ROOMY, strategy="hybrid", quality_fn=_const(0.5), authority_fn=_const(0.9)
        )
        assert result.candidates[0].derived_scores["ordering"] == pytest.approx(0.66)

    def test_chronological(self):
        cands = [
            _web("https://old.org", 0.9, _days_ago(60)),
            _web("https://new.org", 0.1, _days_ago(2)),
            _doc("doc", 0.85),
        ]
        result = order_candidates(
            cands, ROOMY, strategy="chronological", quality_fn=_const(0.5), authority_fn=_const(0.5), now=NOW
        )
        assert _ids(result) == ["https://new.org", "doc", "https://old.org"]

    def test_ascending(self):
        cfg = OrderingConfig(max_processing_time_ms=10_000, ascending=True)
        result = order_candidates([_doc("a", 0.9), _doc("b", 0.1)], cfg, quality_fn=_const(0.5), authority_fn=_const(0.5))
        assert _ids(result) == ["b", "a"]

    def test_unknown_strategy_falls_back(self):
        assert config_for_strategy("alphabetical").strategy == "relevance"

    def test_hybrid_keeps_configured_weights(self):
        base = OrderingConfig()
        assert config_for_strategy("hybrid", base).document == base.document
        assert config_for_strategy("quality", base).document.quality == 1.0


class TestTimeBudget:
    def test_budget_spent_before_start(self):
        cands = [_doc("a", 0.2), _doc("b", 0.7)]
        result = order_candidates(
            cands, quality_fn=_const(0.5), authority_fn=_const(0.5), clock=lambda: 1.0, started_at=0.0
        )
        assert _ids(result) == ["b", "a"]
        assert result.stats.degraded
        assert result.stats.performance_warning
        assert result.stats.scored_count == 0

    def test_budget_runs_out_mid_loop(self):
        ticks = itertools.chain([0.0, 0.0], itertools.repeat(1.0))
        cands = [_doc("first", 0.1), _doc("mid", 0.5), _doc("top", 0.9)]

        result = order_candidates(
            cands,
            quality_fn=_const(0.5),
            authority_fn=_const(0.5),
            clock=lambda: next(ticks),
            started_at=0.0,
        )

        assert _ids(result) == ["first", "top", "mid"]
        assert result.stats.scored_count == 1
        assert result.stats.degraded

    def test_empty(self):
        result = order_candidates([], quality_fn=_const(0.5), authority_fn=_const(0.5))
        assert result.candidates == ()
        assert not result.stats.degraded


def test_quick_order():
    assert [c.source_id for c in quick_order([_doc("a", 0.1), _doc("b", 0.3)])] == ["b", "a"]
