"""Tests for src/engine/fusion.py - hybrid semantic/keyword score fusion.

Covers:
- Per-list max normalization and weighted blending
- ``both`` tagging for chunks found by both sources
- Inclusive min_score filter and truncation
- Weight normalization and A/B variant selection
- Web normalization by list max
"""

import pytest

from src.engine.fusion import (
    DEFAULT_WEIGHTS,
    WEIGHT_PRESETS,
    FusionConfig,
    FusionWeights,
    fuse_results,
    normalize_by_max,
    normalize_weights,
    precision_metrics,
    resolve_weights,
)
from src.engine.types import Candidate, Provenance, RetrievalSource, SourceKind


def _doc(source_id, score, content=None, source=RetrievalSource.VECTOR):
    return Candidate(
        source_id=source_id,
        source_kind=SourceKind.DOCUMENT,
        chunk_index=0,
        content=content or f"unique passage about {source_id}",
        raw_score=score,
        provenance=(Provenance("q", source),),
    )


def _web(url, score):
    return Candidate(source_id=url, source_kind=SourceKind.WEB, url=url, content=f"page {url}", raw_score=score)


class TestNormalizeWeights:
    def test_already_normalized(self):
        assert normalize_weights(FusionWeights(0.6, 0.4)) == FusionWeights(0.6, 0.4)

    def test_rescales(self):
        w = normalize_weights(FusionWeights(2.0, 2.0))
        assert w.semantic == pytest.approx(0.5)
        assert w.keyword == pytest.approx(0.5)

    def test_negative_clamped(self):
        assert normalize_weights(FusionWeights(-1.0, 1.0)) == FusionWeights(0.0, 1.0)

    def test_all_zero_gives_defaults(self):
        assert normalize_weights(FusionWeights(0.0, 0.0)) == DEFAULT_WEIGHTS


class TestResolveWeights:
    def test_override_wins(self):
        weights, label = resolve_weights(FusionConfig(), override=FusionWeights(0.7, 0.3))
        assert label == "override"
        assert weights.semantic == pytest.approx(0.7)

    def test_ab_variant(self):
        cfg = FusionConfig(ab_test_enabled=True, ab_variants={"keyword_heavy": 100})
        weights, label = resolve_weights(cfg, user_id="user-1")
        assert label == "keyword_heavy"
        assert weights == WEIGHT_PRESETS["keyword_heavy"]

    def test_ab_ignored_without_user(self):
        cfg = FusionConfig(ab_test_enabled=True, ab_variants={"keyword_heavy": 100})
        assert resolve_weights(cfg)[1] == "default"


class TestFuseResults:
    def test_blend_and_both_tag(self):
        semantic = [_doc("a", 0.8), _doc("b", 0.4)]
        keyword = [_doc("a", 4.0, source=RetrievalSource.KEYWORD), _doc("c", 2.0, source=RetrievalSource.KEYWORD)]

        result = fuse_results(semantic, keyword, FusionConfig(min_score=0.25))

        ids = [c.source_id for c in result.candidates]
        assert ids == ["a", "b"]  # c = 0.5 * 0.4 = 0.2 < 0.25
        a, b = result.candidates
        assert a.source == "both"
        assert a.derived_scores["combined"] == pytest.approx(1.0)
        assert a.metadata["semantic_score"] == 0.8
        assert a.metadata["keyword_score"] == 4.0
        assert {p.source for p in a.provenance} == {RetrievalSource.VECTOR, RetrievalSource.KEYWORD}
        assert b.source == "semantic"
        assert b.derived_scores["combined"] == pytest.approx(0.3)

    def test_custom_weights_order(self):
        semantic = [_doc("x", 1.0)]
        keyword = [_doc("y", 1.0, source=RetrievalSource.KEYWORD)]

        result = fuse_results(semantic, keyword, FusionConfig(min_score=0.0), weights=FusionWeights(0.7, 0.3))

        assert [c.source_id for c in result.candidates] == ["x", "y"]
        assert result.candidates[0].derived_scores["combined"] == pytest.approx(0.7)
        assert result.candidates[1].derived_scores["combined"] == pytest.approx(0.3)
        assert result.variant == "override"

    def test_keyword_part_is_normalized_by_list_max(self):
        """x's keyword 0.5 is scaled by the keyword list max (1.0), not by itself."""
        result = fuse_results(
            [_doc("x", 1.0)],
            [_doc("x", 0.5, source=RetrievalSource.KEYWORD), _doc("y", 1.0, source=RetrievalSource.KEYWORD)],
            FusionConfig(min_score=0.0),
            weights=FusionWeights(0.7, 0.3),
        )

        scored = [(c.source_id, c.derived_scores["combined"]) for c in result.candidates]
        assert [sid for sid, _ in scored] == ["x", "y"]
        assert scored[0][1] == pytest.approx(0.85)
        assert scored[1][1] == pytest.approx(0.3)
        assert result.candidates[0].source == "both"

    def test_min_score_is_inclusive(self):
        result = fuse_results([_doc("x", 1.0)], [], FusionConfig(min_score=0.6))
        assert len(result.candidates) == 1

    def test_keyword_only(self):
        result = fuse_results([], [_doc("k", 5.0, source=RetrievalSource.KEYWORD)], FusionConfig(min_score=0.0))
        assert result.candidates[0].source == "keyword"
        assert result.candidates[0].derived_scores["combined"] == pytest.approx(0.4)

    def test_jaccard_dedup_keeps_higher(self):
        text = "heat pumps move heat from outside air into the house"
        semantic = [_doc("a", 1.0, content=text), _doc("b", 0.9, content=text)]
        result = fuse_results(semantic, [], FusionConfig(min_score=0.0))
        assert [c.source_id for c in result.candidates] == ["a"]

    def test_truncates(self):
        semantic = [_doc(f"d{i}", 1.0 - i * 0.01) for i in range(10)]
        result = fuse_results(semantic, [], FusionConfig(min_score=0.0, max_results=4))
        assert len(result.candidates) == 4

    def test_empty_inputs(self):
        result = fuse_results([], [])
        assert result.candidates == ()
        assert result.stats["fused_count"] == 0


class TestNormalizeByMax:
    def test_scales_and_tags(self):
        out = normalize_by_max([_web("https://a.org", 0.5), _web("https://b.org", 0.25)])
        assert [c.derived_scores["combined"] for c in out] == [pytest.approx(1.0), pytest.approx(0.5)]
        assert all(c.source == "web" for c in out)

    def test_uses_filtering_score(self):
        penalized = _web("https://a.org", 0.8).with_scores(filtering=0.4)
        clean = _web("https://b.org", 0.8)
        out = normalize_by_max([penalized, clean])
        assert out[0].derived_scores["combined"] == pytest.approx(0.5)
        assert out[1].derived_scores["combined"] == pytest.approx(1.0)

    def test_all_zero(self):
        out = normalize_by_max([_web("https://a.org", 0.0)])
        assert out[0].derived_scores["combined"] == 0.0


def test_precision_metrics():
    hybrid = [_doc("a", 0.5).with_scores(combined=0.9)]
    metrics = precision_metrics(hybrid, [_doc("a", 0.6)], [_doc("a", 0.3)])
    assert metrics["hybrid_precision"] == pytest.approx(0.9)
    assert metrics["improvement"]["vs_semantic"] == pytest.approx(50.0)
    assert metrics["improvement"]["vs_keyword"] == pytest.approx(200.0)
