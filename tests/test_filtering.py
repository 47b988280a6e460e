"""Tests for src/engine/filtering.py - strategy-based web result filtering.

Covers:
- Presets and strategy resolution (explicit, mode, A/B, default)
- Time-range and topic signals
- Hard filter vs ranking penalty
- Domain diversity cap with backfill
- Stats accounting
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from src.engine.filtering import (
    LENIENT,
    MODERATE,
    STRICT,
    FilteringConfig,
    apply_contextual_filtering,
    apply_diversity_cap,
    apply_strategy,
    combine_stats,
    get_strategy,
    resolve_strategy,
    time_range_cutoff,
    time_range_score,
    topic_match_score,
    validate_strategy,
    with_mode,
)
from src.engine.types import Candidate, SourceKind

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _web(url, score=0.8, *, published=None, content="Solar power and photovoltaic panels.", title="Solar"):
    return Candidate(
        source_id=url,
        source_kind=SourceKind.WEB,
        url=url,
        title=title,
        content=content,
        raw_score=score,
        published_date=published,
    )


def _const(value):
    return lambda candidate: value


class TestPresets:
    def test_get_strategy(self):
        assert get_strategy("strict") is STRICT
        assert get_strategy("LENIENT") is LENIENT
        assert get_strategy("unknown") is MODERATE
        assert get_strategy(None) is MODERATE

    def test_thresholds_follow_mode(self):
        assert STRICT.time_range.threshold("strict") == 0.9
        assert MODERATE.quality.threshold("moderate") == 0.5
        assert LENIENT.authority.threshold("lenient") == 0.3

    def test_only_strict_uses_hard_filters(self):
        assert STRICT.quality.use_hard_filter
        assert not MODERATE.quality.use_hard_filter
        assert not LENIENT.topic.use_hard_filter

    def test_presets_are_valid(self):
        for preset in (STRICT, MODERATE, LENIENT):
            assert validate_strategy(preset) == []

    def test_validate_reports_problems(self):
        broken = replace(
            MODERATE,
            quality=replace(MODERATE.quality, ranking_penalty=1.5),
            diversity=replace(MODERATE.diversity, max_results_per_domain=0),
        )
        errors = validate_strategy(broken)
        assert any("quality.ranking_penalty" in e for e in errors)
        assert any("max_results_per_domain" in e for e in errors)

    def test_with_mode(self):
        assert with_mode(MODERATE, "strict").quality.threshold("strict") == 0.6


class TestResolveStrategy:
    def test_explicit_strategy_wins(self):
        assert resolve_strategy(strategy=LENIENT, mode="strict") is LENIENT

    def test_mode(self):
        assert resolve_strategy(mode="strict") is STRICT

    def test_ab_assignment(self):
        cfg = FilteringConfig(ab_test_enabled=True, ab_variants={"lenient": 100})
        assert resolve_strategy(user_id="u1", config=cfg) is LENIENT

    def test_default_from_config(self):
        assert resolve_strategy(config=FilteringConfig(mode="strict")) is STRICT
        assert resolve_strategy(config=FilteringConfig()) is MODERATE


class TestTimeRangeSignal:
    def test_cutoff(self):
        assert time_range_cutoff("week", NOW) == NOW - timedelta(days=7)
        assert time_range_cutoff("y", NOW) == NOW - timedelta(days=365)
        assert time_range_cutoff("decade", NOW) is None
        assert time_range_cutoff(None, NOW) is None

    def test_no_cutoff(self):
        assert time_range_score(_web("https://a.org"), None) == 1.0

    def test_missing_date(self):
        cutoff = NOW - timedelta(days=30)
        assert time_range_score(_web("https://a.org"), cutoff, is_strict=True, now=NOW) == 0.3
        assert time_range_score(_web("https://a.org"), cutoff, is_strict=False, now=NOW) == 0.6

    def test_unparseable_date(self):
        cutoff = NOW - timedelta(days=30)
        assert time_range_score(_web("https://a.org", published="not a date"), cutoff, now=NOW) == 0.5

    def test_future_date(self):
        cutoff = NOW - timedelta(days=30)
        assert time_range_score(_web("https://a.org", published="2026-03-01"), cutoff, now=NOW) == 0.0

    def test_inside_window(self):
        cutoff = NOW - timedelta(days=30)
        assert time_range_score(_web("https://a.org", published="2025-12-20"), cutoff, now=NOW) == 1.0

    def test_outside_window_decays(self):
        cutoff = NOW - timedelta(days=30)
        published = (cutoff - timedelta(days=73)).isoformat()
        score = time_range_score(_web("https://a.org", published=published), cutoff, now=NOW)
        assert score == pytest.approx(0.8)

    def test_decay_capped(self):
        cutoff = NOW - timedelta(days=30)
        score = time_range_score(_web("https://a.org", published="2000-01-01"), cutoff, now=NOW)
        assert score == pytest.approx(0.2)


class TestTopicSignal:
    def test_no_topic(self):
        assert topic_match_score(_web("https://a.org"), None) == 1.0

    def test_exact_phrase(self):
        assert topic_match_score(_web("https://a.org"), "Solar Power") == 1.0

    def test_partial_words(self):
        assert topic_match_score(_web("https://a.org"), "solar wind") == pytest.approx(0.5)

    def test_short_words_only(self):
        assert topic_match_score(_web("https://a.org"), "a") == 1.0


class TestContextualFiltering:
    def test_soft_penalty_recorded(self):
        cutoff = NOW - timedelta(days=30)
        out = apply_contextual_filtering([_web("https://a.org", 0.8)], MODERATE, cutoff=cutoff, now=NOW).candidates

        cand = out[0]
        assert cand.derived_scores["time_range"] == 0.6
        assert cand.penalties == {"time_range": 0.3}
        assert cand.derived_scores["filtering"] == pytest.approx(0.56)

    def test_strict_hard_filter_drops(self):
        cutoff = NOW - timedelta(days=30)
        fresh = _web("https://a.org", published="2025-12-28")
        undated = _web("https://b.org")
        out = apply_contextual_filtering([fresh, undated], STRICT, cutoff=cutoff, is_strict=True, now=NOW).candidates
        assert [c.url for c in out] == ["https://a.org"]

    def test_topic_penalty(self):
        out = apply_contextual_filtering(
            [_web("https://a.org", 1.0, content="Wind farms offshore", title="Wind")],
            MODERATE,
            topic="solar panels",
        ).candidates
        assert out[0].derived_scores["topic_match"] == 0.0
        assert out[0].penalties["topic"] == 0.25
        assert out[0].derived_scores["filtering"] == pytest.approx(0.75)

    def test_no_context_keeps_scores(self):
        out = apply_contextual_filtering([_web("https://a.org", 0.7)], MODERATE).candidates
        assert out[0].derived_scores["filtering"] == pytest.approx(0.7)
        assert out[0].penalties == {}

    def test_stats_count_removed_and_penalized(self):
        cutoff = NOW - timedelta(days=30)
        fresh = _web("https://a.org", published="2025-12-28", content="Wind farms offshore")
        undated = _web("https://b.org")
        result = apply_contextual_filtering(
            [fresh, undated], STRICT, cutoff=cutoff, is_strict=True, topic="solar panels", now=NOW
        )

        # undated fails the time range, the wind page fails the topic
        assert result.candidates == ()
        assert result.stats.original_count == 2
        assert result.stats.filtered_count == 0
        assert result.stats.hard_filtered_count == 2
        assert result.stats.strategy == "strict"

    def test_soft_penalty_is_counted(self):
        result = apply_contextual_filtering(
            [_web("https://a.org", 0.8)], MODERATE, cutoff=NOW - timedelta(days=30), now=NOW
        )
        assert result.stats.ranking_adjusted_count == 1
        assert result.stats.hard_filtered_count == 0

    def test_combined_with_strategy_stats(self):
        contextual = apply_contextual_filtering(
            [_web("https://a.org"), _web("https://b.org", published="2025-12-28")],
            STRICT,
            cutoff=NOW - timedelta(days=30),
            is_strict=True,
            now=NOW,
        )
        result = apply_strategy(contextual.candidates, STRICT, quality_fn=_const(0.1), authority_fn=_const(0.9))

        audit = combine_stats(contextual.stats, result.stats)
        assert audit.original_count == 2
        assert audit.filtered_count == 0
        assert audit.hard_filtered_count == 2
        assert audit.strategy == "strict"


class TestFilteringScoreZero:
    def test_existing_zero_filtering_score_is_kept(self):
        zeroed = _web("https://a.org", 0.8).with_scores(filtering=0.0)
        result = apply_strategy([zeroed], LENIENT, quality_fn=_const(0.9), authority_fn=_const(0.9))
        assert result.candidates[0].derived_scores["filtering"] == 0.0

    def test_zero_raw_score_is_not_replaced(self):
        out = apply_contextual_filtering([_web("https://a.org", 0.0)], MODERATE).candidates
        assert out[0].derived_scores["filtering"] == 0.0


class TestApplyStrategy:
    def test_penalties_accumulate(self):
        result = apply_strategy(
            [_web("https://a.org", 1.0)],
            MODERATE,
            quality_fn=_const(0.4),
            authority_fn=_const(0.45),
        )

        cand = result.candidates[0]
        assert cand.penalties == {"quality": 0.2, "authority": 0.2}
        assert cand.derived_scores["filtering"] == pytest.approx(0.64)
        assert cand.derived_scores["quality"] == 0.4
        assert result.stats.ranking_adjusted_count == 2
        assert result.stats.strategy == "moderate"

    def test_strict_hard_filter_counts(self):
        result = apply_strategy(
            [_web("https://a.org"), _web("https://b.org")],
            STRICT,
            quality_fn=lambda c: 0.9 if "a.org" in c.url else 0.1,
            authority_fn=_const(0.9),
        )
        assert [c.url for c in result.candidates] == ["https://a.org"]
        assert result.stats.hard_filtered_count == 1
        assert result.stats.filtered_count == 1

    def test_continues_from_contextual_score(self):
        contextual = apply_contextual_filtering(
            [_web("https://a.org", 0.8)], MODERATE, cutoff=NOW - timedelta(days=7), now=NOW
        )
        result = apply_strategy(contextual.candidates, MODERATE, quality_fn=_const(0.9), authority_fn=_const(0.9))
        assert result.candidates[0].derived_scores["filtering"] == pytest.approx(0.56)

    def test_sorted_by_filtering_score(self):
        result = apply_strategy(
            [_web("https://a.org", 0.5), _web("https://b.org", 0.9), _web("https://c.org", 0.7)],
            LENIENT,
            quality_fn=_const(0.9),
            authority_fn=_const(0.9),
        )
        assert [c.url for c in result.candidates] == ["https://b.org", "https://c.org", "https://a.org"]

    def test_mode_argument(self):
        result = apply_strategy([_web("https://a.org")], mode="strict", quality_fn=_const(0.9), authority_fn=_const(0.9))
        assert result.stats.strategy == "strict"

    def test_empty(self):
        result = apply_strategy([], MODERATE)
        assert result.candidates == ()
        assert result.stats.original_count == 0


class TestDiversityCap:
    def test_caps_per_domain(self):
        cands = [_web(f"https://same.org/{i}", 0.9 - i * 0.1) for i in range(5)]
        result = apply_strategy(cands, MODERATE, quality_fn=_const(0.9), authority_fn=_const(0.9))
        assert len(result.candidates) == 3
        assert result.stats.diversity_filtered_count == 2

    def test_backfills_unseen_domains(self):
        strategy = replace(STRICT, diversity=replace(STRICT.diversity, max_results_per_domain=2, min_domain_diversity=0.7))
        cands = [
            _web("https://a.org/1", 0.9),
            _web("https://a.org/2", 0.8),
            _web("https://b.org/1", 0.7),
            _web("https://b.org/2", 0.6),
            _web("https://a.org/3", 0.5),
            _web("https://c.org/1", 0.4),
        ]
        kept = apply_diversity_cap(cands, strategy)
        # a.org/3 is over the cap and its domain is already represented.
        assert {c.url for c in kept} == {
            "https://a.org/1",
            "https://a.org/2",
            "https://b.org/1",
            "https://b.org/2",
            "https://c.org/1",
        }

    def test_disabled(self):
        strategy = replace(MODERATE, diversity=replace(MODERATE.diversity, enabled=False))
        cands = [_web(f"https://same.org/{i}") for i in range(5)]
        assert len(apply_diversity_cap(cands, strategy)) == 5
