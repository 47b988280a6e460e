"""Tests for src/engine/ab_testing.py - deterministic variant assignment."""

from src.engine.ab_testing import select_variant, simple_hash


class TestSimpleHash:
    def test_known_values(self):
        assert simple_hash("") == 0
        assert simple_hash("a") == 97
        assert simple_hash("ab") == 3105

    def test_non_negative_for_long_strings(self):
        assert simple_hash("user-" * 200) >= 0

    def test_deterministic(self):
        assert simple_hash("user-42") == simple_hash("user-42")


class TestSelectVariant:
    def test_full_allocation(self):
        assert select_variant("anyone", {"only": 100}) == "only"

    def test_zero_allocation(self):
        assert select_variant("anyone", {"nobody": 0}) is None

    def test_missing_inputs(self):
        assert select_variant("", {"a": 100}) is None
        assert select_variant("user", {}) is None

    def test_bucket_boundaries(self):
        # "a" hashes to 97 -> bucket 97
        assert select_variant("a", {"low": 97, "high": 3}) == "high"
        assert select_variant("a", {"low": 98, "high": 2}) == "low"

    def test_stable_assignment(self):
        variants = {"strict": 33, "moderate": 34, "lenient": 33}
        assert select_variant("user-7", variants) == select_variant("user-7", variants)
