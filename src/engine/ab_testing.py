"""Deterministic user bucketing for weight and strategy experiments."""

from __future__ import annotations

from typing import Mapping

_INT32 = 1 << 32
_INT32_MAX = (1 << 31) - 1


def simple_hash(value: str) -> int:
    """Non-negative 32-bit string hash: h = (h << 5) - h + code, wrapped to int32."""
    h = 0
    for ch in value:
        h = (h << 5) - h + ord(ch)
        h &= _INT32 - 1
        if h > _INT32_MAX:
            h -= _INT32
    return abs(h)


def select_variant(user_id: str, variants: Mapping[str, float]) -> str | None:
    """Pick a variant name from ``{name: traffic_percentage}`` for a user.

    Buckets are cumulative over the mapping's order; returns None when the
    percentages do not cover the user's bucket or no variants are given.
    """
    if not user_id or not variants:
        return None
    bucket = simple_hash(user_id) % 100
    cumulative = 0.0
    for name, percentage in variants.items():
        cumulative += float(percentage)
        if bucket < cumulative:
            return name
    return None
