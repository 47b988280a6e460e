"""Domain authority scoring for web results.

Scores a URL's domain against a JSON reputation database
(``config/authoritative_domains.json``):

    custom score -> exact domain -> regex pattern -> TLD (.edu/.gov/.org) -> 0.5

Exact and pattern entries are scaled by their tier weight. A missing or
corrupt database file is logged and treated as empty.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

from ..common.text_similarity import clamp, extract_domain
from .types import Candidate

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_PATH = "config/authoritative_domains.json"

_TLD_SCORES = {"edu": 85, "gov": 90, "org": 70}
_TLD_CATEGORIES = {"edu": "academic", "gov": "government", "org": "organization"}


@dataclass(frozen=True)
class AuthorityConfig:
    enabled: bool = True
    database_path: str = DEFAULT_DATABASE_PATH
    min_authority_score: float = 0.5
    high_authority_boost: float = 1.2
    low_authority_penalty: float = 0.9
    custom_domain_scores: Mapping[str, float] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, **overrides: Any) -> "AuthorityConfig":
        try:
            from ..common.config_loader import get_section

            section = get_section("authority")
            values: Dict[str, Any] = {
                k: v for k, v in section.items() if k in cls.__dataclass_fields__
            }
            values["custom_domain_scores"] = dict(section.get("custom_domain_scores") or {})
        except Exception:  # noqa: BLE001
            values = {}
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class AuthorityScore:
    score: float  # normalized 0-1
    raw_score: float  # 0-100
    source: str  # exact | pattern | tld | default
    category: str | None = None
    tier: str | None = None
    matched: str | None = None


_DEFAULT_SCORE = AuthorityScore(score=0.5, raw_score=50, source="default")


def _empty_database() -> Dict[str, Any]:
    return {"domains": {}, "domainPatterns": {}, "categoryWeights": {"default": 0.5}}


def load_authority_database(path: str | Path) -> Dict[str, Any]:
    """Read the domain database; returns an empty database on any failure."""
    from ..common.config_loader import resolve_repo_path

    resolved = resolve_repo_path(path)
    try:
        with open(resolved, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Failed to load authoritative domains database %s: %s", resolved, exc)
        return _empty_database()

    if not isinstance(data, dict):
        logger.error("Authoritative domains database %s is not an object", resolved)
        return _empty_database()

    db = _empty_database()
    db.update({k: v for k, v in data.items() if isinstance(v, dict)})
    logger.info(
        "Authoritative domains database loaded: %d domains, %d patterns",
        len(db["domains"]),
        len(db["domainPatterns"]),
    )
    return db


class DomainAuthorityScorer:
    """Callable ``(candidate) -> float`` scoring a web result's domain."""

    def __init__(
        self,
        config: AuthorityConfig | None = None,
        *,
        database: Mapping[str, Any] | None = None,
    ):
        self.config = config or AuthorityConfig()
        self._db: Mapping[str, Any] | None = database
        self._patterns: List[tuple[str, re.Pattern[str], Mapping[str, Any]]] | None = None

    @property
    def database(self) -> Mapping[str, Any]:
        if self._db is None:
            self._db = load_authority_database(self.config.database_path)
        return self._db

    def reload(self) -> None:
        self._db = None
        self._patterns = None

    def _compiled_patterns(self) -> List[tuple[str, re.Pattern[str], Mapping[str, Any]]]:
        if self._patterns is None:
            compiled = []
            for name, entry in (self.database.get("domainPatterns") or {}).items():
                try:
                    compiled.append((name, re.compile(str(entry.get("pattern", ""))), entry))
                except re.error as exc:
                    logger.warning("Skipping invalid domain pattern %s: %s", name, exc)
            self._patterns = compiled
        return self._patterns

    def _tier_weight(self, tier: str | None) -> float:
        weights = self.database.get("categoryWeights") or {}
        return float(weights.get(tier) or weights.get("default") or 0.5)

    def score_url(self, url: str | None) -> AuthorityScore:
        if not self.config.enabled:
            return _DEFAULT_SCORE

        domain = extract_domain(url)
        if not domain:
            return _DEFAULT_SCORE

        custom = self.config.custom_domain_scores.get(domain)
        if custom:
            return AuthorityScore(score=clamp(custom / 100), raw_score=custom, source="exact", matched=domain)

        entry = (self.database.get("domains") or {}).get(domain)
        if entry:
            raw = float(entry.get("authorityScore", 50))
            tier = entry.get("tier")
            return AuthorityScore(
                score=clamp(raw / 100 * self._tier_weight(tier)),
                raw_score=raw,
                source="exact",
                category=entry.get("category"),
                tier=tier,
                matched=domain,
            )

        for name, regex, pattern in self._compiled_patterns():
            if regex.search(domain):
                raw = float(pattern.get("authorityScore", 50))
                tier = pattern.get("tier")
                return AuthorityScore(
                    score=clamp(raw / 100 * self._tier_weight(tier)),
                    raw_score=raw,
                    source="pattern",
                    category=pattern.get("category"),
                    tier=tier,
                    matched=name,
                )

        tld = domain.rsplit(".", 1)[-1]
        if tld in _TLD_SCORES:
            raw = _TLD_SCORES[tld]
            return AuthorityScore(
                score=raw / 100,
                raw_score=raw,
                source="tld",
                category=_TLD_CATEGORIES[tld],
                matched=tld,
            )

        return _DEFAULT_SCORE

    def __call__(self, candidate: Candidate) -> float:
        return self.score_url(candidate.url).score

    def score_with_authority(self, candidate: Candidate, base_score: float = 0.5) -> float:
        """Boost or penalize ``base_score`` by the candidate's domain authority."""
        authority = self.score_url(candidate.url).score
        if authority >= self.config.min_authority_score:
            return clamp(base_score * self.config.high_authority_boost)
        if authority < 0.3:
            return clamp(base_score * self.config.low_authority_penalty)
        return clamp(base_score)

    def is_authoritative(self, url: str | None) -> bool:
        result = self.score_url(url)
        return result.source != "default" and result.score >= self.config.min_authority_score

    def filter_by_authority(self, candidates: Sequence[Candidate], min_score: float = 0.5) -> List[Candidate]:
        return [c for c in candidates if self.score_url(c.url).score >= min_score]

    def statistics(self, candidates: Sequence[Candidate]) -> Dict[str, Any]:
        scores = [self.score_url(c.url) for c in candidates]
        categories: Dict[str, int] = {}
        for s in scores:
            if s.category:
                categories[s.category] = categories.get(s.category, 0) + 1
        return {
            "total_results": len(scores),
            "tier1_count": sum(1 for s in scores if s.tier == "tier1"),
            "tier2_count": sum(1 for s in scores if s.tier == "tier2"),
            "tier3_count": sum(1 for s in scores if s.tier == "tier3"),
            "default_count": sum(1 for s in scores if not s.tier),
            "average_authority_score": (sum(s.score for s in scores) / len(scores)) if scores else 0.0,
            "category_distribution": categories,
        }
