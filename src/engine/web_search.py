"""Tavily web-search adapter.

Posts to the Tavily search endpoint with ``requests`` and maps results to
plain dicts (title, url, content, score, published_date, author). Responses
are cached per (query, filters) in an injected TTLCache.

When a time range is requested, results whose published date falls before
the range cutoff are dropped after the call; results without a date, or
with an unparseable one, are kept.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List

import requests

from ..common.date_utils import parse_date, utcnow
from .cache import TTLCache
from .types import CollaboratorError, WebSearchFilters

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 500
DEFAULT_ENDPOINT = "https://api.tavily.com/search"


@dataclass(frozen=True)
class WebSearchConfig:
    endpoint: str = DEFAULT_ENDPOINT
    search_depth: str = "basic"
    timeout_secs: float = 10.0
    cache_ttl_secs: float = 3600.0
    cache_max_size: int = 1000

    @classmethod
    def from_settings(cls, **overrides: Any) -> "WebSearchConfig":
        try:
            from ..common.config_loader import get_section

            section = get_section("web_search")
            values: Dict[str, Any] = {
                k: v for k, v in section.items() if k in cls.__dataclass_fields__
            }
        except Exception:  # noqa: BLE001
            values = {}
        values.update(overrides)
        return cls(**values)


def _cache_key(query: str, filters: WebSearchFilters) -> str:
    parts = [
        query.lower().strip(),
        filters.topic or "",
        str(filters.max_results),
        ",".join(sorted(filters.include_domains)),
        ",".join(sorted(filters.exclude_domains)),
        filters.time_range or "",
        filters.start_date or "",
        filters.end_date or "",
        filters.country or "",
    ]
    return "|".join(parts)


def _within_range(result: Dict[str, Any], filters: WebSearchFilters) -> bool:
    from .filtering import time_range_cutoff

    published = parse_date(result.get("published_date"))
    if published is None:
        return True

    if filters.time_range and not (filters.start_date or filters.end_date):
        cutoff = time_range_cutoff(filters.time_range)
        return cutoff is None or published >= cutoff

    if filters.start_date or filters.end_date:
        start = parse_date(filters.start_date)
        end = parse_date(filters.end_date) or utcnow()
        if start is not None and published < start:
            return False
        return published <= end

    return True


class TavilyWebSearch:
    """``search(query, filters) -> list[dict]`` against the Tavily API."""

    def __init__(
        self,
        config: WebSearchConfig | None = None,
        *,
        api_key: str | None = None,
        cache: TTLCache[List[Dict[str, Any]]] | None = None,
        session: requests.Session | None = None,
    ):
        self.config = config or WebSearchConfig()
        self.api_key = api_key if api_key is not None else os.getenv("TAVILY_API_KEY", "")
        self.cache = cache if cache is not None else TTLCache(
            ttl_secs=self.config.cache_ttl_secs,
            max_size=self.config.cache_max_size,
        )
        self._http = session or requests

    def _payload(self, query: str, filters: WebSearchFilters) -> Dict[str, Any]:
        search_query = query.strip()
        if filters.topic:
            search_query = f"{filters.topic} {search_query}"

        payload: Dict[str, Any] = {
            "query": search_query,
            "max_results": int(filters.max_results),
            "search_depth": self.config.search_depth,
            "include_raw_content": False,
        }
        if filters.include_domains:
            payload["include_domains"] = list(filters.include_domains)
        if filters.exclude_domains:
            payload["exclude_domains"] = list(filters.exclude_domains)
        if filters.time_range:
            payload["time_range"] = filters.time_range
        else:
            if filters.start_date:
                payload["start_date"] = filters.start_date
            if filters.end_date:
                payload["end_date"] = filters.end_date
        if filters.country:
            payload["country"] = filters.country
        return payload

    def search(self, query: str, filters: WebSearchFilters | None = None) -> List[Dict[str, Any]]:
        filters = filters or WebSearchFilters()
        if not query or not query.strip():
            raise CollaboratorError("Search query is required", retryable=False)
        if len(query) > MAX_QUERY_LENGTH:
            raise CollaboratorError(f"Search query is too long (max {MAX_QUERY_LENGTH} characters)", retryable=False)

        key = _cache_key(query, filters)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Web search served from cache for %r", query)
            return list(cached)

        if not self.api_key:
            logger.warning("TAVILY_API_KEY is not set, returning no web results")
            return []

        try:
            response = self._http.post(
                self.config.endpoint,
                json=self._payload(query, filters),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.config.timeout_secs,
            )
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as exc:
            status = getattr(exc.response, "status_code", None)
            if status in (401, 403):
                raise CollaboratorError(
                    "Search service authentication failed; check TAVILY_API_KEY", retryable=False
                ) from exc
            if status == 429:
                raise CollaboratorError("Search API rate limit exceeded") from exc
            raise CollaboratorError(f"Search failed: {exc}") from exc
        except (requests.RequestException, ValueError) as exc:
            raise CollaboratorError(f"Search failed: {exc}") from exc

        results = [
            {
                "title": item.get("title") or "Untitled",
                "url": item.get("url") or "",
                "content": item.get("content") or "",
                "score": item.get("score"),
                "published_date": item.get("published_date"),
                "author": item.get("author"),
            }
            for item in (data.get("results") or [])
        ]
        before = len(results)
        results = [r for r in results if _within_range(r, filters)]
        if before != len(results):
            logger.info("Filtered web results by date range: %d -> %d", before, len(results))

        self.cache.set(key, results)
        logger.info("Web search completed for %r: %d results", query, len(results))
        return list(results)
