"""Pydantic schemas for API request/response models.

Single Responsibility: Define data structures for API communication.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class SearchRequest(BaseModel):
    """Request payload for a retrieval run."""

    query: str = Field(..., min_length=1, max_length=500, description="The search query")
    context: str | None = Field(default=None, description="Optional conversation context for query expansion")
    user_id: str | None = Field(default=None, description="Stable user id for A/B variant assignment")
    topic: str | None = Field(default=None, description="Topic used for web search and topic filtering")
    time_range: Literal["day", "week", "month", "year", "d", "w", "m", "y"] | None = Field(
        default=None,
        description="Recency window for web results",
    )
    country: str | None = Field(default=None, description="Country hint for web search")
    filtering_mode: Literal["strict", "moderate", "lenient"] | None = Field(
        default=None,
        description="Filtering strategy mode (defaults to settings)",
    )
    ordering_strategy: Literal["relevance", "score", "quality", "hybrid", "chronological"] | None = Field(
        default=None,
        description="Final ordering strategy (defaults to settings)",
    )
    include_web: bool | None = Field(default=None, description="Override web search inclusion")
    include_keyword: bool | None = Field(default=None, description="Override keyword search inclusion")
    expand: bool = Field(default=True, description="Rewrite the query into variations")


class Provenance(BaseModel):
    query: str
    source: str


class SearchCandidate(BaseModel):
    """One ranked candidate."""

    source_id: str
    source_kind: Literal["document", "web"]
    chunk_index: int | None = None
    title: str = ""
    url: str | None = None
    content: str = ""
    published_date: str | None = None
    author: str | None = None
    raw_score: float | None = None
    source: str = ""
    derived_scores: dict[str, float] = Field(default_factory=dict)
    penalties: dict[str, float] = Field(default_factory=dict)
    provenance: list[Provenance] = Field(default_factory=list)


class SourceReference(BaseModel):
    """A citation record for a document or web result."""

    type: Literal["document", "web"]
    title: str
    source_id: str | None = None
    url: str | None = None
    score: float = 0.0
    snippet: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    """Response payload for a retrieval run."""

    query: str
    variations: list[str] = Field(default_factory=list, description="Query variations that were retrieved")
    candidates: list[SearchCandidate] = Field(default_factory=list)
    context: str = Field(default="", description="Prompt block for answer generation")
    sources: list[SourceReference] = Field(default_factory=list)
    stats: dict[str, Any] = Field(default_factory=dict, description="Per-stage statistics")
    response_time_seconds: float = Field(..., description="Wall-clock time for the request")


class HealthResponse(BaseModel):
    status: str
    version: str
    filtering_mode: str | None = None
    ordering_strategy: str | None = None
    web_enabled: bool | None = None
    keyword_enabled: bool | None = None
