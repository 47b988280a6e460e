"""Context formatting for the answer-generation step.

Turns the ordered candidates of a pipeline run into:
- A prompt block with document excerpts followed by web results
- Citation records for the response payload

Single Responsibility: render candidates; no scoring or filtering beyond the
citation score floor.
"""
from __future__ import annotations

from typing import Any, Dict, List, Sequence

from .types import Candidate

SNIPPET_LENGTH = 200
MIN_DOCUMENT_SOURCE_SCORE = 0.6

CITE_INSTRUCTION = "When using information from these sources, cite them by number."


def _snippet(text: str, limit: int = SNIPPET_LENGTH) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _document_block(idx: int, cand: Candidate) -> str:
    title = cand.title or "Unknown Document"
    header = f"[{idx}] {title}"
    if cand.chunk_index is not None:
        header += f" (excerpt {cand.chunk_index + 1})"
    return f"{header}\n{cand.content.strip()}"


def _web_block(idx: int, cand: Candidate) -> str:
    lines = [f"[{idx}] {cand.title or 'Untitled'}"]
    if cand.url:
        lines.append(f"URL: {cand.url}")
    if cand.published_date:
        lines.append(f"Published: {cand.published_date}")
    lines.append(cand.content.strip())
    return "\n".join(lines)


def format_context(candidates: Sequence[Candidate]) -> str:
    """Render document excerpts, then web results, as one prompt block.

    Numbering is continuous across both sections so citations are unambiguous.
    Returns an empty string when there is nothing to render.
    """
    documents = [c for c in candidates if not c.is_web]
    web = [c for c in candidates if c.is_web]
    if not documents and not web:
        return ""

    sections: List[str] = []
    idx = 1
    if documents:
        blocks = []
        for cand in documents:
            blocks.append(_document_block(idx, cand))
            idx += 1
        sections.append("Relevant Document Excerpts:\n\n" + "\n\n".join(blocks))
    if web:
        blocks = []
        for cand in web:
            blocks.append(_web_block(idx, cand))
            idx += 1
        sections.append("Web Search Results:\n\n" + "\n\n".join(blocks))

    sections.append(CITE_INSTRUCTION)
    return "\n\n".join(sections)


def extract_sources(
    candidates: Sequence[Candidate],
    min_score: float = MIN_DOCUMENT_SOURCE_SCORE,
) -> List[Dict[str, Any]]:
    """Citation records: documents scoring at least ``min_score``, then all web results."""
    sources: List[Dict[str, Any]] = []

    for cand in candidates:
        if cand.is_web:
            continue
        score = cand.score_or(0.0)
        if score < min_score:
            continue
        sources.append(
            {
                "type": "document",
                "source_id": cand.source_id,
                "title": cand.title or "Unknown Document",
                "score": score,
                "snippet": _snippet(cand.content),
                "metadata": {**cand.metadata, "chunk_index": cand.chunk_index},
            }
        )

    for cand in candidates:
        if not cand.is_web:
            continue
        sources.append(
            {
                "type": "web",
                "title": cand.title or "Untitled",
                "url": cand.url,
                "score": cand.score_or(0.0),
                "snippet": _snippet(cand.content),
                "metadata": {"published_date": cand.published_date, "author": cand.author},
            }
        )

    return sources
