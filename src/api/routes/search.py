"""API routes for retrieval.

Single Responsibility: Handle HTTP requests for search.
"""

from __future__ import annotations

import logging
import time

from fastapi import APIRouter, HTTPException

from ...services import search as search_service
from ..schemas import SearchRequest, SearchResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["search"])


@router.post("/search", response_model=SearchResponse)
def search_endpoint(request: SearchRequest) -> SearchResponse:
    """Run the retrieval pipeline and return ranked candidates."""
    start = time.time()

    try:
        result = search_service.search(**request.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Search failed for %r", request.query)
        raise HTTPException(status_code=500, detail=f"Error running search: {str(e)}")

    return SearchResponse(
        query=result.query,
        variations=result.variations,
        candidates=result.candidates,
        context=result.context,
        sources=result.sources,
        stats=result.stats,
        response_time_seconds=time.time() - start,
    )
