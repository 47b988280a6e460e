"""API routes for service health."""

from __future__ import annotations

from fastapi import APIRouter

from ...services import search as search_service
from ..schemas import HealthResponse

router = APIRouter(tags=["health"])

API_VERSION = "1.0.0"


@router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(version=API_VERSION, **search_service.health())
