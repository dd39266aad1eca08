"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from studyquiz.core.config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Liveness check; no model call is made."""
    return {"status": "ok", "llm_provider": settings.LLM_PROVIDER}
