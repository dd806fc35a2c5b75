"""Health check endpoint."""
import logging

from fastapi import APIRouter

from loopforge.config import settings

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "ok", "service": settings.app_name}


@router.get("/api/health/config")
async def config_check():
    """Diagnostic endpoint: shows whether critical env vars are configured (no secrets)."""
    return {
        "llm_base_url_set": bool(settings.llm_base_url),
        "llm_api_key_set": bool(settings.llm_api_key),
        "default_model_name": settings.default_model_name,
        "default_min_iterations": settings.default_min_iterations,
        "default_max_iterations": settings.default_max_iterations,
        "default_target_score": settings.default_target_score,
        "default_draft_count": settings.default_draft_count,
    }
