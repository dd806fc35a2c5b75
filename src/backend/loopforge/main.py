"""
Loop Forge — FastAPI Backend
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from loopforge import __version__
from loopforge.api import health, runs
from loopforge.config import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Loop Forge",
    description="Iterative writer/reviewer refinement over a generative text model",
    version=__version__,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(health.router, tags=["health"])
app.include_router(runs.router, prefix="/api/run", tags=["run"])


@app.on_event("startup")
async def startup():
    """Log configuration on startup."""
    def _mask(val: str) -> str:
        if not val:
            return "(empty)"
        if len(val) <= 8:
            return "***"
        return val[:4] + "..." + val[-4:]

    logger.info("=== Loop Forge Backend Starting ===")
    logger.info(f"  llm_base_url       : {settings.llm_base_url or '(SDK default)'}")
    logger.info(f"  llm_api_key        : {_mask(settings.llm_api_key)}")
    logger.info(f"  default_model_name : {settings.default_model_name}")
    logger.info(f"  llm_timeout_seconds: {settings.llm_timeout_seconds}")
    logger.info(f"  cors_origins       : {settings.cors_origins}")

    if not settings.llm_api_key:
        logger.warning("LLM_API_KEY is empty -- model API calls will fail!")
