"""
mcqstream — Streaming MCQ Generation Service
=============================================
FastAPI entry point.
  • Global exception handler, so every unhandled error returns JSON
  • POST /api/v1/mcqs/stream, NDJSON frames as questions are generated
  • Shared state (HTTP client, quota counters, cache) built once per process
"""

import logging
from contextlib import asynccontextmanager
from typing import List

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from groq import AsyncGroq

from mcqstream.api.v1.endpoints import mcqs
from mcqstream.core.config import Settings, settings
from mcqstream.schemas import ErrorResponse
from mcqstream.services.cache import ResponseCache
from mcqstream.services.gemini_stream import GeminiStreamClient
from mcqstream.services.identity import SupabaseIdentityProvider
from mcqstream.services.orchestrator import MCQGenerationService
from mcqstream.services.quota import GlobalUsageCounter, PlanLimits, QuotaGovernor, RollingWindowLimiter
from mcqstream.services.sources import GeminiStreamSource, GroqBlockSource, MCQSource
from mcqstream.services.usage_store import InMemoryUsageStore, SupabaseUsageStore, UsageStore

# ── Logging ──────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
)
logger = logging.getLogger(__name__)


# ── Wiring ───────────────────────────────────────────────────────────────────

def build_sources(config: Settings, http_client: httpx.AsyncClient, groq_client) -> List[MCQSource]:
    """Sources in failover order for the configured AI_PROVIDER."""
    available = {}
    if config.GOOGLE_API_KEY:
        available["gemini"] = GeminiStreamSource(
            GeminiStreamClient(http_client, config), max_attempts=config.GEMINI_MAX_ATTEMPTS
        )
        logger.info("[MAIN] ✓ Gemini stream source ready")
    else:
        logger.warning("[MAIN] ✗ Google API key missing")
    if groq_client is not None:
        available["groq"] = GroqBlockSource(groq_client, config)
        logger.info("[MAIN] ✓ Groq block source ready")
    else:
        logger.warning("[MAIN] ✗ Groq API key missing")

    order = ["gemini", "groq"] if config.AI_PROVIDER == "hybrid" else [config.AI_PROVIDER]
    return [available[name] for name in order if name in available]


def build_generation_service(
    config: Settings,
    http_client: httpx.AsyncClient,
    groq_client=None,
) -> MCQGenerationService:
    if config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE_KEY:
        usage_store: UsageStore = SupabaseUsageStore(
            http_client, config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE_KEY
        )
    else:
        logger.warning("[MAIN] ✗ Supabase not configured, usage counters are process-local")
        usage_store = InMemoryUsageStore()

    quota = QuotaGovernor(
        global_counter=GlobalUsageCounter(config.GLOBAL_MONTHLY_LIMIT, config.GLOBAL_RESET_DAYS),
        usage_store=usage_store,
        rolling=RollingWindowLimiter(
            config.PRO_HOURLY_LIMIT,
            config.PRO_ROLLING_DAILY_LIMIT,
            config.PRO_MIN_INTERVAL_SECONDS,
        ),
        limits=PlanLimits(free_daily=config.FREE_DAILY_LIMIT, pro_daily=config.PRO_DAILY_LIMIT),
    )

    return MCQGenerationService(
        settings=config,
        quota=quota,
        cache=ResponseCache(config.CACHE_TTL_SECONDS, config.CACHE_MAX_ENTRIES),
        identity=SupabaseIdentityProvider(
            http_client, config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE_KEY
        ),
        sources=build_sources(config, http_client, groq_client),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Streams run as long as the model keeps talking; only connecting is bounded.
    http_client = httpx.AsyncClient(timeout=httpx.Timeout(None, connect=settings.HTTP_CONNECT_TIMEOUT_SECONDS))
    groq_client = AsyncGroq(api_key=settings.GROQ_API_KEY) if settings.GROQ_API_KEY else None

    app.state.generation_service = build_generation_service(settings, http_client, groq_client)
    logger.info(f"[MAIN] ✓ Ready (provider={settings.AI_PROVIDER}, env={settings.ENVIRONMENT})")
    try:
        yield
    finally:
        if groq_client is not None:
            await groq_client.close()
        await http_client.aclose()


# ── App ──────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="mcqstream",
    description="Study material in, multiple-choice questions streamed out as NDJSON.",
    version="1.0.0",
    lifespan=lifespan,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)


# ── Global Exception Handler ────────────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all: every unhandled exception returns a clean JSON envelope."""
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    body = ErrorResponse(
        status="error",
        message="An internal server error occurred.",
        detail=str(exc) if settings.is_development else None,
    )
    return JSONResponse(status_code=500, content=body.model_dump())


# ── CORS ─────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(mcqs.router, prefix="/api/v1")


# ── Health Check ─────────────────────────────────────────────────────────────
@app.get("/", tags=["System"])
async def health_check():
    return {
        "status": "operational",
        "service": "mcqstream",
        "provider": settings.AI_PROVIDER,
    }
