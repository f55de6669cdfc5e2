"""Lesson Engine API: FastAPI application entry point.

Features:
- Lifespan context manager: loads the curriculum and wires the lesson
  pipeline (rotation, templates, artifacts, orchestrator) onto ``app.state``
- Structured exception handlers for the domain exceptions that can escape
- Request/response logging middleware with request-ID tracing
- /health endpoint: checks progress-store connectivity + curriculum version
"""

from __future__ import annotations

import datetime
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lesson_engine.config import Settings, get_settings
from lesson_engine.exceptions import CurriculumLoadError

# ---------------------------------------------------------------------------
# Logging setup  (must happen before routers are imported)
# ---------------------------------------------------------------------------

_settings = get_settings()
logging.basicConfig(
    level=getattr(logging, _settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Router and service imports
# ---------------------------------------------------------------------------

from lesson_engine.api import lessons as _lessons_module  # noqa: E402
from lesson_engine.database import (  # noqa: E402
    check_db_connection,
    dispose_engine,
    get_sessionmaker,
)
from lesson_engine.services.artifacts import (  # noqa: E402
    ArtifactEngine,
    CacheStore,
    FileCacheStore,
    MemoryCacheStore,
)
from lesson_engine.services.curriculum import CurriculumLoader  # noqa: E402
from lesson_engine.services.image_provider import OpenAIImageProvider  # noqa: E402
from lesson_engine.services.orchestrator import LessonOrchestrator  # noqa: E402
from lesson_engine.services.persona import ResponseTemplateEngine  # noqa: E402
from lesson_engine.services.progress import SQLProgressStore  # noqa: E402
from lesson_engine.services.rotation import PersonaRotation  # noqa: E402
from lesson_engine.schemas.lesson import HealthResponse  # noqa: E402

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_artifact_engine(settings: Settings) -> ArtifactEngine:
    """Create the artifact engine; image generation is off without an API key."""
    provider = OpenAIImageProvider.from_settings(settings) if settings.openai_api_key else None

    cache: CacheStore | None = None
    if settings.artifact_cache_enabled:
        if settings.artifact_cache_dir:
            cache = FileCacheStore(settings.artifact_cache_dir, ttl=settings.artifact_cache_ttl_seconds)
        else:
            cache = MemoryCacheStore(
                max_entries=settings.artifact_cache_max_entries,
                ttl=settings.artifact_cache_ttl_seconds,
            )

    return ArtifactEngine(
        provider=provider,
        cache=cache,
        provider_timeout=settings.provider_timeout_seconds,
        image_size=settings.image_size,
    )


def build_orchestrator(settings: Settings, curriculum: CurriculumLoader) -> LessonOrchestrator:
    """Assemble the full lesson pipeline from settings."""
    return LessonOrchestrator(
        curriculum=curriculum,
        rotation=PersonaRotation(
            max_consecutive=settings.rotation_max_consecutive,
            anchor_frequency=settings.rotation_anchor_frequency,
            enabled=settings.rotation_enabled,
        ),
        personas=ResponseTemplateEngine(
            intensity=settings.tone_intensity,
            cache_size=settings.response_cache_size,
        ),
        artifacts=build_artifact_engine(settings),
        progress=SQLProgressStore(get_sessionmaker()),
        user_id=settings.default_user_id,
        artifact_timeout=settings.orchestrator_artifact_timeout_seconds,
        cancel_on_timeout=settings.artifact_cancel_on_timeout,
        neutral_score=settings.neutral_score,
        history_limit=settings.response_history_limit,
    )


# ---------------------------------------------------------------------------
# Lifespan context manager
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    Startup sequence:
    1. Load the curriculum file.  A load failure is logged but not fatal:
       every submission then receives the catastrophic fallback response.
    2. Build the orchestrator and store it on ``app.state.orchestrator``.
    3. Probe progress-store connectivity and log the result.

    Shutdown:
    1. Dispose the SQLAlchemy connection pool.
    """
    # --- Startup -----------------------------------------------------------
    logger.info("Lesson Engine API — starting up (v%s)", _settings.app_version)

    curriculum = CurriculumLoader(curriculum_path=_settings.curriculum_path)
    try:
        data = curriculum.load()
        logger.info(
            "Curriculum loaded: %d lessons version=%s checksum=%s…",
            len(data.lessons),
            data.version,
            data.checksum[:16],
        )
    except CurriculumLoadError as exc:
        logger.critical("Curriculum unavailable (%s): %s", exc.path, exc)

    app.state.curriculum = curriculum
    app.state.orchestrator = build_orchestrator(_settings, curriculum)

    db_health = await check_db_connection()
    if db_health["status"] == "ok":
        logger.info("Progress store: OK")
    else:
        logger.warning("Progress store: DEGRADED — %s", db_health.get("detail", "unknown"))

    logger.info("Startup complete — serving requests")
    yield

    # --- Shutdown ----------------------------------------------------------
    logger.info("Lesson Engine API — shutting down")
    try:
        await dispose_engine()
    except Exception as exc:
        logger.warning("Error during engine disposal: %s", exc)
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Lesson Engine API",
    description=(
        "Content-generation pipeline for a 60-lesson AI image-generation course "
        "taught by The Doctor. Each submission returns a six-stage lesson "
        "response, illustrated by a generated image or a four-panel text comic."
    ),
    version=_settings.app_version,
    debug=_settings.debug,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "System health and readiness checks."},
        {
            "name": "lessons",
            "description": "Answer submission, recent history and pipeline status.",
        },
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # restrict in production
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request / response logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next: Any) -> Response:
    """Log every HTTP request with method, path, status, and duration.

    A short ``request_id`` is attached to each log line and returned as the
    ``X-Request-ID`` response header.
    """
    request_id = str(uuid.uuid4())[:8]
    t0 = time.monotonic()
    logger.info("[%s] → %s %s", request_id, request.method, request.url.path)

    try:
        response: Response = await call_next(request)
    except Exception as exc:
        elapsed = (time.monotonic() - t0) * 1000
        logger.error(
            "[%s] ✗ %s %s — unhandled after %.1f ms: %s",
            request_id,
            request.method,
            request.url.path,
            elapsed,
            exc,
        )
        raise

    elapsed = (time.monotonic() - t0) * 1000
    logger.info(
        "[%s] ← %s %s — %d (%.1f ms)",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        elapsed,
    )
    response.headers["X-Request-ID"] = request_id
    return response


# ---------------------------------------------------------------------------
# Structured exception handlers
# ---------------------------------------------------------------------------


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render FastAPI HTTPExceptions as structured JSON."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "http_error",
            "status_code": exc.status_code,
            "detail": exc.detail,
        },
    )


# ---------------------------------------------------------------------------
# Core routes
# ---------------------------------------------------------------------------


@app.get("/", tags=["health"], summary="API root / service info")
async def root() -> dict[str, str]:
    return {
        "service": "Lesson Engine API",
        "version": _settings.app_version,
        "documentation": "/docs",
        "health": "/health",
        "openapi": "/openapi.json",
    }


@app.get(
    "/health",
    tags=["health"],
    response_model=HealthResponse,
    summary="System health check",
)
async def health_check(request: Request) -> dict[str, Any]:
    """Return current system health including progress store + curriculum status.

    ``status: degraded`` means the API is responding but the progress store
    or the curriculum is unavailable.
    """
    db_health = await check_db_connection()

    curriculum: CurriculumLoader | None = getattr(request.app.state, "curriculum", None)
    if curriculum is not None and curriculum.is_loaded():
        meta = curriculum.get_version()
        curriculum_health: dict[str, Any] = {
            "status": "ok",
            "version": meta["version"],
            "checksum_prefix": meta["checksum"][:16] + "…",
            "lessons": meta["lessons"],
        }
    else:
        curriculum_health = {"status": "not_loaded"}

    overall = (
        "ok"
        if db_health["status"] == "ok" and curriculum_health["status"] == "ok"
        else "degraded"
    )

    return {
        "status": overall,
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "version": _settings.app_version,
        "database": db_health,
        "curriculum": curriculum_health,
    }


# ---------------------------------------------------------------------------
# Include routers
# ---------------------------------------------------------------------------

app.include_router(_lessons_module.router)


# ---------------------------------------------------------------------------
# Development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "lesson_engine.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
        log_level=_settings.log_level.lower(),
    )
