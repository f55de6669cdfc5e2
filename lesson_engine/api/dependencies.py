"""FastAPI dependency injection helpers.

Services are built once in the application lifespan and stored on
``app.state``; route handlers receive them through ``Depends``.
"""

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from lesson_engine.services.orchestrator import LessonOrchestrator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Services (stored on app.state during lifespan startup)
# ---------------------------------------------------------------------------


def get_orchestrator(request: Request) -> LessonOrchestrator:
    """Return the application-wide orchestrator from ``app.state``.

    Raises:
        HTTPException: 503 if startup did not wire the orchestrator.
    """
    orchestrator: LessonOrchestrator | None = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        logger.error("Orchestrator not initialised; app.state.orchestrator is None")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Lesson engine is not initialised. Check server logs for startup errors.",
        )
    return orchestrator


OrchestratorDep = Annotated[LessonOrchestrator, Depends(get_orchestrator)]

