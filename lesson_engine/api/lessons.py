"""
Lesson endpoints: POST /lessons/submit, GET /lessons/history, GET /lessons/status.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter

from lesson_engine.api.dependencies import OrchestratorDep
from lesson_engine.schemas.lesson import (
    LessonHistoryItem,
    LessonHistoryResponse,
    LessonResponseSchema,
    LessonSubmitRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/lessons", tags=["lessons"])


@router.post(
    "/submit",
    response_model=LessonResponseSchema,
    summary="Submit an answer and receive the six-stage lesson response",
)
async def submit_lesson(
    body: LessonSubmitRequest, orchestrator: OrchestratorDep
) -> LessonResponseSchema:
    """Run the lesson protocol for one submission.

    Always returns 200 with all six stages; degraded runs are flagged with
    ``fallback`` (whole run) or ``fallback_used`` (single stage).
    """
    response = await orchestrator.execute_lesson(body.answer, body.lesson_number)
    return LessonResponseSchema.from_domain(response)


@router.get(
    "/history",
    response_model=LessonHistoryResponse,
    summary="Recent lesson responses retained for diagnostics",
)
async def lesson_history(orchestrator: OrchestratorDep) -> LessonHistoryResponse:
    items = [
        LessonHistoryItem(
            lesson_number=r.lesson_number,
            topic=r.topic,
            score=r.score,
            fallback=r.fallback,
            session_id=r.session_id,
            created_at=r.created_at,
        )
        for r in orchestrator.get_history()
    ]
    return LessonHistoryResponse(items=items, total=len(items))


@router.get("/status", summary="Pipeline status (rotation, templates, artifacts)")
async def lesson_status(orchestrator: OrchestratorDep) -> dict[str, Any]:
    return orchestrator.get_status()
