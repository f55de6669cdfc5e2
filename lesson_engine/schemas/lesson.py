"""Pydantic v2 schemas for lesson submission and diagnostics."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from lesson_engine.domain import LessonResponse


class LessonSubmitRequest(BaseModel):
    """Request payload for POST /lessons/submit.

    Attributes:
        answer: Learner's free-text answer; may be empty.
        lesson_number: Curriculum lesson; omitted means lesson 1.
    """

    model_config = ConfigDict(strict=False, populate_by_name=True)

    answer: str = Field(default="", max_length=50_000, description="Learner's answer text")
    lesson_number: int | None = Field(
        default=None, ge=1, description="Curriculum lesson number (defaults to 1)"
    )


class LessonResponseSchema(BaseModel):
    """Composite six-stage lesson response."""

    model_config = ConfigDict(strict=False, populate_by_name=True)

    lesson_number: int
    topic: str
    phase: str
    score: float = Field(..., ge=0, le=10)
    stages: dict[str, dict[str, Any]] = Field(
        ..., description="Exactly one payload per lesson stage"
    )
    summary: str
    session_id: str
    created_at: datetime
    fallback: bool = Field(default=False, description="True when the whole run degraded")
    error: str | None = None

    @classmethod
    def from_domain(cls, response: LessonResponse) -> LessonResponseSchema:
        return cls.model_validate(response.to_dict())


class LessonHistoryItem(BaseModel):
    lesson_number: int
    topic: str
    score: float
    fallback: bool
    session_id: str
    created_at: datetime


class LessonHistoryResponse(BaseModel):
    """Recent responses retained by the orchestrator, oldest first."""

    items: list[LessonHistoryItem]
    total: int


class HealthResponse(BaseModel):
    status: str = Field(..., pattern=r"^(ok|degraded)$")
    timestamp: str
    version: str
    database: dict[str, Any]
    curriculum: dict[str, Any]
