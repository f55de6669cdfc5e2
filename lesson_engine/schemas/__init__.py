"""Pydantic v2 request/response schemas for the lesson API."""

from lesson_engine.schemas.lesson import (
    HealthResponse,
    LessonHistoryItem,
    LessonHistoryResponse,
    LessonResponseSchema,
    LessonSubmitRequest,
)

__all__ = [
    "LessonSubmitRequest",
    "LessonResponseSchema",
    "LessonHistoryItem",
    "LessonHistoryResponse",
    "HealthResponse",
]
