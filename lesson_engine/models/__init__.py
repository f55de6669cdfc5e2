"""SQLAlchemy ORM models for the lesson engine."""

from lesson_engine.database import Base
from lesson_engine.models.progress import LessonProgress

__all__ = ["Base", "LessonProgress"]
