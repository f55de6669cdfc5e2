"""SQLAlchemy ORM model for the user_progress table."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from lesson_engine.database import Base


class LessonProgress(Base):
    """One completed lesson for one learner.

    Attributes:
        id: Auto-incrementing primary key.
        user_id: Learner identifier.
        lesson_number: Curriculum lesson number (1-60).
        topic: Lesson topic at the time of completion.
        score: Score awarded by the performance review (0-10).
        answer: The submitted answer text.
        attempts: Number of submissions for this lesson.
        completed_at: Timestamp of the latest completion.
    """

    __tablename__ = "user_progress"
    __table_args__ = (
        UniqueConstraint("user_id", "lesson_number", name="uq_user_progress_user_lesson"),
        Index("idx_user_progress_recent", "user_id", "completed_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    lesson_number: Mapped[int] = mapped_column(Integer, nullable=False)
    topic: Mapped[str] = mapped_column(String(255), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    answer: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<LessonProgress(user='{self.user_id}', lesson={self.lesson_number}, "
            f"score={self.score})>"
        )
