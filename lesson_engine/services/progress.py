"""Read-only access to a learner's recent lesson scores."""

import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lesson_engine.exceptions import ProgressStoreError
from lesson_engine.models.progress import LessonProgress

logger = logging.getLogger(__name__)


class ProgressStore(Protocol):
    async def get_recent_scores(self, user_id: str, limit: int = 5) -> list[float]:
        """Return up to ``limit`` most recent scores, oldest first."""
        ...


class NullProgressStore:
    """Store used when no database is configured; there is never any history."""

    async def get_recent_scores(self, user_id: str, limit: int = 5) -> list[float]:
        return []


class SQLProgressStore:
    """Progress store backed by the ``user_progress`` table.

    Args:
        session_factory: Async session factory bound to the progress database.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_recent_scores(self, user_id: str, limit: int = 5) -> list[float]:
        """Fetch the latest scores for ``user_id``.

        Raises:
            ProgressStoreError: If the query fails.
        """
        stmt = (
            select(LessonProgress.score)
            .where(LessonProgress.user_id == user_id)
            .order_by(LessonProgress.completed_at.desc(), LessonProgress.id.desc())
            .limit(limit)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise ProgressStoreError(f"Cannot load progress for {user_id!r}: {exc}") from exc

        logger.debug("Loaded %d recent scores for %s", len(rows), user_id)
        return [float(score) for score in reversed(rows)]
