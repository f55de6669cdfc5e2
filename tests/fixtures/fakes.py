"""Hand-written test doubles for the lesson pipeline's external collaborators.

Each fake records how it was called so tests can assert on call counts
(e.g. single-flight dedup issues exactly one provider call).
"""

from __future__ import annotations

import asyncio

from lesson_engine.domain import LessonMeta
from lesson_engine.exceptions import (
    ArtifactProviderError,
    CurriculumLoadError,
    LessonNotFoundError,
    ProgressStoreError,
)

LESSON_3 = LessonMeta(
    number=3,
    topic="CFG Scale and Its Impact on Generation",
    phase="Foundations",
    difficulty="beginner",
    keywords=("CFG", "guidance", "prompt adherence"),
    objectives=("Explain what CFG scale controls",),
)

LESSON_7 = LessonMeta(
    number=7,
    topic="Seeds and Reproducibility",
    phase="Foundations",
    difficulty="beginner",
)


class FakeImageProvider:
    """Image provider that returns a fixed URL after an optional delay.

    Args:
        url: Image reference to return.
        delay: Seconds to sleep before answering (simulates a slow API).
        fail: When ``True`` every call raises :class:`ArtifactProviderError`.
    """

    name = "fake"

    def __init__(self, url: str = "https://images.test/lesson.png", delay: float = 0.0, fail: bool = False) -> None:
        self.url = url
        self.delay = delay
        self.fail = fail
        self.calls: list[tuple[str, str]] = []
        self.completed = 0
        self.cancelled = 0

    async def generate(self, prompt: str, size: str) -> str:
        self.calls.append((prompt, size))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        if self.fail:
            raise ArtifactProviderError("provider unavailable", provider=self.name, status_code=503)
        self.completed += 1
        return self.url


class StaticCurriculum:
    """Curriculum provider backed by a dict of lessons."""

    def __init__(self, *lessons: LessonMeta) -> None:
        self.lessons = {lesson.number: lesson for lesson in lessons}
        self.lookups: list[int] = []

    def lookup_lesson(self, number: int) -> LessonMeta:
        self.lookups.append(number)
        if number not in self.lessons:
            raise LessonNotFoundError(number)
        return self.lessons[number]


class BrokenCurriculum:
    """Curriculum provider whose backing file cannot be read."""

    def lookup_lesson(self, number: int) -> LessonMeta:
        raise CurriculumLoadError("curriculum file missing", path="/nonexistent/curriculum.json")


class StaticProgressStore:
    def __init__(self, scores: list[float]) -> None:
        self.scores = scores

    async def get_recent_scores(self, user_id: str, limit: int = 5) -> list[float]:
        return self.scores[-limit:]


class BrokenProgressStore:
    async def get_recent_scores(self, user_id: str, limit: int = 5) -> list[float]:
        raise ProgressStoreError("connection refused")


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
