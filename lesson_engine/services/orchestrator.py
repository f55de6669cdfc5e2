"""Six-stage lesson orchestrator.

For each submission the orchestrator builds a :class:`LessonContext`
(curriculum entry, rotated cast, progress snapshot) and runs the fixed
lesson protocol:

1. performance_review   – heuristic score + persona feedback
2. topic_announcement   – persona lesson introduction
3. explanation          – topic explanation + pro tip
4. personalized_example – scenario built from the cast
5. challenge_question   – per-topic or generic challenge
6. artifact             – illustration from the artifact engine

Stages are ``(name, executor, fallback)`` records run by one driver loop; a
stage that raises is replaced by its fallback payload.  If the context
itself cannot be built, a catastrophic fallback response is returned.  The
response therefore always carries all six stage keys, and
:meth:`LessonOrchestrator.execute_lesson` never raises.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from statistics import fmean
from typing import Any, Awaitable, Callable, Protocol

from lesson_engine.domain import (
    ArtifactResult,
    LessonContext,
    LessonMeta,
    LessonResponse,
    ProgressSnapshot,
    StageName,
    utcnow,
)
from lesson_engine.services import lesson_content
from lesson_engine.services.analyzer import analyze_answer, default_feedback
from lesson_engine.services.artifacts import ArtifactEngine, synthesize_fallback
from lesson_engine.services.persona import Intent, RenderContext, ResponseTemplateEngine
from lesson_engine.services.progress import NullProgressStore, ProgressStore
from lesson_engine.services.rotation import PersonaRotation

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_LESSON_NUMBER = 1
RECENT_SCORE_LIMIT = 5

FALLBACK_TOPIC = "Educational Content"
FALLBACK_PHASE = "Foundations"
FALLBACK_SUMMARY = (
    "My systems encountered a temporary difficulty, but we can continue with your education."
)
FALLBACK_CATEGORIES = {"depth": 6, "accuracy": 7, "engagement": 7, "understanding": 7}


class CurriculumProvider(Protocol):
    def lookup_lesson(self, number: int) -> LessonMeta: ...


# ---------------------------------------------------------------------------
# Stage records
# ---------------------------------------------------------------------------


@dataclass
class LessonRun:
    """Mutable state shared by the stages of one submission."""

    context: LessonContext
    score: float


StageExecutor = Callable[[LessonRun], Awaitable[dict[str, Any]]]
StageFallback = Callable[[LessonRun], dict[str, Any]]


@dataclass(frozen=True)
class Stage:
    name: StageName
    execute: StageExecutor
    fallback: StageFallback


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class LessonOrchestrator:
    """Run the six-stage lesson protocol for one learner.

    Args:
        curriculum: Anything with ``lookup_lesson(number) -> LessonMeta``.
        rotation: Persona rotation selector.
        personas: Response template engine.
        artifacts: Artifact cache/generation engine.
        progress: Progress store; defaults to a store with no history.
        user_id: Learner whose progress is read.
        artifact_timeout: Seconds the artifact stage waits before using its
                          own fallback.
        cancel_on_timeout: Cancel the underlying generation when the artifact
                           stage times out instead of letting it finish.
        neutral_score: Score used when the review stage or the whole run fails.
        history_limit: Number of recent responses retained for diagnostics.
    """

    def __init__(
        self,
        curriculum: CurriculumProvider,
        rotation: PersonaRotation,
        personas: ResponseTemplateEngine,
        artifacts: ArtifactEngine,
        progress: ProgressStore | None = None,
        user_id: str = "captain_tal",
        artifact_timeout: float = 35.0,
        cancel_on_timeout: bool = False,
        neutral_score: float = 7.0,
        history_limit: int = 10,
    ) -> None:
        self.curriculum = curriculum
        self.rotation = rotation
        self.personas = personas
        self.artifacts = artifacts
        self.progress = progress or NullProgressStore()
        self.user_id = user_id
        self.artifact_timeout = artifact_timeout
        self.cancel_on_timeout = cancel_on_timeout
        self.neutral_score = neutral_score
        self._history: deque[LessonResponse] = deque(maxlen=history_limit)
        self._lessons_executed = 0
        self._catastrophic_failures = 0

        self.stages: tuple[Stage, ...] = (
            Stage(StageName.PERFORMANCE_REVIEW, self._performance_review, self._performance_review_fallback),
            Stage(StageName.TOPIC_ANNOUNCEMENT, self._topic_announcement, self._topic_announcement_fallback),
            Stage(StageName.EXPLANATION, self._explanation, self._explanation_fallback),
            Stage(StageName.PERSONALIZED_EXAMPLE, self._personalized_example, self._personalized_example_fallback),
            Stage(StageName.CHALLENGE_QUESTION, self._challenge_question, self._challenge_question_fallback),
            Stage(StageName.ARTIFACT, self._artifact, self._artifact_fallback),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute_lesson(
        self, user_answer: str, lesson_number: int | None = None
    ) -> LessonResponse:
        """Run all six stages for a submission.

        Args:
            user_answer: Learner's free-text answer (may be empty).
            lesson_number: Curriculum lesson; ``None`` means lesson 1.

        Returns:
            A :class:`LessonResponse` with exactly one payload per
            :class:`StageName`.  Failures are reported through the
            ``fallback`` flag and per-stage ``fallback_used`` markers.
        """
        number = lesson_number if lesson_number is not None else DEFAULT_LESSON_NUMBER
        started = time.monotonic()
        logger.info("Executing lesson %d (answer length=%d)", number, len(user_answer or ""))

        try:
            context = await self._build_context(user_answer or "", number)
            run = LessonRun(context=context, score=self.neutral_score)

            stages: dict[StageName, dict[str, Any]] = {}
            for stage in self.stages:
                try:
                    stages[stage.name] = await stage.execute(run)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Stage %s failed for lesson %d", stage.name.value, number)
                    stages[stage.name] = {**stage.fallback(run), "fallback_used": True}

            response = LessonResponse(
                lesson_number=number,
                score=run.score,
                stages=stages,
                summary=self._render_summary(run),
                topic=context.topic,
                phase=context.phase,
                session_id=context.session_id,
                created_at=context.created_at,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Lesson %d failed; returning fallback response", number)
            self._catastrophic_failures += 1
            response = self._catastrophic_fallback(number, exc)

        self._lessons_executed += 1
        self._history.append(response)
        logger.info(
            "Lesson %d completed in %.2fs: score=%.1f fallback=%s",
            number,
            time.monotonic() - started,
            response.score,
            response.fallback,
        )
        return response

    def get_history(self) -> list[LessonResponse]:
        return list(self._history)

    def get_status(self) -> dict[str, Any]:
        return {
            "initialized": True,
            "lessons_executed": self._lessons_executed,
            "catastrophic_failures": self._catastrophic_failures,
            "responses_retained": len(self._history),
            "artifact_timeout": self.artifact_timeout,
            "cancel_on_timeout": self.cancel_on_timeout,
            "artifacts": self.artifacts.get_status(),
            "personas": self.personas.get_status(),
            "rotation": self.rotation.get_status(),
        }

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    async def _build_context(self, user_answer: str, number: int) -> LessonContext:
        lesson = self.curriculum.lookup_lesson(number)
        cast = self.rotation.select_cast(number, lesson)
        return LessonContext(
            lesson=lesson,
            user_answer=user_answer,
            selected_cast=tuple(cast),
            session_id=f"session_{uuid.uuid4().hex[:16]}",
            created_at=utcnow(),
            progress=await self._load_progress(),
        )

    async def _load_progress(self) -> ProgressSnapshot:
        try:
            scores = await self.progress.get_recent_scores(self.user_id, RECENT_SCORE_LIMIT)
        except Exception as exc:
            logger.warning("Progress unavailable for %s, using neutral snapshot: %s", self.user_id, exc)
            return ProgressSnapshot(average_score=self.neutral_score)
        return ProgressSnapshot(
            recent_scores=tuple(scores),
            average_score=fmean(scores) if scores else self.neutral_score,
            total_lessons=len(scores),
        )

    def _render(self, intent: Intent, run: LessonRun, score: float | None = None) -> str:
        ctx = run.context
        return self.personas.render(
            intent,
            RenderContext(
                topic=ctx.topic,
                persona=ctx.instructor.name,
                lesson_number=ctx.lesson_number,
                score=score,
            ),
        ).text

    def _render_summary(self, run: LessonRun) -> str:
        ctx = run.context
        progress = ctx.progress
        return self.personas.render(
            Intent.SUMMARY,
            RenderContext(
                topic=ctx.topic,
                persona=ctx.instructor.name,
                lesson_number=ctx.lesson_number,
                score=run.score,
                average_score=progress.average_score if progress.total_lessons else None,
            ),
        ).text

    # ------------------------------------------------------------------
    # Stage 1: performance review
    # ------------------------------------------------------------------

    async def _performance_review(self, run: LessonRun) -> dict[str, Any]:
        ctx = run.context
        analysis = analyze_answer(ctx.user_answer, ctx.topic, ctx.lesson.keywords)
        run.score = analysis.score
        recent = ctx.progress.recent_scores
        return {
            "score": analysis.score,
            "feedback": self._render(Intent.SCORE_FEEDBACK, run, analysis.score),
            "improvement": self._render(Intent.ENCOURAGEMENT, run),
            "categories": analysis.categories,
            "strengths": analysis.strengths,
            "improvements": analysis.improvements,
            "previous_score": recent[-1] if recent else None,
        }

    def _performance_review_fallback(self, run: LessonRun) -> dict[str, Any]:
        run.score = self.neutral_score
        return {
            "score": self.neutral_score,
            "feedback": default_feedback(self.neutral_score),
            "improvement": "Continue engaging with the material.",
            "categories": dict(FALLBACK_CATEGORIES),
            "strengths": [],
            "improvements": [],
            "previous_score": None,
        }

    # ------------------------------------------------------------------
    # Stage 2: topic announcement
    # ------------------------------------------------------------------

    async def _topic_announcement(self, run: LessonRun) -> dict[str, Any]:
        ctx = run.context
        return {
            "announcement": self._render(Intent.LESSON_INTRO, run),
            "context": _topic_context(ctx.lesson),
            "objectives": list(ctx.lesson.objectives),
            "difficulty": ctx.difficulty,
        }

    def _topic_announcement_fallback(self, run: LessonRun) -> dict[str, Any]:
        ctx = run.context
        return {
            "announcement": (
                f"Today we're examining {ctx.topic}. Consider this lesson {ctx.lesson_number} "
                f"as a specialized treatment protocol for {ctx.phase.lower()}-level understanding."
            ),
            "context": _topic_context(ctx.lesson),
            "objectives": [],
            "difficulty": ctx.difficulty,
        }

    # ------------------------------------------------------------------
    # Stage 3: explanation
    # ------------------------------------------------------------------

    async def _explanation(self, run: LessonRun) -> dict[str, Any]:
        payload = self._explanation_fallback(run)
        payload["introduction"] = self._render(Intent.EXPLANATION, run)
        return payload

    def _explanation_fallback(self, run: LessonRun) -> dict[str, Any]:
        ctx = run.context
        return {
            "explanation": lesson_content.explanation_for(ctx.topic),
            "pro_tip": lesson_content.pro_tip_for(ctx.topic),
            "key_points": list(ctx.lesson.keywords) or list(lesson_content.DEFAULT_KEY_POINTS),
        }

    # ------------------------------------------------------------------
    # Stage 4: personalized example
    # ------------------------------------------------------------------

    async def _personalized_example(self, run: LessonRun) -> dict[str, Any]:
        ctx = run.context
        instructor, student = ctx.instructor.name, ctx.student.name
        return {
            "example": lesson_content.example_for(ctx.topic, student),
            "characters": [p.name for p in ctx.selected_cast],
            "scenario": {
                "setting": lesson_content.SCENARIO_SETTING,
                "instructor": instructor,
                "student": student,
                "challenge": f"Understanding {ctx.topic} concepts",
                "approach": f"{instructor} guides {student} through practical applications",
            },
            "analogies": list(lesson_content.DEFAULT_ANALOGIES),
        }

    def _personalized_example_fallback(self, run: LessonRun) -> dict[str, Any]:
        ctx = run.context
        return {
            "example": lesson_content.DEFAULT_EXAMPLE.format(
                student=ctx.student.name, topic=ctx.topic
            ),
            "characters": [p.name for p in ctx.selected_cast],
            "scenario": {},
            "analogies": list(lesson_content.DEFAULT_ANALOGIES),
        }

    # ------------------------------------------------------------------
    # Stage 5: challenge question
    # ------------------------------------------------------------------

    async def _challenge_question(self, run: LessonRun) -> dict[str, Any]:
        ctx = run.context
        return lesson_content.challenge_for(ctx.topic, ctx.difficulty)

    def _challenge_question_fallback(self, run: LessonRun) -> dict[str, Any]:
        ctx = run.context
        return {
            "question": f"How would you apply {ctx.topic} concepts in a practical situation?",
            "type": "application",
            "hints": ["Consider real-world applications", "Think about the core principles"],
            "expected_points": ["Practical understanding", "Clear explanation"],
            "difficulty": ctx.difficulty,
        }

    # ------------------------------------------------------------------
    # Stage 6: artifact
    # ------------------------------------------------------------------

    async def _artifact(self, run: LessonRun) -> dict[str, Any]:
        ctx = run.context
        try:
            result = await asyncio.wait_for(
                self.artifacts.get_or_generate(ctx.lesson, ctx.selected_cast),
                timeout=self.artifact_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Artifact stage timed out after %.1fs for lesson %d",
                self.artifact_timeout,
                ctx.lesson_number,
            )
            if self.cancel_on_timeout:
                await self.artifacts.cancel_pending(ctx.lesson)
            return _artifact_payload(
                synthesize_fallback(ctx.lesson, ctx.selected_cast),
                intro=self._render(Intent.ARTIFACT_INTRO, run),
                timed_out=True,
            )
        return _artifact_payload(result, intro=self._render(Intent.ARTIFACT_INTRO, run))

    def _artifact_fallback(self, run: LessonRun) -> dict[str, Any]:
        ctx = run.context
        return _artifact_payload(synthesize_fallback(ctx.lesson, ctx.selected_cast), intro="")

    # ------------------------------------------------------------------
    # Catastrophic fallback
    # ------------------------------------------------------------------

    def _catastrophic_fallback(self, number: int, exc: Exception) -> LessonResponse:
        lesson = LessonMeta(
            number=number, topic=FALLBACK_TOPIC, phase=FALLBACK_PHASE, difficulty="beginner"
        )
        neutral = self.neutral_score
        stages: dict[StageName, dict[str, Any]] = {
            StageName.PERFORMANCE_REVIEW: {
                "score": neutral,
                "feedback": "Your response has been noted.",
                "fallback_used": True,
            },
            StageName.TOPIC_ANNOUNCEMENT: {
                "announcement": "Today's lesson will resume once my systems are restored.",
                "fallback_used": True,
            },
            StageName.EXPLANATION: {
                "explanation": "",
                "pro_tip": lesson_content.DEFAULT_PRO_TIP,
                "fallback_used": True,
            },
            StageName.PERSONALIZED_EXAMPLE: {"example": "", "fallback_used": True},
            StageName.CHALLENGE_QUESTION: {
                "question": "What would you like to learn about next?",
                "fallback_used": True,
            },
            StageName.ARTIFACT: {
                **_artifact_payload(synthesize_fallback(lesson, ()), intro=""),
                "fallback_used": True,
            },
        }
        return LessonResponse(
            lesson_number=number,
            score=neutral,
            stages=stages,
            summary=FALLBACK_SUMMARY,
            topic=FALLBACK_TOPIC,
            phase=FALLBACK_PHASE,
            fallback=True,
            error=str(exc),
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _topic_context(lesson: LessonMeta) -> str:
    return (
        f"This {lesson.difficulty} lesson covers essential concepts in {lesson.topic}. "
        f"Understanding these principles is crucial for your progression in the "
        f"{lesson.phase} phase."
    )


def _artifact_payload(
    result: ArtifactResult, intro: str, timed_out: bool = False
) -> dict[str, Any]:
    return {
        "intro": intro,
        "artifact": result.to_dict(),
        "generated": result.success,
        "fallback_used": result.fallback_used,
        "timed_out": timed_out,
    }
