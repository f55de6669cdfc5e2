"""Core data containers shared by the pipeline services.

These are plain dataclasses; the Pydantic models in :mod:`lesson_engine.schemas`
are only used at the HTTP boundary.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Personas
# ---------------------------------------------------------------------------


class PersonaRole(str, Enum):
    INSTRUCTOR = "instructor"
    ROTATING_SUPPORT = "rotating_support"
    FIXED_SUPPORT = "fixed_support"


@dataclass(frozen=True)
class Persona:
    """Immutable character profile used to voice text and artwork.

    Attributes:
        name: Display name, unique within the pool.
        role: Instructor, rotating support, or fixed (anchor) support.
        appearance_frequency: Relative selection weight, 1–100.
        trait_tags: Tags matched against lesson metadata.
        series: Which show the character comes from.
        personality: Short description used in prompts.
    """

    name: str
    role: PersonaRole
    appearance_frequency: int
    trait_tags: frozenset[str] = field(default_factory=frozenset)
    series: str = ""
    personality: str = ""

    def has_trait(self, *tags: str) -> bool:
        return any(tag in self.trait_tags for tag in tags)


# ---------------------------------------------------------------------------
# Lesson metadata and per-request context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LessonMeta:
    """One curriculum entry as returned by the curriculum provider."""

    number: int
    topic: str
    phase: str
    difficulty: str
    keywords: tuple[str, ...] = ()
    objectives: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProgressSnapshot:
    """Recent-score history, informational only."""

    recent_scores: tuple[float, ...] = ()
    average_score: float = 7.0
    total_lessons: int = 0


@dataclass(frozen=True)
class LessonContext:
    """Everything the six stages need for one submission.

    Built once by the orchestrator and never mutated afterwards.
    """

    lesson: LessonMeta
    user_answer: str
    selected_cast: tuple[Persona, ...]
    session_id: str
    created_at: datetime
    progress: ProgressSnapshot = field(default_factory=ProgressSnapshot)

    @property
    def lesson_number(self) -> int:
        return self.lesson.number

    @property
    def topic(self) -> str:
        return self.lesson.topic

    @property
    def phase(self) -> str:
        return self.lesson.phase

    @property
    def difficulty(self) -> str:
        return self.lesson.difficulty

    @property
    def instructor(self) -> Persona:
        return self.selected_cast[0]

    @property
    def student(self) -> Persona:
        return self.selected_cast[1] if len(self.selected_cast) > 1 else self.selected_cast[0]


# ---------------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------------

_SLUG_RE = re.compile(r"[^a-zA-Z0-9]")


@dataclass(frozen=True)
class CacheKey:
    """Deterministic cache/dedup identifier derived from lesson metadata."""

    lesson_number: int
    topic: str
    difficulty: str

    @classmethod
    def for_lesson(cls, lesson: LessonMeta) -> CacheKey:
        return cls(lesson.number, lesson.topic, lesson.difficulty)

    @property
    def slug(self) -> str:
        """Filesystem-safe form, e.g. ``lesson-3-cfg_scale-beginner``."""
        parts = ["lesson", str(self.lesson_number), _SLUG_RE.sub("_", self.topic), self.difficulty]
        return "-".join(parts).lower()


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Panel:
    """One panel of a text comic."""

    panel: int
    scene: str
    dialogue: tuple[str, ...]
    focus: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "panel": self.panel,
            "scene": self.scene,
            "dialogue": list(self.dialogue),
            "focus": self.focus,
        }


@dataclass(frozen=True)
class ArtifactResult:
    """Outcome of an artifact request.

    ``payload`` is an image reference (URL) on success, or the ordered tuple
    of :class:`Panel` objects for a fallback comic.
    """

    success: bool
    fallback_used: bool
    provider: str
    payload: str | tuple[Panel, ...]
    generated_at: datetime
    lesson_number: int = 0
    topic: str = ""
    prompt: str | None = None
    characters_featured: tuple[str, ...] = ()
    cached: bool = False

    @property
    def panels(self) -> tuple[Panel, ...]:
        return self.payload if isinstance(self.payload, tuple) else ()

    def to_dict(self) -> dict[str, Any]:
        payload: Any = self.payload
        if isinstance(payload, tuple):
            payload = [p.to_dict() for p in payload]
        return {
            "success": self.success,
            "fallback_used": self.fallback_used,
            "provider": self.provider,
            "payload": payload,
            "generated_at": self.generated_at.isoformat(),
            "lesson_number": self.lesson_number,
            "topic": self.topic,
            "prompt": self.prompt,
            "characters_featured": list(self.characters_featured),
            "cached": self.cached,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArtifactResult:
        payload = data["payload"]
        if isinstance(payload, list):
            payload = tuple(
                Panel(
                    panel=int(p["panel"]),
                    scene=p["scene"],
                    dialogue=tuple(p.get("dialogue", ())),
                    focus=p.get("focus", ""),
                )
                for p in payload
            )
        return cls(
            success=bool(data["success"]),
            fallback_used=bool(data["fallback_used"]),
            provider=data["provider"],
            payload=payload,
            generated_at=datetime.fromisoformat(data["generated_at"]),
            lesson_number=int(data.get("lesson_number", 0)),
            topic=data.get("topic", ""),
            prompt=data.get("prompt"),
            characters_featured=tuple(data.get("characters_featured", ())),
            cached=bool(data.get("cached", False)),
        )


# ---------------------------------------------------------------------------
# Lesson response
# ---------------------------------------------------------------------------


class StageName(str, Enum):
    PERFORMANCE_REVIEW = "performance_review"
    TOPIC_ANNOUNCEMENT = "topic_announcement"
    EXPLANATION = "explanation"
    PERSONALIZED_EXAMPLE = "personalized_example"
    CHALLENGE_QUESTION = "challenge_question"
    ARTIFACT = "artifact"


@dataclass
class LessonResponse:
    """Composite result of one lesson submission.

    ``stages`` always holds exactly one entry per :class:`StageName`.
    """

    lesson_number: int
    score: float
    stages: dict[StageName, dict[str, Any]]
    summary: str
    topic: str = ""
    phase: str = ""
    session_id: str = ""
    created_at: datetime = field(default_factory=utcnow)
    fallback: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lesson_number": self.lesson_number,
            "topic": self.topic,
            "phase": self.phase,
            "score": self.score,
            "stages": {name.value: payload for name, payload in self.stages.items()},
            "summary": self.summary,
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "fallback": self.fallback,
            "error": self.error,
        }
