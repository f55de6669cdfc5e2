"""Persona rotation for lesson casts.

Every lesson is voiced by the instructor plus one supporting character.
The anchor character ("Captain Tal") appears on every ``anchor_frequency``-th
lesson; on all other lessons a supporting character is drawn by weighted
random choice from the pool, subject to two rotation rules:

* nobody appears more than ``max_consecutive`` lessons in a row;
* low-frequency characters must sit out ``floor(20 / frequency)`` lessons
  between appearances.

Rotation state lives on the :class:`PersonaRotation` instance and is guarded
by a lock, so concurrent submissions cannot race on the consecutive counter.
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from lesson_engine.domain import LessonMeta, Persona, PersonaRole, utcnow

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

INSTRUCTOR_NAME = "The Doctor"
ANCHOR_NAME = "Captain Tal"
DEFAULT_SUPPORT_NAME = "Boimler"

LOW_FREQUENCY_THRESHOLD = 10
GAP_NUMERATOR = 20
RELEVANCE_BOOST = 1.5

# lesson phase -> trait that earns the relevance boost in that phase
PHASE_TRAIT_BOOSTS: dict[str, str] = {
    "Foundations": "eager",
    "Advanced Control": "technical",
}

_HISTORY_MAX = 100
_HISTORY_KEEP = 50


def _persona(
    name: str,
    role: PersonaRole,
    frequency: int,
    traits: list[str],
    series: str,
    personality: str,
) -> Persona:
    return Persona(
        name=name,
        role=role,
        appearance_frequency=frequency,
        trait_tags=frozenset(traits),
        series=series,
        personality=personality,
    )


_R = PersonaRole.ROTATING_SUPPORT

PERSONA_POOL: tuple[Persona, ...] = (
    _persona(INSTRUCTOR_NAME, PersonaRole.INSTRUCTOR, 100,
             ["holographic", "medical_expert", "sarcastic", "educational"],
             "Voyager", "medical, precise, occasionally arrogant, witty"),
    _persona(ANCHOR_NAME, PersonaRole.FIXED_SUPPORT, 33,
             ["leadership", "curious", "determined", "growing"],
             "Original", "curious, determined, quick learner, asks good questions"),
    # Lower Decks
    _persona("Mariner", _R, 15, ["rebellious", "witty", "competent", "irreverent"],
             "Lower Decks", "rebellious, witty, secretly competent"),
    _persona("Boimler", _R, 15, ["rule_following", "anxious", "detail_oriented", "eager"],
             "Lower Decks", "rule-following, anxious, eager to please"),
    _persona("Tendi", _R, 12, ["medical", "enthusiastic", "helpful", "positive"],
             "Lower Decks", "enthusiastic, helpful, medical background"),
    _persona("Rutherford", _R, 12, ["engineering", "methodical", "friendly", "technical"],
             "Lower Decks", "engineering-focused, methodical, problem-solver"),
    # TNG
    _persona("Data", _R, 10, ["android", "logical", "precise", "curious"],
             "TNG", "logical, precise, curious about humanity"),
    _persona("Geordi", _R, 8, ["engineering", "patient", "technical", "friendly"],
             "TNG", "engineering-focused, patient teacher"),
    _persona("Troi", _R, 6, ["empathetic", "counselor", "supportive", "intuitive"],
             "TNG", "empathetic, supportive"),
    # Voyager
    _persona("Janeway", _R, 8, ["leadership", "scientific", "decisive", "protective"],
             "Voyager", "authoritative, scientific, decisive"),
    _persona("Torres", _R, 6, ["engineering", "direct", "impatient", "brilliant"],
             "Voyager", "direct, technically brilliant"),
    _persona("Seven", _R, 6, ["precise", "efficient", "perfectionist", "analytical"],
             "Voyager", "precise, efficient, perfectionist"),
    # TOS
    _persona("Spock", _R, 5, ["vulcan", "logical", "patient", "precise"],
             "TOS", "purely logical, patient with illogical students"),
    _persona("Scotty", _R, 4, ["engineering", "practical", "enthusiastic", "experienced"],
             "TOS", "practical, enthusiastic about technology"),
    # DS9
    _persona("Dax", _R, 4, ["wise", "experienced", "playful", "multi_lifetime"],
             "DS9", "wise, playful, many lifetimes of experience"),
    _persona("Bashir", _R, 3, ["medical", "eager", "confident", "detailed"],
             "DS9", "medical expertise, eager, sometimes overconfident"),
)


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@dataclass
class RotationState:
    """Mutable per-persona bookkeeping.

    Attributes:
        last_used_lesson: Lesson number of the most recent appearance.
        consecutive_use_count: Length of the current run of back-to-back lessons.
    """

    last_used_lesson: int | None = None
    consecutive_use_count: int = 0


@dataclass(frozen=True)
class RotationRecord:
    lesson_number: int
    names: tuple[str, ...]
    recorded_at: datetime


# ---------------------------------------------------------------------------
# Selector
# ---------------------------------------------------------------------------


class PersonaRotation:
    """Stateful weighted picker for the lesson cast.

    When no rotating persona is eligible the default support persona fills
    the slot, or the anchor once the default has a full run.

    Args:
        pool: Persona pool; must contain the instructor, anchor and default
              support personas.
        max_consecutive: Upper bound on back-to-back appearances.
        anchor_frequency: The anchor persona is cast on every N-th lesson.
        enabled: When ``False`` every lesson gets the default cast.
        rng: Random source for the weighted draw (seed it in tests).
    """

    def __init__(
        self,
        pool: tuple[Persona, ...] = PERSONA_POOL,
        max_consecutive: int = 2,
        anchor_frequency: int = 3,
        enabled: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        self._pool: dict[str, Persona] = {p.name: p for p in pool}
        for required in (INSTRUCTOR_NAME, ANCHOR_NAME, DEFAULT_SUPPORT_NAME):
            if required not in self._pool:
                raise ValueError(f"Persona pool is missing {required!r}")

        self.max_consecutive = max_consecutive
        self.anchor_frequency = anchor_frequency
        self.enabled = enabled
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._state: dict[str, RotationState] = {name: RotationState() for name in self._pool}
        self._history: list[RotationRecord] = []

        logger.info("Persona rotation initialised: pool size %d", len(self._pool))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def select_cast(self, lesson_number: int, lesson: LessonMeta) -> list[Persona]:
        """Return ``[instructor, support]`` for a lesson.

        Never raises: any unexpected error yields the default cast.
        """
        if not self.enabled:
            return self.default_cast()

        try:
            with self._lock:
                instructor = self._pool[INSTRUCTOR_NAME]
                if lesson_number % self.anchor_frequency == 0:
                    support = self._pool[ANCHOR_NAME]
                else:
                    support = self._select_support(lesson_number, lesson)
                cast = [instructor, support]
                self._record_usage(lesson_number, cast)
        except Exception:
            logger.exception("Cast selection failed for lesson %d", lesson_number)
            return self.default_cast()

        logger.info(
            "Cast for lesson %d: %s", lesson_number, ", ".join(p.name for p in cast)
        )
        return cast

    def default_cast(self) -> list[Persona]:
        return [self._pool[INSTRUCTOR_NAME], self._pool[ANCHOR_NAME]]

    def get_state(self, name: str) -> RotationState:
        """Return a copy of the rotation state for one persona."""
        with self._lock:
            state = self._state[name]
            return RotationState(state.last_used_lesson, state.consecutive_use_count)

    def get_history(self, limit: int = 20) -> list[RotationRecord]:
        with self._lock:
            return self._history[-limit:]

    def get_usage_stats(self) -> dict[str, dict[str, Any]]:
        """Appearance counts and rotation state for every persona."""
        with self._lock:
            stats: dict[str, dict[str, Any]] = {}
            for name, persona in self._pool.items():
                state = self._state[name]
                stats[name] = {
                    "total_appearances": sum(1 for r in self._history if name in r.names),
                    "last_used": state.last_used_lesson or 0,
                    "consecutive_uses": state.consecutive_use_count,
                    "appearance_frequency": persona.appearance_frequency,
                }
            return stats

    def get_status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "total_personas": len(self._pool),
            "history_size": len(self._history),
            "recent": [
                {"lesson_number": r.lesson_number, "cast": list(r.names)}
                for r in self.get_history(5)
            ],
        }

    def reset(self) -> None:
        """Forget all rotation state and history."""
        with self._lock:
            self._state = {name: RotationState() for name in self._pool}
            self._history.clear()
        logger.info("Persona rotation state reset")

    # ------------------------------------------------------------------
    # Selection steps
    # ------------------------------------------------------------------

    def _select_support(self, lesson_number: int, lesson: LessonMeta) -> Persona:
        candidates = [
            p for p in self._pool.values()
            if p.name not in (INSTRUCTOR_NAME, ANCHOR_NAME)
        ]
        candidates = self._filter_by_lesson(candidates, lesson)
        candidates = self._apply_rotation_rules(candidates, lesson_number)
        selected = self._select_by_weight(candidates, lesson)
        if selected is not None:
            return selected

        default = self._pool[DEFAULT_SUPPORT_NAME]
        if self._run_is_full(default.name, lesson_number):
            logger.debug(
                "No eligible support persona for lesson %d and %s has a full run; using %s",
                lesson_number,
                DEFAULT_SUPPORT_NAME,
                ANCHOR_NAME,
            )
            return self._pool[ANCHOR_NAME]
        logger.debug(
            "No eligible support persona for lesson %d; using %s",
            lesson_number,
            DEFAULT_SUPPORT_NAME,
        )
        return default

    def _run_is_full(self, name: str, lesson_number: int) -> bool:
        state = self._state[name]
        # A run only continues if the persona was in the previous lesson.
        run_active = state.last_used_lesson == lesson_number - 1
        return run_active and state.consecutive_use_count >= self.max_consecutive

    @staticmethod
    def _filter_by_lesson(candidates: list[Persona], lesson: LessonMeta) -> list[Persona]:
        """Keep the personas whose traits suit the lesson's difficulty or topic."""
        topic = lesson.topic.lower()
        if lesson.difficulty == "beginner":
            return [p for p in candidates if p.appearance_frequency >= LOW_FREQUENCY_THRESHOLD]
        if lesson.difficulty == "advanced":
            return [p for p in candidates if p.has_trait("engineering", "technical", "analytical")]
        if "quality" in topic or "optimization" in topic:
            return [p for p in candidates if p.has_trait("medical", "precise")]
        return candidates

    def _apply_rotation_rules(
        self, candidates: list[Persona], lesson_number: int
    ) -> list[Persona]:
        eligible: list[Persona] = []
        for persona in candidates:
            if self._run_is_full(persona.name, lesson_number):
                continue
            state = self._state[persona.name]
            if (
                state.last_used_lesson is not None
                and persona.appearance_frequency <= LOW_FREQUENCY_THRESHOLD
            ):
                gap_required = GAP_NUMERATOR // persona.appearance_frequency
                if lesson_number - state.last_used_lesson < gap_required:
                    continue
            eligible.append(persona)
        return eligible

    def _select_by_weight(
        self, candidates: list[Persona], lesson: LessonMeta
    ) -> Persona | None:
        if not candidates:
            return None

        boosted_trait = PHASE_TRAIT_BOOSTS.get(lesson.phase)
        weights = [
            p.appearance_frequency * (RELEVANCE_BOOST if boosted_trait and p.has_trait(boosted_trait) else 1.0)
            for p in candidates
        ]

        remaining = self._rng.random() * sum(weights)
        for persona, weight in zip(candidates, weights):
            remaining -= weight
            if remaining <= 0:
                return persona
        return candidates[0]

    def _record_usage(self, lesson_number: int, cast: list[Persona]) -> None:
        for persona in cast:
            state = self._state[persona.name]
            if state.last_used_lesson == lesson_number - 1:
                # Clamped so the always-present instructor keeps the bound too.
                state.consecutive_use_count = min(
                    state.consecutive_use_count + 1, self.max_consecutive
                )
            else:
                state.consecutive_use_count = 1
            state.last_used_lesson = lesson_number

        self._history.append(
            RotationRecord(lesson_number, tuple(p.name for p in cast), utcnow())
        )
        if len(self._history) > _HISTORY_MAX:
            self._history = self._history[-_HISTORY_KEEP:]
