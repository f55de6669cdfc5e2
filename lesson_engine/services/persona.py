"""Persona-voiced response templates for the instructor.

Template data is kept in :class:`TemplateRecord` entries (a tag plus a tuple
of ``str.format`` strings with named placeholders) so the persona's voice can
be edited or tested without touching the rendering code.

:meth:`ResponseTemplateEngine.render` picks a template uniformly at random,
fills in the context, appends a tone modifier chosen from the current
intensity (1–10), and caches the result for intents that are not time- or
state-sensitive.
"""

from __future__ import annotations

import logging
import random
import threading
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from lesson_engine.domain import utcnow

logger = logging.getLogger(__name__)

DIAGNOSTIC_TEXT = (
    "I am experiencing a temporary malfunction in my personality subroutines."
)


class Intent(str, Enum):
    GREETING = "greeting"
    LESSON_INTRO = "lesson_intro"
    SCORE_FEEDBACK = "score_feedback"
    EXPLANATION = "explanation"
    ENCOURAGEMENT = "encouragement"
    SUMMARY = "summary"
    ARTIFACT_INTRO = "artifact_intro"


# Time- or state-sensitive intents are never served from the cache.
UNCACHEABLE_INTENTS = frozenset({Intent.GREETING, Intent.SUMMARY})


# ---------------------------------------------------------------------------
# Template data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TemplateRecord:
    """A named pool of format strings.

    Attributes:
        tag: Registry key, e.g. ``"score_feedback.excellent"``.
        formats: Candidate templates; placeholders use ``{name}`` syntax.
    """

    tag: str
    formats: tuple[str, ...]


def _record(tag: str, *formats: str) -> TemplateRecord:
    return TemplateRecord(tag=tag, formats=formats)


DEFAULT_TEMPLATES: dict[str, TemplateRecord] = {
    r.tag: r
    for r in (
        _record(
            "greeting",
            "Please state the nature of your educational emergency.",
            "I am {persona}, and I will be conducting your educational treatment today.",
            "My holographic educational subroutines are at your disposal.",
            "I trust you're prepared for a thorough educational examination.",
        ),
        _record(
            "lesson_intro",
            "Today's lesson concerns {topic}, a subject that requires my particular expertise.",
            "We shall now examine {topic} - try to keep up.",
            "Your educational treatment today involves {topic}. Pay attention.",
            "I've prepared a comprehensive analysis of {topic} for your benefit.",
        ),
        _record(
            "score_feedback.excellent",
            "Remarkable. You've exceeded my admittedly low expectations. "
            "Your mastery of {topic} exceeds my projected parameters.",
            "Outstanding work. Perhaps there's hope for you yet. "
            "Your response indicates a healthy understanding of {topic}.",
            "Most impressive. You're learning faster than anticipated. "
            "A score in the {band} range is... acceptable.",
        ),
        _record(
            "score_feedback.good",
            "Adequate. Not brilliant, but serviceable. "
            "Your grasp of {topic} is progressing satisfactorily.",
            "Satisfactory progress. Continue at this pace. "
            "Your comprehension of {topic} shows signs of improvement.",
            "Acceptable. Your understanding is developing. "
            "Your understanding of {topic} requires some refinement.",
        ),
        _record(
            "score_feedback.poor",
            "I'm afraid your response requires significant improvement. "
            "We must review the fundamentals of {topic} immediately.",
            "Perhaps we should review the basics... again. "
            "Your understanding of {topic} needs immediate attention.",
            "Your comprehension appears to need additional therapeutic intervention. "
            "Let me explain {topic} in simpler terms.",
        ),
        _record(
            "explanation",
            "As someone with vast knowledge in {topic}, I can assure you of the following.",
            "My databases contain extensive information about {topic}. Observe.",
            "Having studied {topic} extensively, I must inform you: note carefully.",
            "My expertise in {topic} allows me to conclude the following, clinically speaking.",
        ),
        _record(
            "encouragement",
            "Learning is a process, much like recovering from a minor medical condition.",
            "Every expert was once a beginner - though I was exceptional from activation.",
            "Practice and patience will improve your condition... I mean, performance.",
            "Your educational prognosis remains optimistic.",
        ),
        _record(
            "summary",
            "This concludes today's educational session. Your progress has been... noted. "
            "{progress_assessment} {next_step}",
            "I trust this lesson has been therapeutically beneficial. "
            "{progress_assessment} {next_step}",
            "Your educational treatment is complete for now. {progress_assessment} {next_step}",
            "End of lesson. {progress_assessment} {next_step}",
        ),
        _record(
            "artifact_intro",
            "I've prepared a visual aid regarding {topic} to assist your learning process.",
            "Observe this educational illustration on {topic} I've commissioned.",
            "I present this graphical representation of {topic} for your educational benefit.",
        ),
    )
}

# (upper bound inclusive, modifier); the last band catches everything above.
TONE_BANDS: tuple[tuple[int, str], ...] = (
    (3, "I shall endeavor to maintain professional standards."),
    (6, "Though I suppose I should temper my expectations appropriately."),
    (8, "Not that I'm particularly surprised by this development."),
    (10, "Though naturally, I expected nothing less given my superior educational programming."),
)


def score_band(score: float) -> str:
    """Map a score onto the three feedback bands."""
    if score >= 8:
        return "excellent"
    if score >= 5:
        return "good"
    return "poor"


def tone_modifier(intensity: int) -> str:
    for upper, text in TONE_BANDS:
        if intensity <= upper:
            return text
    return TONE_BANDS[-1][1]


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RenderContext:
    """Values available to templates.

    Attributes:
        topic: Lesson topic.
        persona: Name of the speaking persona.
        lesson_number: Lesson number; part of the cache key.
        score: Lesson score, required for score feedback and summaries.
            Cacheable intents only see its band as ``{band}``; the exact
            ``{score}`` placeholder is filled for uncached intents.
        average_score: Recent average from the progress store, if known.
    """

    topic: str = ""
    persona: str = "The Doctor"
    lesson_number: int = 0
    score: float | None = None
    average_score: float | None = None


@dataclass(frozen=True)
class PersonaText:
    text: str
    intent: Intent
    intensity: int
    cached: bool = False
    generated_at: datetime = field(default_factory=utcnow)


class _FormatFields(dict):
    """Leaves unknown placeholders in place instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class ResponseTemplateEngine:
    """Render persona-voiced text for a response intent.

    Args:
        templates: Tag → :class:`TemplateRecord` registry.
        intensity: Initial tone intensity, clamped to 1–10.
        cache_size: Capacity of the response cache.
        rng: Random source for template choice.
    """

    def __init__(
        self,
        templates: dict[str, TemplateRecord] | None = None,
        intensity: int = 7,
        cache_size: int = 1000,
        rng: random.Random | None = None,
    ) -> None:
        self._templates = dict(DEFAULT_TEMPLATES if templates is None else templates)
        self._base_intensity = self._clamp(intensity)
        self._intensity = self._base_intensity
        self._cache_size = cache_size
        self._cache: OrderedDict[tuple[Any, ...], PersonaText] = OrderedDict()
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self.stats: dict[str, int] = {"responses_generated": 0, "cache_hits": 0}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def render(self, intent: Intent, context: RenderContext) -> PersonaText:
        """Return persona text for ``intent``; never raises."""
        try:
            return self._render(intent, context)
        except Exception:
            logger.exception("Rendering failed for intent=%s", intent)
            return PersonaText(DIAGNOSTIC_TEXT, intent, self._intensity)

    @property
    def intensity(self) -> int:
        return self._intensity

    def adjust_intensity(self, delta: int) -> int:
        with self._lock:
            old = self._intensity
            self._intensity = self._clamp(old + delta)
        if old != self._intensity:
            logger.info("Tone intensity adjusted: %d -> %d", old, self._intensity)
        return self._intensity

    def reset_intensity(self) -> int:
        with self._lock:
            self._intensity = self._base_intensity
        return self._intensity

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def cache_len(self) -> int:
        return len(self._cache)

    def get_status(self) -> dict[str, Any]:
        return {
            "intensity": self._intensity,
            "base_intensity": self._base_intensity,
            "cache_size": len(self._cache),
            "cache_capacity": self._cache_size,
            **self.stats,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _render(self, intent: Intent, context: RenderContext) -> PersonaText:
        intensity = self._intensity
        cacheable = intent not in UNCACHEABLE_INTENTS
        key = (intent, self._score_bucket(context), context.lesson_number, intensity)

        if cacheable:
            with self._lock:
                hit = self._cache.get(key)
                if hit is not None:
                    self.stats["cache_hits"] += 1
                    return hit

        tag = intent.value
        if intent is Intent.SCORE_FEEDBACK:
            tag = f"{tag}.{score_band(context.score or 0.0)}"

        record = self._templates.get(tag)
        if record is None or not record.formats:
            logger.warning("No templates registered for %r", tag)
            return PersonaText(DIAGNOSTIC_TEXT, intent, intensity)

        template = self._rng.choice(record.formats)
        body = template.format_map(self._fields(intent, context))
        text = f"{body} {tone_modifier(intensity)}"
        result = PersonaText(text, intent, intensity)

        with self._lock:
            self.stats["responses_generated"] += 1
            if cacheable:
                if len(self._cache) >= self._cache_size:
                    self._cache.popitem(last=False)
                self._cache[key] = replace(result, cached=True)
        return result

    @staticmethod
    def _score_bucket(context: RenderContext) -> str:
        return "-" if context.score is None else score_band(context.score)

    @staticmethod
    def _fields(intent: Intent, context: RenderContext) -> _FormatFields:
        fields = _FormatFields(
            topic=context.topic,
            persona=context.persona,
            lesson_number=context.lesson_number,
            band=ResponseTemplateEngine._score_bucket(context),
        )
        # Cached text is shared across a whole band, so only uncached
        # intents may quote the exact score.
        if intent in UNCACHEABLE_INTENTS:
            fields["score"] = "?" if context.score is None else f"{context.score:.1f}"
        if intent is Intent.SUMMARY:
            fields["progress_assessment"] = _progress_assessment(context.average_score)
            fields["next_step"] = _next_step(context.lesson_number, context.score)
        return fields

    @staticmethod
    def _clamp(value: int) -> int:
        return max(1, min(10, value))


def _progress_assessment(average: float | None) -> str:
    if average is None:
        return "Your progress requires further monitoring."
    if average >= 8:
        return "Your overall progress has been... surprisingly competent."
    if average >= 6:
        return "Your educational trajectory shows steady improvement."
    return "Your progress indicates a need for intensive educational therapy."


def _next_step(lesson_number: int, score: float | None) -> str:
    upcoming = lesson_number + 1
    if score is None:
        return f"Proceed to Lesson {upcoming} when you feel adequately prepared."
    if score >= 8:
        return f"You appear ready for Lesson {upcoming}. Try not to disappoint me."
    if score >= 6:
        return f"Proceed to Lesson {upcoming} when you feel adequately prepared."
    return f"I recommend reviewing this material before attempting Lesson {upcoming}."
