"""Heuristic answer analyzer for the performance review stage.

Scores a free-text answer on four categories (depth, engagement,
understanding, accuracy) and averages them into a 1–10 score.  Pure
function of its input; never raises for any string.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from lesson_engine.services.lesson_content import topic_keywords

logger = logging.getLogger(__name__)

# Answers longer than this are analysed on their prefix only.
MAX_ANALYSED_CHARS = 20_000

CONNECTIVES = ("because", "therefore", "however")
QUESTION_MARKERS = ("?", "what", "how", "why")
REFLECTION_WORDS = ("think", "believe", "consider")

ACCURACY_BASELINE = 6
MIN_SCORE = 1.0
MAX_SCORE = 10.0


@dataclass
class AnswerAnalysis:
    score: float
    categories: dict[str, int]
    strengths: list[str] = field(default_factory=list)
    improvements: list[str] = field(default_factory=list)
    matched_keywords: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def analyze_answer(
    answer: str, topic: str, lesson_keywords: tuple[str, ...] = ()
) -> AnswerAnalysis:
    """Score an answer against a lesson topic.

    Args:
        answer: Raw learner text; may be empty or very long.
        topic: Lesson topic used to pick the keyword list.
        lesson_keywords: Curriculum keywords, used when the topic has no
                         dedicated keyword list.

    Returns:
        :class:`AnswerAnalysis` with ``score`` in ``[1.0, 10.0]``.
    """
    text = (answer or "")[:MAX_ANALYSED_CHARS].lower().strip()
    word_count = len(text.split())

    categories = {"depth": 0, "accuracy": 0, "engagement": 0, "understanding": 0}
    strengths: list[str] = []
    improvements: list[str] = []

    # Depth
    if word_count > 50:
        categories["depth"] += 3
    elif word_count > 20:
        categories["depth"] += 2
    elif word_count > 5:
        categories["depth"] += 1
    if any(word in text for word in CONNECTIVES):
        categories["depth"] += 2

    # Engagement
    if any(marker in text for marker in QUESTION_MARKERS):
        categories["engagement"] += 2
        strengths.append("Shows curiosity and asks questions")
    if any(word in text for word in REFLECTION_WORDS):
        categories["engagement"] += 1
        strengths.append("Demonstrates thoughtful consideration")

    # Understanding
    matched = [kw for kw in topic_keywords(topic, lesson_keywords) if kw.lower() in text]
    categories["understanding"] = min(10, len(matched) * 2)
    if matched:
        strengths.append(f"References relevant concepts: {', '.join(matched)}")

    categories["accuracy"] = ACCURACY_BASELINE

    mean = sum(categories.values()) / len(categories)
    score = round(min(MAX_SCORE, max(MIN_SCORE, mean)), 1)

    if categories["depth"] < 5:
        improvements.append("Provide more detailed explanations")
    if categories["engagement"] < 5:
        improvements.append("Ask more questions and show curiosity")
    if categories["understanding"] < 5:
        improvements.append("Reference more topic-specific concepts")

    logger.debug(
        "Analysed answer: words=%d categories=%s score=%.1f", word_count, categories, score
    )
    return AnswerAnalysis(
        score=score,
        categories=categories,
        strengths=strengths,
        improvements=improvements,
        matched_keywords=matched,
    )


def default_feedback(score: float) -> str:
    """Plain feedback sentence for a score, used when rendering fails."""
    if score >= 9:
        return "Exceptional understanding demonstrated. Your response shows mastery of the concepts."
    if score >= 8:
        return "Excellent work. Your response indicates strong comprehension."
    if score >= 7:
        return "Good response. You're grasping the key concepts well."
    if score >= 6:
        return "Satisfactory answer. There's room for deeper understanding."
    if score >= 5:
        return "Your response shows some understanding, but needs development."
    return "Your response indicates significant gaps in understanding that we'll address."
