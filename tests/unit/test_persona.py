"""Unit tests for the ResponseTemplateEngine."""

from __future__ import annotations

import random

import pytest

from lesson_engine.services.persona import (
    DEFAULT_TEMPLATES,
    DIAGNOSTIC_TEXT,
    TONE_BANDS,
    Intent,
    RenderContext,
    ResponseTemplateEngine,
    TemplateRecord,
    score_band,
    tone_modifier,
)

TOPIC = "CFG Scale and Its Impact on Generation"


def _ctx(**overrides) -> RenderContext:
    values = {"topic": TOPIC, "lesson_number": 3}
    values.update(overrides)
    return RenderContext(**values)


# ---------------------------------------------------------------------------
# Bands and tone
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "score, band",
    [(10.0, "excellent"), (8.0, "excellent"), (7.9, "good"), (5.0, "good"), (4.9, "poor"), (1.0, "poor")],
)
def test_score_band_boundaries(score, band):
    assert score_band(score) == band


@pytest.mark.parametrize(
    "intensity, band_index",
    [(1, 0), (3, 0), (4, 1), (6, 1), (7, 2), (8, 2), (9, 3), (10, 3)],
)
def test_tone_modifier_follows_intensity_bands(intensity, band_index):
    assert tone_modifier(intensity) == TONE_BANDS[band_index][1]


def test_rendered_text_ends_with_tone_modifier(personas):
    result = personas.render(Intent.LESSON_INTRO, _ctx())

    assert result.text.endswith(tone_modifier(7))
    assert TOPIC in result.text


def test_score_feedback_uses_band_templates():
    templates = {
        "score_feedback.excellent": TemplateRecord("score_feedback.excellent", ("top {band}",)),
        "score_feedback.good": TemplateRecord("score_feedback.good", ("mid {band}",)),
        "score_feedback.poor": TemplateRecord("score_feedback.poor", ("low {band}",)),
    }
    engine = ResponseTemplateEngine(templates=templates)

    assert engine.render(Intent.SCORE_FEEDBACK, _ctx(score=9.0)).text.startswith("top excellent")
    assert engine.render(Intent.SCORE_FEEDBACK, _ctx(score=6.0)).text.startswith("mid good")
    assert engine.render(Intent.SCORE_FEEDBACK, _ctx(score=2.5)).text.startswith("low poor")


def test_cached_feedback_never_quotes_another_learners_score():
    record = DEFAULT_TEMPLATES["score_feedback.excellent"]
    # Pin the template that talks about the score.
    engine = ResponseTemplateEngine(templates={record.tag: TemplateRecord(record.tag, record.formats[-1:])})

    first = engine.render(Intent.SCORE_FEEDBACK, _ctx(score=8.2))
    second = engine.render(Intent.SCORE_FEEDBACK, _ctx(score=9.6))

    assert second.cached is True
    assert "8.2" not in second.text
    assert "excellent range" in first.text


@pytest.mark.parametrize(
    "tag",
    [
        "lesson_intro",
        "score_feedback.excellent",
        "score_feedback.good",
        "score_feedback.poor",
        "explanation",
        "encouragement",
        "artifact_intro",
    ],
)
def test_cacheable_templates_do_not_quote_exact_score(tag):
    assert all("{score}" not in fmt for fmt in DEFAULT_TEMPLATES[tag].formats)


def test_uncached_intent_can_quote_exact_score():
    templates = {"greeting": TemplateRecord("greeting", ("scored {score}",))}
    engine = ResponseTemplateEngine(templates=templates)

    assert engine.render(Intent.GREETING, _ctx(score=8.2)).text.startswith("scored 8.2")


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


def test_second_render_is_a_cache_hit(personas):
    first = personas.render(Intent.EXPLANATION, _ctx())
    second = personas.render(Intent.EXPLANATION, _ctx())

    assert first.cached is False
    assert second.cached is True
    assert second.text == first.text
    assert personas.stats["cache_hits"] == 1
    assert personas.stats["responses_generated"] == 1


def test_cache_key_includes_lesson_and_score_band(personas):
    personas.render(Intent.SCORE_FEEDBACK, _ctx(score=9.0))
    personas.render(Intent.SCORE_FEEDBACK, _ctx(score=9.5))
    personas.render(Intent.SCORE_FEEDBACK, _ctx(score=2.0))
    personas.render(Intent.SCORE_FEEDBACK, _ctx(score=9.0, lesson_number=4))

    assert personas.stats["cache_hits"] == 1
    assert personas.cache_len() == 3


def test_intensity_change_misses_cache(personas):
    personas.render(Intent.ENCOURAGEMENT, _ctx())
    personas.adjust_intensity(-5)
    result = personas.render(Intent.ENCOURAGEMENT, _ctx())

    assert result.cached is False
    assert result.text.endswith(tone_modifier(2))


@pytest.mark.parametrize("intent", [Intent.GREETING, Intent.SUMMARY])
def test_time_sensitive_intents_are_never_cached(personas, intent):
    personas.render(intent, _ctx(score=7.0))
    second = personas.render(intent, _ctx(score=7.0))

    assert second.cached is False
    assert personas.cache_len() == 0


def test_cache_evicts_least_recently_inserted_entry():
    engine = ResponseTemplateEngine(cache_size=2, rng=random.Random(0))

    engine.render(Intent.EXPLANATION, _ctx(lesson_number=1))
    engine.render(Intent.EXPLANATION, _ctx(lesson_number=2))
    engine.render(Intent.EXPLANATION, _ctx(lesson_number=3))

    assert engine.cache_len() == 2
    assert engine.render(Intent.EXPLANATION, _ctx(lesson_number=1)).cached is False
    assert engine.render(Intent.EXPLANATION, _ctx(lesson_number=3)).cached is True


def test_clear_cache(personas):
    personas.render(Intent.EXPLANATION, _ctx())
    personas.clear_cache()

    assert personas.cache_len() == 0


# ---------------------------------------------------------------------------
# Resilience
# ---------------------------------------------------------------------------


def test_missing_placeholder_is_left_in_place():
    templates = {"explanation": TemplateRecord("explanation", ("About {topic} and {unknown}.",))}
    engine = ResponseTemplateEngine(templates=templates)

    result = engine.render(Intent.EXPLANATION, _ctx())

    assert result.text.startswith(f"About {TOPIC} and {{unknown}}.")


def test_empty_template_pool_returns_diagnostic_text():
    engine = ResponseTemplateEngine(templates={"greeting": TemplateRecord("greeting", ())})

    assert engine.render(Intent.GREETING, _ctx()).text == DIAGNOSTIC_TEXT
    assert engine.render(Intent.LESSON_INTRO, _ctx()).text == DIAGNOSTIC_TEXT


def test_render_never_raises(personas, monkeypatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("template registry corrupted")

    monkeypatch.setattr(personas, "_render", _boom)

    result = personas.render(Intent.EXPLANATION, _ctx())

    assert result.text == DIAGNOSTIC_TEXT
    assert result.intent is Intent.EXPLANATION


# ---------------------------------------------------------------------------
# Intensity
# ---------------------------------------------------------------------------


def test_intensity_is_clamped():
    engine = ResponseTemplateEngine(intensity=42)
    assert engine.intensity == 10

    assert engine.adjust_intensity(-100) == 1
    assert engine.adjust_intensity(+3) == 4


def test_reset_intensity_restores_initial_value():
    engine = ResponseTemplateEngine(intensity=5)
    engine.adjust_intensity(4)

    assert engine.reset_intensity() == 5


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def test_summary_mentions_next_lesson(personas):
    result = personas.render(Intent.SUMMARY, _ctx(score=8.5, average_score=8.2))

    assert "Lesson 4" in result.text
    assert "surprisingly competent" in result.text


def test_summary_without_average_requests_monitoring(personas):
    result = personas.render(Intent.SUMMARY, _ctx(score=4.0))

    assert "requires further monitoring" in result.text
    assert "reviewing this material before attempting Lesson 4" in result.text


def test_status_reports_counters(personas):
    personas.render(Intent.EXPLANATION, _ctx())
    status = personas.get_status()

    assert status["intensity"] == 7
    assert status["cache_size"] == 1
    assert status["responses_generated"] == 1
