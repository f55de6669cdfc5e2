"""Unit tests for the per-topic teaching material lookups."""

from __future__ import annotations

from lesson_engine.services import lesson_content
from lesson_engine.services.lesson_content import (
    CHALLENGES,
    DEFAULT_PRO_TIP,
    challenge_for,
    example_for,
    explanation_for,
    match_topic,
    pro_tip_for,
)


def test_match_topic_is_case_insensitive_substring():
    table = {"cfg scale": 1, "Sampling": 2}

    assert match_topic(table, "CFG Scale and Its Impact on Generation") == 1
    assert match_topic(table, "Advanced sampling methods") == 2
    assert match_topic(table, "LoRA Training") is None


def test_explanation_for_known_and_unknown_topics():
    assert "Classifier-Free Guidance" in explanation_for("CFG Scale and Its Impact on Generation")
    assert explanation_for("Seeds and Reproducibility").startswith("Seeds and Reproducibility is")


def test_pro_tip_falls_back_to_default():
    assert "Start at 7" in pro_tip_for("CFG Scale and Its Impact on Generation")
    assert pro_tip_for("Seeds and Reproducibility") == DEFAULT_PRO_TIP


def test_example_names_the_supporting_persona():
    assert "Mariner generates" in example_for("CFG Scale and Its Impact on Generation", "Mariner")

    generic = example_for("Seeds and Reproducibility", "Tendi")
    assert generic.startswith("Tendi approaches Seeds and Reproducibility")


def test_challenge_for_known_topic_returns_a_copy():
    challenge = challenge_for("CFG Scale and Its Impact on Generation", "beginner")
    challenge["hints"].append("mutated")

    assert challenge["type"] == "problem_solving"
    assert "mutated" not in CHALLENGES["CFG Scale"]["hints"]


def test_generic_challenge_uses_lesson_difficulty():
    challenge = challenge_for("Seeds and Reproducibility", "beginner")

    assert challenge["type"] == "application"
    assert challenge["difficulty"] == "beginner"
    assert "Seeds and Reproducibility" in challenge["question"]


def test_topic_keywords_prefers_topic_table():
    keywords = lesson_content.topic_keywords("ControlNet Basics", ("ignored",))

    assert keywords == ["controlnet", "control", "pose", "depth", "edge"]
