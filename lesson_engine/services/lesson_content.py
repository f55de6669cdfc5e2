"""Per-topic teaching material used by the lesson stages.

Each table is keyed by a topic fragment; :func:`match_topic` returns the
first entry whose key appears in the lesson topic, so ``"CFG Scale"`` matches
``"CFG Scale and Its Impact on Generation"``.
"""

from typing import Any, TypeVar

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Keyword lists for the answer analyzer
# ---------------------------------------------------------------------------

TOPIC_KEYWORDS: dict[str, list[str]] = {
    "Text-to-Image Basics": ["prompt", "image", "generation", "ai", "model"],
    "CFG Scale": ["cfg", "scale", "guidance", "creativity", "adherence"],
    "Sampling Methods": ["sampling", "euler", "dpm", "steps", "quality"],
    "Prompting": ["prompt", "description", "keywords", "style", "detail"],
    "Resolution": ["resolution", "pixels", "size", "aspect", "ratio"],
    "ControlNet": ["controlnet", "control", "pose", "depth", "edge"],
    "LoRA": ["lora", "adaptation", "training", "style", "character"],
}

DEFAULT_KEYWORDS: list[str] = ["stable", "diffusion", "image", "ai", "generation"]


# ---------------------------------------------------------------------------
# Explanation stage
# ---------------------------------------------------------------------------

EXPLANATIONS: dict[str, str] = {
    "Text-to-Image Basics": (
        "Text-to-image generation converts written descriptions into visual content "
        "using artificial intelligence. The process involves encoding text prompts and "
        "decoding them into pixel representations."
    ),
    "CFG Scale": (
        "CFG (Classifier-Free Guidance) Scale controls how strictly the AI follows your "
        "prompt. Higher values mean closer adherence to your description, while lower "
        "values allow more creative interpretation."
    ),
    "Sampling Methods": (
        "Sampling methods determine how the AI generates images step by step. Different "
        "samplers produce varying quality, speed, and artistic effects."
    ),
    "Prompting": (
        "Effective prompting is the art of describing your desired image clearly and "
        "specifically. Good prompts include subject, style, composition, and quality "
        "indicators."
    ),
    "ControlNet": (
        "ControlNet provides precise control over image generation by using additional "
        "input conditions like poses, depth maps, or edge detection to guide the "
        "creation process."
    ),
}

PRO_TIPS: dict[str, str] = {
    "Text-to-Image": (
        "Start with simple, clear descriptions and gradually add detail. "
        "Quality over quantity in your prompts."
    ),
    "CFG Scale": (
        "Most images work best with CFG values between 5-15. "
        "Start at 7 and adjust based on results."
    ),
    "Sampling": (
        "Euler and DPM++ samplers are excellent starting points. "
        "Experiment with step counts between 20-50."
    ),
    "Prompting": (
        "Use parentheses (like this) to emphasize important elements, "
        "and negative prompts to exclude unwanted content."
    ),
    "ControlNet": (
        "Combine ControlNet with good prompts for maximum control. "
        "Don't rely on control inputs alone."
    ),
}

DEFAULT_PRO_TIP = (
    "Practice and experimentation are key to mastering this concept. "
    "Start simple and build complexity gradually."
)

DEFAULT_KEY_POINTS: list[str] = [
    "Understanding core concepts",
    "Practical application",
    "Common best practices",
    "Troubleshooting approaches",
]


# ---------------------------------------------------------------------------
# Personalized example stage ({student} is the supporting persona)
# ---------------------------------------------------------------------------

EXAMPLES: dict[str, str] = {
    "Text-to-Image": (
        "Imagine {student} wants to create an image of a starship. Instead of saying "
        '"ship," they write "sleek Federation starship in space, detailed hull, stars in '
        'background, high quality, cinematic lighting." The detailed description helps '
        "the AI understand exactly what's needed."
    ),
    "CFG Scale": (
        "{student} generates the same starship prompt with different CFG values. At CFG 3, "
        "they get a creative but loose interpretation. At CFG 7, a balanced result. At "
        "CFG 15, strict adherence to every word, but potentially over-processed."
    ),
    "Sampling": (
        "The ship's computer uses different algorithms to process the same data. "
        "{student} finds that Euler sampling gives clean results quickly, while DPM++ "
        "samplers provide higher quality with more processing time."
    ),
    "ControlNet": (
        "{student} has a sketch of their ideal bridge layout. Using ControlNet with edge "
        "detection, they can ensure the generated bridge follows their exact floor plan "
        "while adding realistic details."
    ),
}

DEFAULT_EXAMPLE = (
    "{student} approaches {topic} systematically, starting with basic principles and "
    "building to advanced applications through practice and experimentation."
)

DEFAULT_ANALOGIES: list[str] = [
    "Like medical diagnosis - systematic analysis leads to accurate results",
    "Similar to starship operations - each system has specific functions and optimal settings",
]

SCENARIO_SETTING = "USS Cerritos bridge or corridors"


# ---------------------------------------------------------------------------
# Challenge question stage
# ---------------------------------------------------------------------------

CHALLENGES: dict[str, dict[str, Any]] = {
    "Text-to-Image Basics": {
        "question": (
            "You want to create an image of a futuristic laboratory. Write a detailed "
            "prompt that would help an AI understand your vision, including style, "
            "lighting, and specific elements you want to see."
        ),
        "type": "practical_application",
        "hints": [
            "Include the main subject",
            "Describe the style or mood",
            "Mention lighting conditions",
            "Add quality indicators",
        ],
        "expected_points": [
            "Subject description",
            "Style specification",
            "Environmental details",
            "Quality terms",
        ],
        "difficulty": "beginner",
    },
    "CFG Scale": {
        "question": (
            "Your image generation is producing results that either ignore parts of your "
            "prompt or look over-processed. Explain how you would adjust the CFG scale to "
            "solve these issues and why."
        ),
        "type": "problem_solving",
        "hints": [
            "Consider what CFG scale controls",
            "Think about the relationship between prompt adherence and quality",
            "Remember the typical range of useful values",
        ],
        "expected_points": [
            "Understanding of CFG function",
            "Problem identification",
            "Solution strategy",
            "Reasoning",
        ],
        "difficulty": "intermediate",
    },
}


def match_topic(table: dict[str, T], topic: str) -> T | None:
    """Return the first value whose key occurs in ``topic`` (case-insensitive)."""
    lowered = topic.lower()
    for key, value in table.items():
        if key.lower() in lowered:
            return value
    return None


def topic_keywords(topic: str, lesson_keywords: tuple[str, ...] = ()) -> list[str]:
    """Keywords for the analyzer: topic table first, then the lesson's own list."""
    matched = match_topic(TOPIC_KEYWORDS, topic)
    if matched is not None:
        return matched
    if lesson_keywords:
        return [k.lower() for k in lesson_keywords]
    return DEFAULT_KEYWORDS


def explanation_for(topic: str) -> str:
    return match_topic(EXPLANATIONS, topic) or (
        f"{topic} is a fundamental concept in AI image generation that requires "
        "understanding of both technical principles and practical application."
    )


def pro_tip_for(topic: str) -> str:
    return match_topic(PRO_TIPS, topic) or DEFAULT_PRO_TIP


def example_for(topic: str, student: str) -> str:
    template = match_topic(EXAMPLES, topic) or DEFAULT_EXAMPLE
    return template.format(student=student, topic=topic)


def challenge_for(topic: str, difficulty: str) -> dict[str, Any]:
    """Return a copy of the topic's challenge record, or a generic one."""
    matched = match_topic(CHALLENGES, topic)
    if matched is not None:
        return {**matched, "hints": list(matched["hints"]),
                "expected_points": list(matched["expected_points"])}
    return {
        "question": (
            f"Based on what you've learned about {topic}, describe a practical scenario "
            "where you would apply these concepts and explain your approach."
        ),
        "type": "application",
        "hints": [
            "Think of a real-world use case",
            "Consider the key principles",
            "Explain your reasoning",
        ],
        "expected_points": ["Practical scenario", "Concept application", "Clear reasoning"],
        "difficulty": difficulty,
    }
