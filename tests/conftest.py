"""Top-level pytest configuration and shared fixtures for the lesson engine.

Environment variables are set at the top of this module *before* any
lesson_engine imports so the cached settings never pick up a real API key
or a production database URL.

Fixture hierarchy
-----------------
curriculum_loader  → CurriculumLoader over the packaged 60-lesson JSON file
rotation           → PersonaRotation with a seeded RNG
personas           → ResponseTemplateEngine with a seeded RNG
make_orchestrator  → factory building a LessonOrchestrator around fakes
test_client        → FastAPI TestClient with the orchestrator overridden
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Set environment variables BEFORE any lesson_engine imports.
# ---------------------------------------------------------------------------
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["OPENAI_API_KEY"] = ""
os.environ["ARTIFACT_CACHE_DIR"] = ""

import random
from typing import Any, Callable

import pytest

from lesson_engine.services.artifacts import ArtifactEngine, MemoryCacheStore
from lesson_engine.services.curriculum import CurriculumLoader
from lesson_engine.services.image_provider import ImageProvider
from lesson_engine.services.orchestrator import CurriculumProvider, LessonOrchestrator
from lesson_engine.services.persona import ResponseTemplateEngine
from lesson_engine.services.progress import ProgressStore
from lesson_engine.services.rotation import PersonaRotation


# ---------------------------------------------------------------------------
# Core services
# ---------------------------------------------------------------------------


@pytest.fixture
def curriculum_loader() -> CurriculumLoader:
    """Loader over the curriculum file shipped inside the package."""
    return CurriculumLoader()


@pytest.fixture
def rotation() -> PersonaRotation:
    return PersonaRotation(rng=random.Random(42))


@pytest.fixture
def personas() -> ResponseTemplateEngine:
    return ResponseTemplateEngine(rng=random.Random(7))


# ---------------------------------------------------------------------------
# Orchestrator factory
# ---------------------------------------------------------------------------


@pytest.fixture
def make_orchestrator(
    curriculum_loader: CurriculumLoader,
) -> Callable[..., LessonOrchestrator]:
    """Return a factory that assembles an orchestrator around test doubles.

    Keyword arguments:
        provider: Image provider for the artifact engine (default: none).
        curriculum: Curriculum provider (default: the packaged curriculum).
        progress: Progress store (default: no history).
        rotation: Persona rotation (default: seeded selector).
        provider_timeout: Artifact engine provider timeout in seconds.
        artifact_timeout: Orchestrator artifact-stage timeout in seconds.
        cancel_on_timeout: Orchestrator cancel-vs-finish setting.
        cache: Whether the artifact engine gets an in-memory cache.
    """

    def _factory(
        provider: ImageProvider | None = None,
        curriculum: CurriculumProvider | None = None,
        progress: ProgressStore | None = None,
        rotation: PersonaRotation | None = None,
        provider_timeout: float = 1.0,
        artifact_timeout: float = 2.0,
        cancel_on_timeout: bool = False,
        cache: bool = True,
        **kwargs: Any,
    ) -> LessonOrchestrator:
        engine = ArtifactEngine(
            provider=provider,
            cache=MemoryCacheStore(max_entries=10) if cache else None,
            provider_timeout=provider_timeout,
        )
        return LessonOrchestrator(
            curriculum=curriculum or curriculum_loader,
            rotation=rotation or PersonaRotation(rng=random.Random(1)),
            personas=ResponseTemplateEngine(rng=random.Random(2)),
            artifacts=engine,
            progress=progress,
            artifact_timeout=artifact_timeout,
            cancel_on_timeout=cancel_on_timeout,
            **kwargs,
        )

    return _factory


# ---------------------------------------------------------------------------
# FastAPI TestClient with overridden dependencies
# ---------------------------------------------------------------------------


@pytest.fixture
def test_client(make_orchestrator: Callable[..., LessonOrchestrator]):
    """Provide a FastAPI TestClient whose orchestrator has no image provider.

    The ``get_orchestrator`` dependency is replaced so every request shares
    one orchestrator built from the packaged curriculum.  The override is
    cleared after the test completes.

    Yields:
        A ``starlette.testclient.TestClient`` bound to the FastAPI app.
    """
    from fastapi.testclient import TestClient

    from lesson_engine.api.dependencies import get_orchestrator
    from lesson_engine.main import app

    orchestrator = make_orchestrator()
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    with TestClient(app) as client:
        client.orchestrator = orchestrator
        yield client

    app.dependency_overrides.clear()
