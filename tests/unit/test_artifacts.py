"""Unit tests for the artifact cache and generation engine.

Tests cover:
1. Prompt building and the deterministic fallback comic
2. Cache stores (in-memory LRU, JSON files) and TTL expiry
3. Single-flight dedup of concurrent requests
4. Provider failure and timeout fallbacks (never cached)
5. Running without a provider
6. Cache store failures and cancellation of pending generations
"""

from __future__ import annotations

import asyncio
import json
import threading

import pytest

from lesson_engine.domain import ArtifactResult, CacheKey, LessonMeta, utcnow
from lesson_engine.exceptions import CacheStoreError
from lesson_engine.services.artifacts import (
    ArtifactEngine,
    FileCacheStore,
    MemoryCacheStore,
    build_prompt,
    fallback_panels,
    synthesize_fallback,
)
from lesson_engine.services.rotation import PersonaRotation
from tests.fixtures.fakes import LESSON_3, LESSON_7, FakeClock, FakeImageProvider


@pytest.fixture
def cast():
    return PersonaRotation().default_cast()


def _success(lesson: LessonMeta = LESSON_3, url: str = "https://images.test/cached.png") -> ArtifactResult:
    return ArtifactResult(
        success=True,
        fallback_used=False,
        provider="fake",
        payload=url,
        generated_at=utcnow(),
        lesson_number=lesson.number,
        topic=lesson.topic,
        prompt="a prompt",
        characters_featured=("The Doctor", "Captain Tal"),
    )


class BrokenCacheStore:
    """Cache store whose backing storage is unavailable."""

    def get(self, key):
        raise CacheStoreError("disk unavailable", key=key.slug)

    def put(self, key, result):
        raise CacheStoreError("disk unavailable", key=key.slug)

    def clean_expired(self):
        raise CacheStoreError("disk unavailable")

    def clear(self):
        raise CacheStoreError("disk unavailable")

    def __len__(self):
        raise CacheStoreError("disk unavailable")


class ThreadRecordingStore(MemoryCacheStore):
    """In-memory store that remembers which thread served each call."""

    def __init__(self):
        super().__init__()
        self.threads: list[int] = []

    def get(self, key):
        self.threads.append(threading.get_ident())
        return super().get(key)

    def put(self, key, result):
        self.threads.append(threading.get_ident())
        super().put(key, result)


# ---------------------------------------------------------------------------
# Test group 1: prompts and fallback comic
# ---------------------------------------------------------------------------


def test_foundations_prompt_uses_star_trek_template(cast):
    prompt = build_prompt(LESSON_3, cast)

    assert prompt.startswith("Create a Star Trek Lower Decks style comic strip about CFG Scale")
    assert "teaching Captain Tal" in prompt
    assert prompt.endswith("Keep visuals simple and foundational, suitable for beginners.")


def test_intermediate_prompt_uses_educational_template(cast):
    lesson = LessonMeta(20, "Inpainting Techniques", "Intermediate Tools", "intermediate")

    assert build_prompt(lesson, cast).startswith("Design an educational comic strip")


def test_cutting_edge_prompt_uses_technical_template(cast):
    lesson = LessonMeta(50, "Video Diffusion Models", "Cutting-Edge & Specialized", "expert")

    prompt = build_prompt(lesson, cast)

    assert prompt.startswith("Generate a technical education comic strip")
    assert "neural network visualizations" in prompt
    assert prompt.endswith("Include advanced, cutting-edge technology and complex interfaces.")


def test_humorous_style_applies_to_foundations_lessons(cast):
    assert build_prompt(LESSON_3, cast, preferred_style="humorous").startswith(
        "Create a funny Star Trek educational comic"
    )


def test_fallback_panels_are_deterministic():
    first = fallback_panels("Seeds and Reproducibility", "The Doctor", "Mariner")
    second = fallback_panels("Seeds and Reproducibility", "The Doctor", "Mariner")

    assert first == second
    assert [p.panel for p in first] == [1, 2, 3, 4]
    assert "Seeds and Reproducibility" in first[0].scene
    assert "Mariner raising a hand" in first[2].scene


def test_synthesize_fallback_marks_result(cast):
    result = synthesize_fallback(LESSON_7, cast)

    assert result.success is False
    assert result.fallback_used is True
    assert result.provider == "fallback"
    assert len(result.panels) == 4
    assert result.characters_featured == ("The Doctor", "Captain Tal")


def test_synthesize_fallback_with_empty_cast_uses_default_names():
    result = synthesize_fallback(LESSON_7, [])

    assert result.characters_featured == ("The Doctor", "Captain Tal")


# ---------------------------------------------------------------------------
# Test group 2: cache stores
# ---------------------------------------------------------------------------


def test_memory_store_evicts_least_recently_used():
    store = MemoryCacheStore(max_entries=2)
    lesson_1 = LessonMeta(1, "Text-to-Image Basics", "Foundations", "beginner")
    k1, k3, k7 = (CacheKey.for_lesson(lesson) for lesson in (lesson_1, LESSON_3, LESSON_7))

    store.put(k1, _success())
    store.put(k3, _success())
    store.get(k1)
    store.put(k7, _success(LESSON_7))

    assert len(store) == 2
    assert store.get(k3) is None
    assert store.get(k1) is not None


def test_memory_store_expires_lazily():
    clock = FakeClock()
    store = MemoryCacheStore(ttl=60, clock=clock)
    key = CacheKey.for_lesson(LESSON_3)
    store.put(key, _success())

    clock.advance(60)
    assert store.get(key) is not None, "an entry exactly at its TTL is still fresh"

    clock.advance(1)
    assert store.get(key) is None
    assert len(store) == 0


def test_memory_store_clean_expired():
    clock = FakeClock()
    store = MemoryCacheStore(ttl=10, clock=clock)
    store.put(CacheKey.for_lesson(LESSON_3), _success())
    clock.advance(20)
    store.put(CacheKey.for_lesson(LESSON_7), _success(LESSON_7))

    assert store.clean_expired() == 1
    assert len(store) == 1


def test_file_store_round_trip(tmp_path):
    store = FileCacheStore(tmp_path / "cache")
    key = CacheKey.for_lesson(LESSON_3)
    original = _success()

    store.put(key, original)

    assert (tmp_path / "cache" / f"{key.slug}.json").exists()
    assert store.get(key) == original
    assert len(store) == 1


def test_file_store_expiry_removes_file(tmp_path):
    clock = FakeClock()
    store = FileCacheStore(tmp_path, ttl=60, clock=clock)
    key = CacheKey.for_lesson(LESSON_3)
    store.put(key, _success())

    clock.advance(61)

    assert store.get(key) is None
    assert not (tmp_path / f"{key.slug}.json").exists()


def test_file_store_clean_expired_and_clear(tmp_path):
    clock = FakeClock()
    store = FileCacheStore(tmp_path, ttl=10, clock=clock)
    store.put(CacheKey.for_lesson(LESSON_3), _success())
    clock.advance(20)
    store.put(CacheKey.for_lesson(LESSON_7), _success(LESSON_7))
    (tmp_path / "garbage.json").write_text("{oops", encoding="utf-8")

    assert store.clean_expired() == 2
    assert len(store) == 1

    store.clear()
    assert len(store) == 0


def test_file_store_corrupt_entry_raises(tmp_path):
    store = FileCacheStore(tmp_path)
    key = CacheKey.for_lesson(LESSON_3)
    (tmp_path / f"{key.slug}.json").write_text(json.dumps({"cached_at": "soon"}), encoding="utf-8")

    with pytest.raises(CacheStoreError) as exc_info:
        store.get(key)
    assert exc_info.value.key == key.slug


# ---------------------------------------------------------------------------
# Test group 3: single-flight dedup
# ---------------------------------------------------------------------------


async def test_concurrent_requests_share_one_provider_call(cast):
    provider = FakeImageProvider(delay=0.05)
    engine = ArtifactEngine(provider=provider, cache=MemoryCacheStore())

    results = await asyncio.gather(*(engine.get_or_generate(LESSON_3, cast) for _ in range(5)))

    assert len(provider.calls) == 1, "duplicate generations must not hit the provider"
    assert all(r.success and r.payload == provider.url for r in results)
    assert engine.in_flight_count() == 0
    assert engine.stats["artifacts_generated"] == 1


async def test_later_request_is_served_from_cache(cast):
    provider = FakeImageProvider()
    engine = ArtifactEngine(provider=provider, cache=MemoryCacheStore())

    first = await engine.get_or_generate(LESSON_3, cast)
    second = await engine.get_or_generate(LESSON_3, cast)

    assert first.cached is False
    assert second.cached is True
    assert second.payload == first.payload
    assert len(provider.calls) == 1
    assert engine.stats["cache_hits"] == 1


async def test_different_lessons_generate_independently(cast):
    provider = FakeImageProvider(delay=0.01)
    engine = ArtifactEngine(provider=provider, cache=MemoryCacheStore())

    await asyncio.gather(
        engine.get_or_generate(LESSON_3, cast), engine.get_or_generate(LESSON_7, cast)
    )

    assert len(provider.calls) == 2


async def test_expired_entry_triggers_regeneration(cast):
    clock = FakeClock()
    provider = FakeImageProvider()
    engine = ArtifactEngine(provider=provider, cache=MemoryCacheStore(ttl=60, clock=clock))

    await engine.get_or_generate(LESSON_3, cast)
    clock.advance(30)
    assert (await engine.get_or_generate(LESSON_3, cast)).cached is True

    clock.advance(31)
    result = await engine.get_or_generate(LESSON_3, cast)

    assert result.cached is False
    assert len(provider.calls) == 2


# ---------------------------------------------------------------------------
# Test group 4: failures and timeouts
# ---------------------------------------------------------------------------


async def test_provider_failure_returns_uncached_fallback(cast):
    provider = FakeImageProvider(fail=True)
    cache = MemoryCacheStore()
    engine = ArtifactEngine(provider=provider, cache=cache)

    result = await engine.get_or_generate(LESSON_3, cast)

    assert result.fallback_used is True
    assert result.success is False
    assert result.prompt is not None
    assert len(cache) == 0
    assert engine.stats["errors"] == 1

    provider.fail = False
    recovered = await engine.get_or_generate(LESSON_3, cast)

    assert recovered.success is True
    assert len(cache) == 1


async def test_provider_timeout_returns_fallback(cast):
    provider = FakeImageProvider(delay=1.0)
    cache = MemoryCacheStore()
    engine = ArtifactEngine(provider=provider, cache=cache, provider_timeout=0.05)

    result = await engine.get_or_generate(LESSON_3, cast)

    assert result.fallback_used is True
    assert provider.cancelled == 1
    assert provider.completed == 0
    assert len(cache) == 0
    assert engine.stats["fallbacks_used"] == 1


async def test_unexpected_provider_exception_returns_fallback(cast):
    class ExplodingProvider:
        name = "exploding"

        async def generate(self, prompt, size):
            raise RuntimeError("segfault in image model")

    engine = ArtifactEngine(provider=ExplodingProvider(), cache=MemoryCacheStore())

    result = await engine.get_or_generate(LESSON_3, cast)

    assert result.fallback_used is True
    assert engine.stats["errors"] == 1


# ---------------------------------------------------------------------------
# Test group 5: no provider configured
# ---------------------------------------------------------------------------


async def test_no_provider_gives_identical_independent_fallbacks(cast):
    cache = MemoryCacheStore()
    engine = ArtifactEngine(provider=None, cache=cache)

    first, second = await asyncio.gather(
        engine.get_or_generate(LESSON_7, cast), engine.get_or_generate(LESSON_7, cast)
    )

    assert first.panels == second.panels
    assert first is not second
    assert len(cache) == 0
    assert engine.in_flight_count() == 0
    assert engine.stats["fallbacks_used"] == 2


async def test_no_provider_still_serves_cached_artifact(cast):
    cache = MemoryCacheStore()
    cache.put(CacheKey.for_lesson(LESSON_3), _success())
    engine = ArtifactEngine(provider=None, cache=cache)

    result = await engine.get_or_generate(LESSON_3, cast)

    assert result.success is True
    assert result.cached is True


# ---------------------------------------------------------------------------
# Test group 6: cache failures and cancellation
# ---------------------------------------------------------------------------


async def test_broken_cache_is_bypassed(cast):
    provider = FakeImageProvider()
    engine = ArtifactEngine(provider=provider, cache=BrokenCacheStore())

    result = await engine.get_or_generate(LESSON_3, cast)

    assert result.success is True
    assert engine.stats["cache_errors"] == 2
    assert engine.clean_cache() == 0
    assert engine.get_status()["cache_size"] == -1


async def test_cancel_pending_stops_generation(cast):
    provider = FakeImageProvider(delay=5.0)
    engine = ArtifactEngine(provider=provider, cache=MemoryCacheStore(), provider_timeout=10.0)

    waiter = asyncio.create_task(engine.get_or_generate(LESSON_3, cast))
    await asyncio.sleep(0.05)
    assert engine.in_flight_count() == 1

    assert await engine.cancel_pending(LESSON_3) is True
    result = await waiter

    assert result.fallback_used is True
    assert provider.cancelled == 1
    assert engine.in_flight_count() == 0


async def test_cancel_pending_without_generation_returns_false():
    engine = ArtifactEngine(provider=FakeImageProvider())

    assert await engine.cancel_pending(LESSON_3) is False


async def test_cancelled_caller_does_not_stop_shared_generation(cast):
    provider = FakeImageProvider(delay=0.2)
    cache = MemoryCacheStore()
    engine = ArtifactEngine(provider=provider, cache=cache)

    waiter = asyncio.create_task(engine.get_or_generate(LESSON_3, cast))
    await asyncio.sleep(0.05)
    assert engine.in_flight_count() == 1
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    await asyncio.sleep(0.3)

    assert provider.completed == 1
    assert len(cache) == 1
    assert engine.in_flight_count() == 0


async def test_store_calls_run_off_the_event_loop_thread(cast):
    store = ThreadRecordingStore()
    engine = ArtifactEngine(provider=FakeImageProvider(), cache=store)

    await engine.get_or_generate(LESSON_3, cast)
    await engine.get_or_generate(LESSON_3, cast)

    # miss, put, hit
    assert len(store.threads) == 3
    assert threading.get_ident() not in store.threads


async def test_file_store_hit_through_engine(tmp_path, cast):
    provider = FakeImageProvider()
    engine = ArtifactEngine(provider=provider, cache=FileCacheStore(tmp_path))

    first = await engine.get_or_generate(LESSON_3, cast)
    second = await engine.get_or_generate(LESSON_3, cast)

    assert second.cached is True
    assert second.payload == first.payload
    assert len(provider.calls) == 1


def test_status_reports_configuration():
    engine = ArtifactEngine(provider=FakeImageProvider(), cache=MemoryCacheStore(), provider_timeout=12.0)

    status = engine.get_status()

    assert status["provider"] == "fake"
    assert status["cache_enabled"] is True
    assert status["provider_timeout"] == 12.0
    assert status["in_flight"] == 0
