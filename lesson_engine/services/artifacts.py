"""Artifact cache and generation engine.

:meth:`ArtifactEngine.get_or_generate` resolves the lesson illustration in
four steps:

1. **Cache** – a non-expired entry for the lesson's :class:`CacheKey` is
   returned as-is (``cached=True``).
2. **Dedup** – if a generation for the same key is already running, the
   caller awaits that shared task instead of starting a second one.
3. **Generate** – build a prompt, call the image provider once under a hard
   timeout, store the result with the configured TTL.
4. **Fallback** – on provider failure, timeout, or when no provider is
   configured, return the deterministic four-panel text comic.  Fallbacks
   are never cached, so a later request can still produce a real image.

The engine never raises to its caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence

from lesson_engine.domain import ArtifactResult, CacheKey, LessonMeta, Panel, Persona, utcnow
from lesson_engine.exceptions import ArtifactProviderError, CacheStoreError
from lesson_engine.services.image_provider import ImageProvider

logger = logging.getLogger(__name__)

FALLBACK_PROVIDER = "fallback"
DEFAULT_INSTRUCTOR = "The Doctor"
DEFAULT_STUDENT = "Captain Tal"


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

PROMPT_TEMPLATES: dict[str, dict[str, str]] = {
    "basic": {
        "star_trek": (
            "Create a Star Trek Lower Decks style comic strip about {topic}. The comic should "
            "feature The Doctor (Emergency Medical Hologram) from Star Trek Voyager teaching "
            "{student} about {topic}. Make it educational but entertaining, with The Doctor's "
            "characteristic arrogance and wit. Include 4 panels showing: 1) Introduction of "
            "the topic, 2) Explanation, 3) Student asking questions, 4) Doctor's conclusion. "
            "Art style should be colorful, cartoon-like, and similar to Star Trek Lower Decks "
            "animation."
        ),
        "educational": (
            "Design an educational comic strip about {topic} featuring Star Trek characters. "
            "The Doctor (EMH) is teaching {student} about {topic}. The art should be in Star "
            "Trek Lower Decks animation style - vibrant colors, simplified character designs, "
            "expressive faces. Show 4 panels: 1) Doctor presenting the topic on a LCARS "
            "display, 2) Demonstrating key concepts, 3) Student engagement/questions, "
            "4) Understanding achieved. Include speech bubbles with The Doctor's "
            "characteristic medical metaphors and slight condescension."
        ),
        "humorous": (
            "Create a funny Star Trek educational comic about {topic}. The Doctor (holographic "
            "character) is attempting to teach {student} about {topic} but keeps making "
            "medical analogies. Art style: Star Trek Lower Decks cartoon aesthetic with bright "
            "colors and exaggerated expressions. 4-panel layout: 1) Doctor's dramatic "
            "introduction, 2) Overly complex medical explanation, 3) Student's confused "
            "reaction, 4) Doctor simplifying (reluctantly). Include LCARS interface elements "
            "and Star Trek technology in background."
        ),
    },
    "advanced": {
        "technical": (
            "Generate a technical education comic strip in Star Trek Lower Decks animation "
            "style. The Doctor (EMH from Voyager) is teaching advanced {topic} concepts to "
            "{student}. Include holographic displays, technical diagrams, and Star Trek "
            "technology. 4 panels showing progressive learning: complex introduction, "
            "detailed explanation with visuals, practical application, and mastery "
            "demonstration. Maintain The Doctor's personality: brilliant, slightly arrogant, "
            "but ultimately helpful."
        ),
        "practical": (
            "Create a practical demonstration comic about {topic} using Star Trek characters "
            "and Lower Decks art style. The Doctor guides {student} through hands-on "
            "learning. Show realistic problem-solving and application of {topic} concepts. "
            "Include holographic simulations, LCARS interfaces, and futuristic educational "
            "tools. 4-panel progression: problem presentation, solution development, "
            "implementation, and successful outcome."
        ),
    },
}

ADVANCED_LESSON_THRESHOLD = 45


def _template_for(lesson: LessonMeta, preferred_style: str | None) -> str:
    if lesson.difficulty == "advanced" or lesson.number > ADVANCED_LESSON_THRESHOLD:
        kind = "technical" if lesson.phase.startswith("Cutting-Edge") else "practical"
        return PROMPT_TEMPLATES["advanced"][kind]
    if lesson.phase in ("Intermediate Tools", "Advanced Control"):
        return PROMPT_TEMPLATES["basic"]["educational"]
    if preferred_style == "humorous":
        return PROMPT_TEMPLATES["basic"]["humorous"]
    return PROMPT_TEMPLATES["basic"]["star_trek"]


def _contextual_details(lesson: LessonMeta) -> list[str]:
    topic = lesson.topic.lower()
    details: list[str] = []
    if "controlnet" in topic:
        details.append("Include visual examples of image control and guidance systems.")
    elif "prompt" in topic:
        details.append("Show text prompts and resulting images in holographic displays.")
    elif "model" in topic:
        details.append(
            "Include futuristic AI model interfaces and neural network visualizations."
        )

    if lesson.phase == "Foundations":
        details.append("Keep visuals simple and foundational, suitable for beginners.")
    elif lesson.phase.startswith("Cutting-Edge"):
        details.append("Include advanced, cutting-edge technology and complex interfaces.")
    return details


def build_prompt(
    lesson: LessonMeta, cast: Sequence[Persona], preferred_style: str | None = None
) -> str:
    """Render the image prompt for a lesson and its cast."""
    _, student = _cast_names(cast)
    prompt = _template_for(lesson, preferred_style).format(topic=lesson.topic, student=student)
    return " ".join([prompt, *_contextual_details(lesson)])


# ---------------------------------------------------------------------------
# Deterministic fallback comic
# ---------------------------------------------------------------------------


def _cast_names(cast: Sequence[Persona]) -> tuple[str, str]:
    instructor = cast[0].name if cast else DEFAULT_INSTRUCTOR
    student = cast[1].name if len(cast) > 1 else DEFAULT_STUDENT
    return instructor, student


def fallback_panels(topic: str, instructor: str, student: str) -> tuple[Panel, ...]:
    """Four-panel text comic; the same inputs always give the same panels."""
    return (
        Panel(
            panel=1,
            scene=f'{instructor} standing next to a large LCARS display showing "{topic}"',
            dialogue=(
                f'"Today we shall examine {topic}, a subject requiring my particular expertise."',
            ),
            focus="Topic introduction",
        ),
        Panel(
            panel=2,
            scene=f"{instructor} gesturing at holographic examples while {student} observes attentively",
            dialogue=(
                f'"Observe these key principles of {topic}."',
                '"The methodology is quite straightforward... for those with adequate intelligence."',
            ),
            focus="Concept explanation",
        ),
        Panel(
            panel=3,
            scene=f"{student} raising a hand with a questioning expression",
            dialogue=(
                '"How does this apply in practical situations?"',
                '"An astute question. Allow me to elaborate..."',
            ),
            focus="Student engagement",
        ),
        Panel(
            panel=4,
            scene=(
                f"Both characters with {student} showing understanding "
                f"and {instructor} looking satisfied"
            ),
            dialogue=(
                f'"Now I understand the principles of {topic}!"',
                '"Naturally. My teaching methods are quite effective."',
            ),
            focus="Learning achievement",
        ),
    )


def synthesize_fallback(
    lesson: LessonMeta, cast: Sequence[Persona], prompt: str | None = None
) -> ArtifactResult:
    instructor, student = _cast_names(cast)
    return ArtifactResult(
        success=False,
        fallback_used=True,
        provider=FALLBACK_PROVIDER,
        payload=fallback_panels(lesson.topic, instructor, student),
        generated_at=utcnow(),
        lesson_number=lesson.number,
        topic=lesson.topic,
        prompt=prompt,
        characters_featured=(instructor, student),
    )


# ---------------------------------------------------------------------------
# Cache stores
# ---------------------------------------------------------------------------


@dataclass
class CacheEntry:
    key: str
    result: ArtifactResult
    created_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


class CacheStore(Protocol):
    """Storage backend for generated artifacts.

    Implementations raise :class:`CacheStoreError` when the backing storage
    is unavailable; the engine logs it and bypasses the cache.
    """

    def get(self, key: CacheKey) -> ArtifactResult | None: ...

    def put(self, key: CacheKey, result: ArtifactResult) -> None: ...

    def clean_expired(self) -> int: ...

    def clear(self) -> None: ...

    def __len__(self) -> int: ...


class MemoryCacheStore:
    """Bounded in-memory LRU with lazy TTL expiry.

    Args:
        max_entries: Capacity; the least recently used entry is evicted first.
        ttl: Entry lifetime in seconds.
        clock: Monotonic time source (override in tests).
    """

    def __init__(
        self,
        max_entries: int = 100,
        ttl: float = 7 * 24 * 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self.ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> ArtifactResult | None:
        with self._lock:
            entry = self._entries.get(key.slug)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key.slug]
                logger.debug("Cache entry expired: %s", key.slug)
                return None
            self._entries.move_to_end(key.slug)
            return entry.result

    def put(self, key: CacheKey, result: ArtifactResult) -> None:
        with self._lock:
            self._entries[key.slug] = CacheEntry(key.slug, result, self._clock(), self.ttl)
            self._entries.move_to_end(key.slug)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Cache entry evicted: %s", evicted)

    def clean_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [slug for slug, e in self._entries.items() if e.is_expired(now)]
            for slug in expired:
                del self._entries[slug]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class FileCacheStore:
    """One JSON file per cache key under ``directory``.

    The file records its own creation time so entries survive restarts and
    expire on wall-clock age.
    """

    def __init__(
        self,
        directory: str | Path,
        ttl: float = 7 * 24 * 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = Path(directory)
        self.ttl = ttl
        self._clock = clock

    def _path(self, key: CacheKey) -> Path:
        return self.directory / f"{key.slug}.json"

    def get(self, key: CacheKey) -> ArtifactResult | None:
        path = self._path(key)
        try:
            if not path.exists():
                return None
            document = json.loads(path.read_text(encoding="utf-8"))
            if self._clock() - float(document["cached_at"]) > float(document.get("ttl", self.ttl)):
                path.unlink(missing_ok=True)
                logger.debug("Cache file expired: %s", path.name)
                return None
            return ArtifactResult.from_dict(document["result"])
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise CacheStoreError(f"Cannot read cache file {path}: {exc}", key=key.slug) from exc

    def put(self, key: CacheKey, result: ArtifactResult) -> None:
        path = self._path(key)
        document = {"cached_at": self._clock(), "ttl": self.ttl, "result": result.to_dict()}
        tmp = path.with_suffix(".json.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(document, indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise CacheStoreError(f"Cannot write cache file {path}: {exc}", key=key.slug) from exc
        logger.info("Artifact cached: %s", key.slug)

    def clean_expired(self) -> int:
        if not self.directory.exists():
            return 0
        now = self._clock()
        deleted = 0
        try:
            for path in self.directory.glob("*.json"):
                try:
                    document = json.loads(path.read_text(encoding="utf-8"))
                    expired = now - float(document["cached_at"]) > float(
                        document.get("ttl", self.ttl)
                    )
                except (ValueError, KeyError, TypeError):
                    expired = True
                if expired:
                    path.unlink(missing_ok=True)
                    deleted += 1
        except OSError as exc:
            raise CacheStoreError(f"Cannot clean cache directory {self.directory}: {exc}") from exc
        if deleted:
            logger.info("Cache cleanup removed %d expired entries", deleted)
        return deleted

    def clear(self) -> None:
        if not self.directory.exists():
            return
        try:
            for path in self.directory.glob("*.json"):
                path.unlink(missing_ok=True)
        except OSError as exc:
            raise CacheStoreError(f"Cannot clear cache directory {self.directory}: {exc}") from exc

    def __len__(self) -> int:
        if not self.directory.exists():
            return 0
        return sum(1 for _ in self.directory.glob("*.json"))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ArtifactEngine:
    """Cache-first, single-flight artifact generator.

    Args:
        provider: Image provider, or ``None`` to always use the fallback comic.
        cache: Cache store, or ``None`` to disable caching.
        provider_timeout: Hard timeout for one provider call, in seconds.
        image_size: Size string passed to the provider.
        clock: Time source used for generation-time statistics.
    """

    def __init__(
        self,
        provider: ImageProvider | None = None,
        cache: CacheStore | None = None,
        provider_timeout: float = 30.0,
        image_size: str = "1024x1024",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.cache = cache
        self.provider_timeout = provider_timeout
        self.image_size = image_size
        self._clock = clock
        self._lock = asyncio.Lock()
        self._in_flight: dict[str, asyncio.Task[ArtifactResult]] = {}
        self.stats: dict[str, Any] = {
            "artifacts_generated": 0,
            "cache_hits": 0,
            "fallbacks_used": 0,
            "errors": 0,
            "cache_errors": 0,
            "average_generation_time": 0.0,
            "last_generation": None,
        }

        logger.info(
            "Artifact engine initialised: provider=%s cache=%s",
            provider.name if provider else "none",
            type(cache).__name__ if cache is not None else "disabled",
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_or_generate(
        self, lesson: LessonMeta, cast: Sequence[Persona]
    ) -> ArtifactResult:
        """Return the artifact for ``lesson``; never raises (except on cancellation)."""
        try:
            return await self._get_or_generate(lesson, cast)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Artifact resolution failed for lesson %d", lesson.number)
            self.stats["errors"] += 1
            return self._fallback(lesson, cast)

    async def cancel_pending(self, lesson: LessonMeta) -> bool:
        """Cancel a running generation for ``lesson``; returns whether one was running."""
        async with self._lock:
            task = self._in_flight.get(CacheKey.for_lesson(lesson).slug)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("Cancelled pending artifact generation for lesson %d", lesson.number)
        return True

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def clean_cache(self) -> int:
        if self.cache is None:
            return 0
        try:
            return self.cache.clean_expired()
        except CacheStoreError as exc:
            logger.warning("Cache cleanup failed: %s", exc)
            return 0

    def get_status(self) -> dict[str, Any]:
        cache_size = 0
        if self.cache is not None:
            try:
                cache_size = len(self.cache)
            except CacheStoreError:
                cache_size = -1
        return {
            "provider": self.provider.name if self.provider else None,
            "cache_enabled": self.cache is not None,
            "cache_size": cache_size,
            "in_flight": self.in_flight_count(),
            "provider_timeout": self.provider_timeout,
            "stats": dict(self.stats),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get_or_generate(
        self, lesson: LessonMeta, cast: Sequence[Persona]
    ) -> ArtifactResult:
        key = CacheKey.for_lesson(lesson)

        if self.provider is None:
            cached = await self._cache_get(key)
            return cached if cached is not None else self._fallback(lesson, cast)

        async with self._lock:
            cached = await self._cache_get(key)
            if cached is not None:
                return cached
            task = self._in_flight.get(key.slug)
            if task is None:
                task = asyncio.create_task(self._generate(key, lesson, cast))
                self._in_flight[key.slug] = task
                task.add_done_callback(lambda t, slug=key.slug: self._release(slug, t))
            else:
                logger.info("Joining in-flight generation for %s", key.slug)

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            logger.info("Generation for %s was cancelled; using fallback", key.slug)
            return self._fallback(lesson, cast)

    def _release(self, slug: str, task: asyncio.Task[ArtifactResult]) -> None:
        if self._in_flight.get(slug) is task:
            del self._in_flight[slug]

    async def _generate(
        self, key: CacheKey, lesson: LessonMeta, cast: Sequence[Persona]
    ) -> ArtifactResult:
        assert self.provider is not None
        prompt = build_prompt(lesson, cast)
        started = self._clock()

        try:
            url = await asyncio.wait_for(
                self.provider.generate(prompt, self.image_size),
                timeout=self.provider_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Provider %s timed out after %.1fs for %s",
                self.provider.name,
                self.provider_timeout,
                key.slug,
            )
            return self._fallback(lesson, cast, prompt)
        except ArtifactProviderError as exc:
            logger.warning("Provider %s failed for %s: %s", self.provider.name, key.slug, exc)
            self.stats["errors"] += 1
            return self._fallback(lesson, cast, prompt)
        except Exception:
            logger.exception("Unexpected provider error for %s", key.slug)
            self.stats["errors"] += 1
            return self._fallback(lesson, cast, prompt)

        instructor, student = _cast_names(cast)
        result = ArtifactResult(
            success=True,
            fallback_used=False,
            provider=self.provider.name,
            payload=url,
            generated_at=utcnow(),
            lesson_number=lesson.number,
            topic=lesson.topic,
            prompt=prompt,
            characters_featured=(instructor, student),
        )
        await self._cache_put(key, result)
        self._record_generation(self._clock() - started)
        return result

    def _fallback(
        self, lesson: LessonMeta, cast: Sequence[Persona], prompt: str | None = None
    ) -> ArtifactResult:
        self.stats["fallbacks_used"] += 1
        return synthesize_fallback(lesson, cast, prompt)

    # Store calls run in a worker thread; the file store does blocking I/O.

    async def _cache_get(self, key: CacheKey) -> ArtifactResult | None:
        if self.cache is None:
            return None
        try:
            result = await asyncio.to_thread(self.cache.get, key)
        except CacheStoreError as exc:
            logger.warning("Cache read failed for %s, bypassing cache: %s", key.slug, exc)
            self.stats["cache_errors"] += 1
            return None
        if result is None:
            return None
        self.stats["cache_hits"] += 1
        logger.debug("Cache hit: %s", key.slug)
        return replace(result, cached=True)

    async def _cache_put(self, key: CacheKey, result: ArtifactResult) -> None:
        if self.cache is None:
            return
        try:
            await asyncio.to_thread(self.cache.put, key, result)
        except CacheStoreError as exc:
            logger.warning("Cache write failed for %s, result not cached: %s", key.slug, exc)
            self.stats["cache_errors"] += 1

    def _record_generation(self, elapsed: float) -> None:
        count = self.stats["artifacts_generated"] + 1
        average = self.stats["average_generation_time"]
        self.stats["artifacts_generated"] = count
        self.stats["average_generation_time"] = average + (elapsed - average) / count
        self.stats["last_generation"] = utcnow().isoformat()
