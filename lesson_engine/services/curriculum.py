"""Curriculum loader for the lesson pipeline.

Reads the 60-lesson curriculum from a JSON file on disk, validates the
entries, and caches the parsed result in memory after the first load.
The orchestrator only ever needs :meth:`CurriculumLoader.lookup_lesson`.

Usage::

    from lesson_engine.services.curriculum import CurriculumLoader

    loader = CurriculumLoader()
    loader.load()                    # raises CurriculumLoadError on a bad file
    lesson = loader.lookup_lesson(3) # raises LessonNotFoundError if absent
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from lesson_engine.config import get_settings
from lesson_engine.domain import LessonMeta
from lesson_engine.exceptions import CurriculumLoadError, LessonNotFoundError

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("number", "topic", "phase", "difficulty")


# ---------------------------------------------------------------------------
# Data container
# ---------------------------------------------------------------------------


@dataclass
class CurriculumData:
    """Container for the parsed curriculum.

    Attributes:
        title: Curriculum title from the file metadata.
        version: Curriculum version string.
        checksum: SHA-256 hex digest of the raw file contents.
        lessons: Lesson number → :class:`LessonMeta` mapping.
    """

    title: str
    version: str
    checksum: str
    lessons: dict[int, LessonMeta]


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class CurriculumLoader:
    """Load, validate, and cache the curriculum file.

    Nothing is read at construction time; the file is parsed on the first
    call to :meth:`load` (or implicitly via :meth:`lookup_lesson`).

    Args:
        curriculum_path: JSON file to read.  Defaults to
                         ``Settings.curriculum_path``.
    """

    def __init__(self, curriculum_path: str | None = None) -> None:
        settings = get_settings()
        self.curriculum_path: Path = Path(curriculum_path or settings.curriculum_path)
        self._cache: CurriculumData | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self) -> CurriculumData:
        """Load and parse the curriculum file, caching the result.

        Returns:
            Fully parsed :class:`CurriculumData`.

        Raises:
            CurriculumLoadError: If the file is missing or malformed.
        """
        if self._cache is not None:
            return self._cache

        try:
            raw = self.curriculum_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CurriculumLoadError(
                f"Cannot read curriculum file {self.curriculum_path}: {exc}",
                path=str(self.curriculum_path),
            ) from exc

        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CurriculumLoadError(
                f"Curriculum file is not valid JSON: {exc}",
                path=str(self.curriculum_path),
            ) from exc

        lessons = self._parse_lessons(document)
        metadata = document.get("metadata", {}) if isinstance(document, dict) else {}

        self._cache = CurriculumData(
            title=str(metadata.get("title", "Untitled curriculum")),
            version=str(metadata.get("version", "unknown")),
            checksum=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
            lessons=lessons,
        )
        logger.info(
            "Curriculum loaded: %d lessons, version=%s, checksum=%s",
            len(lessons),
            self._cache.version,
            self._cache.checksum[:16],
        )
        return self._cache

    def reload(self) -> CurriculumData:
        """Invalidate the in-memory cache and re-read the file."""
        self._cache = None
        return self.load()

    def lookup_lesson(self, number: int) -> LessonMeta:
        """Return the metadata for one lesson.

        Args:
            number: Lesson number (1-based).

        Returns:
            The matching :class:`LessonMeta`.

        Raises:
            LessonNotFoundError: If the number is not in the curriculum.
            CurriculumLoadError: If the file cannot be loaded.
        """
        lessons = self.load().lessons
        try:
            return lessons[number]
        except KeyError:
            raise LessonNotFoundError(number) from None

    def lesson_count(self) -> int:
        return len(self.load().lessons)

    def get_version(self) -> dict[str, Any]:
        """Return version metadata for the loaded curriculum."""
        if self._cache is None:
            return {"version": "not_loaded", "checksum": "", "lessons": 0}
        return {
            "version": self._cache.version,
            "checksum": self._cache.checksum,
            "lessons": len(self._cache.lessons),
        }

    def is_loaded(self) -> bool:
        """Return ``True`` if curriculum data is cached in memory."""
        return self._cache is not None

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _parse_lessons(self, document: Any) -> dict[int, LessonMeta]:
        """Convert the ``lessons`` array into :class:`LessonMeta` objects.

        Entries missing a required field are skipped with a warning rather
        than failing the whole load; an empty result is an error.
        """
        if not isinstance(document, dict) or not isinstance(document.get("lessons"), list):
            raise CurriculumLoadError(
                "Curriculum file must contain a 'lessons' array",
                path=str(self.curriculum_path),
            )

        lessons: dict[int, LessonMeta] = {}
        for entry in document["lessons"]:
            missing = [f for f in _REQUIRED_FIELDS if f not in entry]
            if missing:
                logger.warning("Skipping curriculum entry missing %s: %r", missing, entry)
                continue
            number = int(entry["number"])
            if number in lessons:
                logger.warning("Duplicate lesson number %d; keeping the first", number)
                continue
            lessons[number] = LessonMeta(
                number=number,
                topic=str(entry["topic"]),
                phase=str(entry["phase"]),
                difficulty=str(entry["difficulty"]),
                keywords=tuple(str(k) for k in entry.get("keywords", ())),
                objectives=tuple(str(o) for o in entry.get("objectives", ())),
            )

        if not lessons:
            raise CurriculumLoadError(
                "Curriculum file contains no usable lessons",
                path=str(self.curriculum_path),
            )
        return lessons
