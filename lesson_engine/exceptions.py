"""Custom exception classes for the lesson content pipeline.

None of these reach a caller of :meth:`LessonOrchestrator.execute_lesson`:
the services catch them and degrade to a fallback.  They exist so that every
failure is logged and handled under a precise type.
"""


class CurriculumLoadError(Exception):
    """Raised when the curriculum file cannot be read or parsed.

    Args:
        message: Human-readable description of the failure.
        path: Filesystem path that was being loaded.
    """

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path: str = path


class LessonNotFoundError(Exception):
    """Raised when a lesson number is not part of the curriculum.

    Args:
        lesson_number: The lesson number that was requested.
    """

    def __init__(self, lesson_number: int) -> None:
        super().__init__(f"Lesson {lesson_number} not found in curriculum")
        self.lesson_number: int = lesson_number


class ArtifactProviderError(Exception):
    """Raised when the image generation provider fails.

    Args:
        message: Description of the failure.
        provider: Name of the provider that failed.
        status_code: HTTP status code, when the failure was a non-2xx response.
    """

    def __init__(
        self, message: str, provider: str = "", status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.provider: str = provider
        self.status_code: int | None = status_code


class CacheStoreError(Exception):
    """Raised when the artifact cache store cannot be read or written.

    Args:
        message: Detail from the underlying I/O failure.
        key: Cache key slug involved in the failed operation.
    """

    def __init__(self, message: str, key: str = "") -> None:
        super().__init__(message)
        self.key: str = key


class ProgressStoreError(Exception):
    """Raised when recent-score history cannot be fetched.

    Args:
        message: Detail from the underlying driver exception.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
