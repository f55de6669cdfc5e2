"""Image generation providers for lesson artwork.

A provider turns a text prompt into an image reference (a URL).  The
artifact engine owns timeouts, caching and fallback; providers only make a
single request and raise :class:`ArtifactProviderError` on any failure.
"""

import logging
from typing import Protocol, runtime_checkable

import httpx

from lesson_engine.config import Settings
from lesson_engine.exceptions import ArtifactProviderError

logger = logging.getLogger(__name__)


@runtime_checkable
class ImageProvider(Protocol):
    """Anything that can turn a prompt into an image reference."""

    name: str

    async def generate(self, prompt: str, size: str) -> str:
        ...


class OpenAIImageProvider:
    """OpenAI ``/images/generations`` client.

    Args:
        api_key: Bearer token for the API.
        base_url: API root, e.g. ``https://api.openai.com/v1``.
        model: Image model name.
        quality: ``standard`` or ``hd``.
        style: ``vivid`` or ``natural``.
        timeout: Per-request HTTP timeout in seconds.
        client: Optional pre-built ``httpx.AsyncClient`` (tests pass one with
                a mock transport).  When omitted a client is opened per call.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "dall-e-3",
        quality: str = "standard",
        style: str = "vivid",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.url = base_url.rstrip("/") + "/images/generations"
        self.model = model
        self.quality = quality
        self.style = style
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIImageProvider":
        return cls(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.image_model,
            quality=settings.image_quality,
            style=settings.image_style,
            timeout=settings.provider_timeout_seconds,
        )

    async def generate(self, prompt: str, size: str) -> str:
        """Request one image and return its URL.

        Raises:
            ArtifactProviderError: On transport errors, non-2xx responses, or
                a response body without an image URL.
        """
        payload = {
            "model": self.model,
            "prompt": prompt,
            "n": 1,
            "size": size,
            "quality": self.quality,
            "style": self.style,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise ArtifactProviderError(
                f"Image request failed: {exc}", provider=self.name
            ) from exc

        if not response.is_success:
            raise ArtifactProviderError(
                f"Image request returned HTTP {response.status_code}",
                provider=self.name,
                status_code=response.status_code,
            )

        try:
            url = response.json()["data"][0]["url"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ArtifactProviderError(
                "Invalid response format from image provider", provider=self.name
            ) from exc
        if not url:
            raise ArtifactProviderError("Image provider returned an empty URL", provider=self.name)

        logger.info("Image generated by %s (model=%s)", self.name, self.model)
        return url

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
