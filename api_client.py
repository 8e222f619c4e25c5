"""HTTP client helpers for the text/image/audio generation service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import quote, urlencode

import requests


logger = logging.getLogger(__name__)

TEXT_API_BASE = "https://text.pollinations.ai"
IMAGE_API_BASE = "https://image.pollinations.ai"
AUDIO_MODEL = "openai-audio"


class TransportError(RuntimeError):
    """Network failure or non-2xx answer from the generation service."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class GenerationClient:
    """Lightweight helper for calling the generation endpoints.

    Methods return the raw :class:`requests.Response` for chat calls so the
    caller decides how to read the body; no status checking happens here.
    """

    text_base_url: str = TEXT_API_BASE
    image_base_url: str = IMAGE_API_BASE
    api_key: str | None = None
    timeout: int = 60

    def __post_init__(self) -> None:
        self.text_base_url = self.text_base_url.rstrip("/")
        self.image_base_url = self.image_base_url.rstrip("/")

    def _headers(self, *, json_body: bool = True) -> dict[str, str]:
        headers: dict[str, str] = {}
        if json_body:
            headers["Content-Type"] = "application/json"
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def list_models(self) -> list[dict[str, Any]]:
        """Return the raw model catalog records."""

        resp = requests.get(
            f"{self.text_base_url}/models",
            headers=self._headers(json_body=False),
            timeout=self.timeout,
        )
        resp.raise_for_status()
        payload = resp.json()
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, Mapping)]
        if isinstance(payload, Mapping) and isinstance(payload.get("models"), list):
            return [item for item in payload["models"] if isinstance(item, Mapping)]
        return []

    def open_chat_stream(self, payload: Mapping[str, Any]) -> requests.Response:
        """POST a streaming chat request and return the unread response."""

        body = {**payload, "stream": True}
        logger.debug("Opening chat stream model=%s messages=%d", body.get("model"), len(body.get("messages") or []))
        return requests.post(
            f"{self.text_base_url}/openai",
            json=body,
            headers=self._headers(),
            timeout=self.timeout,
            stream=True,
        )

    def post_chat(self, payload: Mapping[str, Any]) -> requests.Response:
        """POST a single-shot chat request."""

        body = {**payload, "stream": False}
        return requests.post(
            f"{self.text_base_url}/openai",
            json=body,
            headers=self._headers(),
            timeout=self.timeout,
        )

    def image_url(
        self,
        prompt: str,
        *,
        model: str | None = None,
        width: int = 1024,
        height: int = 1024,
        seed: int | None = None,
    ) -> str:
        """Build the locator of an image generated from ``prompt``."""

        params: dict[str, Any] = {"width": width, "height": height, "nologo": "true"}
        if model:
            params["model"] = model
        if seed is not None:
            params["seed"] = seed
        return f"{self.image_base_url}/prompt/{quote(prompt, safe='')}?{urlencode(params)}"

    def audio_url(self, text: str, *, voice: str) -> str:
        """Build the locator of speech synthesised from ``text``."""

        params = {"model": AUDIO_MODEL, "voice": voice}
        return f"{self.text_base_url}/{quote(text, safe='')}?{urlencode(params)}"


__all__ = ["AUDIO_MODEL", "GenerationClient", "IMAGE_API_BASE", "TEXT_API_BASE", "TransportError"]
