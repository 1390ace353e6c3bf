"""
Prompting service adapter.

Sends a prompt plus inline images to the hosted multimodal API, walking an
ordered list of model identifiers. Capacity errors (503, 429, "high demand")
move on to the next model; any other error stops the walk.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Sequence
from typing import Any, Protocol

import aiohttp

from config import Config
from core.errors import ServiceConnectionError, ServiceError, ServiceOverloaded
from core.models import ImageBuffer, ImageResult, TextResult

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = frozenset({503, 429})
OVERLOADED_MESSAGE = "Gemini is currently overloaded. Please try again."


class PromptingBackendError(Exception):
    """Error returned by one model invocation."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class PromptingTransport(Protocol):
    async def generate(
        self,
        model_id: str,
        prompt: str,
        images: Sequence[ImageBuffer],
        temperature: float,
    ) -> dict[str, Any]: ...

    async def close(self) -> None: ...


def seed_instruction(seed: int | None) -> str:
    if seed is None:
        return ""
    return (
        f"\n\n[IMPORTANT: Use seed {seed} for reproducibility. "
        "Generate consistent output based on this seed.]"
    )


def _error_status(error: PromptingBackendError) -> int:
    if error.status:
        return error.status
    return 503 if "503" in error.message else 0


def is_transient(error: PromptingBackendError) -> bool:
    return _error_status(error) in TRANSIENT_STATUSES or "high demand" in error.message


def _candidate_parts(response: dict[str, Any]) -> list[dict[str, Any]]:
    candidates = response.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return []
    first = candidates[0]
    if not isinstance(first, dict):
        return []
    content = first.get("content")
    if not isinstance(content, dict):
        return []
    parts = content.get("parts")
    if not isinstance(parts, list):
        return []
    return [part for part in parts if isinstance(part, dict)]


def response_text(response: dict[str, Any]) -> str:
    return "".join(
        str(part["text"]) for part in _candidate_parts(response) if part.get("text")
    )


def response_image_data_url(response: dict[str, Any]) -> str | None:
    for part in _candidate_parts(response):
        inline = part.get("inlineData") or part.get("inline_data")
        if isinstance(inline, dict) and inline.get("data"):
            mime = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return f"data:{mime};base64,{inline['data']}"
    return None


class GeminiTransport:
    """Minimal REST client for ``models/{model}:generateContent``."""

    def __init__(self, config: Config) -> None:
        self.api_url = config.gemini_api_url
        self.api_key = config.google_api_key
        self.timeout = config.prompting_timeout
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    @staticmethod
    def build_payload(
        prompt: str,
        images: Sequence[ImageBuffer],
        temperature: float,
    ) -> dict[str, Any]:
        parts: list[dict[str, Any]] = [{"text": prompt}]
        for image in images:
            parts.append(
                {
                    "inline_data": {
                        "mime_type": image.mime_type or "image/jpeg",
                        "data": base64.b64encode(image.data).decode("ascii"),
                    }
                }
            )
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"temperature": temperature},
        }

    async def generate(
        self,
        model_id: str,
        prompt: str,
        images: Sequence[ImageBuffer],
        temperature: float,
    ) -> dict[str, Any]:
        session = await self._get_session()
        url = f"{self.api_url}/models/{model_id}:generateContent"
        try:
            async with session.post(
                url,
                json=self.build_payload(prompt, images, temperature),
                headers={"x-goog-api-key": self.api_key},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status != 200:
                    raise PromptingBackendError(await self._error_message(resp), resp.status)
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ServiceConnectionError(
                f"fetch failed for {model_id}: {str(exc) or type(exc).__name__}"
            ) from exc
        return data if isinstance(data, dict) else {}

    @staticmethod
    async def _error_message(resp: aiohttp.ClientResponse) -> str:
        body = await resp.text()
        try:
            data = await resp.json(content_type=None)
        except ValueError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            message = data["error"].get("message")
            if message:
                return f"[{resp.status} {resp.reason}] {message}"
        return f"[{resp.status} {resp.reason}] {body.strip() or 'request failed'}"


class PromptingService:
    """Multi-model fallback over a ``PromptingTransport``."""

    def __init__(
        self,
        config: Config,
        transport: PromptingTransport | None = None,
    ) -> None:
        self.models = list(config.gemini_models)
        self.enabled = config.prompting_enabled
        self.transport: PromptingTransport = transport or GeminiTransport(config)

    async def close(self) -> None:
        await self.transport.close()

    async def complete(
        self,
        prompt: str,
        images: Sequence[ImageBuffer] = (),
        temperature: float = 0.7,
        seed: int | None = None,
    ) -> TextResult | ImageResult:
        if not self.enabled:
            raise ServiceError("Google API key not configured", 500)

        final_prompt = prompt + seed_instruction(seed)
        last_error: Exception | None = None

        for model_id in self.models:
            logger.info("Attempting generation with %s", model_id)
            try:
                response = await self.transport.generate(
                    model_id,
                    final_prompt,
                    images,
                    temperature,
                )
            except PromptingBackendError as exc:
                last_error = exc
                logger.warning("%s failed: %s", model_id, exc.message)
                if not is_transient(exc):
                    break
                logger.info("Retrying with next model due to service availability issue")
                continue
            except ServiceConnectionError as exc:
                last_error = exc
                logger.warning("%s failed: %s", model_id, exc)
                break

            text = response_text(response)
            if text:
                return TextResult(text=text, model_used=model_id, seed=seed)

            data_url = response_image_data_url(response)
            if data_url:
                return ImageResult(data_url=data_url, model_used=model_id, seed=seed)

            logger.warning("%s returned empty response", model_id)

        raise self._exhausted_error(last_error)

    @staticmethod
    def _exhausted_error(last_error: Exception | None) -> ServiceError:
        if last_error is None:
            return ServiceError("Failed to generate content", 500)

        if isinstance(last_error, ServiceConnectionError):
            error: ServiceError = ServiceOverloaded(OVERLOADED_MESSAGE, 503)
        elif isinstance(last_error, PromptingBackendError):
            status = _error_status(last_error) or 500
            if status == 503 or is_transient(last_error) or "fetch" in last_error.message:
                error = ServiceOverloaded(OVERLOADED_MESSAGE, status)
            else:
                error = ServiceError(last_error.message, status)
        else:
            error = ServiceError(str(last_error) or "Failed to generate content", 500)
        error.__cause__ = last_error
        return error
