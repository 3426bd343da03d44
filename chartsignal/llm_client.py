"""
Vision LLM clients.

Rationale:
- Keep interface tiny: describe_image(image, mime_type, prompt) -> str.
- Two providers: OpenRouter (OpenAI-compatible chat completions over httpx)
  and Gemini (google-genai SDK). Chosen by LLM_PROVIDER.
- Optional retries on transient failures, off by default.
"""

import asyncio
import base64
import logging
import random
from typing import Optional, Protocol

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .config import Settings
from .errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
TEMPERATURE = 0.7
MAX_TOKENS = 1500


class VisionClient(Protocol):
    @property
    def configured(self) -> bool: ...

    async def describe_image(self, image: bytes, mime_type: str, prompt: str) -> str: ...

    async def aclose(self) -> None: ...


class OpenRouterClient:
    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        *,
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def describe_image(self, image: bytes, mime_type: str, prompt: str) -> str:
        if not self.api_key:
            raise ConfigurationError("API key not configured")

        image_url = f"data:{mime_type};base64,{base64.b64encode(image).decode('ascii')}"
        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "image_url", "image_url": {"url": image_url}},
                        {"type": "text", "text": prompt},
                    ],
                }
            ],
            "temperature": TEMPERATURE,
            "max_tokens": MAX_TOKENS,
        }

        try:
            response = await self._http.post(
                OPENROUTER_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
        except httpx.HTTPError as e:
            raise UpstreamError("Failed to analyze chart", f"OpenRouter request failed: {e}", status_code=502)

        logger.info("llm.openrouter_response status=%d model=%s", response.status_code, self.model)
        if not response.is_success:
            logger.error("llm.openrouter_error status=%d body=%s", response.status_code, response.text[:500])
            raise UpstreamError("Failed to analyze chart", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise UpstreamError("Failed to analyze chart", "OpenRouter returned invalid JSON", status_code=502)

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            return ""
        message = (choices[0] or {}).get("message") or {}
        content = message.get("content")
        return content if isinstance(content, str) else ""

    async def aclose(self) -> None:
        await self._http.aclose()


class GeminiClient:
    def __init__(self, api_key: Optional[str], model: str):
        self.api_key = api_key
        self.model = model
        self._client = genai.Client(api_key=api_key) if api_key else None

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def describe_image(self, image: bytes, mime_type: str, prompt: str) -> str:
        if self._client is None:
            raise ConfigurationError("API key not configured")

        try:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=[types.Part.from_bytes(data=image, mime_type=mime_type), prompt],
                config=types.GenerateContentConfig(
                    temperature=TEMPERATURE,
                    max_output_tokens=MAX_TOKENS,
                ),
            )
        except genai_errors.APIError as e:
            logger.error("llm.gemini_error code=%s message=%s", e.code, str(e)[:300])
            raise UpstreamError("Failed to analyze chart", str(e)[:300], status_code=e.code)

        # Prefer the SDK's convenience property
        result = getattr(response, "text", None)
        if result:
            return result

        candidates = getattr(response, "candidates", None) or []
        if candidates:
            content = getattr(candidates[0], "content", None)
            parts = getattr(content, "parts", None) if content else None
            if parts and getattr(parts[0], "text", None):
                return parts[0].text
        return ""

    async def aclose(self) -> None:
        # google-genai owns its transport
        return None


def build_vision_client(settings: Settings) -> VisionClient:
    if settings.llm_provider == "gemini":
        return GeminiClient(settings.gemini_api_key, settings.gemini_model)
    if settings.llm_provider != "openrouter":
        logger.warning("llm.unknown_provider provider=%s falling back to openrouter", settings.llm_provider)
    return OpenRouterClient(
        settings.openrouter_api_key,
        settings.openrouter_model,
        timeout=settings.llm_timeout_seconds,
    )


def _should_retry(e: Exception) -> bool:
    if isinstance(e, UpstreamError):
        return e.status_code in (429, 500, 502, 503, 504)
    return False


async def describe_image_with_retries(
    client: VisionClient,
    image: bytes,
    mime_type: str,
    prompt: str,
    *,
    max_retries: int = 0,
) -> str:
    attempts = max(1, 1 + max(0, int(max_retries)))

    for attempt in range(attempts):
        try:
            return await client.describe_image(image, mime_type, prompt)
        except Exception as e:
            if attempt >= attempts - 1 or not _should_retry(e):
                raise

            # Exponential backoff + jitter
            sleep_s = min(5.0, (0.6 * (2 ** attempt)) + random.random() * 0.25)
            logger.warning(
                "LLM call failed; retrying attempt=%d/%d sleep=%.2fs err=%s",
                attempt + 1,
                attempts,
                sleep_s,
                str(e)[:200],
            )
            await asyncio.sleep(sleep_s)

    raise RuntimeError("LLM call failed")
