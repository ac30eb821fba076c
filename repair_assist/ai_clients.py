"""
AI completion backends used by the diagnosis stages.

  - GeminiClient: primary multimodal backend via the google-genai SDK.
  - OpenAIChatClient: secondary backend, any OpenAI-compatible
    /v1/chat/completions endpoint reached over httpx.

Both return raw text; parsing belongs to the result validator. Transport
and provider errors are raised as AdapterFailure.
"""
import logging
from typing import Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .errors import AdapterFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


class GeminiClient:
    """Async wrapper around google-genai generate_content."""

    def __init__(self, api_key: str, model: str, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        if not api_key:
            raise RuntimeError("No Gemini API key configured.")
        self.model = model
        self.client = genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(timeout=int(timeout * 1000)),
        )
        logger.info(f"Gemini client initialized: {model}")

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        images: Optional[list[bytes]] = None,
        temperature: float = 0.2,
        max_output_tokens: int = 2048,
    ) -> str:
        contents: list = [
            types.Part.from_bytes(data=img, mime_type="image/jpeg")
            for img in images or []
        ]
        contents.append(prompt)

        try:
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=contents,
                config=types.GenerateContentConfig(
                    system_instruction=system_prompt,
                    temperature=temperature,
                    max_output_tokens=max_output_tokens,
                    response_mime_type="application/json",
                ),
            )
        except genai_errors.APIError as e:
            logger.error(f"Gemini API error: {e.code} - {e.message}")
            raise AdapterFailure(f"Gemini request failed: {e.code}") from e
        except httpx.HTTPError as e:
            logger.error(f"Gemini connection error: {e}")
            raise AdapterFailure(f"Gemini connection failed: {e}") from e

        text = response.text
        if not text:
            raise AdapterFailure("Gemini returned an empty response")
        return text


class OpenAIChatClient:
    """HTTP client for an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.client = httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 2048,
    ) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self.client.post(
                f"{self.base_url}/v1/chat/completions",
                json={
                    "model": self.model,
                    "messages": messages,
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                },
            )
            response.raise_for_status()
            data = response.json()
            return data["choices"][0]["message"]["content"] or ""
        except httpx.HTTPStatusError as e:
            logger.error(f"Chat completion HTTP error: {e.response.status_code} - {e.response.text[:200]}")
            raise AdapterFailure(f"Chat completion failed: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Chat completion connection error: {e}")
            raise AdapterFailure(f"Chat completion connection failed: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise AdapterFailure(f"Malformed chat completion payload: {e}") from e

    async def close(self):
        await self.client.aclose()
