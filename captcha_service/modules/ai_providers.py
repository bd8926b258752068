import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Union, cast

import httpx

logger = logging.getLogger("captcha-service.ai-providers")


class AIProviderError(Exception):
    """Base class for AI provider errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ProviderConfigError(AIProviderError):
    """Raised when a provider is misconfigured (e.g., missing API key)."""


class ProviderRuntimeError(AIProviderError):
    """Raised during API execution failures (e.g., HTTP errors, parsing)."""


class VisionProvider(ABC):
    """
    Abstract base class for vision-capable model providers.
    """

    name: str = "vision"

    @abstractmethod
    async def read_text(self, image_bytes: bytes, prompt: str) -> dict[str, Any]:
        """
        Sends an image with a prompt and returns {"text": ..., "model": ...}.
        Raises AIProviderError on failure.
        """

    async def close(self) -> None:
        """Releases provider resources."""


class BaseVisionProvider(VisionProvider, ABC):
    """
    Base class providing common utilities for VisionProviders, such as retries.
    """

    def __init__(
        self,
        max_retries: int = 3,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.max_retries = max_retries
        self.timeout = timeout
        self._client = client

    async def _post(
        self, url: str, headers: dict[str, str], json_payload: dict[str, Any]
    ) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(
                url, headers=headers, json=json_payload, timeout=self.timeout
            )
        async with httpx.AsyncClient() as client:
            return await client.post(
                url, headers=headers, json=json_payload, timeout=self.timeout
            )

    async def _request_with_retry(
        self,
        url: str,
        headers: dict[str, str],
        json_payload: dict[str, Any],
    ) -> Union[dict[str, Any], list[Any]]:
        """
        Internal helper to perform HTTP requests with exponential backoff on 429s.
        """
        attempt = 0
        while attempt < self.max_retries:
            try:
                response = await self._post(url, headers, json_payload)
            except httpx.HTTPError as e:
                logger.error("HTTP error on attempt %s: %s", attempt + 1, e)
                if attempt == self.max_retries - 1:
                    raise ProviderRuntimeError(
                        f"HTTP error after {self.max_retries} attempts: {e}"
                    ) from e
                attempt += 1
                await asyncio.sleep(2**attempt)
                continue

            if response.status_code == 429:
                backoff = 2**attempt
                logger.warning("Rate limited, retrying in %s seconds", backoff)
                await asyncio.sleep(backoff)
                attempt += 1
                continue

            try:
                response.raise_for_status()
                return cast(Union[dict[str, Any], list[Any]], response.json())
            except httpx.HTTPStatusError as e:
                response_body = self._get_response_body(e)
                logger.error("HTTP status error: %s | body: %s", e, response_body)
                raise ProviderRuntimeError(
                    f"HTTP status error: {e.response.status_code}",
                    details={
                        "status_code": response.status_code,
                        "body": response_body,
                    },
                ) from e

        raise ProviderRuntimeError("Exceeded maximum retry attempts")

    def _get_response_body(self, exc: httpx.HTTPStatusError) -> Optional[Any]:
        """Extracts JSON or text from an HTTPStatusError response."""
        resp = getattr(exc, "response", None)
        if resp is not None:
            try:
                return resp.json()
            except Exception:
                try:
                    return resp.text
                except Exception:
                    return None
        return None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


class GeminiVisionProvider(BaseVisionProvider):
    """
    Implementation of VisionProvider using the Gemini generateContent REST API.
    """

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash-lite",
        max_retries: int = 3,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ProviderConfigError("Gemini API key is not configured")
        super().__init__(max_retries=max_retries, timeout=timeout, client=client)
        self.api_key = api_key
        self.model = model

    async def read_text(self, image_bytes: bytes, prompt: str) -> dict[str, Any]:
        url = (
            "https://generativelanguage.googleapis.com/v1beta/models/"
            f"{self.model}:generateContent"
        )
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key,
        }
        request_payload = {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {
                            "inline_data": {
                                "mime_type": "image/png",
                                "data": base64.b64encode(image_bytes).decode("utf-8"),
                            }
                        },
                    ]
                }
            ],
            # Low temperature and a tiny output budget: four characters expected.
            "generationConfig": {
                "temperature": 0.1,
                "topK": 1,
                "topP": 0.1,
                "maxOutputTokens": 10,
            },
        }

        data = await self._request_with_retry(
            url, headers=headers, json_payload=request_payload
        )

        try:
            text = cast(dict, data)["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            logger.error("Gemini response parsing failed: %s", e)
            raise ProviderRuntimeError("Invalid response structure from Gemini") from e
        return {"text": text, "model": self.model}


class OpenAIVisionProvider(BaseVisionProvider):
    """
    Implementation of VisionProvider using OpenAI's chat completions API.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        max_retries: int = 3,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ProviderConfigError("OpenAI API key is not configured")
        super().__init__(max_retries=max_retries, timeout=timeout, client=client)
        self.api_key = api_key
        self.model = model

    async def read_text(self, image_bytes: bytes, prompt: str) -> dict[str, Any]:
        base64_image = base64.b64encode(image_bytes).decode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        request_payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:image/png;base64,{base64_image}"
                            },
                        },
                    ],
                }
            ],
            "max_tokens": 10,
            "temperature": 0,
        }

        data = await self._request_with_retry(
            "https://api.openai.com/v1/chat/completions",
            headers=headers,
            json_payload=request_payload,
        )

        if not isinstance(data, dict):
            raise ProviderRuntimeError("Unexpected response format from OpenAI")

        try:
            return {
                "text": data["choices"][0]["message"]["content"],
                "model": self.model,
            }
        except (KeyError, IndexError) as e:
            logger.error("OpenAI response parsing failed: %s", e)
            raise ProviderRuntimeError("Failed to parse OpenAI response") from e
