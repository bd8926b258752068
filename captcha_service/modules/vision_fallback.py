"""
Confidence gate and vision-model fallback.

When the local ensemble is unsure, the best candidate rendition is sent to a
vision-capable model. The answer is only trusted when it is a clean
four-character string; anything else (including every provider failure) is
logged and turned into None so the local result stands.
"""

# pylint: disable=broad-except

import logging
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

import httpx

from .ai_providers import (
    AIProviderError,
    GeminiVisionProvider,
    OpenAIVisionProvider,
    VisionProvider,
)
from .models import is_valid_captcha

if TYPE_CHECKING:
    from captcha_service.config import Settings

__all__ = [
    "NO_ANSWER_TOKEN",
    "CAPTCHA_PROMPT",
    "ConfidenceGate",
    "VisionClient",
    "VisionFallback",
]

logger = logging.getLogger("captcha-service.vision-fallback")

NO_ANSWER_TOKEN = "ERRO"

CAPTCHA_PROMPT = (
    "Read the CAPTCHA in this image and return ONLY the 4 characters shown.\n"
    "Rules:\n"
    "1. Return exactly 4 characters: uppercase letters and/or digits.\n"
    "2. No spaces, dots, dashes or any other character.\n"
    "3. No explanation or comment.\n"
    f'4. If you cannot read it clearly, return "{NO_ANSWER_TOKEN}".\n'
    'Valid answer: "A3B7". Invalid answers: "The text is A3B7" or "A 3 B 7".'
)

_NON_ALNUM = re.compile(r"[^A-Z0-9]")


class ConfidenceGate:
    """Decides whether a local read is good enough to submit without help."""

    def __init__(self, threshold: float = 85.0):
        self.threshold = threshold

    def is_confident(self, confidence: float, exact_length: bool) -> bool:
        """True for reads scoring at least the threshold that were already four characters."""
        return exact_length and confidence >= self.threshold


class VisionClient(ABC):
    @abstractmethod
    async def solve_image(self, buffer: bytes) -> Optional[str]:
        """Returns the model's answer, or None when it has none."""

    async def close(self) -> None:
        """Releases client resources."""


class VisionFallback(VisionClient):
    """
    Asks a chain of vision providers to read the image, primary first.
    """

    def __init__(
        self,
        providers: dict[str, VisionProvider],
        primary: str = "gemini",
        fallback: bool = True,
        prompt: str = CAPTCHA_PROMPT,
    ):
        self.providers = providers
        self.primary = primary
        self.fallback = fallback
        self.prompt = prompt

    @classmethod
    def from_settings(
        cls, settings: "Settings", client: Optional[httpx.AsyncClient] = None
    ) -> "VisionFallback":
        """Builds the provider chain from whichever API keys are configured."""
        providers: dict[str, VisionProvider] = {}
        if settings.gemini_api_key:
            providers["gemini"] = GeminiVisionProvider(
                settings.gemini_api_key,
                model=settings.gemini_model,
                max_retries=settings.vision_max_retries,
                timeout=settings.vision_timeout,
                client=client,
            )
        if settings.openai_api_key:
            providers["openai"] = OpenAIVisionProvider(
                settings.openai_api_key,
                model=settings.openai_model,
                max_retries=settings.vision_max_retries,
                timeout=settings.vision_timeout,
                client=client,
            )
        if not providers:
            logger.warning("No vision provider configured; fallback disabled")
        return cls(providers)

    @property
    def enabled(self) -> bool:
        return bool(self.providers)

    async def close(self) -> None:
        for provider in self.providers.values():
            await provider.close()

    def _provider_order(self) -> list[str]:
        if not self.providers:
            return []
        names = list(self.providers)
        if self.primary in self.providers:
            names.remove(self.primary)
            names.insert(0, self.primary)
        return names if self.fallback else names[:1]

    @staticmethod
    def parse_answer(raw: Optional[str]) -> Optional[str]:
        """Cleans a model response; None unless it is a plain four-character answer."""
        if not raw:
            return None
        cleaned = _NON_ALNUM.sub("", raw.strip().upper())
        if cleaned == NO_ANSWER_TOKEN or not is_valid_captcha(cleaned):
            return None
        return cleaned

    async def solve_image(self, buffer: bytes) -> Optional[str]:
        for name in self._provider_order():
            try:
                result = await self.providers[name].read_text(buffer, self.prompt)
            except AIProviderError as e:
                logger.warning(
                    "Vision provider %s failed: %s | details: %s", name, e, e.details
                )
                continue
            except Exception as e:
                logger.warning(
                    "Vision provider %s failed (%s): %s", name, type(e).__name__, e
                )
                continue

            raw = result.get("text") if isinstance(result, dict) else None
            answer = self.parse_answer(raw)
            if answer is None:
                logger.info("Vision provider %s gave no usable answer: %r", name, raw)
                continue
            logger.info("Vision provider %s answered %s", name, answer)
            return answer
        return None
