import asyncio

import httpx
import pytest

from captcha_service.config import Settings
from captcha_service.modules.ai_providers import (
    GeminiVisionProvider,
    ProviderRuntimeError,
    VisionProvider,
)
from captcha_service.modules.vision_fallback import (
    CAPTCHA_PROMPT,
    NO_ANSWER_TOKEN,
    ConfidenceGate,
    VisionFallback,
)


class FakeProvider(VisionProvider):
    def __init__(self, answer=None, error=None):
        self.answer = answer
        self.error = error
        self.calls = []

    async def read_text(self, image_bytes, prompt):
        self.calls.append((image_bytes, prompt))
        if self.error is not None:
            raise self.error
        return {"text": self.answer, "model": "fake"}


def solve(fallback, buffer=b"png"):
    return asyncio.run(fallback.solve_image(buffer))


@pytest.mark.parametrize(
    "confidence, exact, expected",
    [(90, True, True), (85, True, True), (50, True, False), (95, False, False)],
)
def test_confidence_gate(confidence, exact, expected):
    assert ConfidenceGate(85).is_confident(confidence, exact) is expected


def test_clean_answer_is_accepted():
    provider = FakeProvider(answer=' "a3b7"\n')

    assert solve(VisionFallback({"gemini": provider}), b"img") == "A3B7"
    assert provider.calls == [(b"img", CAPTCHA_PROMPT)]


@pytest.mark.parametrize(
    "answer",
    [NO_ANSWER_TOKEN, "erro", "The text is A3B7", "A3B", "A3B7C", "", None],
)
def test_unusable_answers_are_rejected(answer):
    assert solve(VisionFallback({"gemini": FakeProvider(answer=answer)})) is None


def test_spaced_answer_is_cleaned():
    assert VisionFallback.parse_answer("A 3 B 7") == "A3B7"


@pytest.mark.parametrize(
    "error",
    [
        ProviderRuntimeError("boom", details={"status_code": 500}),
        httpx.ConnectError("offline"),
        RuntimeError("unexpected"),
    ],
)
def test_provider_failures_are_swallowed(error):
    assert solve(VisionFallback({"gemini": FakeProvider(error=error)})) is None


def test_falls_back_to_next_provider():
    broken = FakeProvider(error=ProviderRuntimeError("down"))
    backup = FakeProvider(answer="Q9W2")
    fallback = VisionFallback({"openai": backup, "gemini": broken}, primary="gemini")

    assert solve(fallback) == "Q9W2"
    assert len(broken.calls) == 1
    assert len(backup.calls) == 1


def test_fallback_chain_can_be_disabled():
    broken = FakeProvider(error=ProviderRuntimeError("down"))
    backup = FakeProvider(answer="Q9W2")
    fallback = VisionFallback(
        {"gemini": broken, "openai": backup}, primary="gemini", fallback=False
    )

    assert solve(fallback) is None
    assert backup.calls == []


def test_no_providers_means_no_answer():
    fallback = VisionFallback({})

    assert not fallback.enabled
    assert solve(fallback) is None


def test_from_settings_builds_configured_providers():
    settings = Settings(
        captcha_api_key="k", gemini_api_key="g-key", gemini_model="gemini-test"
    )

    fallback = VisionFallback.from_settings(settings)

    assert list(fallback.providers) == ["gemini"]
    provider = fallback.providers["gemini"]
    assert isinstance(provider, GeminiVisionProvider)
    assert provider.model == "gemini-test"
