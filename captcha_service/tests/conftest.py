import os

import pytest

# Set dummy environment variables for Pydantic Settings validation
os.environ.setdefault("CAPTCHA_API_KEY", "test-api-key")
os.environ.setdefault("ENVIRONMENT", "development")

from captcha_service.modules.models import ColorProfile, DominantColor  # noqa: E402
from captcha_service.modules.ocr_config import EngineConfig  # noqa: E402

from .fakes import encode_png, render_captcha  # noqa: E402


@pytest.fixture
def yellow_captcha_png() -> bytes:
    return encode_png(render_captcha())


@pytest.fixture
def gray_profile() -> ColorProfile:
    return ColorProfile(
        dominant_color=DominantColor.GRAY, mean_brightness=150.0, contrast=200.0
    )


@pytest.fixture
def fast_config() -> EngineConfig:
    """Loop timings shrunk so state machine tests finish quickly."""
    return EngineConfig(
        settle_delay=0,
        recapture_delay=0.01,
        capture_timeout=1,
        submit_timeout=1,
        session_budget_seconds=5,
    )
