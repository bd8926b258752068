import pytest
from pydantic import ValidationError

from captcha_service.config import Settings
from captcha_service.modules.ocr_config import (
    SEGMENTATION_MODES,
    EngineConfig,
    TesseractConfig,
)


def test_defaults():
    settings = Settings(captcha_api_key="test")

    assert settings.api_key_header_name == "X-API-KEY"
    assert settings.gemini_model == "gemini-2.0-flash-lite"
    assert settings.max_attempts == 20
    assert settings.session_budget_seconds == 180
    assert settings.settle_delay == 3.5
    assert settings.early_exit_confidence == 70
    assert settings.confident_threshold == 85


def test_api_key_is_required(monkeypatch):
    monkeypatch.delenv("CAPTCHA_API_KEY", raising=False)

    with pytest.raises(ValidationError) as excinfo:
        Settings(_env_file=None)
    assert "captcha_api_key" in str(excinfo.value)


def test_allowed_origins_wildcard_development():
    """Wildcard origins are allowed in development."""
    settings = Settings(
        captcha_api_key="test", environment="development", allowed_origins=["*"]
    )
    assert settings.allowed_origins == ["*"]


def test_allowed_origins_wildcard_production():
    """Wildcard origins are NOT allowed in production."""
    with pytest.raises(ValidationError) as excinfo:
        Settings(
            captcha_api_key="test",
            environment="production",
            sentry_dsn="https://key@sentry.example/1",
            allowed_origins=["*"],
        )
    assert "Wildcard CORS origins are not allowed in production" in str(excinfo.value)


def test_production_requires_sentry():
    with pytest.raises(ValidationError) as excinfo:
        Settings(
            captcha_api_key="test",
            environment="production",
            allowed_origins=["https://example.com"],
        )
    assert "sentry_dsn" in str(excinfo.value)


def test_production_settings_accepted():
    settings = Settings(
        captcha_api_key="test",
        environment="production",
        sentry_dsn="https://key@sentry.example/1",
        allowed_origins=["https://example.com"],
    )
    assert settings.allowed_origins == ["https://example.com"]


def test_engine_config_from_settings():
    settings = Settings(
        captcha_api_key="test",
        max_attempts=5,
        settle_delay=1.0,
        recognition_workers=3,
        confident_threshold=80,
    )

    config = EngineConfig.from_settings(settings)

    assert config.max_attempts == 5
    assert config.settle_delay == 1.0
    assert config.recognition_workers == 3
    assert config.confident_threshold == 80
    assert config.api_confidence == 90


def test_tesseract_flags_per_mode():
    config = TesseractConfig().for_mode(SEGMENTATION_MODES[1])

    assert config.psm == 8
    assert "--oem 1 --psm 8" in config.flags
    assert "tessedit_char_whitelist=ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789" in config.flags
