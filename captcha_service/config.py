"""
Configuration module for the CAPTCHA service.

This module defines the settings schema using Pydantic BaseSettings,
supporting environment variable overrides and LRU caching for performance.
"""

import logging
from functools import lru_cache
from typing import Optional

from opentelemetry import trace
from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

tracer = trace.get_tracer(__name__)


class Settings(BaseSettings):
    """
    Application settings for the CAPTCHA service.

    Attributes:
        app_name: Name of the application.
        version: Application version.
        captcha_api_key: Secret key guarding the HTTP surface.
        api_key_header_name: Name of the HTTP header for API key.
        gemini_api_key / openai_api_key: Vision fallback credentials.
        tesseract_cmd: Optional path to the tesseract binary.
        max_attempts: Submissions allowed per session.
        session_budget_seconds: Wall-clock budget per session.
        settle_delay: Seconds to wait after a submit before judging it.
    """

    app_name: str = "CAPTCHA Resolution Service"
    app_description: str = "Image CAPTCHA recognition with OCR ensemble and vision fallback"
    version: str = "1.0.0"

    captcha_api_key: Optional[str] = Field(
        None,
        description="Secret key for API authentication (set via env or Secrets)",
        repr=False,
    )

    api_key_header_name: str = "X-API-KEY"

    # Security and Environment

    environment: str = "development"
    allowed_origins: list[str] = ["*"]

    # Vision fallback

    gemini_api_key: Optional[str] = Field(None, repr=False)
    gemini_model: str = "gemini-2.0-flash-lite"
    openai_api_key: Optional[str] = Field(None, repr=False)
    openai_model: str = "gpt-4o-mini"
    vision_timeout: float = 30.0
    vision_max_retries: int = 3

    # Recognition

    tesseract_cmd: Optional[str] = None
    tesseract_oem: int = 1
    recognition_workers: int = 1
    early_exit_confidence: float = 70.0
    confident_threshold: float = 85.0

    # Resolution loop

    max_attempts: int = 20
    session_budget_seconds: float = 180.0
    capture_timeout: float = 10.0
    submit_timeout: float = 15.0
    settle_delay: float = 3.5
    recapture_delay: float = 1.0
    max_resubmits: int = 2

    # Monitoring & Logging

    sentry_dsn: Optional[str] = Field(None, repr=False)

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @model_validator(mode="after")
    def validate_required_secrets(cls, values):
        missing = []
        if not values.captcha_api_key:
            missing.append("captcha_api_key")
        if values.environment == "production":
            if not values.sentry_dsn:
                missing.append("sentry_dsn")
            if "*" in values.allowed_origins:
                raise ValueError("Wildcard CORS origins are not allowed in production")
        if missing:
            logging.error(f"Missing required secrets: {', '.join(missing)}")
            raise ValueError(f"Missing required secrets: {', '.join(missing)}")
        return values


def _log_settings_load():
    with tracer.start_as_current_span("config.load_settings"):
        logging.info("Loading application settings from environment and .env file.")


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached instance of the application settings.
    Logs and traces the settings load event.
    """
    _log_settings_load()
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as e:
        logging.error(f"Settings validation error: {e}")
        raise
