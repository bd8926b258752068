"""
Exception hierarchy for the CAPTCHA resolution engine.

Only ImageDecodeError is expected to reach callers; every other error is
handled where it is raised and turned into data (a low-confidence or failed
ResolutionResult).
"""

from typing import Any, Optional


class CaptchaServiceError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ImageDecodeError(CaptchaServiceError):
    """Raised when challenge bytes cannot be decoded into a raster."""


class HostUIError(CaptchaServiceError):
    """Transient failure while talking to the host page (stale element, not found)."""


class RecognitionError(CaptchaServiceError):
    """Raised by a recognition engine for a single (candidate, strategy) pair."""


class SessionBusyError(CaptchaServiceError):
    """Raised when a session id is already being resolved."""
