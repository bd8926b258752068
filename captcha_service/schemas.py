"""
Pydantic schemas for the CAPTCHA service API.
"""

from typing import Dict

from pydantic import BaseModel, field_validator

from captcha_service.services.resolution import normalize_manual_text


class HealthResponse(BaseModel):
    status: str
    timestamp: float


class ChallengeImageResponse(BaseModel):
    """
    Pending challenge image of a running session, for an operator to solve.
    """

    session_id: str
    image_base64: str
    mime_type: str = "image/png"
    captured_at: float

    model_config = {
        "json_schema_extra": {
            "example": {
                "session_id": "pat-2024-001",
                "image_base64": "iVBORw0KGgoAAAANSUhEUgAA...",
                "mime_type": "image/png",
                "captured_at": 1700000000.0,
            }
        }
    }


class ManualTextRequest(BaseModel):
    """Operator answer; trimmed and uppercased before validation."""

    text: str

    @field_validator("text")
    @classmethod
    def validate_text(cls, value: str) -> str:
        return normalize_manual_text(value)

    model_config = {"json_schema_extra": {"example": {"text": "Z9K4"}}}


class ManualTextResponse(BaseModel):
    session_id: str
    text: str
    accepted: bool


class SessionActionResponse(BaseModel):
    session_id: str
    success: bool


class StatisticsResponse(BaseModel):
    total_sessions: int
    automatic_successes: int
    automatic_failures: int
    manual_successes: int
    externally_resolved: int
    padded_results: int
    success_rate: float
    average_latency_ms: float
    average_confidence: float
    by_method: Dict[str, int]
    winning_candidates: Dict[str, int]
