"""
Value types shared by the resolution pipeline.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

__all__ = [
    "ALPHABET",
    "CAPTCHA_LENGTH",
    "CAPTCHA_PATTERN",
    "Candidate",
    "ColorProfile",
    "DominantColor",
    "RecognitionAttempt",
    "ResolutionMethod",
    "ResolutionResult",
    "ResolutionStatus",
    "is_valid_captcha",
]

ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
CAPTCHA_LENGTH = 4
CAPTCHA_PATTERN = re.compile(r"^[A-Z0-9]{4}$")


def is_valid_captcha(text: Optional[str]) -> bool:
    return bool(text) and CAPTCHA_PATTERN.match(text) is not None


class DominantColor(str, Enum):
    YELLOW = "yellow"
    GREEN = "green"
    BLUE = "blue"
    PINK = "pink"
    RED = "red"
    GRAY = "gray"


class ResolutionMethod(str, Enum):
    OCR_ENSEMBLE = "ocr-ensemble"
    API = "api"
    MANUAL = "manual"


class ResolutionStatus(str, Enum):
    ACCEPTED = "accepted"
    FAILED = "failed"
    EXTERNALLY_RESOLVED = "externally_resolved"


@dataclass(frozen=True)
class ColorProfile:
    """Background color class and luminance statistics of a challenge image."""

    dominant_color: DominantColor
    mean_brightness: float
    contrast: float


@dataclass(frozen=True)
class Candidate:
    """
    One preprocessed rendition of the challenge image.

    `image` is the decoded raster handed to the recognition engine; it is
    flagged read-only on creation. `buffer` is the same raster PNG-encoded,
    which is what gets sent to the vision fallback.
    """

    buffer: bytes
    image: np.ndarray = field(repr=False, compare=False)
    channel_label: str
    description: str
    color_profile: ColorProfile
    contrast_score: float

    def __post_init__(self):
        self.image.setflags(write=False)


@dataclass(frozen=True)
class RecognitionAttempt:
    text: str
    confidence: float
    candidate_index: int
    candidate_label: str
    segmentation_mode: str
    length_adjusted: bool = False


@dataclass(frozen=True)
class ResolutionResult:
    """
    Sole return value of a resolution session.

    `padded` marks results whose text was completed with random filler by the
    corrector; such results carry reduced trust and are counted separately by
    the statistics accumulator.
    """

    text: str
    confidence: float
    method: ResolutionMethod
    attempts_used: int
    status: ResolutionStatus
    winning_candidate_label: Optional[str] = None
    winning_segmentation_mode: Optional[str] = None
    dominant_color: Optional[DominantColor] = None
    padded: bool = False
    latency_ms: float = 0.0
    rejected_texts: tuple[str, ...] = ()

    @property
    def accepted(self) -> bool:
        return self.status == ResolutionStatus.ACCEPTED

    def to_record(self) -> dict:
        """Flat key-value record for the metrics sink."""
        return {
            "confidence": round(self.confidence, 1),
            "candidate_used": self.winning_candidate_label or "N/A",
            "accepted": self.accepted,
            "status": self.status.value,
            "attempts": self.attempts_used,
            "dominant_color": (
                self.dominant_color.value if self.dominant_color else "unknown"
            ),
            "method": self.method.value,
            "latency_ms": round(self.latency_ms, 1),
            "padded": self.padded,
        }
