"""
Configuration models for the recognition engine and the resolution loop.
"""

from typing import TYPE_CHECKING

from pydantic import BaseModel

from .models import ALPHABET

if TYPE_CHECKING:
    from captcha_service.config import Settings


class SegmentationMode(BaseModel):
    """A Tesseract page segmentation mode and the name it is reported under."""

    psm: int
    name: str


# Tried in this order for every candidate.
SEGMENTATION_MODES: tuple[SegmentationMode, ...] = (
    SegmentationMode(psm=7, name="PSM-7-SingleLine"),
    SegmentationMode(psm=8, name="PSM-8-SingleWord"),
    SegmentationMode(psm=5, name="PSM-5-SingleBlockVert"),
    SegmentationMode(psm=10, name="PSM-10-SingleChar"),
    SegmentationMode(psm=11, name="PSM-11-SparseText"),
    SegmentationMode(psm=12, name="PSM-12-SparseTextOSD"),
)


class TesseractConfig(BaseModel):
    """Configuration for Tesseract OCR engine."""

    oem: int = 1
    psm: int = 7
    lang: str = "eng"
    whitelist: str = ALPHABET
    dpi: int = 300

    @property
    def flags(self) -> str:
        return (
            f"--oem {self.oem} --psm {self.psm} --dpi {self.dpi} "
            f"-c tessedit_char_whitelist={self.whitelist}"
        )

    def for_mode(self, mode: SegmentationMode) -> "TesseractConfig":
        return self.model_copy(update={"psm": mode.psm})


class LengthPolicy(BaseModel):
    """
    How near-miss recognitions are normalized to four characters.
    Three-character reads get `pad_char` appended, five-character reads lose
    their last character; both are scored at `penalty` times their confidence.
    """

    pad_char: str = "0"
    penalty: float = 0.8
    min_length: int = 3
    max_length: int = 5


class EngineConfig(BaseModel):
    """Thresholds and budgets for the recognition pipeline and state machine."""

    early_exit_confidence: float = 70.0
    confident_threshold: float = 85.0
    api_confidence: float = 90.0
    recognition_workers: int = 1
    length_policy: LengthPolicy = LengthPolicy()

    max_attempts: int = 20
    session_budget_seconds: float = 180.0
    capture_timeout: float = 10.0
    submit_timeout: float = 15.0
    settle_delay: float = 3.5
    recapture_delay: float = 1.0
    max_resubmits: int = 2

    @classmethod
    def from_settings(cls, settings: "Settings") -> "EngineConfig":
        return cls(
            early_exit_confidence=settings.early_exit_confidence,
            confident_threshold=settings.confident_threshold,
            recognition_workers=settings.recognition_workers,
            max_attempts=settings.max_attempts,
            session_budget_seconds=settings.session_budget_seconds,
            capture_timeout=settings.capture_timeout,
            submit_timeout=settings.submit_timeout,
            settle_delay=settings.settle_delay,
            recapture_delay=settings.recapture_delay,
            max_resubmits=settings.max_resubmits,
        )
