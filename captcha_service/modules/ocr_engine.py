"""
Recognition engine boundary and its Tesseract implementation.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pytesseract  # type: ignore

from captcha_service.errors import RecognitionError

from .ocr_config import TesseractConfig

__all__ = ["RecognitionEngine", "RecognitionOutput", "TesseractRecognizer"]

logger = logging.getLogger("captcha-service.ocr-engine")


@dataclass
class RecognitionOutput:
    """Raw engine output. `confidence` is None when the engine has no aggregate."""

    text: str
    confidence: Optional[float] = None
    token_confidences: list[float] = field(default_factory=list)


class RecognitionEngine(ABC):
    """
    A text recognizer that can be reconfigured per call.
    Implementations must be safe to call from several threads at once.
    """

    @abstractmethod
    def recognize(self, image: np.ndarray, config: TesseractConfig) -> RecognitionOutput:
        """Raises RecognitionError when the image cannot be processed."""


class TesseractRecognizer(RecognitionEngine):
    """
    pytesseract based recognizer. Every call spawns its own tesseract
    process, so concurrent calls share no state.
    """

    def __init__(self, tesseract_cmd: Optional[str] = None):
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def recognize(self, image: np.ndarray, config: TesseractConfig) -> RecognitionOutput:
        try:
            data = pytesseract.image_to_data(
                image,
                lang=config.lang,
                config=config.flags,
                output_type=pytesseract.Output.DICT,
            )
        except (
            pytesseract.TesseractError,
            pytesseract.TesseractNotFoundError,
            RuntimeError,
            ValueError,
        ) as e:
            raise RecognitionError(f"Tesseract failed: {e}") from e

        words: list[str] = []
        confidences: list[float] = []
        for text, conf in zip(data.get("text", []), data.get("conf", [])):
            text = str(text).strip()
            if not text:
                continue
            try:
                value = float(conf)
            except (TypeError, ValueError):
                continue
            if value < 0:
                continue
            words.append(text)
            confidences.append(value)

        return RecognitionOutput(text="".join(words), token_confidences=confidences)
