"""
Heuristic character disambiguation for recognized CAPTCHA text.

The corrector is the last line of defense for the output contract: whatever
it is given, it returns exactly four characters from [A-Z0-9].
"""

import logging
import re
import secrets
from dataclasses import dataclass

from .models import ALPHABET, CAPTCHA_LENGTH

__all__ = ["Correction", "HeuristicCorrector"]

logger = logging.getLogger("captcha-service.corrector")

_INVALID = re.compile(r"[^A-Z0-9]")

# Narrow band: only the two most common confusions.
_NARROW_TO_DIGIT = str.maketrans({"O": "0", "I": "1"})
_NARROW_TO_LETTER = str.maketrans({"0": "O", "1": "I"})

# Wide band, used when the engine is unsure.
_WIDE_TO_DIGIT = str.maketrans(
    {"O": "0", "I": "1", "S": "5", "G": "6", "B": "8", "Z": "2", "D": "0", "T": "7"}
)
_WIDE_TO_LETTER = str.maketrans(
    {"0": "O", "1": "I", "5": "S", "6": "G", "8": "B", "2": "Z", "7": "T"}
)
_AMBIGUOUS_TO_DIGIT = {"O": "0", "I": "1", "B": "8"}

TRUSTED_CONFIDENCE = 85.0
NARROW_BAND_FLOOR = 60.0


@dataclass(frozen=True)
class Correction:
    text: str
    padded: bool = False
    truncated: bool = False


def _count(text: str) -> tuple[int, int]:
    digits = sum(c.isdigit() for c in text)
    letters = sum(c.isalpha() for c in text)
    return digits, letters


class HeuristicCorrector:
    def __init__(
        self,
        trusted_confidence: float = TRUSTED_CONFIDENCE,
        narrow_band_floor: float = NARROW_BAND_FLOOR,
    ):
        self.trusted_confidence = trusted_confidence
        self.narrow_band_floor = narrow_band_floor

    def correct(self, text: str, confidence: float) -> Correction:
        cleaned = _INVALID.sub("", (text or "").upper())

        if confidence > self.trusted_confidence:
            corrected = cleaned
        elif confidence >= self.narrow_band_floor:
            corrected = self._narrow_pass(cleaned)
        else:
            corrected = self._nudge_positions(self._wide_pass(cleaned))

        if corrected != cleaned:
            logger.debug("Corrected %r -> %r (%.1f%%)", cleaned, corrected, confidence)
        return self.enforce_length(corrected)

    @staticmethod
    def _narrow_pass(text: str) -> str:
        digits, letters = _count(text)
        if digits > letters + 1:
            return text.translate(_NARROW_TO_DIGIT)
        if letters > digits + 1:
            return text.translate(_NARROW_TO_LETTER)
        return text

    @staticmethod
    def _wide_pass(text: str) -> str:
        digits, letters = _count(text)
        if digits > letters:
            return text.translate(_WIDE_TO_DIGIT)
        return text.translate(_WIDE_TO_LETTER)

    @staticmethod
    def _nudge_positions(text: str) -> str:
        """
        Strings in this domain carry at least one digit. When none survived,
        an O/I/B in the middle positions is read as 0/1/8 instead.
        """
        if len(text) != CAPTCHA_LENGTH or any(c.isdigit() for c in text):
            return text
        chars = list(text)
        for position in (2, 1):
            if chars[position] in _AMBIGUOUS_TO_DIGIT:
                chars[position] = _AMBIGUOUS_TO_DIGIT[chars[position]]
        return "".join(chars)

    @staticmethod
    def enforce_length(text: str) -> Correction:
        cleaned = _INVALID.sub("", (text or "").upper())
        if len(cleaned) > CAPTCHA_LENGTH:
            return Correction(text=cleaned[:CAPTCHA_LENGTH], truncated=True)
        if len(cleaned) < CAPTCHA_LENGTH:
            filler = "".join(
                secrets.choice(ALPHABET) for _ in range(CAPTCHA_LENGTH - len(cleaned))
            )
            logger.warning("Padded %r with random filler to %r", cleaned, cleaned + filler)
            return Correction(text=cleaned + filler, padded=True)
        return Correction(text=cleaned)
