"""
Recognition ensemble: runs the engine over every (candidate, segmentation
mode) pair and picks a winner by length first, confidence second.
"""

import asyncio
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .models import CAPTCHA_LENGTH, Candidate, RecognitionAttempt
from .ocr_config import (
    SEGMENTATION_MODES,
    LengthPolicy,
    SegmentationMode,
    TesseractConfig,
)
from .ocr_engine import RecognitionEngine, RecognitionOutput

__all__ = ["EnsembleResult", "RecognitionEnsemble"]

logger = logging.getLogger("captcha-service.ensemble")

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


@dataclass
class EnsembleResult:
    """Winning attempt plus the full ranking it was chosen from."""

    text: str
    confidence: float
    candidate_index: int
    candidate_label: str
    segmentation_mode: str
    attempts_tested: int
    ranked: list[RecognitionAttempt] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.text

    @property
    def winner(self) -> Optional[RecognitionAttempt]:
        return self.ranked[0] if self.ranked else None

    @classmethod
    def no_result(cls, attempts_tested: int = 0) -> "EnsembleResult":
        return cls(
            text="",
            confidence=0.0,
            candidate_index=-1,
            candidate_label="none",
            segmentation_mode="none",
            attempts_tested=attempts_tested,
        )


class RecognitionEnsemble:
    def __init__(
        self,
        engine: RecognitionEngine,
        base_config: Optional[TesseractConfig] = None,
        modes: Sequence[SegmentationMode] = SEGMENTATION_MODES,
        early_exit_confidence: float = 70.0,
        length_policy: Optional[LengthPolicy] = None,
        workers: int = 1,
    ):
        self.engine = engine
        self.base_config = base_config or TesseractConfig()
        self.modes = tuple(modes)
        self.early_exit_confidence = early_exit_confidence
        self.length_policy = length_policy or LengthPolicy()
        self.workers = max(1, workers)

    @staticmethod
    def clean_text(raw: str) -> str:
        return _NON_ALNUM.sub("", raw or "").upper()

    @staticmethod
    def confidence_of(output: RecognitionOutput) -> float:
        """Aggregate confidence, or the mean token confidence when it is missing."""
        if output.confidence:
            return float(output.confidence)
        if output.token_confidences:
            return sum(output.token_confidences) / len(output.token_confidences)
        return 0.0

    def build_attempt(
        self,
        output: RecognitionOutput,
        index: int,
        candidate: Candidate,
        mode: SegmentationMode,
    ) -> Optional[RecognitionAttempt]:
        """
        Turns raw engine output into an attempt, or None when the read is
        too far from four characters to be useful.
        """
        text = self.clean_text(output.text)
        confidence = self.confidence_of(output)
        policy = self.length_policy

        if len(text) == CAPTCHA_LENGTH:
            return RecognitionAttempt(
                text=text,
                confidence=confidence,
                candidate_index=index,
                candidate_label=candidate.channel_label,
                segmentation_mode=mode.name,
            )

        if policy.min_length <= len(text) <= policy.max_length:
            if len(text) < CAPTCHA_LENGTH:
                adjusted = text + policy.pad_char * (CAPTCHA_LENGTH - len(text))
            else:
                adjusted = text[:CAPTCHA_LENGTH]
            logger.debug("Near miss %r adjusted to %r", text, adjusted)
            return RecognitionAttempt(
                text=adjusted,
                confidence=confidence * policy.penalty,
                candidate_index=index,
                candidate_label=candidate.channel_label,
                segmentation_mode=mode.name,
                length_adjusted=True,
            )

        logger.debug("Discarded %r: invalid length %d", text, len(text))
        return None

    @staticmethod
    def rank(attempts: Sequence[RecognitionAttempt]) -> list[RecognitionAttempt]:
        """
        Exact four-character reads always come before length-adjusted ones,
        then higher confidence first. The sort is stable, so ties keep the
        (candidate, mode) order they were produced in.
        """
        return sorted(attempts, key=lambda a: (a.length_adjusted, -a.confidence))

    def _is_early_exit(self, attempt: Optional[RecognitionAttempt]) -> bool:
        return (
            attempt is not None
            and not attempt.length_adjusted
            and attempt.confidence > self.early_exit_confidence
        )

    def _recognize_pair(
        self, index: int, candidate: Candidate, mode: SegmentationMode
    ) -> Optional[RecognitionAttempt]:
        try:
            output = self.engine.recognize(
                candidate.image, self.base_config.for_mode(mode)
            )
        except Exception as e:  # pylint: disable=broad-except
            logger.warning(
                "Recognition failed | Candidate: %s | Mode: %s | Error: %s",
                candidate.channel_label,
                mode.name,
                e,
            )
            return None
        return self.build_attempt(output, index, candidate, mode)

    async def run(self, candidates: Sequence[Candidate]) -> EnsembleResult:
        """Recognizes every pair (stopping early on a strong read) and ranks them."""
        if self.workers > 1:
            attempts = await self._run_parallel(candidates)
        else:
            attempts = await self._run_sequential(candidates)
        return self._select(attempts)

    async def _run_sequential(
        self, candidates: Sequence[Candidate]
    ) -> list[RecognitionAttempt]:
        attempts: list[RecognitionAttempt] = []
        for index, candidate in enumerate(candidates):
            for mode in self.modes:
                attempt = await asyncio.to_thread(
                    self._recognize_pair, index, candidate, mode
                )
                if attempt is None:
                    continue
                attempts.append(attempt)
                if self._is_early_exit(attempt):
                    logger.info(
                        "Early exit | %s via %s/%s (%.1f%%)",
                        attempt.text,
                        attempt.candidate_label,
                        attempt.segmentation_mode,
                        attempt.confidence,
                    )
                    return attempts
        return attempts

    async def _run_parallel(
        self, candidates: Sequence[Candidate]
    ) -> list[RecognitionAttempt]:
        attempts: list[RecognitionAttempt] = []
        lock = threading.Lock()
        done = asyncio.Event()
        semaphore = asyncio.Semaphore(self.workers)

        async def work(index: int, candidate: Candidate, mode: SegmentationMode):
            async with semaphore:
                if done.is_set():
                    return
                attempt = await asyncio.to_thread(
                    self._recognize_pair, index, candidate, mode
                )
            if attempt is None:
                return
            with lock:
                attempts.append(attempt)
            if self._is_early_exit(attempt):
                done.set()

        await asyncio.gather(
            *(
                work(index, candidate, mode)
                for index, candidate in enumerate(candidates)
                for mode in self.modes
            )
        )
        return attempts

    def _select(self, attempts: list[RecognitionAttempt]) -> EnsembleResult:
        if not attempts:
            logger.warning("Ensemble produced no usable attempt")
            return EnsembleResult.no_result()

        ranked = self.rank(attempts)
        best = ranked[0]
        logger.info(
            "Ensemble winner | Text: %s | Confidence: %.1f | Candidate: %s | Mode: %s | Tested: %d",
            best.text,
            best.confidence,
            best.candidate_label,
            best.segmentation_mode,
            len(attempts),
        )
        return EnsembleResult(
            text=best.text,
            confidence=best.confidence,
            candidate_index=best.candidate_index,
            candidate_label=best.candidate_label,
            segmentation_mode=best.segmentation_mode,
            attempts_tested=len(attempts),
            ranked=ranked,
        )
