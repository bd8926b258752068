"""
Per-attempt recognition pipeline: decode, analyze, generate candidates,
recognize, correct and, when unsure, ask the vision fallback.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from opentelemetry import trace

from .analyzer import ImageAnalyzer
from .candidates import CandidateGenerator
from .corrector import HeuristicCorrector
from .ensemble import EnsembleResult, RecognitionEnsemble
from .image_toolkit import ImageToolkit
from .models import (
    Candidate,
    ColorProfile,
    DominantColor,
    RecognitionAttempt,
    ResolutionMethod,
)
from .ocr_config import EngineConfig, TesseractConfig
from .ocr_engine import RecognitionEngine, TesseractRecognizer
from .vision_fallback import ConfidenceGate, VisionClient, VisionFallback

__all__ = ["CaptchaSolver", "SolveOutcome"]

logger = logging.getLogger("captcha-service.solver")
tracer = trace.get_tracer("captcha-service.solver")


@dataclass
class SolveOutcome:
    """
    Answer for one challenge image.

    `text` is always four characters from [A-Z0-9]. `alternatives` holds the
    other distinct corrected reads in rank order, used when `text` has
    already been rejected by the host.
    """

    text: str
    confidence: float
    method: ResolutionMethod
    padded: bool = False
    candidate_label: Optional[str] = None
    segmentation_mode: Optional[str] = None
    dominant_color: Optional[DominantColor] = None
    attempts_tested: int = 0
    alternatives: list[str] = field(default_factory=list)
    sources: dict[str, RecognitionAttempt] = field(default_factory=dict, repr=False)

    @property
    def texts(self) -> list[str]:
        return [self.text, *self.alternatives]

    def for_text(self, text: str) -> "SolveOutcome":
        """Outcome describing the read behind `text`, which may be an alternative."""
        if text == self.text:
            return self
        attempt = self.sources.get(text)
        return SolveOutcome(
            text=text,
            confidence=attempt.confidence if attempt else 0.0,
            method=ResolutionMethod.OCR_ENSEMBLE,
            candidate_label=attempt.candidate_label if attempt else None,
            segmentation_mode=attempt.segmentation_mode if attempt else None,
            dominant_color=self.dominant_color,
            attempts_tested=self.attempts_tested,
        )


class CaptchaSolver:
    """
    Stateless facade over the analyzer, candidate generator, ensemble,
    corrector and vision fallback. Knows nothing about sessions or the host page.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        engine: Optional[RecognitionEngine] = None,
        generator: Optional[CandidateGenerator] = None,
        corrector: Optional[HeuristicCorrector] = None,
        vision: Optional[VisionClient] = None,
        ocr_config: Optional[TesseractConfig] = None,
        min_width: int = 280,
    ):
        self.config = config or EngineConfig()
        self.analyzer = ImageAnalyzer()
        self.generator = generator or CandidateGenerator(analyzer=self.analyzer)
        self.ensemble = RecognitionEnsemble(
            engine or TesseractRecognizer(),
            base_config=ocr_config,
            early_exit_confidence=self.config.early_exit_confidence,
            length_policy=self.config.length_policy,
            workers=self.config.recognition_workers,
        )
        self.corrector = corrector or HeuristicCorrector(
            trusted_confidence=self.config.confident_threshold
        )
        self.gate = ConfidenceGate(self.config.confident_threshold)
        self.vision = vision
        self.min_width = min_width

    async def close(self) -> None:
        if self.vision is not None:
            await self.vision.close()

    def _prepare(self, image_bytes: bytes) -> tuple[ColorProfile, list[Candidate]]:
        img: np.ndarray = ImageToolkit.decode_image(image_bytes)
        img = ImageToolkit.upscale_to_width(img, self.min_width)
        profile = self.analyzer.analyze(img)
        return profile, self.generator.generate(img, profile)

    def _alternatives(
        self, result: EnsembleResult, primary: str
    ) -> dict[str, RecognitionAttempt]:
        """Distinct corrected reads of the runners-up, in rank order."""
        seen = {primary}
        texts: dict[str, RecognitionAttempt] = {}
        for attempt in result.ranked[1:]:
            correction = self.corrector.correct(attempt.text, attempt.confidence)
            if correction.padded or correction.text in seen:
                continue
            seen.add(correction.text)
            texts[correction.text] = attempt
        return texts

    async def solve(self, image_bytes: bytes) -> SolveOutcome:
        """
        Runs one recognition attempt. Raises ImageDecodeError for bytes that
        are not an image; every other failure lowers confidence instead.
        """
        with tracer.start_as_current_span("captcha.solve") as span:
            span.set_attribute("captcha.image_bytes", len(image_bytes))
            profile, candidates = await asyncio.to_thread(self._prepare, image_bytes)
            span.set_attribute("captcha.dominant_color", profile.dominant_color.value)
            span.set_attribute("captcha.candidates", len(candidates))

            result = await self.ensemble.run(candidates)
            winner = result.winner
            correction = self.corrector.correct(result.text, result.confidence)
            sources = self._alternatives(result, correction.text)
            outcome = SolveOutcome(
                text=correction.text,
                confidence=result.confidence,
                method=ResolutionMethod.OCR_ENSEMBLE,
                padded=correction.padded,
                candidate_label=winner.candidate_label if winner else None,
                segmentation_mode=winner.segmentation_mode if winner else None,
                dominant_color=profile.dominant_color,
                attempts_tested=result.attempts_tested,
                alternatives=list(sources),
                sources=sources,
            )

            exact = winner is not None and not winner.length_adjusted
            if self.gate.is_confident(result.confidence, exact):
                span.set_attribute("captcha.method", outcome.method.value)
                return outcome

            answer = await self._ask_vision(result, candidates, image_bytes)
            if answer is not None:
                if answer != outcome.text and not outcome.padded:
                    outcome.alternatives.insert(0, outcome.text)
                    if winner is not None:
                        outcome.sources[outcome.text] = winner
                outcome.alternatives = [t for t in outcome.alternatives if t != answer]
                outcome.text = answer
                outcome.confidence = self.config.api_confidence
                outcome.method = ResolutionMethod.API
                outcome.padded = False

            span.set_attribute("captcha.method", outcome.method.value)
            span.set_attribute("captcha.confidence", outcome.confidence)
            return outcome

    async def _ask_vision(
        self,
        result: EnsembleResult,
        candidates: list[Candidate],
        image_bytes: bytes,
    ) -> Optional[str]:
        if self.vision is None:
            return None
        if 0 <= result.candidate_index < len(candidates):
            payload = candidates[result.candidate_index].buffer
        else:
            payload = image_bytes
        logger.info(
            "Low confidence (%.1f%%) | Asking vision fallback (%d bytes)",
            result.confidence,
            len(payload),
        )
        try:
            raw = await self.vision.solve_image(payload)
        except Exception as e:  # pylint: disable=broad-except
            logger.warning("Vision fallback failed (%s): %s", type(e).__name__, e)
            return None
        answer = VisionFallback.parse_answer(raw)
        if raw is not None and answer is None:
            logger.info("Discarding unusable vision answer: %r", raw)
        return answer
