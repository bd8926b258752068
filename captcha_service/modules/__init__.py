"""
Entry point for captcha-service modules.
"""

from .analyzer import ImageAnalyzer
from .candidates import CandidateGenerator
from .corrector import HeuristicCorrector
from .ensemble import RecognitionEnsemble
from .ocr_engine import RecognitionEngine, TesseractRecognizer
from .solver import CaptchaSolver, SolveOutcome
from .state_machine import ResolutionState, ResolutionStateMachine, SessionState
from .vision_fallback import ConfidenceGate, VisionClient, VisionFallback

__all__ = [
    "CaptchaSolver",
    "CandidateGenerator",
    "ConfidenceGate",
    "HeuristicCorrector",
    "ImageAnalyzer",
    "RecognitionEngine",
    "RecognitionEnsemble",
    "ResolutionState",
    "ResolutionStateMachine",
    "SessionState",
    "SolveOutcome",
    "TesseractRecognizer",
    "VisionClient",
    "VisionFallback",
]
