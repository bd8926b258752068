"""
Caller-facing service: one entry point to resolve a CAPTCHA on a host page,
plus the hooks an operator UI needs (pending image, manual answer, cancel).
"""

import asyncio
import logging
import weakref
from typing import TYPE_CHECKING, Any, Optional

from captcha_service.errors import SessionBusyError
from captcha_service.modules.models import ResolutionResult, is_valid_captcha
from captcha_service.modules.ocr_config import EngineConfig, TesseractConfig
from captcha_service.modules.ocr_engine import TesseractRecognizer
from captcha_service.modules.solver import CaptchaSolver
from captcha_service.modules.state_machine import (
    ResolutionStateMachine,
    SessionState,
)
from captcha_service.modules.vision_fallback import VisionFallback

from .host_ui import HostUI
from .statistics import StatisticsAccumulator

if TYPE_CHECKING:
    from captcha_service.config import Settings

__all__ = ["CaptchaResolutionService", "normalize_manual_text"]

logger = logging.getLogger("captcha-service.resolution")


def normalize_manual_text(text: str) -> str:
    """Trims and uppercases operator input; raises ValueError unless it is a valid answer."""
    normalized = (text or "").strip().upper()
    if not is_valid_captcha(normalized):
        raise ValueError("CAPTCHA text must be exactly 4 characters from A-Z and 0-9")
    return normalized


class CaptchaResolutionService:
    def __init__(
        self,
        solver: Optional[CaptchaSolver] = None,
        config: Optional[EngineConfig] = None,
        statistics: Optional[StatisticsAccumulator] = None,
    ):
        self.config = config or (solver.config if solver else EngineConfig())
        self.solver = solver or CaptchaSolver(self.config)
        self.stats = statistics or StatisticsAccumulator()
        self._sessions: dict[str, SessionState] = {}
        self._host_locks: "weakref.WeakKeyDictionary[HostUI, asyncio.Lock]" = (
            weakref.WeakKeyDictionary()
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "CaptchaResolutionService":
        config = EngineConfig.from_settings(settings)
        solver = CaptchaSolver(
            config,
            engine=TesseractRecognizer(settings.tesseract_cmd),
            vision=VisionFallback.from_settings(settings),
            ocr_config=TesseractConfig(oem=settings.tesseract_oem),
        )
        return cls(solver, config)

    async def close(self) -> None:
        await self.solver.close()

    def _lock_for(self, host: HostUI) -> asyncio.Lock:
        lock = self._host_locks.get(host)
        if lock is None:
            lock = self._host_locks[host] = asyncio.Lock()
        return lock

    async def resolve(self, session_id: str, host: HostUI) -> ResolutionResult:
        """
        Resolves the CAPTCHA currently shown by `host`. Sessions sharing a
        host are serialized. Raises SessionBusyError when `session_id` is
        already running and ImageDecodeError when a capture is not an image.
        """
        if session_id in self._sessions:
            raise SessionBusyError(
                f"Session {session_id} is already being resolved",
                details={"session_id": session_id},
            )

        async with self._lock_for(host):
            session = SessionState(session_id)
            self._sessions[session_id] = session
            logger.info("Resolving CAPTCHA | Session: %s", session_id)
            try:
                machine = ResolutionStateMachine(self.solver, host, self.config)
                result = await machine.run(session)
            finally:
                if self._sessions.get(session_id) is session:
                    del self._sessions[session_id]

        self.stats.record(result)
        return result

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def submit_manual_text(self, session_id: str, text: str) -> bool:
        """
        Offers an operator answer to a running session. Returns False when the
        session is unknown or already has one; raises ValueError for invalid text.
        """
        normalized = normalize_manual_text(text)
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning("Manual text for unknown session %s", session_id)
            return False
        accepted = session.offer_manual_text(normalized)
        if accepted:
            logger.info("Manual text registered | Session: %s", session_id)
        return accepted

    def get_pending_challenge_image(
        self, session_id: str
    ) -> Optional[tuple[bytes, float]]:
        """Latest captured image of a running session and its capture time."""
        session = self._sessions.get(session_id)
        if session is None or session.pending_image is None:
            return None
        return session.pending_image, session.pending_since or 0.0

    def clear_session(self, session_id: str) -> bool:
        """Forgets the pending image of a session. Returns False when unknown."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.pending_image = None
        session.pending_since = None
        return True

    def cancel(self, session_id: str) -> bool:
        """Ends a running session as externally resolved."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.cancel()
        return True

    def statistics(self) -> dict[str, Any]:
        return self.stats.snapshot()
