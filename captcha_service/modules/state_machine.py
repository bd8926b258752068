"""
Resolution state machine.

Drives one CAPTCHA session against a host page: capture, recognize, submit,
observe the outcome, and repeat until the challenge disappears or a budget
runs out. A manual answer from an operator and an external cancellation both
race the automatic path; whichever finishes first decides the result.
"""

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from captcha_service.errors import HostUIError

from .corrector import HeuristicCorrector
from .image_toolkit import ImageToolkit
from .models import ResolutionMethod, ResolutionResult, ResolutionStatus
from .ocr_config import EngineConfig
from .solver import CaptchaSolver, SolveOutcome

if TYPE_CHECKING:
    from captcha_service.services.host_ui import HostUI

__all__ = ["ResolutionState", "ResolutionStateMachine", "SessionState"]

logger = logging.getLogger("captcha-service.state-machine")

MANUAL_CONFIDENCE = 100.0

T = TypeVar("T")


class ResolutionState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    RECOGNIZING = "recognizing"
    SUBMITTING = "submitting"
    AWAITING_OUTCOME = "awaiting_outcome"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"
    EXTERNALLY_RESOLVED = "externally_resolved"


# States that start new work and so must respect max_attempts.
_BUDGETED_STATES = (
    ResolutionState.CAPTURING,
    ResolutionState.RECOGNIZING,
    ResolutionState.SUBMITTING,
)


def _consume_result(task: asyncio.Future) -> None:
    # Marks the error of host work nobody awaits any more as retrieved.
    if not task.cancelled():
        task.exception()


@dataclass
class SessionState:
    """
    Mutable per-session bookkeeping. Must be created inside the event loop
    that will run the session.
    """

    session_id: str
    start_time: float = field(default_factory=time.monotonic)
    state: ResolutionState = ResolutionState.IDLE
    last_capture_hash: Optional[str] = None
    pending_image: Optional[bytes] = None
    pending_since: Optional[float] = None
    rejected_texts: set[str] = field(default_factory=set)
    attempt_count: int = 0
    resubmits: int = 0
    submitted_text: Optional[str] = None
    submitted_from: Optional[SolveOutcome] = None
    current: Optional[SolveOutcome] = None
    current_hash: Optional[str] = None
    best: Optional[SolveOutcome] = None
    manual_override: asyncio.Future = field(init=False, repr=False)
    cancelled: asyncio.Event = field(init=False, repr=False)

    def __post_init__(self):
        self._loop = asyncio.get_running_loop()
        self.manual_override = self._loop.create_future()
        self.cancelled = asyncio.Event()

    @property
    def pending_manual_text(self) -> Optional[str]:
        if self.manual_override.done() and not self.manual_override.cancelled():
            return self.manual_override.result()
        return None

    @property
    def finished(self) -> bool:
        return self.state in (
            ResolutionState.ACCEPTED,
            ResolutionState.FAILED,
            ResolutionState.EXTERNALLY_RESOLVED,
        )

    def offer_manual_text(self, text: str) -> bool:
        """
        Registers an operator answer. Safe to call from any thread; returns
        False when a manual answer was already registered or the session ended.
        """
        if self.manual_override.done() or self.finished:
            return False
        self._loop.call_soon_threadsafe(self._set_manual, text)
        return True

    def _set_manual(self, text: str) -> None:
        if not self.manual_override.done():
            self.manual_override.set_result(text)

    def cancel(self) -> None:
        self._loop.call_soon_threadsafe(self.cancelled.set)

    def record_capture(self, image: bytes, digest: str) -> None:
        self.last_capture_hash = digest
        self.pending_image = image
        self.pending_since = time.time()

    def remember(self, outcome: SolveOutcome) -> None:
        self.current = outcome
        self.current_hash = self.last_capture_hash
        if self.best is None or outcome.confidence > self.best.confidence:
            self.best = outcome

    def next_text(self, outcome: SolveOutcome) -> Optional[str]:
        """Best text of `outcome` the host has not already rejected."""
        for text in outcome.texts:
            if text not in self.rejected_texts:
                return text
        return None


class ResolutionStateMachine:
    def __init__(
        self,
        solver: CaptchaSolver,
        host: "HostUI",
        config: Optional[EngineConfig] = None,
        capture_retries: int = 3,
    ):
        self.solver = solver
        self.host = host
        self.config = config or EngineConfig()
        self.capture_retries = capture_retries
        self._host_lock = asyncio.Lock()
        self._in_flight: Optional[asyncio.Task] = None

    async def _host_call(self, call: Callable[[], Awaitable[T]], timeout: float) -> T:
        """
        Runs one host operation at a time. A caller that times out or is
        cancelled stops waiting, but the operation keeps the host until it
        returns, so the next call starts only after it.
        """
        async with self._host_lock:
            await self._drain_host()
            task = asyncio.ensure_future(call())
            task.add_done_callback(_consume_result)
            self._in_flight = task
            return await asyncio.wait_for(asyncio.shield(task), timeout)

    async def _drain_host(self) -> None:
        task = self._in_flight
        if task is not None and not task.done():
            logger.debug("Waiting for the previous host operation to finish")
            await asyncio.wait({task})

    async def run(self, session: SessionState) -> ResolutionResult:
        """
        Resolves the session. Never raises except ImageDecodeError; budget
        exhaustion and cancellation come back as data.
        """
        auto = asyncio.create_task(self._drive(session))
        cancel = asyncio.create_task(session.cancelled.wait())
        manual = session.manual_override
        remaining = self.config.session_budget_seconds - (
            time.monotonic() - session.start_time
        )

        try:
            done, _ = await asyncio.wait(
                {auto, cancel, manual},
                timeout=max(0.0, remaining),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (auto, cancel):
                if not task.done():
                    task.cancel()
            await asyncio.gather(auto, cancel, return_exceptions=True)
            # Cancelled host work may still be running in a worker thread.
            await self._drain_host()

        if auto in done and not auto.cancelled():
            return auto.result()
        if manual in done:
            return await self._apply_manual(session, manual.result())
        if cancel in done:
            logger.info("Session %s cancelled externally", session.session_id)
            return self._finish(session, ResolutionState.EXTERNALLY_RESOLVED)

        logger.warning(
            "Session %s exceeded its %.0fs budget after %d attempts",
            session.session_id,
            self.config.session_budget_seconds,
            session.attempt_count,
        )
        return self._finish(session, ResolutionState.FAILED)

    async def _drive(self, session: SessionState) -> ResolutionResult:
        cfg = self.config
        state = ResolutionState.CAPTURING
        image: Optional[bytes] = None
        prefetched: Optional[bytes] = None
        text: Optional[str] = None
        source: Optional[SolveOutcome] = None

        while True:
            session.state = state

            if state in _BUDGETED_STATES and session.attempt_count >= cfg.max_attempts:
                logger.warning(
                    "Session %s reached %d attempts", session.session_id, cfg.max_attempts
                )
                return self._finish(session, ResolutionState.FAILED)

            if state is ResolutionState.CAPTURING:
                if prefetched is not None:
                    image, prefetched = prefetched, None
                    state = ResolutionState.RECOGNIZING
                    continue

                try:
                    captured = await self._capture(session)
                except (HostUIError, asyncio.TimeoutError) as e:
                    logger.warning("Capture failed after retries: %s", e)
                    session.attempt_count += 1
                    await asyncio.sleep(cfg.recapture_delay)
                    continue

                if captured is None:
                    if not await self._challenge_visible():
                        return self._finish(session, ResolutionState.EXTERNALLY_RESOLVED)
                    await asyncio.sleep(cfg.recapture_delay)
                    continue

                digest = ImageToolkit.digest(captured)
                if digest == session.last_capture_hash:
                    logger.debug("Challenge image unchanged, waiting for a new one")
                    await asyncio.sleep(cfg.recapture_delay)
                    continue

                session.record_capture(captured, digest)
                image = captured
                state = ResolutionState.RECOGNIZING

            elif state is ResolutionState.RECOGNIZING:
                assert image is not None
                if session.current and session.current_hash == session.last_capture_hash:
                    outcome = session.current
                else:
                    outcome = await self.solver.solve(image)
                    session.remember(outcome)
                text = session.next_text(outcome)
                if text is None:
                    logger.info(
                        "Every read of this image was already rejected | Session: %s",
                        session.session_id,
                    )
                    session.attempt_count += 1
                    state = ResolutionState.CAPTURING
                    continue
                source = outcome.for_text(text)
                session.resubmits = 0
                state = ResolutionState.SUBMITTING

            elif state is ResolutionState.SUBMITTING:
                assert text is not None
                session.attempt_count += 1
                session.submitted_text = text
                session.submitted_from = source
                try:
                    await self._host_call(
                        functools.partial(self.host.submit, text), cfg.submit_timeout
                    )
                except (HostUIError, asyncio.TimeoutError) as e:
                    logger.warning("Submit of %s failed: %s", text, e)
                    state = self._after_stuck_submit(session, text)
                    continue
                logger.info(
                    "Submitted %s | Attempt %d/%d | Session: %s",
                    text,
                    session.attempt_count,
                    cfg.max_attempts,
                    session.session_id,
                )
                state = ResolutionState.AWAITING_OUTCOME

            elif state is ResolutionState.AWAITING_OUTCOME:
                await asyncio.sleep(cfg.settle_delay)
                if not await self._challenge_visible():
                    return self._finish(session, ResolutionState.ACCEPTED)

                try:
                    after = await self._capture(session)
                except (HostUIError, asyncio.TimeoutError) as e:
                    logger.warning("Capture after submit failed: %s", e)
                    after = None

                digest = ImageToolkit.digest(after) if after else None
                if digest is not None and digest != session.last_capture_hash:
                    session.record_capture(after, digest)
                    prefetched = after
                    state = ResolutionState.REJECTED
                else:
                    assert text is not None
                    state = self._after_stuck_submit(session, text)

            elif state is ResolutionState.REJECTED:
                assert text is not None
                session.rejected_texts.add(text)
                logger.info(
                    "Rejected %s | Session: %s | Rejected so far: %d",
                    text,
                    session.session_id,
                    len(session.rejected_texts),
                )
                state = ResolutionState.CAPTURING

            else:
                raise RuntimeError(f"Unexpected state {state}")

    def _after_stuck_submit(self, session: SessionState, text: str) -> ResolutionState:
        """
        The page did not react to a submission. Resubmit a few times, then
        treat the text as rejected and try the next read of the same image.
        """
        session.resubmits += 1
        if session.resubmits <= self.config.max_resubmits:
            logger.info("Challenge unchanged, resubmitting %s (%d)", text, session.resubmits)
            return ResolutionState.SUBMITTING
        session.rejected_texts.add(text)
        return ResolutionState.RECOGNIZING

    async def _capture(self, session: SessionState) -> Optional[bytes]:
        @retry(
            stop=stop_after_attempt(self.capture_retries),
            wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
            retry=retry_if_exception_type((HostUIError, asyncio.TimeoutError)),
            reraise=True,
        )
        async def _do_capture() -> Optional[bytes]:
            logger.debug("Capturing challenge | Session: %s", session.session_id)
            return await self._host_call(self.host.capture, self.config.capture_timeout)

        return await _do_capture()

    async def _challenge_visible(self) -> bool:
        try:
            return await self._host_call(
                self.host.is_challenge_visible, self.config.capture_timeout
            )
        except (HostUIError, asyncio.TimeoutError) as e:
            logger.warning("Visibility check failed, assuming visible: %s", e)
            return True

    async def _apply_manual(self, session: SessionState, text: str) -> ResolutionResult:
        logger.info("Manual answer %s wins | Session: %s", text, session.session_id)
        try:
            await self._host_call(
                functools.partial(self.host.submit, text), self.config.submit_timeout
            )
        except (HostUIError, asyncio.TimeoutError) as e:
            logger.error("Submitting manual answer failed: %s", e)
        session.state = ResolutionState.ACCEPTED
        outcome = session.current
        return ResolutionResult(
            text=text,
            confidence=MANUAL_CONFIDENCE,
            method=ResolutionMethod.MANUAL,
            attempts_used=session.attempt_count,
            status=ResolutionStatus.ACCEPTED,
            dominant_color=outcome.dominant_color if outcome else None,
            latency_ms=self._elapsed_ms(session),
            rejected_texts=tuple(sorted(session.rejected_texts)),
        )

    def _finish(self, session: SessionState, state: ResolutionState) -> ResolutionResult:
        session.state = state
        status = {
            ResolutionState.ACCEPTED: ResolutionStatus.ACCEPTED,
            ResolutionState.EXTERNALLY_RESOLVED: ResolutionStatus.EXTERNALLY_RESOLVED,
        }.get(state, ResolutionStatus.FAILED)

        # The accepted text is the last one submitted; otherwise report the
        # most confident read seen.
        if state is ResolutionState.ACCEPTED:
            outcome = session.submitted_from or session.current
        else:
            outcome = session.best
        if state is ResolutionState.ACCEPTED and session.submitted_text:
            text = session.submitted_text
        elif outcome is not None:
            text = session.next_text(outcome) or outcome.text
        else:
            text = ""

        correction = HeuristicCorrector.enforce_length(text)
        padded = correction.padded or bool(
            outcome and outcome.padded and text == outcome.text
        )
        result = ResolutionResult(
            text=correction.text,
            confidence=outcome.confidence if outcome else 0.0,
            method=outcome.method if outcome else ResolutionMethod.OCR_ENSEMBLE,
            attempts_used=session.attempt_count,
            status=status,
            winning_candidate_label=outcome.candidate_label if outcome else None,
            winning_segmentation_mode=outcome.segmentation_mode if outcome else None,
            dominant_color=outcome.dominant_color if outcome else None,
            padded=padded,
            latency_ms=self._elapsed_ms(session),
            rejected_texts=tuple(sorted(session.rejected_texts)),
        )
        logger.info(
            "Session %s finished | Status: %s | Text: %s | Attempts: %d",
            session.session_id,
            status.value,
            result.text,
            result.attempts_used,
        )
        return result

    @staticmethod
    def _elapsed_ms(session: SessionState) -> float:
        return (time.monotonic() - session.start_time) * 1000.0
