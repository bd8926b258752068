import base64
import logging

from fastapi import APIRouter, Depends, HTTPException

from captcha_service.routers.deps import get_api_key, get_resolution_service
from captcha_service.schemas import (
    ChallengeImageResponse,
    ManualTextRequest,
    ManualTextResponse,
    SessionActionResponse,
    StatisticsResponse,
)
from captcha_service.services.resolution import CaptchaResolutionService

logger = logging.getLogger("captcha-service.api")

router = APIRouter(prefix="/captcha", dependencies=[Depends(get_api_key)])


@router.get("/stats", response_model=StatisticsResponse)
async def get_statistics(
    service: CaptchaResolutionService = Depends(get_resolution_service),
) -> StatisticsResponse:
    """Aggregated outcome counters since startup."""
    return StatisticsResponse(**service.statistics())


@router.get("/{session_id}", response_model=ChallengeImageResponse)
async def get_challenge_image(
    session_id: str,
    service: CaptchaResolutionService = Depends(get_resolution_service),
) -> ChallengeImageResponse:
    """Challenge image a running session is currently working on."""
    pending = service.get_pending_challenge_image(session_id)
    if pending is None:
        raise HTTPException(status_code=404, detail="No pending CAPTCHA for session")
    image, captured_at = pending
    return ChallengeImageResponse(
        session_id=session_id,
        image_base64=base64.b64encode(image).decode("ascii"),
        captured_at=captured_at,
    )


@router.post("/{session_id}", response_model=ManualTextResponse)
async def submit_manual_text(
    session_id: str,
    body: ManualTextRequest,
    service: CaptchaResolutionService = Depends(get_resolution_service),
) -> ManualTextResponse:
    """Hands an operator's answer to a running session."""
    if not service.has_session(session_id):
        raise HTTPException(status_code=404, detail="No active CAPTCHA session")
    try:
        accepted = service.submit_manual_text(session_id, body.text)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    if not accepted:
        raise HTTPException(
            status_code=409, detail="Session already has an answer or has finished"
        )
    logger.info("Manual answer received | Session: %s", session_id)
    return ManualTextResponse(session_id=session_id, text=body.text, accepted=True)


@router.delete("/{session_id}", response_model=SessionActionResponse)
async def clear_session(
    session_id: str,
    service: CaptchaResolutionService = Depends(get_resolution_service),
) -> SessionActionResponse:
    """Drops the pending image of a session."""
    if not service.clear_session(session_id):
        raise HTTPException(status_code=404, detail="No active CAPTCHA session")
    return SessionActionResponse(session_id=session_id, success=True)
