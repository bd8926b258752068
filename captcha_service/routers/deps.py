from typing import Optional

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security.api_key import APIKeyHeader

from captcha_service.config import Settings, get_settings
from captcha_service.services.resolution import CaptchaResolutionService

# Security and Identity Management
_settings_init = get_settings()
api_key_header = APIKeyHeader(name=_settings_init.api_key_header_name, auto_error=False)


async def get_api_key(
    header_value: Optional[str] = Security(api_key_header),
    curr_settings: Settings = Depends(get_settings),
) -> str:
    """Enforces API Key authentication for protected resources."""
    if header_value and header_value == curr_settings.captcha_api_key:
        return header_value
    raise HTTPException(
        status_code=403, detail="Unauthorized: Invalid or missing API Key"
    )


def get_resolution_service(request: Request) -> CaptchaResolutionService:
    """The service instance shared by the app and the automation driving it."""
    return request.app.state.resolution_service
