import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sentry_sdk.integrations.fastapi import FastApiIntegration

from captcha_service.config import Settings, get_settings
from captcha_service.routers import captcha, system
from captcha_service.services.resolution import CaptchaResolutionService
from captcha_service.utils.context import get_request_id_from_scope
from captcha_service.utils.monitoring import init_monitoring

logger = logging.getLogger("captcha-service")


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[CaptchaResolutionService] = None,
) -> FastAPI:
    """
    Application factory for creating and configuring the FastAPI instance.

    `service` is the resolution service the automation layer drives; the
    HTTP surface only observes it and feeds it manual answers.
    """
    if settings is None:
        settings = get_settings()

    init_monitoring(
        settings,
        integrations=[FastApiIntegration()],
        release=getattr(settings, "version", None),
    )

    resolution_service = service or CaptchaResolutionService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await resolution_service.close()

    app = FastAPI(
        title=settings.app_name,
        description=settings.app_description,
        version=settings.version,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
        lifespan=lifespan,
    )
    app.state.resolution_service = resolution_service

    # Middleware
    @app.middleware("http")
    async def add_process_time_and_logging(request: Request, call_next):
        """Logs request lifecycle and adds performance metadata to responses."""
        start_time = time.time()
        request_id = get_request_id_from_scope(request.scope)

        logger.info(
            "Request started | Path: %s | Method: %s | ID: %s",
            request.url.path,
            request.method,
            request_id,
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = f"{process_time:.4f}s"
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "Request finished | Path: %s | Status: %d | Latency: %.4fs | ID: %s",
            request.url.path,
            response.status_code,
            process_time,
            request_id,
            extra={"request_id": request_id},
        )

        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(system.router, tags=["System"])
    app.include_router(captcha.router, tags=["CAPTCHA"])

    return app


if __name__ == "__main__":
    import uvicorn  # type: ignore

    uvicorn.run(
        "captcha_service.app:create_app",
        factory=True,
        host="0.0.0.0",  # nosec B104
        port=8000,
    )
