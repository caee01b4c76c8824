from __future__ import annotations

import logging
from typing import Dict, Optional, Type

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.chartguard.api.v1.routes_alerts import router as alerts_router_v1
from src.chartguard.api.v1.routes_patients import router as patients_router_v1
from src.chartguard.api.v1.routes_system import router as system_router_v1
from src.chartguard.api.v1.routes_verification import router as verification_router_v1
from src.chartguard.config import Settings
from src.chartguard.context import AppContext, build_context
from src.chartguard.errors import (
    AuthorizationError,
    ChartGuardError,
    ConflictError,
    DecryptionError,
    ExtractionError,
    ExtractionTimeout,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first; ExtractionTimeout is an ExtractionError.
ERROR_STATUS: Dict[Type[ChartGuardError], int] = {
    ValidationError: 422,
    ExtractionTimeout: 504,
    ExtractionError: 502,
    DecryptionError: 500,
    ConflictError: 409,
    NotFoundError: 404,
    AuthorizationError: 403,
}


def status_for(exc: ChartGuardError) -> int:
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def chartguard_error_handler(request: Request, exc: ChartGuardError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.code)
    return JSONResponse(status_code=code, content={"detail": exc.message, "code": exc.code})


def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None) -> FastAPI:
    """Build the API application.

    The AppContext is created here (not at import time) so each app, and
    each test, gets its own repositories, key and audit worker.
    """

    settings = settings or (context.settings if context is not None else Settings())
    app = FastAPI(title="ChartGuard Clinical Record API")
    app.state.context = context or build_context(settings)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        """Drain the audit queue and stop the extraction workers."""

        app.state.context.close()

    # CORS configuration – permissive by default for development. Tighten via
    # CORS_ALLOW_ORIGINS in production deployments.
    allow_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ChartGuardError, chartguard_error_handler)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict:
        """Basic liveness probe for the API root."""
        return {"status": "ok"}

    # Versioned API routers
    app.include_router(system_router_v1, prefix="/api/v1")
    app.include_router(patients_router_v1, prefix="/api/v1")
    app.include_router(verification_router_v1, prefix="/api/v1")
    app.include_router(alerts_router_v1, prefix="/api/v1")
    return app
