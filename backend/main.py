"""
VoiceBridge - Backend Entrypoint

FastAPI application factory and server configuration.
Run with: uvicorn main:app --reload  (from backend/)
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from voicebridge import __version__
from voicebridge.api import health
from voicebridge.config import settings
from voicebridge.core.exceptions import VoiceBridgeError
from voicebridge.core.logging import setup_structured_logging
from voicebridge.core.orchestrator import BridgeServices, create_services
from voicebridge.telephony import router as telephony_router
from voicebridge.telephony.registry import SessionRegistry
from voicebridge.telephony.websocket import telephony_stream_handler

logger = logging.getLogger(__name__)


def create_app(services: Optional[BridgeServices] = None) -> FastAPI:
    """
    Application factory.

    Args:
        services: Pre-built collaborators (tests inject fakes here). When
            omitted they are created from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Startup:
            - Configure logging
            - Build speech and agent collaborators
            - Create the session registry

        Shutdown:
            - Release collaborator HTTP sessions
        """
        # === Startup ===
        setup_structured_logging(settings.app_log_level, json_format=settings.log_json)
        logger.info("🚀 VoiceBridge starting in %s mode", settings.app_env)

        app.state.services = services if services is not None else create_services(settings)
        app.state.registry = SessionRegistry(max_sessions=settings.max_concurrent_calls)
        app.state.settings = settings

        logger.info("✅ Services ready: %s", app.state.services.status())
        logger.info(
            "   Calls: max_concurrent=%d, commit_policy=%s",
            settings.max_concurrent_calls,
            settings.transcript_commit_policy.value,
        )

        yield

        # === Shutdown ===
        logger.info("👋 VoiceBridge shutting down (%d active calls)", len(app.state.registry))
        await app.state.services.aclose()
        logger.info("✅ Shutdown complete")

    app = FastAPI(
        title="VoiceBridge",
        description="Real-time voice bridge between phone calls and a conversational agent",
        version=__version__,
        docs_url="/docs" if settings.app_debug else None,
        redoc_url="/redoc" if settings.app_debug else None,
        lifespan=lifespan,
    )

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Errors ---
    @app.exception_handler(VoiceBridgeError)
    async def voicebridge_error_handler(request: Request, exc: VoiceBridgeError) -> JSONResponse:
        logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": {"code": exc.code, "message": exc.message},
            },
        )

    # --- Routes ---
    app.include_router(health.router)
    app.include_router(telephony_router.router)
    app.add_api_websocket_route(settings.stream_path, telephony_stream_handler)

    # --- Health check at root ---
    @app.get("/")
    async def root():
        """Root health check."""
        return {
            "service": "VoiceBridge",
            "status": "operational",
            "version": __version__,
        }

    return app


# Create app instance
app = create_app()
