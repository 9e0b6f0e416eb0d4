"""
VoiceBridge - Health Check Endpoints

System health monitoring endpoints for load balancers, monitoring,
and operational visibility.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Request

from voicebridge import __version__
from voicebridge.config import Settings, get_settings

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
async def health_check(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> dict:
    """
    Overall system health check.

    Returns:
        - status: "healthy" or "degraded"
        - checks: Individual component statuses
        - active_calls: Number of live media streams
        - timestamp: Current server time

    A collaborator that is switched off in configuration counts as
    "disabled"; one that should be on but has no credentials makes the
    service "degraded".
    """
    services = request.app.state.services
    registry = request.app.state.registry
    status = services.status()

    checks = {
        "transcription": _component(
            status["transcription"], settings.transcription_backend
        ),
        "agent": _component(status["agent"], settings.agent_backend),
        "synthesis": _component(status["synthesis"], settings.synthesis_backend),
        "telephony": {
            "status": "healthy" if settings.twilio_enabled else "disabled",
        },
    }

    all_healthy = all(
        c.get("status") in ("healthy", "disabled")
        for c in checks.values()
    )

    return {
        "status": "healthy" if all_healthy else "degraded",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "version": __version__,
        "environment": settings.app_env,
        "active_calls": len(registry),
        "max_concurrent_calls": registry.max_sessions,
        "checks": checks,
    }


@router.get("/live")
async def liveness_check() -> dict:
    """
    Liveness probe for container orchestration.

    Returns 200 if the service is alive.
    """
    return {
        "alive": True,
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }


@router.get("/config")
async def config_info(
    settings: Settings = Depends(get_settings),
) -> dict:
    """
    Non-sensitive configuration information.

    Excludes credentials and instance URLs.
    """
    return {
        "environment": settings.app_env,
        "debug": settings.app_debug,
        "log_level": settings.app_log_level,
        "backends": {
            "transcription": settings.transcription_backend,
            "agent": settings.agent_backend,
            "synthesis": settings.synthesis_backend,
        },
        "recognition": {
            "model": settings.stt_model,
            "language": settings.stt_language,
            "commit_policy": settings.transcript_commit_policy,
        },
        "synthesis": {
            "model": settings.tts_model,
            "chunk_bytes": settings.tts_chunk_bytes,
            "realtime_pacing": settings.tts_realtime_pacing,
        },
        "sessions": {
            "max_concurrent_calls": settings.max_concurrent_calls,
            "agent_ready_attempts": settings.agent_ready_attempts,
            "agent_ready_interval_seconds": settings.agent_ready_interval_seconds,
        },
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }


def _component(model: object, backend: str) -> dict:
    if model is not None:
        return {"status": "healthy", "backend": backend, "model": model}
    if backend.lower() in ("disabled", "none"):
        return {"status": "disabled", "backend": backend}
    return {"status": "unconfigured", "backend": backend}
